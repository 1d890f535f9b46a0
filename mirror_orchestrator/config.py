"""
Configuration loading and logging setup

The mirroring configuration is a JSON file:

    {
      "mirroring": {"databases": ["orders"], "shared_path": "\\\\fs01\\mirror", ...},
      "primary": {"host": "sql-a", "username": "sa", "password": "..."},
      "mirrors": [{"host": "sql-b", ...}],
      "witness": {"host": "sql-w", ...},
      "logging": {"level": "INFO", "log_file": "./logs/mirroring.log"}
    }
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

from .models import NodeConfig, RunOptions

REQUIRED_SECTIONS = ['mirroring', 'primary', 'mirrors']

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s'


def load_config(config_file: str) -> Dict[str, Any]:
    """Load the JSON configuration and fill in defaults"""
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except FileNotFoundError:
        logging.error(f"Configuration file not found: {config_file}")
        raise
    except json.JSONDecodeError as e:
        logging.error(f"Invalid JSON in configuration file: {e}")
        raise

    return apply_defaults(config)


def apply_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate sections and add missing fields with defaults"""
    for section in REQUIRED_SECTIONS:
        if section not in config:
            raise ValueError(f"Missing configuration section: {section}")

    mirroring = config['mirroring']
    mirroring.setdefault('databases', [])
    mirroring.setdefault('use_last_backup', False)
    mirroring.setdefault('force', False)
    mirroring.setdefault('dry_run', False)
    mirroring.setdefault('backup_files', [])
    mirroring.setdefault('shared_path', None)
    mirroring.setdefault('fix_recovery_model', False)
    mirroring.setdefault('endpoint_name', 'Mirroring')
    mirroring.setdefault('endpoint_port', 5022)
    mirroring.setdefault('endpoint_encryption', 'AES')
    mirroring.setdefault('max_workers', 4)
    mirroring.setdefault('connection_timeout', 30)
    mirroring.setdefault('query_timeout', 300)
    mirroring.setdefault('odbc_driver', 'ODBC Driver 17 for SQL Server')

    if isinstance(mirroring['databases'], str):
        mirroring['databases'] = [mirroring['databases']]
    if not mirroring['databases']:
        raise ValueError("mirroring.databases must name at least one database")
    if not config['mirrors']:
        raise ValueError("At least one mirror must be configured")

    config.setdefault('witness', None)
    config.setdefault('logging', {})
    return config


def parse_node_config(node: Dict[str, Any], default_endpoint_port: int = 5022,
                      required: bool = False) -> NodeConfig:
    """Build a NodeConfig from one primary/mirror/witness section"""
    if 'host' not in node:
        raise ValueError(f"Node configuration is missing 'host': {node}")
    return NodeConfig(
        host=node['host'],
        port=int(node.get('port', 1433)),
        instance=node.get('instance'),
        username=node.get('username'),
        password=node.get('password'),
        trusted_connection=bool(node.get('trusted_connection', False)),
        name=node.get('name'),
        required=bool(node.get('required', required)),
        endpoint_host=node.get('endpoint_host'),
        endpoint_port=int(node.get('endpoint_port', default_endpoint_port)),
    )


def node_configs(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return {'primary': NodeConfig, 'mirrors': [...], 'witness': NodeConfig|None}"""
    port = config['mirroring']['endpoint_port']
    witness: Optional[NodeConfig] = None
    if config.get('witness'):
        witness = parse_node_config(config['witness'], port)
    mirrors: List[NodeConfig] = [parse_node_config(m, port) for m in config['mirrors']]
    return {
        'primary': parse_node_config(config['primary'], port, required=True),
        'mirrors': mirrors,
        'witness': witness,
    }


def run_options(config: Dict[str, Any], **overrides) -> RunOptions:
    """RunOptions from the mirroring section; non-None overrides win"""
    mirroring = config['mirroring']
    values = {
        'use_last_backup': bool(mirroring['use_last_backup']),
        'force': bool(mirroring['force']),
        'dry_run': bool(mirroring['dry_run']),
        'backup_files': list(mirroring['backup_files']),
        'shared_path': mirroring['shared_path'],
        'fix_recovery_model': bool(mirroring['fix_recovery_model']),
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return RunOptions(**values)


def setup_logging(config: Dict[str, Any]) -> logging.Logger:
    """Rotating file log plus console, both with the same formatter"""
    log_cfg = config.get('logging', {})
    level = getattr(logging, str(log_cfg.get('level', 'INFO')).upper(), logging.INFO)
    log_file = log_cfg.get('log_file', './logs/mirroring.log')

    try:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
    except (PermissionError, OSError):
        log_file = 'mirroring.log'

    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=log_cfg.get('max_log_size_mb', 10) * 1024 * 1024,
        backupCount=log_cfg.get('backup_count', 5)
    )
    console_handler = logging.StreamHandler()

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=[file_handler, console_handler])
    return logging.getLogger('mirror_orchestrator')
