"""Unit tests for configuration loading."""

import json
import logging

import pytest

from mirror_orchestrator.config import (
    apply_defaults,
    load_config,
    node_configs,
    run_options,
    setup_logging,
)
from mirror_orchestrator.models import NodeConfig


def minimal_config(**mirroring):
    section = {'databases': ['orders']}
    section.update(mirroring)
    return {
        'mirroring': section,
        'primary': {'host': 'sql-a', 'username': 'sa', 'password': 'secret'},
        'mirrors': [{'host': 'sql-b', 'port': 1444, 'endpoint_port': 7022}, {'host': 'sql-c', 'required': True}],
    }


def test_defaults_are_filled():
    config = apply_defaults(minimal_config())

    assert config['mirroring']['endpoint_port'] == 5022
    assert config['mirroring']['max_workers'] == 4
    assert config['mirroring']['odbc_driver'] == 'ODBC Driver 17 for SQL Server'
    assert config['witness'] is None


def test_single_database_string():
    config = apply_defaults(minimal_config(databases='orders'))
    assert config['mirroring']['databases'] == ['orders']


@pytest.mark.parametrize('section', ['mirroring', 'primary', 'mirrors'])
def test_missing_section(section):
    config = minimal_config()
    del config[section]
    with pytest.raises(ValueError, match=section):
        apply_defaults(config)


def test_no_databases():
    with pytest.raises(ValueError):
        apply_defaults(minimal_config(databases=[]))


def test_no_mirrors():
    config = minimal_config()
    config['mirrors'] = []
    with pytest.raises(ValueError):
        apply_defaults(config)


def test_node_configs():
    config = apply_defaults(minimal_config(endpoint_port=6022))
    config['witness'] = {'host': 'sql-w', 'instance': 'WIT'}

    nodes = node_configs(config)

    assert nodes['primary'].required
    assert nodes['primary'].endpoint_port == 6022
    first, second = nodes['mirrors']
    assert not first.required and second.required
    assert first.endpoint_port == 7022
    assert first.display_name == 'sql-b,1444'
    assert nodes['witness'].display_name == 'sql-w\\WIT'
    assert nodes['witness'].server == 'sql-w\\WIT'


def test_node_without_host():
    config = apply_defaults(minimal_config())
    config['mirrors'].append({'port': 1433})
    with pytest.raises(ValueError, match='host'):
        node_configs(config)


def test_node_display_name_prefers_name():
    assert NodeConfig(host='10.0.0.5', name='sql-a').display_name == 'sql-a'
    assert NodeConfig(host='10.0.0.5').server == '10.0.0.5,1433'


def test_run_options_overrides():
    config = apply_defaults(minimal_config(force=True, shared_path='/b'))

    options = run_options(config, force=None, dry_run=True)

    assert options.force
    assert options.dry_run
    assert options.shared_path == '/b'
    assert not options.has_backup_set


def test_load_config(tmp_path):
    path = tmp_path / 'mirroring_config.json'
    path.write_text(json.dumps(minimal_config()))

    config = load_config(str(path))

    assert config['mirroring']['databases'] == ['orders']


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / 'missing.json'))


def test_load_config_invalid_json(tmp_path):
    path = tmp_path / 'broken.json'
    path.write_text('{"mirroring": ')
    with pytest.raises(json.JSONDecodeError):
        load_config(str(path))


def test_setup_logging(tmp_path):
    log_file = tmp_path / 'logs' / 'mirroring.log'
    config = apply_defaults(minimal_config())
    config['logging'] = {'level': 'DEBUG', 'log_file': str(log_file)}

    try:
        logger = setup_logging(config)
        logger.info('hello')

        assert log_file.exists()
        assert logging.root.level == logging.DEBUG
    finally:
        for handler in logging.root.handlers[:]:
            handler.close()
            logging.root.removeHandler(handler)
