"""
Live sessions to SQL Server instances

NodeHandle wraps one pyodbc connection and exposes the fixed capability set the
orchestrator needs: server properties, databases with their mirroring state,
the mirroring endpoint, logins and endpoint grants, plus query/execute.
Every driver failure surfaces as NodeConnectionError.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Set

import pandas as pd
import pyodbc

from .config import node_configs
from .errors import MirroringError, NodeConnectionError
from .models import (
    DatabaseInfo,
    DatabaseStatus,
    Endpoint,
    EndpointRole,
    EndpointState,
    MirroringState,
    NodeConfig,
    RecoveryModel,
    ReplicaTopology,
)

logger = logging.getLogger(__name__)


def analyze_sql_error(error_code: str, error_msg: str) -> str:
    """Short explanation of a SQL Server / ODBC error"""
    error_msg_lower = error_msg.lower()

    if "named pipes provider" in error_msg_lower or "could not open a connection" in error_msg_lower:
        return "SQL Server service not running or not accessible (check service, port, firewall, remote connections)"
    elif "login failed" in error_msg_lower or "18456" in str(error_code):
        return "Authentication failure (check username/password and Mixed Mode authentication)"
    elif "timeout" in error_msg_lower or str(error_code) == "HYT00":
        return "Connection timeout (network latency or server overloaded)"
    elif str(error_code) in ("08001", "08S01"):
        return "Network-related or instance-specific error"
    return "SQL Server error, check the SQL Server error log for details"


class NodeHandle:
    """Authenticated session to one instance; owned by a single orchestration run"""

    def __init__(self, config: NodeConfig, odbc_driver: str = 'ODBC Driver 17 for SQL Server',
                 connection_timeout: int = 30, query_timeout: int = 300):
        self.config = config
        self.odbc_driver = odbc_driver
        self.connection_timeout = connection_timeout
        self.query_timeout = query_timeout
        self.reachable = False
        self.last_error: Optional[str] = None
        self._conn: Optional[pyodbc.Connection] = None
        self._server_info: Optional[Dict[str, Any]] = None
        self._lock = threading.RLock()

    def __repr__(self):
        return f"NodeHandle({self.name!r}, reachable={self.reachable})"

    @property
    def name(self) -> str:
        return self.config.display_name

    @property
    def required(self) -> bool:
        return self.config.required

    @property
    def endpoint_host(self) -> str:
        return self.config.endpoint_host or self.config.host

    @property
    def endpoint_port(self) -> int:
        return self.config.endpoint_port

    # ---------- Connection ----------

    def get_connection_string(self) -> str:
        conn_str = (
            f"DRIVER={{{self.odbc_driver}}};"
            f"SERVER={self.config.server};"
            f"DATABASE=master;"
            f"TrustServerCertificate=yes;"
        )
        if self.config.trusted_connection:
            conn_str += "Trusted_Connection=yes;"
        else:
            conn_str += f"UID={self.config.username};PWD={self.config.password};"
        return conn_str

    def connect(self) -> "NodeHandle":
        """Open the session; marks the node unreachable and raises on failure"""
        with self._lock:
            if self._conn is not None:
                return self
            try:
                self._conn = pyodbc.connect(
                    self.get_connection_string(), autocommit=True, timeout=self.connection_timeout
                )
                self._conn.timeout = self.query_timeout
            except pyodbc.Error as e:
                self.reachable = False
                error = self._wrap(e, "connect")
                self.last_error = str(error)
                raise error
            self.reachable = True
            self.last_error = None
            logger.info(f"Connected to {self.name}")
            return self

    def close(self):
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except pyodbc.Error as e:
                    logger.warning(f"Error closing connection to {self.name}: {e}")
                self._conn = None

    def _wrap(self, error: Exception, action: str) -> NodeConnectionError:
        error_code = error.args[0] if len(error.args) > 1 else "Unknown"
        error_msg = str(error.args[1]) if len(error.args) > 1 else str(error)
        analysis = analyze_sql_error(error_code, error_msg)
        logger.error(f"{action} failed on {self.name}: [{error_code}] {error_msg}")
        return NodeConnectionError(
            f"{action} failed on {self.name}: {error_msg} ({analysis})",
            node=self.name, error_code=str(error_code)
        )

    def _cursor(self):
        if self._conn is None:
            raise NodeConnectionError(f"Not connected to {self.name}", node=self.name)
        return self._conn.cursor()

    # ---------- Query / execute ----------

    def query(self, sql: str, params: Optional[tuple] = None) -> List[Any]:
        with self._lock:
            try:
                cursor = self._cursor()
                if params:
                    cursor.execute(sql, params)
                else:
                    cursor.execute(sql)
                rows = cursor.fetchall()
                cursor.close()
                return rows
            except pyodbc.Error as e:
                raise self._wrap(e, "query")

    def execute(self, sql: str, params: Optional[tuple] = None):
        """Run a statement and drain every result set so BACKUP/RESTORE complete"""
        with self._lock:
            try:
                cursor = self._cursor()
                if params:
                    cursor.execute(sql, params)
                else:
                    cursor.execute(sql)
                while cursor.nextset():
                    pass
                cursor.close()
                logger.info(f"Executed on {self.name}: {sql.strip().splitlines()[0]}")
            except pyodbc.Error as e:
                raise self._wrap(e, "execute")

    def read_frame(self, sql: str, params: Optional[list] = None) -> pd.DataFrame:
        with self._lock:
            if self._conn is None:
                raise NodeConnectionError(f"Not connected to {self.name}", node=self.name)
            try:
                return pd.read_sql(sql, self._conn, params=params)
            except (pyodbc.Error, pd.errors.DatabaseError) as e:
                raise self._wrap(e, "query")

    # ---------- Server properties ----------

    def _info(self) -> Dict[str, Any]:
        if self._server_info is None:
            row = self.query("""
                SELECT CAST(SERVERPROPERTY('ProductVersion') AS nvarchar(128)),
                       CAST(SERVERPROPERTY('Edition') AS nvarchar(128)),
                       CAST(SERVERPROPERTY('ComputerNamePhysicalNetBIOS') AS nvarchar(128)),
                       DEFAULT_DOMAIN(),
                       (SELECT TOP 1 service_account FROM sys.dm_server_services
                         WHERE servicename LIKE N'SQL Server (%')
            """)[0]
            platform = "Windows"
            try:
                platform_rows = self.query("SELECT host_platform FROM sys.dm_os_host_info")
                if platform_rows:
                    platform = platform_rows[0][0]
            except NodeConnectionError:
                # sys.dm_os_host_info only exists from SQL Server 2017
                pass
            self._server_info = {
                'version': row[0],
                'edition': row[1],
                'computer_name': row[2],
                'domain': row[3],
                'service_account': row[4] or '',
                'host_platform': platform,
            }
        return self._server_info

    @property
    def version(self) -> str:
        return self._info()['version']

    @property
    def edition(self) -> str:
        return self._info()['edition']

    @property
    def computer_name(self) -> str:
        return self._info()['computer_name']

    @property
    def domain(self) -> Optional[str]:
        return self._info()['domain']

    @property
    def host_platform(self) -> str:
        return self._info()['host_platform']

    @property
    def service_account(self) -> str:
        return self._info()['service_account']

    # ---------- Catalog reads ----------

    def list_databases(self) -> List[str]:
        return [row[0] for row in self.query("SELECT name FROM sys.databases ORDER BY name")]

    def get_database(self, name: str) -> Optional[DatabaseInfo]:
        rows = self.query("""
            SELECT d.name, d.state_desc, d.recovery_model_desc,
                   m.mirroring_state_desc, m.mirroring_role_desc,
                   m.mirroring_partner_name, m.mirroring_witness_name,
                   ag.name
            FROM sys.databases d
            LEFT JOIN sys.database_mirroring m ON m.database_id = d.database_id
            LEFT JOIN sys.dm_hadr_database_replica_states rs
                   ON rs.database_id = d.database_id AND rs.is_local = 1
            LEFT JOIN sys.availability_groups ag ON ag.group_id = rs.group_id
            WHERE d.name = ?
        """, (name,))
        if not rows:
            return None
        row = rows[0]
        return DatabaseInfo(
            name=row[0],
            status=DatabaseStatus.from_state_desc(row[1]),
            recovery_model=self._catalog_value(RecoveryModel, row[2], "recovery_model_desc"),
            mirroring_state=MirroringState.from_desc(row[3]),
            mirroring_state_desc=row[3],
            mirroring_role=row[4],
            mirroring_partner=row[5],
            mirroring_witness=row[6],
            availability_group=row[7],
        )

    def logins(self) -> Set[str]:
        rows = self.query("SELECT name FROM sys.server_principals WHERE type IN ('U', 'G', 'S')")
        return {row[0] for row in rows}

    def get_mirroring_endpoint(self) -> Optional[Endpoint]:
        rows = self.query("""
            SELECT e.name, e.role_desc, e.state_desc, t.port, e.encryption_algorithm_desc
            FROM sys.database_mirroring_endpoints e
            JOIN sys.tcp_endpoints t ON t.endpoint_id = e.endpoint_id
        """)
        if not rows:
            return None
        name, role, state, port, algorithm = rows[0]
        return Endpoint(
            owner=self.name,
            name=name,
            role=self._catalog_value(EndpointRole, role, "role_desc"),
            state=self._catalog_value(EndpointState, state, "state_desc"),
            port=int(port),
            fqdn=self.endpoint_host,
            encryption_algorithm=algorithm,
        )

    def _catalog_value(self, enum_cls, value, column: str):
        try:
            return enum_cls(value)
        except ValueError as e:
            raise MirroringError(f"Unexpected {column} {value!r} on {self.name}", node=self.name) from e

    def endpoint_grantees(self, endpoint_name: str) -> Set[str]:
        """Principals holding CONNECT on the named endpoint"""
        rows = self.query("""
            SELECT p.name
            FROM sys.server_permissions sp
            JOIN sys.endpoints e ON e.endpoint_id = sp.major_id
            JOIN sys.server_principals p ON p.principal_id = sp.grantee_principal_id
            WHERE sp.class = 105 AND sp.permission_name = 'CONNECT'
              AND sp.state IN ('G', 'W') AND e.name = ?
        """, (endpoint_name,))
        return {row[0] for row in rows}


class ConnectionProvider:
    """Opens NodeHandles with shared driver and timeout settings"""

    def __init__(self, odbc_driver: str = 'ODBC Driver 17 for SQL Server',
                 connection_timeout: int = 30, query_timeout: int = 300):
        self.odbc_driver = odbc_driver
        self.connection_timeout = connection_timeout
        self.query_timeout = query_timeout

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConnectionProvider":
        mirroring = config['mirroring']
        return cls(mirroring['odbc_driver'], mirroring['connection_timeout'], mirroring['query_timeout'])

    def handle(self, node_config: NodeConfig) -> NodeHandle:
        """Unconnected handle; the orchestrator connects it"""
        return NodeHandle(node_config, self.odbc_driver, self.connection_timeout, self.query_timeout)

    def open(self, node_config: NodeConfig) -> NodeHandle:
        return self.handle(node_config).connect()


def build_topologies(config: Dict[str, Any],
                     provider: Optional[ConnectionProvider] = None) -> List[ReplicaTopology]:
    """One ReplicaTopology per configured database; nodes are shared between them"""
    provider = provider or ConnectionProvider.from_config(config)
    nodes = node_configs(config)
    primary = provider.handle(nodes['primary'])
    mirrors = [provider.handle(m) for m in nodes['mirrors']]
    witness = provider.handle(nodes['witness']) if nodes['witness'] else None
    return [
        ReplicaTopology(primary=primary, mirrors=list(mirrors), database=database, witness=witness)
        for database in config['mirroring']['databases']
    ]
