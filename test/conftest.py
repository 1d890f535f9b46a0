"""Shared fixtures: an in-memory stand-in for a SQL Server instance"""

import re
import threading
from typing import Dict, List, Optional

import pandas as pd
import pytest

from mirror_orchestrator.backup import BACKUP_HISTORY_SQL
from mirror_orchestrator.errors import NodeConnectionError
from mirror_orchestrator.models import (
    DatabaseInfo,
    DatabaseStatus,
    Endpoint,
    EndpointRole,
    EndpointState,
    MirroringState,
    RecoveryModel,
    ReplicaTopology,
)

HISTORY_COLUMNS = ['backup_set_id', 'database_name', 'type', 'physical_device_name',
                   'first_lsn', 'last_lsn', 'backup_finish_date']

# statements the fake applies to its own state
CREATE_ENDPOINT = re.compile(r"CREATE ENDPOINT \[(.+?)\].*LISTENER_PORT = (\d+).*ROLE = (\w+)")
ENDPOINT_STATE = re.compile(r"ALTER ENDPOINT \[(.+?)\] STATE = (\w+)")
ENDPOINT_ROLE = re.compile(r"ALTER ENDPOINT \[(.+?)\] FOR DATABASE_MIRRORING \(ROLE = (\w+)\)")
CREATE_LOGIN = re.compile(r"CREATE LOGIN \[(.+?)\] FROM WINDOWS")
GRANT_CONNECT = re.compile(r"GRANT CONNECT ON ENDPOINT::\[(.+?)\] TO \[(.+?)\]")
RESTORE_NORECOVERY = re.compile(r"RESTORE DATABASE \[(.+?)\] FROM .*NORECOVERY")
RESTORE_RECOVERY = re.compile(r"RESTORE DATABASE \[(.+?)\] WITH RECOVERY")
SET_PARTNER = re.compile(r"ALTER DATABASE \[(.+?)\] SET PARTNER = N'(.+?)'")
PARTNER_OFF = re.compile(r"ALTER DATABASE \[(.+?)\] SET PARTNER OFF")
SET_WITNESS = re.compile(r"ALTER DATABASE \[(.+?)\] SET WITNESS = N'(.+?)'")
DROP_DATABASE = re.compile(r"DROP DATABASE \[(.+?)\]")
SET_RECOVERY = re.compile(r"ALTER DATABASE \[(.+?)\] SET RECOVERY FULL")


def make_db(name: str = 'orders', status: DatabaseStatus = DatabaseStatus.NORMAL,
            recovery_model: RecoveryModel = RecoveryModel.FULL, partner: Optional[str] = None,
            state: Optional[str] = None, availability_group: Optional[str] = None) -> DatabaseInfo:
    if partner and not state:
        state = 'SYNCHRONIZED'
    return DatabaseInfo(
        name=name,
        status=status,
        recovery_model=recovery_model,
        mirroring_state=MirroringState.from_desc(state),
        mirroring_state_desc=state,
        mirroring_partner=partner,
        availability_group=availability_group,
    )


def history_frame(rows: List[tuple]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=HISTORY_COLUMNS)


class FakeNode:
    """Records every statement and mirrors the effect of the ones the orchestrator issues"""

    def __init__(self, name: str, journal: Optional[list] = None, up: bool = True, required: bool = False,
                 edition: str = 'Developer Edition (64-bit)', service_account: Optional[str] = None,
                 databases: Optional[Dict[str, DatabaseInfo]] = None, endpoint: Optional[Endpoint] = None,
                 endpoint_port: int = 5022, shared_path_visible: bool = True):
        self.name = name
        self.up = up
        self.required = required
        self.reachable = False
        self.last_error = None
        self.edition = edition
        self.version = '15.0.4335.1'
        self.service_account = service_account or f"CORP\\svc-{name}"
        self.computer_name = name.upper()
        self.domain = 'CORP'
        self.host_platform = 'Windows'
        self.endpoint_host = f"{name}.corp.local"
        self.endpoint_port = endpoint_port
        self.databases: Dict[str, DatabaseInfo] = dict(databases or {})
        self.endpoint = endpoint
        self.login_names = set()
        self.grantees = set()
        self.backup_history = history_frame([])
        self.shared_path_visible = shared_path_visible
        self.file_list: List[tuple] = []
        self.default_paths: List[tuple] = []
        self.fail_on: List[str] = []
        self.executed: List[str] = []
        self.queries: List[str] = []
        self.journal = journal if journal is not None else []
        self.closed = False
        self._lock = threading.Lock()

    def __repr__(self):
        return f"FakeNode({self.name!r})"

    def connect(self):
        if not self.up:
            self.reachable = False
            self.last_error = f"connect failed on {self.name}: Login timeout expired"
            raise NodeConnectionError(self.last_error, node=self.name, error_code='HYT00')
        self.reachable = True
        return self

    def close(self):
        self.closed = True

    def get_database(self, name: str) -> Optional[DatabaseInfo]:
        return self.databases.get(name)

    def get_mirroring_endpoint(self) -> Optional[Endpoint]:
        return self.endpoint

    def logins(self):
        return set(self.login_names)

    def endpoint_grantees(self, endpoint_name: str):
        return set(self.grantees)

    def query(self, sql: str, params=None):
        self.queries.append(sql)
        if 'xp_fileexist' in sql:
            visible = 1 if self.shared_path_visible else 0
            return [(0, visible, 1)]
        if 'FILELISTONLY' in sql:
            return list(self.file_list)
        if 'InstanceDefaultDataPath' in sql:
            return list(self.default_paths)
        return []

    def read_frame(self, sql: str, params=None) -> pd.DataFrame:
        self.queries.append(sql)
        if sql == BACKUP_HISTORY_SQL:
            return self.backup_history
        return pd.DataFrame()

    def execute(self, sql: str, params=None):
        for fragment in self.fail_on:
            if fragment in sql:
                raise NodeConnectionError(f"execute failed on {self.name}: {fragment} rejected", node=self.name)
        with self._lock:
            self.executed.append(sql)
            self.journal.append((self.name, sql))
        self._apply(sql)

    def _apply(self, sql: str):
        match = CREATE_ENDPOINT.search(sql)
        if match:
            self.endpoint = Endpoint(owner=self.name, name=match.group(1), role=EndpointRole(match.group(3)),
                                     state=EndpointState.STARTED, port=int(match.group(2)),
                                     fqdn=self.endpoint_host, encryption_algorithm='AES')
            return
        match = ENDPOINT_STATE.search(sql)
        if match and self.endpoint is not None:
            self.endpoint.state = EndpointState(match.group(2))
            return
        match = ENDPOINT_ROLE.search(sql)
        if match and self.endpoint is not None:
            self.endpoint.role = EndpointRole(match.group(2))
            return
        match = GRANT_CONNECT.search(sql)
        if match:
            self.grantees.add(match.group(2))
            return
        match = CREATE_LOGIN.search(sql)
        if match:
            self.login_names.add(match.group(1))
            return
        match = RESTORE_NORECOVERY.search(sql)
        if match:
            self.databases[match.group(1)] = make_db(match.group(1), status=DatabaseStatus.RESTORING)
            return
        match = RESTORE_RECOVERY.search(sql)
        if match and match.group(1) in self.databases:
            self.databases[match.group(1)].status = DatabaseStatus.NORMAL
            return
        match = SET_PARTNER.search(sql)
        if match:
            info = self.databases[match.group(1)]
            info.mirroring_partner = match.group(2)
            info.mirroring_state = MirroringState.SYNCHRONIZED
            info.mirroring_state_desc = 'SYNCHRONIZED'
            return
        match = PARTNER_OFF.search(sql)
        if match:
            info = self.databases[match.group(1)]
            info.mirroring_partner = None
            info.mirroring_witness = None
            info.mirroring_state = MirroringState.NONE
            info.mirroring_state_desc = None
            return
        match = SET_WITNESS.search(sql)
        if match:
            self.databases[match.group(1)].mirroring_witness = match.group(2)
            return
        match = DROP_DATABASE.search(sql)
        if match:
            self.databases.pop(match.group(1), None)
            return
        match = SET_RECOVERY.search(sql)
        if match and match.group(1) in self.databases:
            self.databases[match.group(1)].recovery_model = RecoveryModel.FULL


@pytest.fixture
def journal():
    """Statements from every node, in the order they were issued"""
    return []


@pytest.fixture
def make_node(journal):
    def factory(name: str, **kwargs) -> FakeNode:
        return FakeNode(name, journal=journal, **kwargs)
    return factory


@pytest.fixture
def primary(make_node):
    return make_node('sql-a', required=True, databases={'orders': make_db()})


@pytest.fixture
def mirror(make_node):
    return make_node('sql-b')


@pytest.fixture
def witness(make_node):
    return make_node('sql-w')


@pytest.fixture
def topology(primary, mirror):
    return ReplicaTopology(primary=primary, mirrors=[mirror], database='orders')


@pytest.fixture
def witnessed_topology(primary, mirror, witness):
    return ReplicaTopology(primary=primary, mirrors=[mirror], database='orders', witness=witness)


def connect_all(topology: ReplicaTopology):
    for node in topology.nodes():
        try:
            node.connect()
        except NodeConnectionError:
            pass
