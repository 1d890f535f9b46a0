"""
Mirroring endpoints and the grants partners need to reach them

Each node gets exactly one DATABASE_MIRRORING endpoint (looked up before it is
ever created), and every service account in the topology gets a login plus
CONNECT on every other node's endpoint.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from .errors import MirroringError, ProvisioningError
from .models import (
    Endpoint,
    EndpointRole,
    EndpointState,
    NodeRole,
    OperationResult,
    ReplicaTopology,
    Status,
    Step,
    format_address,
)
from .tsql import quote_name, quote_string

logger = logging.getLogger(__name__)

LOCAL_SYSTEM_ACCOUNTS = {'localsystem', '.\\localsystem', 'nt authority\\system'}
LINUX_LOCAL_SYSTEM = 'NT AUTHORITY\\SYSTEM'


def normalize_service_account(account: Optional[str], computer_name: Optional[str],
                              domain: Optional[str], host_platform: Optional[str] = 'Windows') -> str:
    """Identity a partner sees when this service connects to it"""
    account = (account or '').strip()
    lowered = account.lower()

    if (host_platform or '').lower() == 'linux':
        if not account or lowered in LOCAL_SYSTEM_ACCOUNTS:
            return LINUX_LOCAL_SYSTEM
        return account

    machine_identity = (
        lowered in LOCAL_SYSTEM_ACCOUNTS
        or lowered.startswith('nt service\\')
        or lowered == 'nt authority\\network service'
    )
    if machine_identity and domain and computer_name:
        return f"{domain}\\{computer_name}$"
    return account


def expected_address(node) -> str:
    """Endpoint address of a node: the existing endpoint, else the configured port"""
    endpoint = node.get_mirroring_endpoint()
    if endpoint is not None:
        return endpoint.address
    return format_address(node.endpoint_host, node.endpoint_port)


class LoginManager:
    """Creates Windows logins for partner service accounts"""

    def ensure_login(self, node, identity: str):
        node.execute(
            f"IF NOT EXISTS (SELECT 1 FROM sys.server_principals WHERE name = {quote_string(identity)}) "
            f"CREATE LOGIN {quote_name(identity)} FROM WINDOWS"
        )


@dataclass
class ProvisioningOutcome:
    endpoints: Dict[str, Endpoint] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    results: List[OperationResult] = field(default_factory=list)


class EndpointProvisioner:
    def __init__(self, login_manager: Optional[LoginManager] = None,
                 endpoint_name: str = 'Mirroring', encryption_algorithm: str = 'AES'):
        self.login_manager = login_manager or LoginManager()
        self.endpoint_name = endpoint_name
        self.encryption_algorithm = encryption_algorithm

    def ensure_endpoints(self, topology: ReplicaTopology, mirrors: Optional[List] = None,
                         include_witness: bool = True) -> ProvisioningOutcome:
        """Endpoints for the primary, the given mirrors and the witness, then grants"""
        database = topology.database
        members: List[Tuple[NodeRole, object]] = [(NodeRole.PRIMARY, topology.primary)]
        members += [(NodeRole.MIRROR, m) for m in (topology.mirrors if mirrors is None else mirrors)]
        if include_witness and topology.witness is not None:
            members.append((NodeRole.WITNESS, topology.witness))

        outcome = ProvisioningOutcome()
        for role, node in members:
            try:
                endpoint, results = self.ensure_endpoint(node, role, database)
                outcome.endpoints[node.name] = endpoint
                outcome.results.extend(results)
            except ProvisioningError as e:
                self._record_failure(outcome, role, node, database, Step.CREATE_ENDPOINT, str(e))

        provisioned = [(role, node) for role, node in members if node.name in outcome.endpoints]
        self.grant_connect(provisioned, outcome, database)
        return outcome

    def ensure_endpoint(self, node, role: NodeRole, database: str) -> Tuple[Endpoint, List[OperationResult]]:
        wanted = EndpointRole.WITNESS if role == NodeRole.WITNESS else EndpointRole.PARTNER
        try:
            existing = node.get_mirroring_endpoint()
            if existing is None:
                return self._create_endpoint(node, wanted, database)

            results = []
            if not existing.role.supports(wanted):
                node.execute(f"ALTER ENDPOINT {quote_name(existing.name)} "
                             f"FOR DATABASE_MIRRORING (ROLE = ALL)")
                existing = replace(existing, role=EndpointRole.ALL)
                results.append(OperationResult(node.name, database, Step.CREATE_ENDPOINT, Status.SUCCESS,
                                               f"endpoint {existing.name} role widened to ALL"))

            if existing.state != EndpointState.STARTED:
                node.execute(f"ALTER ENDPOINT {quote_name(existing.name)} STATE = STARTED")
                existing = replace(existing, state=EndpointState.STARTED)
                results.append(OperationResult(node.name, database, Step.START_ENDPOINT, Status.SUCCESS,
                                               f"endpoint {existing.name} started"))
            else:
                results.append(OperationResult(node.name, database, Step.START_ENDPOINT, Status.SKIPPED,
                                               f"endpoint {existing.name} already started at {existing.address}"))
            return existing, results
        except MirroringError as e:
            raise ProvisioningError(f"Endpoint provisioning failed on {node.name}: {e}", node=node.name) from e

    def _create_endpoint(self, node, role: EndpointRole, database: str) -> Tuple[Endpoint, List[OperationResult]]:
        name = quote_name(self.endpoint_name)
        port = node.endpoint_port
        logger.info(f"Creating mirroring endpoint {self.endpoint_name} on {node.name}:{port} ({role.value})")
        node.execute(
            f"CREATE ENDPOINT {name} STATE = STARTED "
            f"AS TCP (LISTENER_PORT = {port}) "
            f"FOR DATABASE_MIRRORING (ROLE = {role.value}, "
            f"ENCRYPTION = REQUIRED ALGORITHM {self.encryption_algorithm})"
        )
        # bounce it so the listener comes up clean
        node.execute(f"ALTER ENDPOINT {name} STATE = STOPPED")
        node.execute(f"ALTER ENDPOINT {name} STATE = STARTED")
        endpoint = Endpoint(
            owner=node.name,
            name=self.endpoint_name,
            role=role,
            state=EndpointState.STARTED,
            port=port,
            fqdn=node.endpoint_host,
            encryption_algorithm=self.encryption_algorithm,
        )
        result = OperationResult(node.name, database, Step.CREATE_ENDPOINT, Status.SUCCESS,
                                 f"created {self.endpoint_name} at {endpoint.address}")
        return endpoint, [result]

    def grant_connect(self, members: List[Tuple[NodeRole, object]], outcome: ProvisioningOutcome, database: str):
        """Login plus CONNECT for every other node's service account, on every node"""
        accounts: Dict[str, str] = {}
        for role, node in list(members):
            try:
                accounts[node.name] = normalize_service_account(
                    node.service_account, node.computer_name, node.domain, node.host_platform
                )
            except MirroringError as e:
                self._record_failure(outcome, role, node, database, Step.GRANT_CONNECT,
                                     f"cannot read service account on {node.name}: {e}")
                members = [(r, n) for r, n in members if n is not node]

        for role, node in members:
            identities: Dict[str, str] = {}
            for other, account in accounts.items():
                if other != node.name and account:
                    identities.setdefault(account.lower(), account)
            if not identities:
                continue

            endpoint = outcome.endpoints[node.name]
            try:
                logins = {login.lower() for login in node.logins()}
                grantees = {grantee.lower() for grantee in node.endpoint_grantees(endpoint.name)}
                for key in sorted(identities):
                    identity = identities[key]
                    if key not in logins:
                        self.login_manager.ensure_login(node, identity)
                        outcome.results.append(OperationResult(node.name, database, Step.ENSURE_LOGIN,
                                                               Status.SUCCESS, f"login {identity} created"))
                    if key in grantees:
                        outcome.results.append(OperationResult(node.name, database, Step.GRANT_CONNECT, Status.SKIPPED,
                                                               f"{identity} already has CONNECT on {endpoint.name}"))
                        continue
                    node.execute(f"GRANT CONNECT ON ENDPOINT::{quote_name(endpoint.name)} TO {quote_name(identity)}")
                    outcome.results.append(OperationResult(node.name, database, Step.GRANT_CONNECT, Status.SUCCESS,
                                                           f"granted CONNECT on {endpoint.name} to {identity}"))
            except MirroringError as e:
                self._record_failure(outcome, role, node, database, Step.GRANT_CONNECT,
                                     f"grant failed on {node.name}: {e}")

    def _record_failure(self, outcome: ProvisioningOutcome, role: NodeRole, node, database: str,
                        step: Step, message: str):
        # a witness is optional: its failure degrades the run instead of failing it
        if role == NodeRole.WITNESS:
            warning = f"{message}; continuing with mirroring without witness"
            logger.warning(warning)
            outcome.warnings.append(warning)
            result = OperationResult(node.name, database, step, Status.SKIPPED, warning)
        else:
            logger.error(message)
            result = OperationResult(node.name, database, step, Status.FAILED, message)
        outcome.failed[node.name] = message
        outcome.endpoints.pop(node.name, None)
        outcome.results.append(result)
