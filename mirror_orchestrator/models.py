"""
Data model for the mirroring topology orchestrator

Plain dataclasses and enums shared by every component. Nothing in here talks
to a server; NodeHandle lives in node.py.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class NodeRole(Enum):
    """Role a node plays for one database"""
    PRIMARY = "primary"
    MIRROR = "mirror"
    WITNESS = "witness"


class EditionClass(Enum):
    """Mirroring feature tier of an engine SKU"""
    ENTERPRISE = "enterprise"
    STANDARD = "standard"

    @classmethod
    def from_edition(cls, edition: Optional[str]) -> "EditionClass":
        text = (edition or "").lower()
        if "enterprise" in text or "developer" in text:
            return cls.ENTERPRISE
        return cls.STANDARD


class MirroringState(Enum):
    NONE = "NONE"
    CONNECTING = "CONNECTING"
    SYNCHRONIZING = "SYNCHRONIZING"
    SYNCHRONIZED = "SYNCHRONIZED"
    SUSPENDED = "SUSPENDED"
    DISCONNECTED = "DISCONNECTED"
    PENDING_FAILOVER = "PENDING_FAILOVER"

    @classmethod
    def from_desc(cls, desc: Optional[str]) -> "MirroringState":
        """Map sys.database_mirroring.mirroring_state_desc to a state"""
        if not desc:
            return cls.NONE
        value = desc.strip().upper()
        if value == "UNSYNCHRONIZED":
            return cls.CONNECTING
        try:
            return cls(value)
        except ValueError:
            return cls.CONNECTING


class DatabaseStatus(Enum):
    NORMAL = "NORMAL"
    RESTORING = "RESTORING"
    RECOVERING = "RECOVERING"
    RECOVERY_PENDING = "RECOVERY_PENDING"
    SUSPECT = "SUSPECT"
    EMERGENCY = "EMERGENCY"
    OFFLINE = "OFFLINE"

    @classmethod
    def from_state_desc(cls, desc: Optional[str]) -> "DatabaseStatus":
        value = (desc or "").strip().upper()
        if value == "ONLINE":
            return cls.NORMAL
        try:
            return cls(value)
        except ValueError:
            return cls.OFFLINE


class RecoveryModel(Enum):
    FULL = "FULL"
    BULK_LOGGED = "BULK_LOGGED"
    SIMPLE = "SIMPLE"


class EndpointRole(Enum):
    PARTNER = "PARTNER"
    WITNESS = "WITNESS"
    ALL = "ALL"

    def supports(self, role: "EndpointRole") -> bool:
        return self == EndpointRole.ALL or self == role


class EndpointState(Enum):
    STARTED = "STARTED"
    STOPPED = "STOPPED"
    DISABLED = "DISABLED"


class BackupType(Enum):
    FULL = "FULL"
    DIFFERENTIAL = "DIFFERENTIAL"
    LOG = "LOG"

    @classmethod
    def from_msdb(cls, code: str) -> "BackupType":
        """msdb.dbo.backupset.type: D = full, I = differential, L = log"""
        return {"D": cls.FULL, "I": cls.DIFFERENTIAL, "L": cls.LOG}[code.strip().upper()]


class SeedingMode(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class Step(Enum):
    VALIDATE = "Validate"
    SEED = "Seed"
    DROP_DATABASE = "DropDatabase"
    BACKUP = "Backup"
    RESTORE = "Restore"
    CREATE_ENDPOINT = "CreateEndpoint"
    START_ENDPOINT = "StartEndpoint"
    ENSURE_LOGIN = "EnsureLogin"
    GRANT_CONNECT = "GrantConnect"
    PARTNER_MIRROR = "PartnerMirror"
    PARTNER_PRIMARY = "PartnerPrimary"
    SET_WITNESS = "SetWitness"
    REMOVE_PARTNER = "RemovePartner"
    RECOVER = "Recover"


class Status(Enum):
    SUCCESS = "Success"
    SKIPPED = "Skipped"
    FAILED = "Failed"


def format_address(fqdn: str, port: int) -> str:
    return f"TCP://{fqdn}:{port}"


def same_address(left: Optional[str], right: Optional[str]) -> bool:
    """Compare two endpoint addresses the way the engine does (case-insensitive)"""
    if not left or not right:
        return False
    return left.strip().rstrip("/").lower() == right.strip().rstrip("/").lower()


@dataclass
class NodeConfig:
    """Connection settings for one instance"""
    host: str
    port: int = 1433
    instance: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    trusted_connection: bool = False
    name: Optional[str] = None
    required: bool = False
    endpoint_host: Optional[str] = None
    endpoint_port: int = 5022

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        label = self.host
        if self.instance:
            label += f"\\{self.instance}"
        if self.port and self.port != 1433:
            label += f",{self.port}"
        return label

    @property
    def server(self) -> str:
        """SERVER= value for the ODBC connection string"""
        if self.instance:
            return f"{self.host}\\{self.instance}"
        return f"{self.host},{self.port}"


@dataclass
class DatabaseInfo:
    """One row of sys.databases joined to sys.database_mirroring"""
    name: str
    status: DatabaseStatus
    recovery_model: RecoveryModel
    mirroring_state: MirroringState = MirroringState.NONE
    mirroring_state_desc: Optional[str] = None
    mirroring_role: Optional[str] = None
    mirroring_partner: Optional[str] = None
    mirroring_witness: Optional[str] = None
    availability_group: Optional[str] = None

    @property
    def is_mirrored(self) -> bool:
        return self.mirroring_state != MirroringState.NONE or bool(self.mirroring_partner)


@dataclass
class Endpoint:
    """The database mirroring endpoint of a node"""
    owner: str
    name: str
    role: EndpointRole
    state: EndpointState
    port: int
    fqdn: str
    encryption_algorithm: Optional[str] = None

    @property
    def address(self) -> str:
        return format_address(self.fqdn, self.port)


@dataclass
class BackupArtifact:
    """One backup set; striped backups carry several paths"""
    database: str
    backup_type: BackupType
    paths: List[str]
    first_lsn: Optional[int] = None
    last_lsn: Optional[int] = None
    finished_at: Optional[datetime] = None


@dataclass
class ReplicaTopology:
    """Primary, mirrors, optional witness and the database they share"""
    primary: Any
    mirrors: List[Any]
    database: str
    witness: Optional[Any] = None

    def members(self):
        """Yield (role, node) for every node in the topology"""
        yield NodeRole.PRIMARY, self.primary
        for mirror in self.mirrors:
            yield NodeRole.MIRROR, mirror
        if self.witness is not None:
            yield NodeRole.WITNESS, self.witness

    def nodes(self) -> List[Any]:
        return [node for _, node in self.members()]


@dataclass
class RunOptions:
    """Per-run switches, passed explicitly through every call"""
    use_last_backup: bool = False
    force: bool = False
    dry_run: bool = False
    backup_files: List[str] = field(default_factory=list)
    shared_path: Optional[str] = None
    fix_recovery_model: bool = False

    @property
    def has_backup_set(self) -> bool:
        return self.use_last_backup or bool(self.backup_files)


@dataclass
class ValidationResult:
    ok: bool
    reason: str = ""
    warnings: List[str] = field(default_factory=list)
    converged: bool = False
    recovery_model_fixable: bool = False

    @classmethod
    def fail(cls, reason: str, warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(ok=False, reason=reason, warnings=list(warnings or []))


@dataclass
class SeedingDecision:
    replica: str
    needs_backup: bool = False
    needs_restore: bool = False
    mode: SeedingMode = SeedingMode.MANUAL
    drop_existing: bool = False
    source: List[BackupArtifact] = field(default_factory=list)
    error: Optional[str] = None
    notes: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def converged(self) -> bool:
        return self.ok and not self.needs_restore and not self.drop_existing


_sequence = itertools.count(1)


@dataclass(frozen=True)
class OperationResult:
    """One recorded outcome; immutable once emitted"""
    node: str
    database: str
    step: Step
    status: Status
    notes: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    sequence: int = field(default_factory=lambda: next(_sequence))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "node": self.node,
            "database": self.database,
            "step": self.step.value,
            "status": self.status.value,
            "notes": self.notes,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }


@dataclass
class MirroringPlan:
    """What a run would do; inspect it, then hand it to apply()"""
    topology: ReplicaTopology
    options: RunOptions
    validation: ValidationResult
    decisions: Dict[str, SeedingDecision] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def describe(self) -> List[str]:
        database = self.topology.database
        lines = [f"Database [{database}] on {self.topology.primary.name}"]
        for replica, decision in self.decisions.items():
            if not decision.ok:
                lines.append(f"  {replica}: cannot seed ({decision.error})")
            elif decision.converged:
                lines.append(f"  {replica}: already seeded ({decision.notes or 'no action'})")
            else:
                action = "drop, " if decision.drop_existing else ""
                action += "fresh backup, " if decision.needs_backup else ""
                action += f"restore ({decision.mode.value})"
                lines.append(f"  {replica}: {action}")
        if self.topology.witness is not None:
            lines.append(f"  witness: {self.topology.witness.name}")
        return lines

    def as_results(self) -> List[OperationResult]:
        """Render the plan as SKIPPED results for dry-run callers"""
        database = self.topology.database
        results = [
            OperationResult(self.topology.primary.name, database, Step.VALIDATE,
                            Status.SKIPPED, "dry run: validation passed")
        ]
        for replica, decision in self.decisions.items():
            if decision.ok:
                notes = "dry run: " + ("already seeded" if decision.converged else "would restore")
                results.append(OperationResult(replica, database, Step.SEED, Status.SKIPPED, notes))
            else:
                results.append(OperationResult(replica, database, Step.SEED, Status.FAILED, decision.error))
        return results
