"""SQL Server database mirroring topology orchestrator"""

from .errors import (
    MirroringError,
    NodeConnectionError,
    PartnershipError,
    ProvisioningError,
    SeedingError,
    ValidationError,
)
from .models import (
    MirroringPlan,
    NodeConfig,
    OperationResult,
    ReplicaTopology,
    RunOptions,
    Status,
    Step,
    ValidationResult,
)
from .orchestrator import MirroringOrchestrator

__version__ = "0.1.0"
