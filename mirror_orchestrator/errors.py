"""Exception taxonomy for the mirroring orchestrator"""

from typing import Optional


class MirroringError(Exception):
    """Base class for every orchestrator error"""

    def __init__(self, message: str, node: Optional[str] = None):
        super().__init__(message)
        self.node = node


class ValidationError(MirroringError):
    """Topology-level failure; raised before any write"""

    def __init__(self, result, node: Optional[str] = None):
        super().__init__(result.reason, node)
        self.result = result


class SeedingError(MirroringError):
    pass


class ProvisioningError(MirroringError):
    pass


class PartnershipError(MirroringError):
    """Partner or witness statement failed; may leave a half-configured pair"""

    def __init__(self, message: str, node: Optional[str] = None, half_configured: bool = False):
        super().__init__(message, node)
        self.half_configured = half_configured


class NodeConnectionError(MirroringError):
    """Wraps a driver failure against one node"""

    def __init__(self, message: str, node: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message, node)
        self.error_code = error_code
