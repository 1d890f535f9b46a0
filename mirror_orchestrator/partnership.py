"""
Partner and witness statements

The engine only accepts the partnership in one order: the mirror points at the
primary first, then the primary points back, then the primary takes the
witness. PARTNERSHIP_STEPS is that order for one mirror.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .errors import MirroringError, PartnershipError
from .models import (
    Endpoint,
    OperationResult,
    ReplicaTopology,
    Status,
    Step,
    same_address,
)
from .tsql import quote_name, quote_string

logger = logging.getLogger(__name__)

PARTNERSHIP_STEPS = (Step.PARTNER_MIRROR, Step.PARTNER_PRIMARY)

CANCELLED = "cancelled before start"


class PartnershipCoordinator:
    def __init__(self):
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def primary_lock(self, primary_name: str, database: str) -> threading.Lock:
        """One lock per primary database; ALTER DATABASE against it is serialized"""
        key = (primary_name.lower(), database.lower())
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def establish(self, topology: ReplicaTopology, endpoints: Dict[str, Endpoint],
                  cancel_event: Optional[threading.Event] = None) -> List[OperationResult]:
        """Every mirror in turn, then the witness once one mirror is paired"""
        results: List[OperationResult] = []
        paired = False
        for mirror in topology.mirrors:
            if mirror.name not in endpoints:
                continue
            mirror_results = self.establish_mirror(topology, mirror, endpoints, cancel_event)
            results.extend(mirror_results)
            if mirror_results and all(r.status != Status.FAILED for r in mirror_results):
                paired = True
        if topology.witness is not None and paired:
            results.extend(self.set_witness(topology, endpoints, cancel_event))
        return results

    def establish_mirror(self, topology: ReplicaTopology, mirror, endpoints: Dict[str, Endpoint],
                         cancel_event: Optional[threading.Event] = None) -> List[OperationResult]:
        primary = topology.primary
        database = topology.database
        targets = {
            Step.PARTNER_MIRROR: (mirror, endpoints[primary.name].address),
            Step.PARTNER_PRIMARY: (primary, endpoints[mirror.name].address),
        }

        results: List[OperationResult] = []
        for step in PARTNERSHIP_STEPS:
            node, address = targets[step]
            if cancel_event is not None and cancel_event.is_set():
                results.append(OperationResult(node.name, database, step, Status.SKIPPED, CANCELLED))
                continue
            try:
                if step == Step.PARTNER_PRIMARY:
                    with self.primary_lock(primary.name, database):
                        results.append(self._set_partner(node, database, address, step, half_configured=True))
                else:
                    results.append(self._set_partner(node, database, address, step))
            except PartnershipError as e:
                notes = str(e)
                if e.half_configured:
                    notes = (f"half-configured: {mirror.name} points at {primary.name} but "
                             f"{primary.name} is not pointed back; {e}")
                logger.error(notes)
                results.append(OperationResult(node.name, database, step, Status.FAILED, notes))
                break
        return results

    def _set_partner(self, node, database: str, address: str, step: Step,
                     half_configured: bool = False) -> OperationResult:
        try:
            info = node.get_database(database)
            if info is not None and same_address(info.mirroring_partner, address):
                return OperationResult(node.name, database, step, Status.SKIPPED, f"partner already {address}")
            node.execute(f"ALTER DATABASE {quote_name(database)} SET PARTNER = {quote_string(address)}")
        except MirroringError as e:
            raise PartnershipError(f"SET PARTNER on {node.name} failed: {e}", node=node.name,
                                   half_configured=half_configured) from e
        logger.info(f"[{database}] on {node.name} partnered with {address}")
        return OperationResult(node.name, database, step, Status.SUCCESS, f"partner set to {address}")

    def set_witness(self, topology: ReplicaTopology, endpoints: Dict[str, Endpoint],
                    cancel_event: Optional[threading.Event] = None) -> List[OperationResult]:
        primary = topology.primary
        database = topology.database
        address = endpoints[topology.witness.name].address
        if cancel_event is not None and cancel_event.is_set():
            return [OperationResult(primary.name, database, Step.SET_WITNESS, Status.SKIPPED, CANCELLED)]

        with self.primary_lock(primary.name, database):
            try:
                info = primary.get_database(database)
                if info is not None and same_address(info.mirroring_witness, address):
                    return [OperationResult(primary.name, database, Step.SET_WITNESS, Status.SKIPPED,
                                            f"witness already {address}")]
                primary.execute(f"ALTER DATABASE {quote_name(database)} SET WITNESS = {quote_string(address)}")
            except MirroringError as e:
                message = f"SET WITNESS on {primary.name} failed: {e}"
                logger.error(message)
                return [OperationResult(primary.name, database, Step.SET_WITNESS, Status.FAILED, message)]

        logger.info(f"[{database}] on {primary.name} uses witness {topology.witness.name} at {address}")
        return [OperationResult(primary.name, database, Step.SET_WITNESS, Status.SUCCESS,
                                f"witness {topology.witness.name} at {address}")]
