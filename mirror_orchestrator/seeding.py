"""
Seeding decisions

Works out, per mirror, whether the database has to be copied over by
backup/restore and from which backups. Never performs the backup or restore.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .backup import BackupHistory, artifacts_from_files
from .endpoints import expected_address
from .errors import MirroringError, SeedingError
from .models import (
    BackupArtifact,
    BackupType,
    DatabaseStatus,
    ReplicaTopology,
    RunOptions,
    SeedingDecision,
    SeedingMode,
    same_address,
)

logger = logging.getLogger(__name__)


class SeedingPlanner:
    def __init__(self, backup_history: Optional[BackupHistory] = None):
        self.backup_history = backup_history or BackupHistory()
        self._chains: Dict[Tuple[str, str], List[BackupArtifact]] = {}
        self._lock = threading.Lock()

    def reset(self):
        """Forget cached backup chains; call once per run"""
        with self._lock:
            self._chains.clear()

    def plan(self, topology: ReplicaTopology, options: RunOptions) -> Dict[str, SeedingDecision]:
        self.reset()
        primary_address = expected_address(topology.primary)
        return {
            mirror.name: self.plan_replica(topology, mirror, options, primary_address)
            for mirror in topology.mirrors
        }

    def plan_replica(self, topology: ReplicaTopology, mirror, options: RunOptions,
                     primary_address: str) -> SeedingDecision:
        decision = SeedingDecision(replica=mirror.name)
        try:
            self._decide(topology, mirror, options, primary_address, decision)
        except SeedingError as e:
            decision.error = str(e)
        except MirroringError as e:
            decision.error = f"Seeding check failed on {mirror.name}: {e}"

        if decision.ok:
            logger.info(f"Seeding plan for {mirror.name}: backup={decision.needs_backup} "
                        f"restore={decision.needs_restore} mode={decision.mode.value} {decision.notes}")
        else:
            logger.error(f"Cannot seed {mirror.name}: {decision.error}")
        return decision

    def _decide(self, topology: ReplicaTopology, mirror, options: RunOptions, primary_address: str,
                decision: SeedingDecision):
        database = topology.database
        if not mirror.reachable:
            raise SeedingError(f"{mirror.name} is unreachable: {mirror.last_error}", node=mirror.name)

        existing = mirror.get_database(database)
        if existing is not None:
            if same_address(existing.mirroring_partner, primary_address):
                decision.notes = "already mirroring with the primary"
                return
            if existing.is_mirrored:
                raise SeedingError(f"[{database}] on {mirror.name} is already mirrored with "
                                   f"{existing.mirroring_partner}", node=mirror.name)
            if not options.force:
                if existing.status == DatabaseStatus.RESTORING:
                    decision.notes = "reusing copy left in RESTORING state"
                    return
                raise SeedingError(f"[{database}] already exists on {mirror.name}, use force to replace it",
                                   node=mirror.name)
            decision.drop_existing = True

        decision.needs_restore = True
        if options.backup_files:
            decision.mode = SeedingMode.MANUAL
            decision.source = self._require_log_tail(artifacts_from_files(database, options.backup_files),
                                                     "supplied backup set", mirror)
            decision.notes = f"restoring {len(decision.source)} supplied backup file(s)"
        elif options.use_last_backup:
            decision.mode = SeedingMode.MANUAL
            chain = self._last_chain(topology.primary, database)
            if not chain:
                raise SeedingError(f"No backup history for [{database}] on {topology.primary.name}",
                                   node=mirror.name)
            decision.source = self._require_log_tail(chain, "last backup chain", mirror)
            decision.notes = f"restoring last backup chain ({len(chain)} backup(s))"
        else:
            if not options.shared_path:
                raise SeedingError("A shared_path is required to take a fresh backup", node=mirror.name)
            decision.mode = SeedingMode.AUTOMATIC
            decision.needs_backup = True
            decision.notes = f"fresh full+log backup to {options.shared_path}"

    def _require_log_tail(self, chain: List[BackupArtifact], label: str, mirror) -> List[BackupArtifact]:
        tail = chain[-1].backup_type if chain else None
        if tail != BackupType.LOG:
            kind = tail.value if tail else "empty"
            raise SeedingError(f"The {label} ends with a {kind} backup; a LOG backup must be last "
                               f"to seed a mirror", node=mirror.name)
        return chain

    def _last_chain(self, primary, database: str) -> List[BackupArtifact]:
        key = (primary.name, database)
        with self._lock:
            if key not in self._chains:
                self._chains[key] = self.backup_history.last_backup_chain(primary, database)
            return self._chains[key]
