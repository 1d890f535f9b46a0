"""
Mirroring topology orchestrator

Drives one database into a Primary -> Mirror(s) [-> Witness] topology:

    validate -> plan seeding -> backup/restore -> endpoints + grants
             -> partner statements -> witness

Only a failed validation stops the whole run (ValidationError). Everything
after that is per replica: a failure is recorded as a FAILED OperationResult
and the remaining mirrors carry on. Independent mirrors are seeded and
partnered in parallel on a bounded thread pool.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from .backup import RecoveryModelFixer, SqlBackupEngine
from .endpoints import EndpointProvisioner, LoginManager, expected_address
from .errors import MirroringError, NodeConnectionError, SeedingError, ValidationError
from .models import (
    BackupType,
    MirroringPlan,
    OperationResult,
    ReplicaTopology,
    RunOptions,
    SeedingDecision,
    Status,
    Step,
    ValidationResult,
)
from .partnership import CANCELLED, PartnershipCoordinator
from .reporter import ResultReporter
from .seeding import SeedingPlanner
from .status import mirror_status, remove_mirroring
from .tsql import quote_name
from .validator import TopologyValidator

logger = logging.getLogger(__name__)


class MirroringOrchestrator:
    def __init__(self, validator: Optional[TopologyValidator] = None,
                 planner: Optional[SeedingPlanner] = None,
                 provisioner: Optional[EndpointProvisioner] = None,
                 coordinator: Optional[PartnershipCoordinator] = None,
                 backup_engine: Optional[SqlBackupEngine] = None,
                 recovery_fixer: Optional[RecoveryModelFixer] = None,
                 max_workers: int = 4):
        self.validator = validator or TopologyValidator()
        self.planner = planner or SeedingPlanner()
        self.provisioner = provisioner or EndpointProvisioner()
        self.coordinator = coordinator or PartnershipCoordinator()
        self.backup_engine = backup_engine or SqlBackupEngine()
        self.recovery_fixer = recovery_fixer or RecoveryModelFixer()
        self.max_workers = max_workers

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "MirroringOrchestrator":
        mirroring = config['mirroring']
        provisioner = EndpointProvisioner(
            LoginManager(),
            endpoint_name=mirroring['endpoint_name'],
            encryption_algorithm=mirroring['endpoint_encryption'],
        )
        return cls(provisioner=provisioner, max_workers=mirroring['max_workers'])

    # ---------- Helpers ----------

    def _run_parallel(self, nodes: List, task: Callable,
                      on_error: Optional[Callable] = None) -> Dict[str, Any]:
        """Run task(node) for every node on the pool; returns {node.name: result}

        An unexpected error in one task is logged and mapped through
        on_error(node, error) so the other nodes still finish.
        """
        results: Dict[str, Any] = {}
        if not nodes:
            return results
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(nodes)))) as executor:
            futures = {executor.submit(task, node): node for node in nodes}
            for future in as_completed(futures):
                node = futures[future]
                try:
                    results[node.name] = future.result()
                except Exception as e:
                    logger.exception(f"Unexpected error on {node.name}: {e}")
                    results[node.name] = on_error(node, e) if on_error else None
        return results

    @staticmethod
    def _record_crash(reporter: ResultReporter, node, database: str, step: Step, error: Exception) -> bool:
        reporter.record(OperationResult(node.name, database, step, Status.FAILED,
                                        f"unexpected error on {node.name}: {error}"))
        return False

    def connect_nodes(self, topology: ReplicaTopology):
        """Open every session; unreachable nodes stay in the topology marked reachable=False"""
        def connect(node):
            try:
                node.connect()
            except NodeConnectionError as e:
                logger.warning(f"{node.name} is unreachable: {e}")

        self._run_parallel(topology.nodes(), connect)

    # ---------- Produced interface ----------

    def validate_only(self, topology: ReplicaTopology, options: Optional[RunOptions] = None) -> ValidationResult:
        """Dry-run validation; never writes"""
        self.connect_nodes(topology)
        return self.validator.validate(topology, options or RunOptions())

    def plan(self, topology: ReplicaTopology, options: Optional[RunOptions] = None) -> MirroringPlan:
        """Validate and compute seeding decisions without touching any server"""
        options = options or RunOptions()
        self.connect_nodes(topology)
        validation = self.validator.validate(topology, options)
        if not validation.ok:
            raise ValidationError(validation, node=topology.primary.name)
        return self._build_plan(topology, options, validation)

    def _build_plan(self, topology: ReplicaTopology, options: RunOptions,
                    validation: ValidationResult) -> MirroringPlan:
        self.planner.reset()
        primary_address = expected_address(topology.primary)
        decisions = self._run_parallel(
            topology.mirrors,
            lambda mirror: self.planner.plan_replica(topology, mirror, options, primary_address),
            on_error=lambda mirror, e: SeedingDecision(replica=mirror.name,
                                                       error=f"Seeding check failed on {mirror.name}: {e}")
        )
        ordered = {mirror.name: decisions[mirror.name] for mirror in topology.mirrors}
        return MirroringPlan(topology=topology, options=options, validation=validation, decisions=ordered)

    def setup_topology(self, topology: ReplicaTopology, options: Optional[RunOptions] = None,
                       cancel_event: Optional[threading.Event] = None) -> List[OperationResult]:
        """Validate, plan and apply; raises ValidationError before any write"""
        options = options or RunOptions()
        primary = topology.primary
        self.connect_nodes(topology)

        validation = self.validator.validate(topology, options)
        if (not validation.ok and validation.recovery_model_fixable
                and options.fix_recovery_model and not options.dry_run):
            try:
                self.recovery_fixer.set_full_recovery(primary, topology.database)
            except MirroringError as e:
                raise ValidationError(ValidationResult.fail(f"Recovery model remediation failed: {e}"),
                                      node=primary.name) from e
            validation = self.validator.validate(topology, options)
        if not validation.ok:
            raise ValidationError(validation, node=primary.name)

        try:
            plan = self._build_plan(topology, options, validation)
        except NodeConnectionError as e:
            raise ValidationError(ValidationResult.fail(f"Planning failed: {e}"), node=primary.name) from e

        if options.dry_run:
            for line in plan.describe():
                logger.info(line)
            return plan.as_results()
        return self.apply(plan, cancel_event)

    def setup_many(self, topologies: List[ReplicaTopology], options: Optional[RunOptions] = None,
                   cancel_event: Optional[threading.Event] = None) -> List[OperationResult]:
        """One run per database; a rejected database is reported and the next one proceeds"""
        results: List[OperationResult] = []
        for topology in topologies:
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                results.extend(self.setup_topology(topology, options, cancel_event))
            except ValidationError as e:
                results.append(OperationResult(topology.primary.name, topology.database,
                                               Step.VALIDATE, Status.FAILED, str(e)))
        return results

    def apply(self, plan: MirroringPlan, cancel_event: Optional[threading.Event] = None) -> List[OperationResult]:
        topology = plan.topology
        database = topology.database
        primary = topology.primary
        cancel_event = cancel_event or threading.Event()
        reporter = ResultReporter()
        fresh_backup: Dict[str, Any] = {'lock': threading.Lock()}

        logger.info(f"Applying mirroring plan for [{database}] on {primary.name}")

        # seeding
        seeded = self._run_parallel(
            topology.mirrors,
            lambda mirror: self._seed_replica(plan, mirror, reporter, fresh_backup, cancel_event),
            on_error=lambda mirror, e: self._record_crash(reporter, mirror, database, Step.SEED, e)
        )
        ready = [m for m in topology.mirrors if seeded.get(m.name)]
        if not ready or cancel_event.is_set():
            if cancel_event.is_set():
                logger.warning("Run cancelled after seeding")
            reporter.log_summary()
            return reporter.results

        # endpoints and grants
        witness = topology.witness
        use_witness = witness is not None and witness.reachable
        if witness is not None and not use_witness:
            logger.warning(f"Witness {witness.name} is unreachable; mirroring without witness")
        outcome = self.provisioner.ensure_endpoints(topology, mirrors=ready, include_witness=use_witness)
        reporter.extend(outcome.results)

        if primary.name in outcome.failed:
            for mirror in ready:
                reporter.record(OperationResult(mirror.name, database, Step.PARTNER_MIRROR, Status.FAILED,
                                                f"primary endpoint unavailable: {outcome.failed[primary.name]}"))
            reporter.log_summary()
            return reporter.results
        ready = [m for m in ready if m.name not in outcome.failed]

        # partners
        paired = self._run_parallel(
            ready,
            lambda mirror: self._partner_replica(topology, mirror, outcome.endpoints, reporter, cancel_event),
            on_error=lambda mirror, e: self._record_crash(reporter, mirror, database, Step.PARTNER_MIRROR, e)
        )

        # witness, once, after the first mirror is paired
        if witness is not None and any(paired.values()):
            if witness.name in outcome.endpoints:
                reporter.extend(self.coordinator.set_witness(topology, outcome.endpoints, cancel_event))
            else:
                reporter.record(OperationResult(primary.name, database, Step.SET_WITNESS, Status.SKIPPED,
                                                f"witness {witness.name} unavailable; mirroring without witness"))

        reporter.log_summary()
        return reporter.results

    def _partner_replica(self, topology: ReplicaTopology, mirror, endpoints, reporter: ResultReporter,
                         cancel_event: threading.Event) -> bool:
        results = self.coordinator.establish_mirror(topology, mirror, endpoints, cancel_event)
        reporter.extend(results)
        paired = [r for r in results if r.step == Step.PARTNER_PRIMARY and r.status != Status.FAILED]
        return bool(paired) and paired[0].notes != CANCELLED

    def _seed_replica(self, plan: MirroringPlan, mirror, reporter: ResultReporter,
                      fresh_backup: Dict[str, Any], cancel_event: threading.Event) -> bool:
        database = plan.topology.database
        decision = plan.decisions[mirror.name]

        if not decision.ok:
            reporter.record(OperationResult(mirror.name, database, Step.SEED, Status.FAILED, decision.error))
            return False
        if cancel_event.is_set():
            reporter.record(OperationResult(mirror.name, database, Step.SEED, Status.SKIPPED, CANCELLED))
            return False
        if decision.converged:
            reporter.record(OperationResult(mirror.name, database, Step.RESTORE, Status.SKIPPED,
                                            decision.notes or "database already present"))
            return True

        step = Step.SEED
        try:
            if decision.drop_existing:
                step = Step.DROP_DATABASE
                mirror.execute(f"DROP DATABASE {quote_name(database)}")
                reporter.record(OperationResult(mirror.name, database, step, Status.SUCCESS,
                                                "existing copy dropped (force)"))
            artifacts = decision.source
            if decision.needs_backup:
                step = Step.BACKUP
                artifacts = self._fresh_backup(plan, reporter, fresh_backup)
            step = Step.RESTORE
            self.backup_engine.restore(mirror, artifacts, with_replace=plan.options.force, no_recovery=True)
        except MirroringError as e:
            reporter.record(OperationResult(mirror.name, database, step, Status.FAILED, str(e)))
            return False

        reporter.record(OperationResult(mirror.name, database, Step.RESTORE, Status.SUCCESS,
                                        f"restored {len(artifacts)} backup(s) WITH NORECOVERY"))
        return True

    def _fresh_backup(self, plan: MirroringPlan, reporter: ResultReporter, state: Dict[str, Any]):
        """Full + log backup of the primary, taken once and shared by every mirror"""
        primary = plan.topology.primary
        database = plan.topology.database
        with state['lock']:
            if 'error' in state:
                raise SeedingError(f"fresh backup unavailable: {state['error']}", node=primary.name)
            if 'artifacts' not in state:
                try:
                    full = self.backup_engine.backup(primary, database, BackupType.FULL, plan.options.shared_path)
                    log = self.backup_engine.backup(primary, database, BackupType.LOG, plan.options.shared_path)
                except MirroringError as e:
                    state['error'] = str(e)
                    reporter.record(OperationResult(primary.name, database, Step.BACKUP, Status.FAILED, str(e)))
                    raise SeedingError(f"fresh backup unavailable: {e}", node=primary.name) from e
                state['artifacts'] = [full, log]
                reporter.record(OperationResult(primary.name, database, Step.BACKUP, Status.SUCCESS,
                                                f"full+log backup to {plan.options.shared_path}"))
            return state['artifacts']

    # ---------- Status / teardown ----------

    def status(self, topology: ReplicaTopology):
        self.connect_nodes(topology)
        return mirror_status(topology)

    def remove(self, topology: ReplicaTopology, recover_mirrors: bool = False) -> List[OperationResult]:
        self.connect_nodes(topology)
        if not topology.primary.reachable:
            return [OperationResult(topology.primary.name, topology.database, Step.REMOVE_PARTNER,
                                    Status.FAILED, f"primary unreachable: {topology.primary.last_error}")]
        return remove_mirroring(topology, recover_mirrors)
