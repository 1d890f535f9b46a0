"""
Topology validation

Read-only checks that decide whether a primary/mirror/witness/database
combination may be mirrored at all. Runs before anything is written.
"""

import logging
from typing import List, Optional

from .backup import path_exists
from .endpoints import expected_address
from .errors import MirroringError, NodeConnectionError
from .models import (
    DatabaseStatus,
    EditionClass,
    RecoveryModel,
    ReplicaTopology,
    RunOptions,
    ValidationResult,
    same_address,
)

logger = logging.getLogger(__name__)


class TopologyValidator:
    def validate(self, topology: ReplicaTopology, options: Optional[RunOptions] = None) -> ValidationResult:
        """Run every check in order; the first failing one decides the result"""
        options = options or RunOptions()
        warnings: List[str] = []
        logger.info(f"Validating mirroring of [{topology.database}] from {topology.primary.name}")
        try:
            result = self._validate(topology, options, warnings)
        except MirroringError as e:
            result = ValidationResult.fail(f"Validation could not read node state: {e}", warnings)

        if result.ok:
            logger.info(f"Topology for [{topology.database}] is valid"
                        + (" (already converged)" if result.converged else ""))
        else:
            logger.error(f"Topology for [{topology.database}] rejected: {result.reason}")
        return result

    def _validate(self, topology: ReplicaTopology, options: RunOptions, warnings: List[str]) -> ValidationResult:
        primary = topology.primary
        database = topology.database

        # 1. database present and usable on the primary
        if not primary.reachable:
            return ValidationResult.fail(f"Primary {primary.name} is unreachable: {primary.last_error}", warnings)
        info = primary.get_database(database)
        if info is None:
            return ValidationResult.fail(f"Database [{database}] does not exist on primary {primary.name}", warnings)
        if info.status != DatabaseStatus.NORMAL:
            return ValidationResult.fail(
                f"Database [{database}] on {primary.name} is {info.status.value}, not NORMAL", warnings)

        # 2. recovery model
        if info.recovery_model != RecoveryModel.FULL:
            reason = (f"Database [{database}] on {primary.name} uses {info.recovery_model.value} recovery; "
                      f"mirroring requires FULL")
            if options.has_backup_set:
                reason += " and the supplied backup set was not taken under FULL recovery"
            result = ValidationResult.fail(reason, warnings)
            result.recovery_model_fixable = not options.has_backup_set
            return result

        # 3. not already mirrored elsewhere, not in an availability group
        if info.availability_group:
            return ValidationResult.fail(
                f"Database [{database}] on {primary.name} is already a member of availability group "
                f"{info.availability_group}", warnings)
        converged = False
        if info.is_mirrored:
            partner_addresses = [expected_address(m) for m in topology.mirrors if m.reachable]
            if any(same_address(info.mirroring_partner, a) for a in partner_addresses):
                converged = True
            else:
                state = info.mirroring_state_desc or info.mirroring_state.value
                return ValidationResult.fail(
                    f"Database [{database}] on {primary.name} is already in mirroring state {state} "
                    f"(partner {info.mirroring_partner})", warnings)

        # 4. edition class
        primary_class = EditionClass.from_edition(primary.edition)
        for mirror in topology.mirrors:
            if not mirror.reachable:
                continue
            if EditionClass.from_edition(mirror.edition) != primary_class:
                return ValidationResult.fail(
                    f"Primary {primary.name} edition '{primary.edition}' cannot mirror to "
                    f"{mirror.name} edition '{mirror.edition}'", warnings)

        # 5. reachability of the remaining nodes
        others = list(topology.mirrors)
        if topology.witness is not None:
            others.append(topology.witness)
        for node in others:
            if node.reachable:
                continue
            if node.required:
                return ValidationResult.fail(f"Required node {node.name} is unreachable: {node.last_error}", warnings)
            warnings.append(f"Optional node {node.name} is unreachable: {node.last_error}")

        if options.shared_path and not options.has_backup_set and not converged:
            try:
                if not path_exists(primary, options.shared_path):
                    warnings.append(f"Shared path {options.shared_path} is not visible from {primary.name}")
            except NodeConnectionError as e:
                warnings.append(f"Could not check shared path {options.shared_path}: {e}")

        for warning in warnings:
            logger.warning(warning)
        return ValidationResult(ok=True, warnings=warnings, converged=converged)
