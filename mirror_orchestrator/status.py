"""Mirroring status read-out and teardown"""

import logging
from typing import List

import pandas as pd

from .errors import MirroringError
from .models import DatabaseStatus, NodeRole, OperationResult, ReplicaTopology, Status, Step
from .reporter import ResultReporter
from .tsql import quote_name

logger = logging.getLogger(__name__)

STATUS_COLUMNS = ['node', 'role', 'database', 'reachable', 'state', 'recovery_model', 'mirroring_state',
                  'mirroring_role', 'partner', 'witness', 'endpoint', 'endpoint_state', 'error']


def mirror_status(topology: ReplicaTopology) -> pd.DataFrame:
    """One row per node with its database and endpoint state"""
    rows = []
    for role, node in topology.members():
        row = {column: None for column in STATUS_COLUMNS}
        row.update(node=node.name, role=role.value, database=topology.database, reachable=node.reachable)
        if not node.reachable:
            row['error'] = node.last_error
            rows.append(row)
            continue
        try:
            endpoint = node.get_mirroring_endpoint()
            if endpoint is not None:
                row['endpoint'] = endpoint.address
                row['endpoint_state'] = endpoint.state.value
            if role != NodeRole.WITNESS:
                info = node.get_database(topology.database)
                if info is not None:
                    row.update(
                        state=info.status.value,
                        recovery_model=info.recovery_model.value,
                        mirroring_state=info.mirroring_state_desc or info.mirroring_state.value,
                        mirroring_role=info.mirroring_role,
                        partner=info.mirroring_partner,
                        witness=info.mirroring_witness,
                    )
        except MirroringError as e:
            row['error'] = str(e)
        rows.append(row)
    return pd.DataFrame(rows, columns=STATUS_COLUMNS)


def remove_mirroring(topology: ReplicaTopology, recover_mirrors: bool = False) -> List[OperationResult]:
    """SET PARTNER OFF on the primary; optionally bring the former mirrors online"""
    reporter = ResultReporter()
    primary = topology.primary
    database = topology.database

    try:
        info = primary.get_database(database)
        if info is None or not info.is_mirrored:
            reporter.record(OperationResult(primary.name, database, Step.REMOVE_PARTNER, Status.SKIPPED,
                                            "database is not mirrored"))
        else:
            primary.execute(f"ALTER DATABASE {quote_name(database)} SET PARTNER OFF")
            reporter.record(OperationResult(primary.name, database, Step.REMOVE_PARTNER, Status.SUCCESS,
                                            f"mirroring with {info.mirroring_partner} removed"))
    except MirroringError as e:
        reporter.record(OperationResult(primary.name, database, Step.REMOVE_PARTNER, Status.FAILED, str(e)))
        return reporter.results

    if recover_mirrors:
        for mirror in topology.mirrors:
            if not mirror.reachable:
                reporter.record(OperationResult(mirror.name, database, Step.RECOVER, Status.FAILED,
                                                f"unreachable: {mirror.last_error}"))
                continue
            try:
                mirror_info = mirror.get_database(database)
                if mirror_info is None:
                    reporter.record(OperationResult(mirror.name, database, Step.RECOVER, Status.SKIPPED,
                                                    "database not present"))
                elif mirror_info.status != DatabaseStatus.RESTORING:
                    reporter.record(OperationResult(mirror.name, database, Step.RECOVER, Status.SKIPPED,
                                                    f"database is {mirror_info.status.value}"))
                else:
                    mirror.execute(f"RESTORE DATABASE {quote_name(database)} WITH RECOVERY")
                    reporter.record(OperationResult(mirror.name, database, Step.RECOVER, Status.SUCCESS,
                                                    "brought online WITH RECOVERY"))
            except MirroringError as e:
                reporter.record(OperationResult(mirror.name, database, Step.RECOVER, Status.FAILED, str(e)))

    return reporter.results
