"""Collects OperationResults from every component of a run"""

import logging
import threading
from collections import OrderedDict
from typing import Dict, Iterable, List, Tuple

import pandas as pd

from .models import OperationResult, Status, Step

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['sequence', 'timestamp', 'node', 'database', 'step', 'status', 'notes']


def results_frame(results: Iterable[OperationResult]) -> pd.DataFrame:
    rows = [r.as_dict() for r in results]
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


class ResultReporter:
    def __init__(self):
        self._results: List[OperationResult] = []
        self._lock = threading.Lock()

    def record(self, result: OperationResult):
        with self._lock:
            self._results.append(result)
        message = f"{result.node} [{result.database}] {result.step.value}: {result.status.value}"
        if result.notes:
            message += f" - {result.notes}"
        if result.status == Status.FAILED:
            logger.error(message)
        else:
            logger.info(message)

    def extend(self, results: Iterable[OperationResult]):
        for result in results:
            self.record(result)

    @property
    def results(self) -> List[OperationResult]:
        with self._lock:
            return list(self._results)

    def by_key(self) -> Dict[Tuple[str, str], List[OperationResult]]:
        grouped: Dict[Tuple[str, str], List[OperationResult]] = OrderedDict()
        for result in self.results:
            grouped.setdefault((result.node, result.database), []).append(result)
        return grouped

    def failed(self) -> List[OperationResult]:
        return [r for r in self.results if r.status == Status.FAILED]

    def for_step(self, step: Step) -> List[OperationResult]:
        return [r for r in self.results if r.step == step]

    def to_frame(self) -> pd.DataFrame:
        return results_frame(self.results)

    def log_summary(self):
        results = self.results
        counts = {status: sum(1 for r in results if r.status == status) for status in Status}
        logger.info(f"Run finished: {counts[Status.SUCCESS]} succeeded, "
                    f"{counts[Status.SKIPPED]} skipped, {counts[Status.FAILED]} failed")
        for result in self.failed():
            logger.error(f"  FAILED {result.node} [{result.database}] {result.step.value}: {result.notes}")
