"""Unit tests for ResultReporter."""

import threading

from mirror_orchestrator.models import OperationResult, Status, Step
from mirror_orchestrator.reporter import RESULT_COLUMNS, ResultReporter, results_frame


def test_records_in_order():
    reporter = ResultReporter()
    reporter.record(OperationResult('sql-b', 'orders', Step.RESTORE, Status.SUCCESS))
    reporter.record(OperationResult('sql-b', 'orders', Step.PARTNER_MIRROR, Status.FAILED, 'boom'))
    reporter.record(OperationResult('sql-a', 'orders', Step.PARTNER_PRIMARY, Status.SKIPPED))

    results = reporter.results

    assert [r.step for r in results] == [Step.RESTORE, Step.PARTNER_MIRROR, Step.PARTNER_PRIMARY]
    assert [r.sequence for r in results] == sorted(r.sequence for r in results)
    assert reporter.failed() == [results[1]]
    assert reporter.for_step(Step.RESTORE) == [results[0]]
    assert list(reporter.by_key()) == [('sql-b', 'orders'), ('sql-a', 'orders')]


def test_results_are_a_copy():
    reporter = ResultReporter()
    reporter.record(OperationResult('sql-b', 'orders', Step.RESTORE, Status.SUCCESS))

    reporter.results.clear()

    assert len(reporter.results) == 1


def test_concurrent_records():
    reporter = ResultReporter()

    def work(name):
        for _ in range(50):
            reporter.record(OperationResult(name, 'orders', Step.GRANT_CONNECT, Status.SUCCESS))

    threads = [threading.Thread(target=work, args=(f"sql-{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(reporter.results) == 200


def test_frame():
    results = [
        OperationResult('sql-b', 'orders', Step.RESTORE, Status.SUCCESS, 'restored 2 backup(s)'),
        OperationResult('sql-a', 'orders', Step.PARTNER_PRIMARY, Status.FAILED, 'boom'),
    ]

    frame = results_frame(results)

    assert list(frame.columns) == RESULT_COLUMNS
    assert frame['step'].tolist() == ['Restore', 'PartnerPrimary']
    assert frame['status'].tolist() == ['Success', 'Failed']


def test_empty_frame():
    frame = ResultReporter().to_frame()
    assert frame.empty
    assert list(frame.columns) == RESULT_COLUMNS
