"""Unit tests for backup chain selection and the BACKUP/RESTORE statements."""

from datetime import datetime

import pytest

from conftest import history_frame
from mirror_orchestrator.backup import (
    BackupHistory,
    RecoveryModelFixer,
    SqlBackupEngine,
    artifacts_from_files,
    join_path,
    path_exists,
    select_chain,
)
from mirror_orchestrator.models import BackupArtifact, BackupType


def at(hour, minute=0):
    return datetime(2026, 10, 1, hour, minute)


# ---------- Chain selection ----------

def test_empty_history():
    assert select_chain(history_frame([])) == []


def test_no_full_backup():
    history = history_frame([(1, 'orders', 'L', '/b/orders_1.trn', 100, 200, at(1))])
    assert select_chain(history) == []


def test_latest_full_diff_and_logs():
    history = history_frame([
        (1, 'orders', 'D', '/b/old_full.bak', 10, 50, at(0)),
        (2, 'orders', 'L', '/b/old.trn', 40, 90, at(0, 30)),
        (3, 'orders', 'D', '/b/full.bak', 100, 200, at(1)),
        (4, 'orders', 'I', '/b/diff_1.dif', 150, 250, at(2)),
        (5, 'orders', 'L', '/b/log_1.trn', 180, 240, at(2, 30)),
        (6, 'orders', 'I', '/b/diff_2.dif', 150, 300, at(3)),
        (7, 'orders', 'L', '/b/log_2.trn', 240, 350, at(4)),
        (8, 'orders', 'L', '/b/log_3.trn', 350, 400, at(5)),
    ])

    chain = select_chain(history)

    assert [a.paths for a in chain] == [['/b/full.bak'], ['/b/diff_2.dif'], ['/b/log_2.trn'], ['/b/log_3.trn']]
    assert [a.backup_type for a in chain] == [BackupType.FULL, BackupType.DIFFERENTIAL,
                                              BackupType.LOG, BackupType.LOG]


def test_broken_log_chain_is_cut():
    history = history_frame([
        (1, 'orders', 'D', '/b/full.bak', 100, 200, at(1)),
        (2, 'orders', 'L', '/b/log_1.trn', 150, 300, at(2)),
        (3, 'orders', 'L', '/b/log_3.trn', 500, 600, at(4)),
    ])

    chain = select_chain(history)

    assert [a.paths[0] for a in chain] == ['/b/full.bak', '/b/log_1.trn']


def test_striped_backup_keeps_every_file():
    history = history_frame([
        (1, 'orders', 'D', '/b/full_1.bak', 100, 200, at(1)),
        (1, 'orders', 'D', '/b/full_2.bak', 100, 200, at(1)),
        (2, 'orders', 'L', '/b/log.trn', 150, 300, at(2)),
    ])

    chain = select_chain(history)

    assert chain[0].paths == ['/b/full_1.bak', '/b/full_2.bak']
    assert chain[-1].backup_type == BackupType.LOG


def test_backup_history_reads_primary(make_node):
    node = make_node('sql-a')
    node.backup_history = history_frame([
        (1, 'orders', 'D', '/b/full.bak', 100, 200, at(1)),
    ])

    chain = BackupHistory().last_backup_chain(node, 'orders')

    assert len(chain) == 1
    assert len(node.queries) == 1


# ---------- Supplied files ----------

def test_artifacts_from_files():
    artifacts = artifacts_from_files('orders', ['/b/full.bak', '/b/diff.DIF', '/b/log.trn'])
    assert [a.backup_type for a in artifacts] == [BackupType.FULL, BackupType.DIFFERENTIAL, BackupType.LOG]


@pytest.mark.parametrize('directory, expected', [
    ('\\\\fs01\\mirror', '\\\\fs01\\mirror\\orders.bak'),
    ('D:\\Backup', 'D:\\Backup\\orders.bak'),
    ('/var/opt/mssql/backup', '/var/opt/mssql/backup/orders.bak'),
])
def test_join_path(directory, expected):
    assert join_path(directory, 'orders.bak') == expected


# ---------- Statements ----------

def test_backup_statements(make_node):
    node = make_node('sql-a')
    engine = SqlBackupEngine()

    full = engine.backup(node, 'orders', BackupType.FULL, '/b')
    log = engine.backup(node, 'orders', BackupType.LOG, '/b')

    assert node.executed[0] == f"BACKUP DATABASE [orders] TO DISK = N'{full.paths[0]}' WITH INIT, CHECKSUM"
    assert node.executed[1] == f"BACKUP LOG [orders] TO DISK = N'{log.paths[0]}' WITH INIT, CHECKSUM"
    assert log.paths[0].endswith('_log.trn')


def test_restore_with_replace(make_node):
    node = make_node('sql-b')
    artifacts = [
        BackupArtifact('orders', BackupType.FULL, ['/b/full_1.bak', '/b/full_2.bak']),
        BackupArtifact('orders', BackupType.LOG, ['/b/log.trn']),
    ]

    SqlBackupEngine().restore(node, artifacts, with_replace=True, no_recovery=True)

    assert node.executed == [
        "RESTORE DATABASE [orders] FROM DISK = N'/b/full_1.bak', DISK = N'/b/full_2.bak' WITH NORECOVERY, REPLACE",
        "RESTORE LOG [orders] FROM DISK = N'/b/log.trn' WITH NORECOVERY",
    ]


def test_full_restore_moves_files_to_default_directories(make_node):
    node = make_node('sql-b')
    node.default_paths = [('D:\\SQLData\\', 'L:\\SQLLogs\\')]
    node.file_list = [
        ('orders', 'E:\\Data\\orders.mdf', 'D'),
        ('orders_log', 'F:\\Logs\\orders_log.ldf', 'L'),
    ]
    artifacts = [
        BackupArtifact('orders', BackupType.FULL, ['\\\\fs01\\mirror\\orders.bak']),
        BackupArtifact('orders', BackupType.LOG, ['\\\\fs01\\mirror\\orders.trn']),
    ]

    SqlBackupEngine().restore(node, artifacts)

    assert node.executed[0] == (
        "RESTORE DATABASE [orders] FROM DISK = N'\\\\fs01\\mirror\\orders.bak' WITH NORECOVERY, "
        "MOVE N'orders' TO N'D:\\SQLData\\orders.mdf', "
        "MOVE N'orders_log' TO N'L:\\SQLLogs\\orders_log.ldf'"
    )
    assert 'MOVE' not in node.executed[1]


def test_restore_without_default_paths_keeps_backup_locations(make_node):
    node = make_node('sql-b')
    node.default_paths = [(None, None)]
    node.file_list = [('orders', '/var/opt/mssql/data/orders.mdf', 'D')]

    SqlBackupEngine().restore(node, [BackupArtifact('orders', BackupType.FULL, ['/b/orders.bak'])])

    assert node.executed == ["RESTORE DATABASE [orders] FROM DISK = N'/b/orders.bak' WITH NORECOVERY"]


def test_restore_nothing():
    with pytest.raises(ValueError):
        SqlBackupEngine().restore(object(), [])


def test_set_full_recovery(make_node):
    node = make_node('sql-a')
    RecoveryModelFixer().set_full_recovery(node, "o'rders]")
    assert node.executed == ["ALTER DATABASE [o'rders]]] SET RECOVERY FULL"]


def test_path_exists(make_node):
    assert path_exists(make_node('sql-a'), '/b')
    assert not path_exists(make_node('sql-a', shared_path_visible=False), '/b')
