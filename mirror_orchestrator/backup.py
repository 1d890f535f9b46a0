"""
Backup/restore collaborators

Thin T-SQL wrappers the orchestrator seeds mirrors with. They can be swapped for
any object exposing the same methods.

A full restore MOVEs each file into the mirror's default data and log
directories (SERVERPROPERTY InstanceDefaultDataPath/InstanceDefaultLogPath).
When the instance reports no default path the file keeps the physical path
recorded in the backup, which then has to exist on the mirror.
"""

import logging
import ntpath
import posixpath
from datetime import datetime
from typing import List

import pandas as pd

from .models import BackupArtifact, BackupType
from .tsql import quote_name, quote_string

logger = logging.getLogger(__name__)

BACKUP_HISTORY_SQL = """
SELECT bs.backup_set_id, bs.database_name, bs.type, bmf.physical_device_name,
       bs.first_lsn, bs.last_lsn, bs.backup_finish_date
FROM msdb.dbo.backupset bs
JOIN msdb.dbo.backupmediafamily bmf ON bmf.media_set_id = bs.media_set_id
WHERE bs.database_name = ? AND bs.is_copy_only = 0
ORDER BY bs.backup_finish_date, bs.backup_set_id
"""

DEFAULT_PATHS_SQL = (
    "SELECT CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(4000)), "
    "CAST(SERVERPROPERTY('InstanceDefaultLogPath') AS nvarchar(4000))"
)


def join_path(directory: str, filename: str) -> str:
    """Join using the separator style of the directory (UNC/Windows or POSIX)"""
    if "\\" in directory or (len(directory) > 1 and directory[1] == ":"):
        return ntpath.join(directory, filename)
    return posixpath.join(directory, filename)


def artifacts_from_files(database: str, files: List[str]) -> List[BackupArtifact]:
    """Backup set supplied by the caller; the type comes from the file extension"""
    artifacts = []
    for path in files:
        extension = path.rsplit('.', 1)[-1].lower() if '.' in path else ''
        if extension in ('trn', 'log'):
            backup_type = BackupType.LOG
        elif extension in ('dif', 'diff'):
            backup_type = BackupType.DIFFERENTIAL
        else:
            backup_type = BackupType.FULL
        artifacts.append(BackupArtifact(database=database, backup_type=backup_type, paths=[path]))
    return artifacts


def select_chain(history: pd.DataFrame) -> List[BackupArtifact]:
    """Most recent full, its latest differential, then the unbroken run of logs after it"""
    if history.empty:
        return []

    sets = (
        history.groupby('backup_set_id', sort=False)
        .agg(database_name=('database_name', 'first'),
             type=('type', 'first'),
             paths=('physical_device_name', list),
             first_lsn=('first_lsn', 'first'),
             last_lsn=('last_lsn', 'first'),
             backup_finish_date=('backup_finish_date', 'first'))
        .reset_index()
        .sort_values(['backup_finish_date', 'backup_set_id'])
    )

    fulls = sets[sets['type'] == 'D']
    if fulls.empty:
        return []
    full = fulls.iloc[-1]
    chain = [full]
    later = sets[sets['backup_finish_date'] > full['backup_finish_date']]

    diffs = later[later['type'] == 'I']
    if not diffs.empty:
        chain.append(diffs.iloc[-1])

    last_lsn = chain[-1]['last_lsn']
    logs = later[(later['type'] == 'L') & (later['backup_finish_date'] > chain[-1]['backup_finish_date'])]
    for _, log in logs.iterrows():
        if log['last_lsn'] <= last_lsn:
            continue
        if log['first_lsn'] > last_lsn:
            logger.warning(f"Log chain broken at LSN {last_lsn}; ignoring later log backups")
            break
        chain.append(log)
        last_lsn = log['last_lsn']

    return [
        BackupArtifact(
            database=row['database_name'],
            backup_type=BackupType.from_msdb(row['type']),
            paths=list(row['paths']),
            first_lsn=row['first_lsn'],
            last_lsn=row['last_lsn'],
            finished_at=row['backup_finish_date'],
        )
        for row in chain
    ]


class BackupHistory:
    """Reads msdb backup history"""

    def last_backup_chain(self, node, database: str) -> List[BackupArtifact]:
        history = node.read_frame(BACKUP_HISTORY_SQL, [database])
        chain = select_chain(history)
        logger.info(f"Backup chain for [{database}] on {node.name}: "
                    f"{[a.backup_type.value for a in chain] or 'none'}")
        return chain


class SqlBackupEngine:
    """BACKUP / RESTORE through the node session"""

    def backup(self, node, database: str, backup_type: BackupType, shared_path: str) -> BackupArtifact:
        stamp = datetime.now().strftime('%Y%m%d%H%M%S')
        extension = 'trn' if backup_type == BackupType.LOG else 'bak'
        path = join_path(shared_path, f"{database}_{stamp}_{backup_type.value.lower()}.{extension}")

        if backup_type == BackupType.LOG:
            sql = f"BACKUP LOG {quote_name(database)} TO DISK = {quote_string(path)} WITH INIT, CHECKSUM"
        elif backup_type == BackupType.DIFFERENTIAL:
            sql = (f"BACKUP DATABASE {quote_name(database)} TO DISK = {quote_string(path)} "
                   f"WITH DIFFERENTIAL, INIT, CHECKSUM")
        else:
            sql = f"BACKUP DATABASE {quote_name(database)} TO DISK = {quote_string(path)} WITH INIT, CHECKSUM"

        logger.info(f"Backing up [{database}] on {node.name} ({backup_type.value}) to {path}")
        node.execute(sql)
        return BackupArtifact(database=database, backup_type=backup_type, paths=[path],
                              finished_at=datetime.now())

    def restore(self, node, artifacts: List[BackupArtifact], with_replace: bool = False,
                no_recovery: bool = True):
        if not artifacts:
            raise ValueError("Nothing to restore")
        database = artifacts[0].database
        for index, artifact in enumerate(artifacts):
            last = index == len(artifacts) - 1
            disks = ", ".join(f"DISK = {quote_string(p)}" for p in artifact.paths)
            options = ["NORECOVERY" if (no_recovery or not last) else "RECOVERY"]
            if artifact.backup_type == BackupType.FULL:
                options.extend(self._move_clauses(node, disks))
                if with_replace:
                    options.append("REPLACE")
            verb = "LOG" if artifact.backup_type == BackupType.LOG else "DATABASE"
            logger.info(f"Restoring {artifact.backup_type.value} backup of [{database}] on {node.name}")
            node.execute(f"RESTORE {verb} {quote_name(database)} FROM {disks} WITH {', '.join(options)}")

    def _move_clauses(self, node, disks: str) -> List[str]:
        """MOVE every file of the backup into the target instance's default data/log directories"""
        rows = node.query(DEFAULT_PATHS_SQL)
        if not rows:
            return []
        data_dir, log_dir = rows[0][0], rows[0][1]
        clauses = []
        for row in node.query(f"RESTORE FILELISTONLY FROM {disks}"):
            logical_name, physical_name, file_type = row[0], row[1], row[2]
            directory = log_dir if file_type == 'L' else data_dir
            if not directory:
                continue
            target = join_path(directory, ntpath.basename(physical_name))
            clauses.append(f"MOVE {quote_string(logical_name)} TO {quote_string(target)}")
        if clauses:
            logger.info(f"Relocating {len(clauses)} file(s) on {node.name} to {data_dir} / {log_dir}")
        return clauses


class RecoveryModelFixer:
    """Opt-in remediation: switch a database to FULL recovery"""

    def set_full_recovery(self, node, database: str):
        logger.warning(f"Switching [{database}] on {node.name} to FULL recovery")
        node.execute(f"ALTER DATABASE {quote_name(database)} SET RECOVERY FULL")


def path_exists(node, path: str) -> bool:
    """Whether the instance's service account can see a file or directory"""
    rows = node.query("EXEC master.dbo.xp_fileexist ?", (path,))
    return bool(rows) and bool(rows[0][0] or rows[0][1])
