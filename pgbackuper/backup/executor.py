"""
Backup executor - orchestrates a complete backup run.

Workflow:
1. Pre-flight: test storage, then every database (aborts the run on failure)
2. For each database, in configuration order:
   dump -> save to storage -> remove local dump
3. One retention sweep over the storage prefix
4. Summary (success/failure counts, duration)

A failure while dumping or saving one database is recorded and the run
moves on to the next database. Cleanup and sweep failures are warnings
only.
"""

import time
import logging
from datetime import datetime
from typing import Optional, List

from pgbackuper.config import get_config
from pgbackuper.models import Settings, BackupSettings, BackupRunSummary, DatabaseOutcome
from .dumper import PostgresDumper, DumpError
from .storage import StorageBackend, StorageError, create_storage


logger = logging.getLogger(__name__)


class PreflightError(Exception):
    """Raised when a pre-flight connection test fails."""
    pass


class BackupRunError(Exception):
    """Raised when at least one database could not be backed up."""

    def __init__(self, summary: BackupRunSummary):
        self.summary = summary
        super().__init__(
            f"backup operation completed with {summary.failure_count} failures "
            f"out of {len(summary.outcomes)} databases"
        )


class BackupExecutor:
    """
    Orchestrates backup runs for a fixed set of databases and one storage backend.
    """

    def __init__(self, dumpers: List[PostgresDumper], storage: StorageBackend, backup_settings: BackupSettings):
        """
        Initialize backup executor.

        Args:
            dumpers: One dumper per configured database, in configuration order
            storage: Storage backend selected at startup
            backup_settings: Prefix and retention settings
        """
        self.dumpers = dumpers
        self.storage = storage
        self.backup_settings = backup_settings
        self.logs = []

    def test_connections(self):
        """
        Test storage, then every database.

        Raises:
            PreflightError: On the first failing test
        """
        self._log("Testing connections...")

        try:
            self.storage.test_connection()
        except StorageError as e:
            raise PreflightError(f"storage connection test failed: {e}")

        self._log("Testing database connections...")
        for i, dumper in enumerate(self.dumpers, start=1):
            self._log(f"Testing connection for database {i} ({dumper.target.database})...")
            try:
                dumper.test_connection()
            except DumpError as e:
                raise PreflightError(f"database {i} ({dumper.target.database}) connection test failed: {e}")

        self._log("All connection tests passed")

    def execute(self) -> BackupRunSummary:
        """
        Back up every database, then run one retention sweep.

        Returns:
            BackupRunSummary with one outcome per database
        """
        start_time = time.monotonic()
        total = len(self.dumpers)
        self._log(f"Starting backup operation for {total} databases")

        outcomes = []
        for i, dumper in enumerate(self.dumpers, start=1):
            self._log(f"Backing up database {i} of {total} ({dumper.target.database})")
            outcomes.append(self._backup_database(dumper))

        summary = BackupRunSummary(outcomes=outcomes)
        summary.sweep_deleted = self._sweep()
        summary.duration_seconds = time.monotonic() - start_time

        self._log(
            f"Backup operation completed in {summary.duration_seconds:.1f}s. "
            f"Successful: {summary.success_count}, Failed: {summary.failure_count}"
        )
        return summary

    def _backup_database(self, dumper: PostgresDumper) -> DatabaseOutcome:
        """Dump, store and clean up one database. Never raises."""
        database = dumper.target.database

        try:
            handle = dumper.create_backup()
        except DumpError as e:
            self._log(f"Failed to create backup for database {database}: {e}", logging.ERROR)
            return DatabaseOutcome(database=database, success=False, error=str(e))

        try:
            destination = self.storage.save_artifact(
                handle.path,
                self.backup_settings.backup_prefix,
                database
            )
        except StorageError as e:
            if not dumper.cleanup_artifact(handle):
                self._log("Failed to cleanup backup file after save failure", logging.WARNING)
            self._log(f"Failed to save backup for database {database}: {e}", logging.ERROR)
            return DatabaseOutcome(database=database, success=False, error=str(e))

        if not dumper.cleanup_artifact(handle):
            self._log(f"Failed to cleanup local backup file for database {database}", logging.WARNING)

        self._log(f"Successfully backed up database {database} to: {destination}")
        return DatabaseOutcome(database=database, success=True, destination=destination)

    def _sweep(self) -> Optional[int]:
        """Run the retention sweep. Failures are logged as warnings."""
        self._log("Cleaning up old backups...")

        try:
            deleted = self.storage.delete_expired(
                self.backup_settings.backup_prefix,
                self.backup_settings.retention_days
            )
        except (StorageError, OSError, ValueError) as e:
            self._log(f"Failed to cleanup old backups: {e}", logging.WARNING)
            return None

        self._log(f"Retention sweep removed {deleted} backups")
        return deleted

    def _log(self, message: str, level: int = logging.INFO):
        """
        Log a message and keep a timestamped copy for this run.

        Args:
            message: Log message
            level: logging level
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {logging.getLevelName(level)} {message}")
        logger.log(level, message)


def build_executor(
    settings: Settings,
    storage: Optional[StorageBackend] = None,
    temp_dir: Optional[str] = None,
    pg_dump_path: Optional[str] = None
) -> BackupExecutor:
    """
    Create an executor from settings.

    Args:
        settings: Validated Settings
        storage: Storage backend (default: create_storage(settings))
        temp_dir: Scratch directory for dumps (default: Config.TEMP_DIR)
        pg_dump_path: pg_dump executable (default: Config.PG_DUMP_PATH)

    Returns:
        BackupExecutor instance
    """
    app_config = get_config()

    if storage is None:
        storage = create_storage(settings)
    if temp_dir is None:
        temp_dir = app_config.TEMP_DIR
    if pg_dump_path is None:
        pg_dump_path = app_config.PG_DUMP_PATH

    dumpers = [
        PostgresDumper(target, temp_dir, pg_dump_path=pg_dump_path)
        for target in settings.databases
    ]
    return BackupExecutor(dumpers, storage, settings.backup)


def run_backup(
    settings: Settings,
    storage: Optional[StorageBackend] = None,
    temp_dir: Optional[str] = None,
    preflight: bool = True
) -> BackupRunSummary:
    """
    Run one complete backup.

    Args:
        settings: Validated Settings
        storage: Storage backend (default: create_storage(settings))
        temp_dir: Scratch directory for dumps
        preflight: Run connection tests before backing up

    Returns:
        BackupRunSummary when every database was backed up

    Raises:
        PreflightError: If a pre-flight test fails (nothing is backed up)
        BackupRunError: If at least one database failed
    """
    executor = build_executor(settings, storage=storage, temp_dir=temp_dir)

    if preflight:
        executor.test_connections()

    summary = executor.execute()

    if summary.failed:
        raise BackupRunError(summary)

    return summary
