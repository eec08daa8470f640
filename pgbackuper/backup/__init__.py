"""
Backup module for pgbackuper.

This module handles the core backup functionality including:
- Database dumps (pg_dump)
- Storage (local filesystem and S3)
- Retention policy enforcement
- Execution orchestration
- Restore (psql)
"""

from .executor import BackupExecutor, BackupRunError, PreflightError, run_backup
from .dumper import PostgresDumper, DumpError
from .storage import StorageBackend, S3Storage, LocalStorage, StorageError, create_storage
from .retention import RetentionPolicy
from .restore import PostgresImporter, RestoreError, run_import

__all__ = [
    'BackupExecutor',
    'BackupRunError',
    'PreflightError',
    'run_backup',
    'PostgresDumper',
    'DumpError',
    'StorageBackend',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'create_storage',
    'RetentionPolicy',
    'PostgresImporter',
    'RestoreError',
    'run_import'
]
