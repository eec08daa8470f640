"""
PostgreSQL dump producer.

Runs pg_dump for one database and writes a plain SQL file into a scratch
directory:
{temp_dir}/{database}_{YYYY-MM-DD_HH-MM-SS}.sql
"""

import os
import logging
import subprocess
from datetime import datetime
from typing import Union

from pgbackuper.models import DatabaseTarget, ArtifactHandle


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'


class DumpError(Exception):
    """Raised when pg_dump fails or cannot be started."""
    pass


def generate_dump_filename(database_name: str, now: datetime = None) -> str:
    """
    Generate dump filename with timestamp.

    Args:
        database_name: Name of the dumped database
        now: Timestamp to embed (default: datetime.now())

    Returns:
        '{database_name}_{YYYY-MM-DD_HH-MM-SS}.sql'
    """
    if now is None:
        now = datetime.now()
    return f"{database_name}_{now.strftime(TIMESTAMP_FORMAT)}.sql"


class PostgresDumper:
    """
    Creates dump files for a single database.
    """

    def __init__(self, target: DatabaseTarget, temp_dir: str, pg_dump_path: str = 'pg_dump'):
        """
        Initialize dumper.

        Args:
            target: Database to dump
            temp_dir: Scratch directory for dump files
            pg_dump_path: pg_dump executable
        """
        self.target = target
        self.temp_dir = temp_dir
        self.pg_dump_path = pg_dump_path

    def _build_command(self, output_path: str) -> list:
        return [
            self.pg_dump_path,
            '-h', self.target.host,
            '-p', str(self.target.port),
            '-U', self.target.username,
            '-d', self.target.database,
            '-f', output_path,
            '--verbose',
            '--no-password',
        ]

    def _build_env(self) -> dict:
        env = os.environ.copy()
        env['PGPASSWORD'] = self.target.password
        env['PGSSLMODE'] = self.target.ssl_mode
        return env

    def create_backup(self) -> ArtifactHandle:
        """
        Dump the database to a new file in temp_dir.

        Returns:
            ArtifactHandle for the created file

        Raises:
            DumpError: If pg_dump exits non-zero or cannot be started
        """
        try:
            os.makedirs(self.temp_dir, exist_ok=True)
        except OSError as e:
            raise DumpError(f"failed to create temp directory {self.temp_dir}: {e}")

        created_at = datetime.now()
        backup_path = os.path.join(
            self.temp_dir,
            generate_dump_filename(self.target.database, created_at)
        )

        logger.info(f"Creating backup: {backup_path}")

        try:
            result = subprocess.run(
                self._build_command(backup_path),
                env=self._build_env(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace'
            )
        except OSError as e:
            raise DumpError(f"pg_dump could not be started: {e}")

        if result.returncode != 0:
            logger.error(f"pg_dump failed: {result.stdout}")
            # Remove partial output
            if os.path.exists(backup_path):
                self.cleanup_artifact(backup_path)
            raise DumpError(f"pg_dump failed (exit {result.returncode}): {result.stdout}")

        logger.info(f"Backup created successfully: {backup_path}")
        return ArtifactHandle(
            path=backup_path,
            database=self.target.database,
            created_at=created_at
        )

    def cleanup_artifact(self, artifact: Union[ArtifactHandle, str]) -> bool:
        """
        Remove a local dump file. Never raises.

        Args:
            artifact: ArtifactHandle or file path

        Returns:
            True if the file was removed, False otherwise
        """
        path = artifact.path if isinstance(artifact, ArtifactHandle) else artifact

        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to cleanup backup file {path}: {e}")
            return False

        logger.info(f"Cleaned up backup file: {path}")
        return True

    def test_connection(self):
        """
        Test the database by running a full dump and removing the result.

        Raises:
            DumpError: If the dump fails
        """
        handle = self.create_backup()
        if not self.cleanup_artifact(handle):
            logger.warning(f"Failed to cleanup test backup for database {self.target.database}")
