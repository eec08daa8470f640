"""
Restore a SQL dump into a target database.

Workflow:
1. Verify the dump file exists
2. Test the connection to the target database
3. Optionally terminate sessions, drop and recreate the target database
4. Load the dump with psql

There is no rollback between steps 3 and 4: if psql fails after the
database was recreated, the target is left empty.
"""

import os
import logging
import subprocess

import psycopg
from psycopg import sql

from pgbackuper.models import ImportSettings


logger = logging.getLogger(__name__)

ADMIN_DATABASE = 'postgres'
CONNECT_TIMEOUT = 10


class RestoreError(Exception):
    """Base class for import failures."""
    pass


class ArtifactNotFoundError(RestoreError):
    """Raised when the dump file to import does not exist."""
    pass


class ConnectionFailedError(RestoreError):
    """Raised when the target database cannot be reached."""
    pass


class DropRecreateError(RestoreError):
    """Raised when dropping or recreating the target database fails."""
    pass


class RestoreFailedError(RestoreError):
    """Raised when psql exits non-zero or cannot be started."""
    pass


class PostgresImporter:
    """
    Imports a dump file into the configured target database.
    """

    def __init__(self, import_settings: ImportSettings, psql_path: str = 'psql'):
        """
        Initialize importer.

        Args:
            import_settings: Target database, dump path and drop flag
            psql_path: psql executable
        """
        self.settings = import_settings
        self.target = import_settings.target_database
        self.psql_path = psql_path

    def import_backup(self):
        """
        Run the full import workflow.

        Raises:
            ArtifactNotFoundError: If the dump file does not exist
            ConnectionFailedError: If the target database is unreachable
            DropRecreateError: If drop/recreate was requested and failed
            RestoreFailedError: If psql fails
        """
        backup_path = self.settings.backup_path

        if not os.path.isfile(backup_path):
            raise ArtifactNotFoundError(f"backup file does not exist: {backup_path}")

        logger.info(f"Starting import of backup: {backup_path}")
        logger.info(
            f"Target database: {self.target.username}@{self.target.host}:"
            f"{self.target.port}/{self.target.database}"
        )

        self.test_connection()

        if self.settings.drop_existing:
            self.drop_and_recreate()

        self.load_dump()

        logger.info("Import completed successfully")

    def test_connection(self):
        """
        Raises:
            ConnectionFailedError: If the target cannot be connected to
        """
        try:
            with psycopg.connect(**self.target.connection_kwargs(), connect_timeout=CONNECT_TIMEOUT) as conn:
                conn.execute('SELECT 1')
        except psycopg.Error as e:
            raise ConnectionFailedError(f"failed to connect to target database: {e}")

        logger.info("Database connection test successful")

    def drop_and_recreate(self):
        """
        Terminate sessions on the target, drop it and create it again.

        Runs against the 'postgres' maintenance database with autocommit,
        since DROP/CREATE DATABASE cannot run inside a transaction.

        Raises:
            DropRecreateError: If the connection, DROP or CREATE fails
        """
        database = self.target.database
        logger.warning(f"Dropping existing database: {database}")

        try:
            conn = psycopg.connect(
                **self.target.connection_kwargs(dbname=ADMIN_DATABASE),
                connect_timeout=CONNECT_TIMEOUT,
                autocommit=True
            )
        except psycopg.Error as e:
            raise DropRecreateError(f"failed to connect to {ADMIN_DATABASE} database: {e}")

        with conn:
            try:
                conn.execute(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = %s AND pid <> pg_backend_pid()",
                    (database,)
                )
            except psycopg.Error as e:
                logger.warning(f"Failed to terminate existing connections: {e}")

            try:
                conn.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(database)))
            except psycopg.Error as e:
                raise DropRecreateError(f"failed to drop database {database}: {e}")

            try:
                conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(database)))
            except psycopg.Error as e:
                raise DropRecreateError(f"failed to create database {database}: {e}")

        logger.info("Database dropped and recreated successfully")

    def load_dump(self):
        """
        Feed the dump file to psql.

        Raises:
            RestoreFailedError: If psql exits non-zero or cannot be started
        """
        backup_path = os.path.abspath(self.settings.backup_path)
        command = [self.psql_path, self.target.connection_string(), '-f', backup_path]

        env = os.environ.copy()
        env['PGPASSWORD'] = self.target.password

        logger.info(f"Executing import command: {self.psql_path} {self.target.connection_string()} -f {backup_path}")

        try:
            result = subprocess.run(
                command,
                env=env,
                cwd=os.path.dirname(backup_path),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace'
            )
        except OSError as e:
            raise RestoreFailedError(f"psql could not be started: {e}")

        if result.returncode != 0:
            raise RestoreFailedError(
                f"psql command failed (exit {result.returncode})\nOutput: {result.stdout}"
            )

        logger.info(f"Import command output: {result.stdout}")


def run_import(import_settings: ImportSettings, psql_path: str = 'psql'):
    """
    Import a dump file into the target database.

    Args:
        import_settings: Validated ImportSettings
        psql_path: psql executable

    Raises:
        RestoreError: If any step of the import fails
    """
    importer = PostgresImporter(import_settings, psql_path=psql_path)
    importer.import_backup()
