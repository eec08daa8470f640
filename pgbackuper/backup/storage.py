"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Copy into a local directory
- S3Storage: Upload to AWS S3

Both backends store artifacts under the same layout:
{prefix}/{database}/{YYYY-MM-DD}/{filename}
"""

import os
import shutil
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, List

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, BotoCoreError

from pgbackuper.models import Settings
from .retention import RetentionPolicy, build_storage_key, normalize_prefix, parse_artifact_date


logger = logging.getLogger(__name__)

# DeleteObjects accepts at most 1000 keys per request
S3_DELETE_BATCH_SIZE = 1000


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class StorageUnreachableError(StorageError):
    """Raised when the storage connection test fails."""
    pass


class TransferError(StorageError):
    """Raised when an artifact cannot be written to storage."""
    pass


class SweepError(StorageError):
    """Raised when a retention sweep cannot enumerate artifacts."""
    pass


class StorageBackend(ABC):
    """Capabilities every storage backend provides to the executor."""

    @abstractmethod
    def save_artifact(self, local_path: str, prefix: str, database_name: str) -> str:
        """
        Store an artifact under {prefix}/{database_name}/{today}/{filename}.

        Returns:
            Storage key of the stored artifact

        Raises:
            TransferError: If the artifact cannot be stored
        """

    @abstractmethod
    def delete_expired(self, prefix: str, retention_days: int) -> int:
        """
        Delete artifacts under prefix dated before today - retention_days.

        Returns:
            Number of artifacts deleted

        Raises:
            SweepError: If artifacts cannot be enumerated
        """

    @abstractmethod
    def list_artifacts(self, prefix: str) -> List[str]:
        """Return the storage keys of all artifacts under prefix."""

    @abstractmethod
    def test_connection(self):
        """
        Raises:
            StorageUnreachableError: If the storage cannot be used
        """


class LocalStorage(StorageBackend):
    """
    Handler for storing backups in the local filesystem.

    Keys are paths relative to base_path.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for backups
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create backup directory {self.base_path}: {e}")

    def save_artifact(self, local_path: str, prefix: str, database_name: str) -> str:
        if not os.path.exists(local_path):
            raise TransferError(f"Source file not found: {local_path}")

        relative_path = build_storage_key(prefix, database_name, local_path)
        dest_path = self.base_path / relative_path

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise TransferError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise TransferError(f"Failed to copy backup file to {dest_path}: {e}")

        logger.info(f"Backup saved to local storage: {dest_path}")
        return relative_path

    def list_artifacts(self, prefix: str) -> List[str]:
        prefix_path = self.base_path / normalize_prefix(prefix)

        if not prefix_path.exists():
            return []

        try:
            return sorted(
                file_path.relative_to(self.base_path).as_posix()
                for file_path in prefix_path.rglob('*')
                if file_path.is_file()
            )
        except OSError as e:
            raise SweepError(f"Failed to list local files: {e}")

    def delete_expired(self, prefix: str, retention_days: int) -> int:
        """
        Remove expired date directories.

        Walks {base_path}/{prefix}/{database}/{date}/ and removes every date
        directory whose name is before the cutoff, together with its files.
        Entries that are not date directories are skipped.
        """
        policy = RetentionPolicy(retention_days)
        prefix_path = self.base_path / normalize_prefix(prefix)

        logger.info(
            f"Deleting backups older than {retention_days} days "
            f"(before {policy.cutoff.isoformat()})"
        )

        if not prefix_path.is_dir():
            logger.info("Backup directory does not exist, nothing to clean up")
            return 0

        try:
            database_dirs = sorted(p for p in prefix_path.iterdir() if p.is_dir())
        except OSError as e:
            raise SweepError(f"Failed to read backup directory {prefix_path}: {e}")

        deleted_count = 0
        for database_dir in database_dirs:
            try:
                date_dirs = sorted(database_dir.iterdir())
            except OSError as e:
                logger.error(f"Failed to read directory {database_dir}: {e}")
                continue

            for date_dir in date_dirs:
                if not date_dir.is_dir():
                    continue

                dir_date = parse_artifact_date(date_dir.name)
                if dir_date is None:
                    logger.warning(f"Skipping directory with invalid date format: {date_dir}")
                    continue

                if not policy.is_expired(dir_date):
                    continue

                artifact_count = sum(1 for p in date_dir.rglob('*') if p.is_file())
                logger.info(f"Deleting old backup directory: {date_dir}")
                try:
                    shutil.rmtree(date_dir)
                except OSError as e:
                    logger.error(f"Failed to delete directory {date_dir}: {e}")
                    continue

                deleted_count += artifact_count

        logger.info(f"Deleted {deleted_count} old backup files")
        return deleted_count

    def test_connection(self):
        test_file = self.base_path / '.test-write'

        try:
            test_file.touch()
        except OSError as e:
            raise StorageUnreachableError(f"Failed to create test file in backup directory: {e}")

        try:
            test_file.unlink()
        except OSError as e:
            logger.warning(f"Failed to remove test file: {e}")

        logger.info("Local storage connection test successful")


class S3Storage(StorageBackend):
    """
    Handler for uploading backups to AWS S3.

    Static credentials are used only when both keys are given; otherwise
    boto3's default credential chain applies (environment, instance or
    function role).
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        client=None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID
            secret_key: AWS secret access key
            client: Pre-built boto3 S3 client
        """
        self.bucket_name = bucket_name
        self.region = region

        # Multipart above 100MB, 10MB parts
        self.transfer_config = TransferConfig(
            multipart_threshold=100 * 1024 * 1024,
            multipart_chunksize=10 * 1024 * 1024
        )

        if client is not None:
            self.s3_client = client
            return

        client_kwargs = {'region_name': region}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def save_artifact(self, local_path: str, prefix: str, database_name: str) -> str:
        if not os.path.exists(local_path):
            raise TransferError(f"Local file not found: {local_path}")

        s3_key = build_storage_key(prefix, database_name, local_path)
        logger.info(f"Uploading backup to S3: s3://{self.bucket_name}/{s3_key}")

        try:
            with open(local_path, 'rb') as f:
                self.s3_client.upload_fileobj(
                    f,
                    self.bucket_name,
                    s3_key,
                    Config=self.transfer_config
                )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise TransferError(f"Failed to upload file to S3: {e}")

        logger.info(f"Backup uploaded successfully to: s3://{self.bucket_name}/{s3_key}")
        return s3_key

    def list_artifacts(self, prefix: str) -> List[str]:
        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            root = normalize_prefix(prefix)
            list_prefix = root + '/' if root else ''

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=list_prefix):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

            return keys

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise SweepError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise SweepError(f"Failed to list S3 objects: {e}")

    def delete_expired(self, prefix: str, retention_days: int) -> int:
        """
        Delete expired objects in batches.

        A failing batch is logged and the remaining batches are still
        attempted. Per-object errors reported by S3 are logged as warnings.
        """
        policy = RetentionPolicy(retention_days)

        logger.info(
            f"Deleting backups older than {retention_days} days "
            f"(before {policy.cutoff.isoformat()})"
        )

        to_delete = []
        for key in self.list_artifacts(prefix):
            expired = policy.is_key_expired(key, prefix)
            if expired is None:
                logger.warning(f"Skipping object with unexpected key format: {key}")
                continue

            if expired:
                logger.info(f"Marking for deletion: {key}")
                to_delete.append({'Key': key})

        if not to_delete:
            logger.info("No old backups found to delete")
            return 0

        deleted_count = 0
        for start in range(0, len(to_delete), S3_DELETE_BATCH_SIZE):
            batch = to_delete[start:start + S3_DELETE_BATCH_SIZE]

            try:
                result = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': batch}
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Failed to delete batch of {len(batch)} objects: {e}")
                continue

            deleted = result.get('Deleted', [])
            deleted_count += len(deleted)
            logger.info(f"Deleted {len(deleted)} backup files")

            errors = result.get('Errors', [])
            if errors:
                logger.warning(f"Encountered {len(errors)} errors during deletion")
                for error in errors:
                    logger.warning(f"Failed to delete {error.get('Key')}: {error.get('Message')}")

        return deleted_count

    def test_connection(self):
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageUnreachableError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageUnreachableError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageUnreachableError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageUnreachableError(f"Failed to connect to S3: {e}")

        logger.info("S3 connection test successful")


def create_storage(settings: Settings) -> StorageBackend:
    """
    Factory function to create the configured storage backend.

    Args:
        settings: Validated Settings

    Returns:
        LocalStorage or S3Storage instance

    Raises:
        ValueError: If no storage backend is configured
    """
    if settings.is_local_storage:
        logger.info("Using local storage for backups")
        return LocalStorage(settings.local.path)
    elif settings.is_aws_storage:
        logger.info("Using AWS S3 for backups")
        return S3Storage(
            bucket_name=settings.aws.bucket,
            region=settings.aws.region,
            access_key=settings.aws.access_key_id or None,
            secret_key=settings.aws.secret_access_key or None
        )
    else:
        raise ValueError("No storage backend configured")
