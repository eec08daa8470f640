"""
Serverless entry point.

Configuration comes from environment variables only (see
pgbackuper.config.load_settings_from_env) and artifacts always go to S3.
"""

import os
import logging

from pgbackuper import configure_logging
from pgbackuper.config import get_config, load_settings_from_env, ConfigError
from pgbackuper.backup.executor import run_backup, BackupRunError, PreflightError
from pgbackuper.backup.storage import S3Storage, StorageError


logger = logging.getLogger(__name__)


def _response(status_code: int, message: str) -> dict:
    return {
        'statusCode': status_code,
        'message': message,
        'success': status_code == 200
    }


def lambda_handler(event, context):
    """
    Run one backup of every configured database.

    Returns:
        Dict with statusCode, message and success
    """
    try:
        settings = load_settings_from_env()
    except ConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        return _response(500, f"Configuration error: {e}")

    configure_logging(settings.logging)
    logger.info("Starting PostgreSQL backup function")
    logger.info(f"Function region: {os.environ.get('AWS_REGION')}")

    try:
        storage = S3Storage(
            bucket_name=settings.aws.bucket,
            region=settings.aws.region,
            access_key=settings.aws.access_key_id or None,
            secret_key=settings.aws.secret_access_key or None
        )
        run_backup(settings, storage=storage, temp_dir=get_config().TEMP_DIR)
    except StorageError as e:
        logger.error(f"Failed to initialize S3 storage: {e}")
        return _response(500, f"S3 initialization error: {e}")
    except PreflightError as e:
        logger.error(f"Connection test failed: {e}")
        return _response(500, f"Connection test failed: {e}")
    except BackupRunError as e:
        logger.error(f"Backup operation failed: {e}")
        return _response(500, f"Backup failed: {e}")

    logger.info("Backup operation completed successfully")
    return _response(200, "Backup completed successfully")
