#!/usr/bin/env python3
"""
pgbackuper command line runner.

Usage:
    python run.py --config appsettings.json          # scheduled backups
    python run.py --config appsettings.json --once   # one backup, then exit
    python run.py --config appsettings.json --import # restore backup_path into the import target
"""

import sys
import signal
import logging
import argparse
import threading

from pgbackuper import configure_logging
from pgbackuper.config import get_config, load_settings, ConfigError
from pgbackuper.backup.executor import build_executor, run_backup, BackupRunError, PreflightError
from pgbackuper.backup.restore import run_import, RestoreError
from pgbackuper.backup.storage import create_storage, StorageError
from pgbackuper.scheduler import init_scheduler, start_scheduler, stop_scheduler


logger = logging.getLogger('pgbackuper')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='PostgreSQL backup service')
    parser.add_argument('--config', default='appsettings.json', help='Path to configuration file')
    parser.add_argument('--once', action='store_true', help='Run backup once and exit')
    parser.add_argument('--import', dest='import_backup', action='store_true',
                        help='Import backup to target database and exit')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    app_config = get_config()

    configure_logging()

    try:
        settings = load_settings(args.config, for_import=args.import_backup)
    except ConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    configure_logging(settings.logging, log_dir=app_config.LOG_DIR)

    if args.import_backup:
        logger.info("Starting PostgreSQL import service")
        try:
            run_import(settings.import_, psql_path=app_config.PSQL_PATH)
        except RestoreError as e:
            logger.error(f"Import failed: {e}")
            return 1
        logger.info("Import completed successfully")
        return 0

    logger.info("Starting PostgreSQL backup service")

    try:
        storage = create_storage(settings)
    except (StorageError, ValueError) as e:
        logger.error(f"Failed to initialize storage: {e}")
        return 1

    if args.once:
        try:
            run_backup(settings, storage=storage, temp_dir=app_config.TEMP_DIR)
        except (PreflightError, BackupRunError) as e:
            logger.error(f"Backup failed: {e}")
            return 1
        logger.info("Backup completed successfully")
        return 0

    # Fail fast on misconfiguration before waiting for the first trigger
    try:
        build_executor(settings, storage=storage, temp_dir=app_config.TEMP_DIR).test_connections()
    except PreflightError as e:
        logger.error(f"Connection test failed: {e}")
        return 1

    try:
        init_scheduler(settings, storage, temp_dir=app_config.TEMP_DIR, timezone=app_config.SCHEDULER_TIMEZONE)
    except ValueError as e:
        logger.error(f"Failed to schedule backup: {e}")
        return 1

    start_scheduler()

    stop_event = threading.Event()
    signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    stop_event.wait()

    logger.info("Shutting down backup service")
    stop_scheduler()
    return 0


if __name__ == '__main__':
    sys.exit(main())
