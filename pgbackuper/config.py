import os
import json
from pathlib import Path
from typing import Optional, Dict, Any

from pydantic import ValidationError

from pgbackuper.models import Settings


class ConfigError(ValueError):
    """Raised when settings cannot be loaded or are invalid."""
    pass


class Config:
    """Base configuration"""

    # Scratch directory for dump files
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/tmp/pgbackuper'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # External tools
    PG_DUMP_PATH = os.environ.get('PG_DUMP_PATH') or 'pg_dump'
    PSQL_PATH = os.environ.get('PSQL_PATH') or 'psql'

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'

    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: Optional[str] = None):
    """Return the Config class selected by name or PGBACKUPER_ENV."""
    if config_name is None:
        config_name = os.environ.get('PGBACKUPER_ENV', 'production')
    return config.get(config_name, config['default'])


# Environment variable -> (section, field)
SECTION_ENV_VARS = {
    'AWS_REGION': ('aws', 'region'),
    'AWS_BUCKET': ('aws', 'bucket'),
    'AWS_ACCESS_KEY_ID': ('aws', 'access_key_id'),
    'AWS_SECRET_ACCESS_KEY': ('aws', 'secret_access_key'),
    'LOCAL_BACKUP_PATH': ('local', 'path'),
    'BACKUP_RETENTION_DAYS': ('backup', 'retention_days'),
    'BACKUP_SCHEDULE': ('backup', 'schedule'),
    'BACKUP_PREFIX': ('backup', 'backup_prefix'),
    'IMPORT_BACKUP_PATH': ('import', 'backup_path'),
    'IMPORT_DROP_EXISTING': ('import', 'drop_existing'),
    'LOG_LEVEL': ('logging', 'level'),
    'LOG_FORMAT': ('logging', 'format'),
}

# Suffix -> DatabaseTarget field, shared by DB_*, DB_{i}_* and IMPORT_DB_*
DATABASE_ENV_FIELDS = {
    'HOST': 'host',
    'PORT': 'port',
    'USERNAME': 'username',
    'PASSWORD': 'password',
    'DATABASE': 'database',
    'SSL_MODE': 'ssl_mode',
}


def _apply_database_env(db: Dict[str, Any], prefix: str, environ) -> None:
    """Override one database dict from {prefix}HOST, {prefix}PORT, ..."""
    for suffix, field in DATABASE_ENV_FIELDS.items():
        value = environ.get(prefix + suffix)
        if value:
            db[field] = value


def apply_env_overrides(data: Dict[str, Any], environ=None) -> Dict[str, Any]:
    """
    Apply environment variable overrides to raw settings data.

    DB_* variables override the first database, DB_{i}_* override database i.

    Args:
        data: Settings dict as decoded from JSON
        environ: Mapping to read variables from (default: os.environ)

    Returns:
        The same dict, updated in place
    """
    if environ is None:
        environ = os.environ

    databases = data.setdefault('databases', [])
    for i, db in enumerate(databases):
        if i == 0:
            _apply_database_env(db, 'DB_', environ)
        _apply_database_env(db, f'DB_{i}_', environ)

    for env_name, (section, field) in SECTION_ENV_VARS.items():
        value = environ.get(env_name)
        if value:
            data.setdefault(section, {})[field] = value

    import_section = data.setdefault('import', {})
    target = import_section.setdefault('target_database', {})
    _apply_database_env(target, 'IMPORT_DB_', environ)

    return data


def validate_for_backup(settings: Settings):
    """
    Check that settings are usable for backup runs.

    Raises:
        ConfigError: If the configuration is invalid
    """
    if not settings.databases:
        raise ConfigError("at least one database must be configured")

    for i, db in enumerate(settings.databases):
        if not db.database:
            raise ConfigError(f"database name is required for database {i}")
        if not db.host:
            raise ConfigError(f"database host is required for database {i}")
        if not db.username:
            raise ConfigError(f"database username is required for database {i}")
        if not db.password:
            raise ConfigError(f"database password is required for database {i}")

    has_local = settings.is_local_storage
    has_aws = settings.is_aws_storage and settings.has_aws_credentials

    if not has_local and not has_aws:
        raise ConfigError("either local storage path or AWS S3 configuration is required")

    if has_local and has_aws:
        raise ConfigError("both local storage and AWS S3 are configured, please choose one")

    if settings.backup.retention_days < 0:
        raise ConfigError("backup retention_days must not be negative")

    if '..' in settings.backup.backup_prefix.split('/'):
        raise ConfigError("backup prefix must not contain '..' segments")


def validate_for_import(settings: Settings):
    """
    Check that settings are usable for an import. Databases may be empty.

    Raises:
        ConfigError: If the import configuration is incomplete
    """
    target = settings.import_.target_database

    if not target.host:
        raise ConfigError("import target database host is required")
    if not target.database:
        raise ConfigError("import target database name is required")
    if not target.username:
        raise ConfigError("import target database username is required")
    if not target.password:
        raise ConfigError("import target database password is required")
    if not settings.import_.backup_path:
        raise ConfigError("import backup path is required")


def load_settings(config_path: str, for_import: bool = False, environ=None) -> Settings:
    """
    Load settings from a JSON file, apply environment overrides and validate.

    Args:
        config_path: Path to appsettings.json
        for_import: Validate for the import path instead of backups
        environ: Mapping to read overrides from (default: os.environ)

    Returns:
        Validated Settings

    Raises:
        ConfigError: If the file cannot be read or the settings are invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"failed to decode config: {e}")

    apply_env_overrides(data, environ)

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}")

    if for_import:
        validate_for_import(settings)
    else:
        validate_for_backup(settings)

    return settings


def load_settings_from_env(environ=None) -> Settings:
    """
    Build settings purely from environment variables.

    Used by the serverless handler: storage is always S3 and credentials
    come from the execution role unless AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY
    are set. Databases are read from DB_0_*, DB_1_*, ... until DB_{i}_HOST
    is missing.

    Raises:
        ConfigError: If no database or bucket is configured
    """
    if environ is None:
        environ = os.environ

    data: Dict[str, Any] = {
        'databases': [],
        'backup': {
            'retention_days': 2,
            'schedule': '0 */3 * * *',
            'backup_prefix': 'postgres-backup',
        },
        'logging': {'level': 'info', 'format': 'json'},
    }

    for env_name, (section, field) in SECTION_ENV_VARS.items():
        if section in ('local', 'import'):
            continue
        value = environ.get(env_name)
        if value:
            data.setdefault(section, {})[field] = value

    i = 0
    while environ.get(f'DB_{i}_HOST'):
        db: Dict[str, Any] = {}
        _apply_database_env(db, f'DB_{i}_', environ)
        for field in ('username', 'password', 'database'):
            if not db.get(field):
                raise ConfigError(f"DB_{i}_{field.upper()} is required")
        data['databases'].append(db)
        i += 1

    if not data['databases']:
        raise ConfigError("no database configuration found - please set DB_0_HOST environment variable")

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}")

    if not settings.is_aws_storage:
        raise ConfigError("AWS_BUCKET and AWS_REGION are required")

    return settings
