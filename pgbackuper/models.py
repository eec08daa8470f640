from datetime import datetime
from typing import Optional, List, Dict, Any

from psycopg.conninfo import make_conninfo
from pydantic import BaseModel, ConfigDict, Field


class DatabaseTarget(BaseModel):
    """PostgreSQL connection settings for one database"""
    model_config = ConfigDict(frozen=True)

    host: str = ''
    port: int = 5432
    username: str = ''
    password: str = ''
    database: str = ''
    ssl_mode: str = 'disable'

    def connection_kwargs(self, dbname: Optional[str] = None) -> Dict[str, Any]:
        """
        Keyword arguments for psycopg.connect().

        Args:
            dbname: Database to connect to instead of the target (e.g. 'postgres')
        """
        return {
            'host': self.host,
            'port': self.port,
            'user': self.username,
            'password': self.password,
            'dbname': dbname or self.database,
            'sslmode': self.ssl_mode,
        }

    def connection_string(self) -> str:
        """libpq keyword/value connection string, used by psql. Values are quoted as needed."""
        return make_conninfo(
            host=self.host,
            port=self.port,
            user=self.username,
            dbname=self.database,
            sslmode=self.ssl_mode
        )

    def __repr__(self):
        return f'<DatabaseTarget {self.username}@{self.host}:{self.port}/{self.database}>'


class AWSSettings(BaseModel):
    """AWS S3 configuration"""
    region: str = ''
    bucket: str = ''
    access_key_id: str = ''
    secret_access_key: str = ''


class LocalSettings(BaseModel):
    """Local filesystem storage configuration"""
    path: str = ''


class BackupSettings(BaseModel):
    """Backup run configuration"""
    retention_days: int = 7
    schedule: str = '0 2 * * *'
    backup_prefix: str = 'postgres-backup'


class ImportSettings(BaseModel):
    """Restore configuration"""
    target_database: DatabaseTarget = Field(default_factory=DatabaseTarget)
    backup_path: str = ''
    drop_existing: bool = False


class LoggingSettings(BaseModel):
    """Logging configuration"""
    level: str = 'info'
    format: str = 'text'


class Settings(BaseModel):
    """Complete application settings, loaded by pgbackuper.config"""
    databases: List[DatabaseTarget] = Field(default_factory=list)
    aws: AWSSettings = Field(default_factory=AWSSettings)
    local: LocalSettings = Field(default_factory=LocalSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    import_: ImportSettings = Field(default_factory=ImportSettings, alias='import')
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_local_storage(self) -> bool:
        return self.local.path != ''

    @property
    def is_aws_storage(self) -> bool:
        return bool(self.aws.bucket and self.aws.region)

    @property
    def has_aws_credentials(self) -> bool:
        return bool(self.aws.access_key_id and self.aws.secret_access_key)


class ArtifactHandle(BaseModel):
    """A dump file on local disk"""
    model_config = ConfigDict(frozen=True)

    path: str
    database: str
    created_at: datetime

    def __repr__(self):
        return f'<ArtifactHandle {self.path}>'


class DatabaseOutcome(BaseModel):
    """Result of backing up a single database"""
    database: str
    success: bool
    destination: Optional[str] = None
    error: Optional[str] = None


class BackupRunSummary(BaseModel):
    """Result of one orchestrator run"""
    outcomes: List[DatabaseOutcome] = Field(default_factory=list)
    duration_seconds: float = 0.0
    sweep_deleted: Optional[int] = None

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    @property
    def failed(self) -> bool:
        return self.failure_count > 0

    def __repr__(self):
        return (
            f'<BackupRunSummary success={self.success_count} '
            f'failed={self.failure_count} duration={self.duration_seconds:.1f}s>'
        )
