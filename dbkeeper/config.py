import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from dbkeeper.exceptions import ConfigurationError


POSTGRES_TYPES = ('postgres', 'postgresql', 'pg')
SQLITE_TYPES = ('sqlite', 'sqlite3')


TRUE_VALUES = ('true', '1', 'yes', 'on')
FALSE_VALUES = ('false', '0', 'no', 'off')


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _parse_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean (true/false), got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return _parse_int(name, value)


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return _parse_float(name, value)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return _parse_bool(name, value)


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dbkeeper-status-api'

    # API token for the status API (unset = open)
    DBKEEPER_API_TOKEN = os.environ.get('DBKEEPER_API_TOKEN')

    # Database
    DBKEEPER_DB_TYPE = os.environ.get('DBKEEPER_DB_TYPE') or 'postgres'
    DBKEEPER_DATABASE_URL = os.environ.get('DBKEEPER_DATABASE_URL') or ''
    DBKEEPER_DB_HOST = os.environ.get('DBKEEPER_DB_HOST') or 'localhost'
    DBKEEPER_DB_PORT = _env_int('DBKEEPER_DB_PORT', 5432)
    DBKEEPER_DB_NAME = os.environ.get('DBKEEPER_DB_NAME') or ''
    DBKEEPER_DB_USER = os.environ.get('DBKEEPER_DB_USER') or ''
    DBKEEPER_DB_PASSWORD = os.environ.get('DBKEEPER_DB_PASSWORD') or ''
    DBKEEPER_DB_PATH = os.environ.get('DBKEEPER_DB_PATH') or ''

    # Schedule (standard 5-field crontab, UTC)
    DBKEEPER_SCHEDULE = os.environ.get('DBKEEPER_SCHEDULE') or '0 2 * * *'

    # Storage
    DBKEEPER_STORAGE_BACKEND = os.environ.get('DBKEEPER_STORAGE_BACKEND') or 'local'
    DBKEEPER_STORAGE_PATH = os.environ.get('DBKEEPER_STORAGE_PATH') or '/backups'
    DBKEEPER_S3_BUCKET = os.environ.get('DBKEEPER_S3_BUCKET') or ''
    DBKEEPER_S3_ENDPOINT = os.environ.get('DBKEEPER_S3_ENDPOINT') or ''
    DBKEEPER_S3_REGION = os.environ.get('DBKEEPER_S3_REGION') or 'us-east-1'
    DBKEEPER_S3_ACCESS_KEY = os.environ.get('DBKEEPER_S3_ACCESS_KEY') or ''
    DBKEEPER_S3_SECRET_KEY = os.environ.get('DBKEEPER_S3_SECRET_KEY') or ''
    DBKEEPER_S3_USE_SSL = _env_bool('DBKEEPER_S3_USE_SSL', True)
    DBKEEPER_S3_PREFIX = os.environ.get('DBKEEPER_S3_PREFIX') or ''

    # Retention (GFS)
    DBKEEPER_KEEP_DAILY = _env_int('DBKEEPER_KEEP_DAILY', 7)
    DBKEEPER_KEEP_WEEKLY = _env_int('DBKEEPER_KEEP_WEEKLY', 4)
    DBKEEPER_KEEP_MONTHLY = _env_int('DBKEEPER_KEEP_MONTHLY', 6)
    DBKEEPER_MAX_AGE_DAYS = _env_int('DBKEEPER_MAX_AGE_DAYS', 90)

    # Backup
    DBKEEPER_COMPRESSION = os.environ.get('DBKEEPER_COMPRESSION') or 'gzip'
    DBKEEPER_VERIFY_BACKUP = _env_bool('DBKEEPER_VERIFY_BACKUP')
    DBKEEPER_VERIFY_CHECKSUM = _env_bool('DBKEEPER_VERIFY_CHECKSUM')
    DBKEEPER_RETRY_ATTEMPTS = _env_int('DBKEEPER_RETRY_ATTEMPTS', 3)
    DBKEEPER_RETRY_INITIAL_WAIT = _env_float('DBKEEPER_RETRY_INITIAL_WAIT', 1.0)
    DBKEEPER_RETRY_MAX_WAIT = _env_float('DBKEEPER_RETRY_MAX_WAIT', 30.0)
    DBKEEPER_RETRY_MULTIPLIER = _env_float('DBKEEPER_RETRY_MULTIPLIER', 2.0)

    # Monitoring
    DBKEEPER_WEBHOOK_URL = os.environ.get('DBKEEPER_WEBHOOK_URL') or ''
    DBKEEPER_ALERT_AFTER_HOURS = _env_int('DBKEEPER_ALERT_AFTER_HOURS', 26)

    # Temp/Logs
    TEMP_DIR = os.environ.get('TEMP_DIR') or None
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    DBKEEPER_STORAGE_PATH = os.environ.get('DBKEEPER_STORAGE_PATH') or os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration: no scheduler thread, no file logging"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    LOG_DIR = None
    DBKEEPER_API_TOKEN = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


@dataclass(frozen=True)
class DatabaseSettings:
    type: str = 'postgres'
    host: str = 'localhost'
    port: int = 5432
    name: str = ''
    user: str = ''
    password: str = ''
    url: str = ''
    path: str = ''

    @property
    def is_sqlite(self) -> bool:
        return self.type.lower() in SQLITE_TYPES

    @property
    def is_postgres(self) -> bool:
        return self.type.lower() in POSTGRES_TYPES or self.type == ''

    @property
    def display_name(self) -> str:
        """Name recorded in backup metadata."""
        if self.is_sqlite:
            return self.name or self.path
        return self.name or self.url.rsplit('/', 1)[-1].split('?', 1)[0]

    @property
    def display_host(self) -> str:
        return 'local' if self.is_sqlite else self.host


@dataclass(frozen=True)
class S3Settings:
    bucket: str = ''
    endpoint: str = ''
    region: str = 'us-east-1'
    access_key: str = ''
    secret_key: str = ''
    use_ssl: bool = True
    prefix: str = ''


@dataclass(frozen=True)
class StorageSettings:
    backend: str = 'local'
    path: str = '/backups'
    s3: S3Settings = field(default_factory=S3Settings)


@dataclass(frozen=True)
class RetentionSettings:
    daily: int = 7
    weekly: int = 4
    monthly: int = 6
    max_age_days: int = 90


@dataclass(frozen=True)
class MonitoringSettings:
    webhook_url: str = ''
    alert_after_hours: int = 26


@dataclass(frozen=True)
class BackupSettings:
    compression: str = 'gzip'
    verify_after_backup: bool = False
    verify_checksum: bool = False
    retry_attempts: int = 3
    retry_initial_wait: float = 1.0
    retry_max_wait: float = 30.0
    retry_multiplier: float = 2.0
    temp_dir: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    """
    Validated, immutable settings for one dbkeeper deployment.

    Built once from the Flask config mapping and passed explicitly to the
    engine, scheduler and restore engine.
    """

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    schedule: str = '0 2 * * *'
    storage: StorageSettings = field(default_factory=StorageSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    backup: BackupSettings = field(default_factory=BackupSettings)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> 'Settings':
        """
        Build settings from a Flask config (or any mapping of DBKEEPER_* keys).

        Missing keys fall back to the dataclass defaults.
        """
        def get(key, default):
            value = values.get(key)
            return default if value is None else value

        return cls(
            database=DatabaseSettings(
                type=get('DBKEEPER_DB_TYPE', 'postgres'),
                host=get('DBKEEPER_DB_HOST', 'localhost'),
                port=_parse_int('DBKEEPER_DB_PORT', get('DBKEEPER_DB_PORT', 5432)),
                name=get('DBKEEPER_DB_NAME', ''),
                user=get('DBKEEPER_DB_USER', ''),
                password=get('DBKEEPER_DB_PASSWORD', ''),
                url=get('DBKEEPER_DATABASE_URL', ''),
                path=get('DBKEEPER_DB_PATH', '')
            ),
            schedule=get('DBKEEPER_SCHEDULE', '0 2 * * *'),
            storage=StorageSettings(
                backend=get('DBKEEPER_STORAGE_BACKEND', 'local'),
                path=get('DBKEEPER_STORAGE_PATH', '/backups'),
                s3=S3Settings(
                    bucket=get('DBKEEPER_S3_BUCKET', ''),
                    endpoint=get('DBKEEPER_S3_ENDPOINT', ''),
                    region=get('DBKEEPER_S3_REGION', 'us-east-1'),
                    access_key=get('DBKEEPER_S3_ACCESS_KEY', ''),
                    secret_key=get('DBKEEPER_S3_SECRET_KEY', ''),
                    use_ssl=_parse_bool('DBKEEPER_S3_USE_SSL', get('DBKEEPER_S3_USE_SSL', True)),
                    prefix=get('DBKEEPER_S3_PREFIX', '')
                )
            ),
            retention=RetentionSettings(
                daily=_parse_int('DBKEEPER_KEEP_DAILY', get('DBKEEPER_KEEP_DAILY', 7)),
                weekly=_parse_int('DBKEEPER_KEEP_WEEKLY', get('DBKEEPER_KEEP_WEEKLY', 4)),
                monthly=_parse_int('DBKEEPER_KEEP_MONTHLY', get('DBKEEPER_KEEP_MONTHLY', 6)),
                max_age_days=_parse_int('DBKEEPER_MAX_AGE_DAYS', get('DBKEEPER_MAX_AGE_DAYS', 90))
            ),
            monitoring=MonitoringSettings(
                webhook_url=get('DBKEEPER_WEBHOOK_URL', ''),
                alert_after_hours=_parse_int('DBKEEPER_ALERT_AFTER_HOURS', get('DBKEEPER_ALERT_AFTER_HOURS', 26))
            ),
            backup=BackupSettings(
                compression=get('DBKEEPER_COMPRESSION', 'gzip'),
                verify_after_backup=_parse_bool('DBKEEPER_VERIFY_BACKUP', get('DBKEEPER_VERIFY_BACKUP', False)),
                verify_checksum=_parse_bool('DBKEEPER_VERIFY_CHECKSUM', get('DBKEEPER_VERIFY_CHECKSUM', False)),
                retry_attempts=_parse_int('DBKEEPER_RETRY_ATTEMPTS', get('DBKEEPER_RETRY_ATTEMPTS', 3)),
                retry_initial_wait=_parse_float('DBKEEPER_RETRY_INITIAL_WAIT', get('DBKEEPER_RETRY_INITIAL_WAIT', 1.0)),
                retry_max_wait=_parse_float('DBKEEPER_RETRY_MAX_WAIT', get('DBKEEPER_RETRY_MAX_WAIT', 30.0)),
                retry_multiplier=_parse_float('DBKEEPER_RETRY_MULTIPLIER', get('DBKEEPER_RETRY_MULTIPLIER', 2.0)),
                temp_dir=values.get('TEMP_DIR')
            )
        )

    def validate(self) -> 'Settings':
        """
        Check the settings for misconfiguration.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigurationError: On the first problem found
        """
        db = self.database
        db_type = db.type.lower()

        if db_type in POSTGRES_TYPES or db_type == '':
            if not db.url and not db.name:
                raise ConfigurationError("database name or URL is required for PostgreSQL")
        elif db_type in SQLITE_TYPES:
            if not db.path and not db.name:
                raise ConfigurationError("database path is required for SQLite")
        else:
            raise ConfigurationError(
                f"unsupported database type: {db.type} (supported: postgres, sqlite)"
            )

        if self.storage.backend not in ('local', 's3'):
            raise ConfigurationError("storage backend must be 'local' or 's3'")

        if self.storage.backend == 's3':
            if not self.storage.s3.bucket:
                raise ConfigurationError("S3 bucket is required when using S3 storage")
            # Both unset falls back to the boto3 default credential chain
            if bool(self.storage.s3.access_key) != bool(self.storage.s3.secret_key):
                raise ConfigurationError("S3 access key and secret key must be set together")

        if self.backup.compression not in ('gzip', 'none'):
            raise ConfigurationError("compression must be 'gzip' or 'none'")

        for label, value in (('daily', self.retention.daily), ('weekly', self.retention.weekly),
                             ('monthly', self.retention.monthly), ('max_age_days', self.retention.max_age_days)):
            if value < 0:
                raise ConfigurationError(f"retention {label} must be non-negative, got {value}")

        if self.backup.retry_attempts < 1:
            raise ConfigurationError("retry attempts must be at least 1")

        return self
