import os
import tempfile
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from dbkeep.backup.compression import CompressionStage
from dbkeep.backup.errors import ConfigurationError
from dbkeep.backup.job import (
    COMPRESSION,
    ENCRYPTION,
    DatabaseConfig,
    EngineKind,
    PipelineConfig,
    RetentionPolicy,
    SSHTunnelConfig,
    StageDescriptor,
    StorageLocation,
    StorageSettings,
)


# Environment variables with these prefixes are copied into app.config
ENV_PREFIXES = ('POSTGRES_', 'MYSQL_', 'MARIADB_', 'S3_', 'DBKEEP_')

DEFAULT_PORTS = {
    EngineKind.POSTGRES: 5432,
    EngineKind.MYSQL: 3306,
    EngineKind.MARIADB: 3306,
}

MIN_S3_PART_SIZE_MB = 5


class Config:
    """Base configuration"""

    # Catalog database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dbkeep.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Storage
    STORAGE_TYPE = os.environ.get('STORAGE_TYPE') or 's3'
    LOCAL_STORAGE_DIR = os.environ.get('LOCAL_STORAGE_DIR') or '/data/backups'

    # Working directories
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Copy POSTGRES_*, S3_*, DBKEEP_* ... from the environment at startup
    LOAD_ENVIRONMENT = True


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "dbkeep.db")}'
    LOCAL_STORAGE_DIR = os.path.join(DATA_DIR, 'backups')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    STORAGE_TYPE = 'local'
    TEMP_DIR = tempfile.gettempdir()
    LOG_DIR = None
    LOAD_ENVIRONMENT = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def environment_overrides(environ: Mapping[str, str]) -> Dict[str, str]:
    """Select the environment variables that configure dbkeep."""
    return {key: value for key, value in environ.items() if key.startswith(ENV_PREFIXES)}


@dataclass(frozen=True)
class Settings:
    """
    Validated, immutable settings built once per process.

    Jobs receive what they need from here explicitly; nothing in the backup
    core reads configuration on its own.
    """

    storage: StorageSettings
    pipeline: PipelineConfig
    databases: Dict[EngineKind, DatabaseConfig] = field(default_factory=dict)
    retention: Optional[RetentionPolicy] = None
    temp_dir: Optional[str] = None

    def database(self, engine) -> DatabaseConfig:
        """
        Get the configured database for an engine.

        Raises:
            ConfigurationError: If the engine is not configured
        """
        kind = engine if isinstance(engine, EngineKind) else EngineKind.parse(engine)
        if kind not in self.databases:
            prefix = kind.value.upper()
            raise ConfigurationError(
                f"{kind.value} is not configured: set {prefix}_HOST, {prefix}_USERNAME and {prefix}_DATABASE"
            )
        return self.databases[kind]


def load_settings(mapping: Mapping[str, Any]) -> Settings:
    """
    Build Settings from a configuration mapping (app.config or a dict).

    Args:
        mapping: Flat mapping of configuration keys to values

    Returns:
        Settings instance

    Raises:
        ConfigurationError: If any value is missing or invalid
    """
    return Settings(
        storage=_storage_settings(mapping),
        pipeline=_pipeline_config(mapping),
        databases=_databases(mapping),
        retention=_retention_policy(mapping),
        temp_dir=mapping.get('TEMP_DIR'),
    )


def _get(mapping: Mapping[str, Any], key: str) -> Optional[str]:
    value = mapping.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _int(mapping: Mapping[str, Any], key: str, default: Optional[int] = None, minimum: int = 0) -> Optional[int]:
    value = _get(mapping, key)
    if value is None:
        return default
    try:
        number = int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    if number < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {number}")
    return number


def _databases(mapping: Mapping[str, Any]) -> Dict[EngineKind, DatabaseConfig]:
    databases = {}

    for kind in EngineKind:
        prefix = kind.value.upper()
        host = _get(mapping, f'{prefix}_HOST')
        if not host:
            continue

        username = _get(mapping, f'{prefix}_USERNAME')
        database = _get(mapping, f'{prefix}_DATABASE')
        if not username or not database:
            raise ConfigurationError(f"{prefix}_USERNAME and {prefix}_DATABASE are required when {prefix}_HOST is set")

        databases[kind] = DatabaseConfig(
            engine=kind,
            host=host,
            port=_int(mapping, f'{prefix}_PORT', DEFAULT_PORTS[kind], minimum=1),
            username=username,
            database=database,
            password=mapping.get(f'{prefix}_PASSWORD') or None,
            ssh_tunnel=_ssh_tunnel(mapping, prefix),
            connect_timeout=_int(mapping, f'{prefix}_CONNECT_TIMEOUT', 30, minimum=1),
        )

    return databases


def _ssh_tunnel(mapping: Mapping[str, Any], prefix: str) -> Optional[SSHTunnelConfig]:
    host = _get(mapping, f'{prefix}_SSH_HOST')
    if not host:
        return None

    username = _get(mapping, f'{prefix}_SSH_USERNAME')
    password = mapping.get(f'{prefix}_SSH_PASSWORD') or None
    private_key = _get(mapping, f'{prefix}_SSH_KEY')
    if not username:
        raise ConfigurationError(f"{prefix}_SSH_USERNAME is required when {prefix}_SSH_HOST is set")
    if not password and not private_key:
        raise ConfigurationError(f"Set {prefix}_SSH_PASSWORD or {prefix}_SSH_KEY for the SSH tunnel")

    return SSHTunnelConfig(
        host=host,
        username=username,
        port=_int(mapping, f'{prefix}_SSH_PORT', 22, minimum=1),
        password=password,
        private_key=private_key,
    )


def _storage_settings(mapping: Mapping[str, Any]) -> StorageSettings:
    backend = (_get(mapping, 'STORAGE_TYPE') or 's3').lower()
    if backend not in ('s3', 'local'):
        raise ConfigurationError(f"Invalid storage type: {backend}. Valid options: ['s3', 'local']")

    bucket = _get(mapping, 'S3_BUCKET')
    if backend == 's3' and not bucket:
        raise ConfigurationError("S3_BUCKET is required for S3 storage")

    local_root = _get(mapping, 'LOCAL_STORAGE_DIR')
    if backend == 'local' and not local_root:
        raise ConfigurationError("LOCAL_STORAGE_DIR is required for local storage")

    minimum_part = MIN_S3_PART_SIZE_MB if backend == 's3' else 1
    part_size_mb = _int(mapping, 'DBKEEP_PART_SIZE_MB', 16, minimum=minimum_part)

    return StorageSettings(
        location=StorageLocation(
            bucket=bucket or 'local',
            prefix=_get(mapping, 'S3_PREFIX') or '',
            region=_get(mapping, 'S3_REGION') or 'us-east-1',
            endpoint=_get(mapping, 'S3_ENDPOINT'),
        ),
        backend=backend,
        access_key=_get(mapping, 'S3_ACCESS_KEY'),
        secret_key=_get(mapping, 'S3_SECRET_KEY'),
        local_root=local_root,
        part_size=part_size_mb * 1024 * 1024,
        max_attempts=_int(mapping, 'DBKEEP_MAX_ATTEMPTS', 5, minimum=1),
    )


def _pipeline_config(mapping: Mapping[str, Any]) -> PipelineConfig:
    algorithm = (_get(mapping, 'DBKEEP_COMPRESSION') or 'gzip').lower()
    level = _int(mapping, 'DBKEEP_COMPRESSION_LEVEL')
    # Validates algorithm and level
    stage = CompressionStage(algorithm, level)

    stages = []
    if algorithm != 'none':
        stages.append(StageDescriptor(kind=COMPRESSION, algorithm=algorithm, level=stage.level))

    key_ref = _get(mapping, 'DBKEEP_ENCRYPTION_KEY')
    if key_ref:
        stages.append(StageDescriptor(kind=ENCRYPTION, algorithm='aes-256-gcm', key_ref=key_ref))

    return PipelineConfig(tuple(stages))


def _retention_policy(mapping: Mapping[str, Any]) -> Optional[RetentionPolicy]:
    min_keep = _int(mapping, 'DBKEEP_RETENTION_MIN_KEEP')
    max_age_days = _int(mapping, 'DBKEEP_RETENTION_MAX_AGE_DAYS')
    if min_keep is None and max_age_days is None:
        return None

    defaults = RetentionPolicy()
    return RetentionPolicy(
        min_keep=defaults.min_keep if min_keep is None else min_keep,
        max_age=defaults.max_age if max_age_days is None else timedelta(days=max_age_days),
    )
