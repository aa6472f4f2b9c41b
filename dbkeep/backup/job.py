"""
Immutable values describing one backup or restore job.

These are built once from configuration at process start and passed
explicitly into every job; nothing in the core reads global settings.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional, Tuple, List, Dict, Any

from .errors import ConfigurationError


class EngineKind(str, Enum):
    """Supported database engines."""

    POSTGRES = 'postgres'
    MYSQL = 'mysql'
    MARIADB = 'mariadb'

    @classmethod
    def parse(cls, value: str) -> 'EngineKind':
        aliases = {'postgresql': 'postgres', 'pg': 'postgres'}
        value = (value or '').strip().lower()
        try:
            return cls(aliases.get(value, value))
        except ValueError:
            raise ConfigurationError(
                f"Invalid engine: {value!r}. Valid options: {[k.value for k in cls]}"
            )


@dataclass(frozen=True)
class SSHTunnelConfig:
    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = None


@dataclass(frozen=True)
class DatabaseConfig:
    engine: EngineKind
    host: str
    port: int
    username: str
    database: str
    password: Optional[str] = field(default=None, repr=False)
    ssh_tunnel: Optional[SSHTunnelConfig] = None
    connect_timeout: int = 30

    @property
    def target(self) -> str:
        """Stable name identifying what is being backed up."""
        return f"{self.engine.value}-{self.host}-{self.port}-{self.database}"

    def with_endpoint(self, host: str, port: int) -> 'DatabaseConfig':
        """Copy pointing at another host/port (used by SSH tunnels)."""
        return DatabaseConfig(
            engine=self.engine,
            host=host,
            port=port,
            username=self.username,
            database=self.database,
            password=self.password,
            ssh_tunnel=None,
            connect_timeout=self.connect_timeout,
        )


@dataclass(frozen=True)
class StorageLocation:
    bucket: str
    prefix: str = ''
    region: str = 'us-east-1'
    endpoint: Optional[str] = None

    def key_for(self, relative_key: str) -> str:
        prefix = self.prefix.strip('/')
        relative_key = relative_key.lstrip('/')
        return f"{prefix}/{relative_key}" if prefix else relative_key


@dataclass(frozen=True)
class StorageSettings:
    location: StorageLocation
    backend: str = 's3'
    access_key: Optional[str] = field(default=None, repr=False)
    secret_key: Optional[str] = field(default=None, repr=False)
    local_root: Optional[str] = None
    part_size: int = 16 * 1024 * 1024
    download_window: int = 8 * 1024 * 1024
    max_attempts: int = 5
    backoff_initial: float = 0.5
    backoff_max: float = 20.0
    connect_timeout: float = 10.0
    read_timeout: float = 60.0


COMPRESSION = 'compression'
ENCRYPTION = 'encryption'


@dataclass(frozen=True)
class StageDescriptor:
    kind: str
    algorithm: str
    level: Optional[int] = None
    key_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind, 'algorithm': self.algorithm}
        if self.level is not None:
            data['level'] = self.level
        if self.key_ref is not None:
            data['key_ref'] = self.key_ref
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StageDescriptor':
        return cls(
            kind=data['kind'],
            algorithm=data['algorithm'],
            level=data.get('level'),
            key_ref=data.get('key_ref'),
        )


@dataclass(frozen=True)
class PipelineConfig:
    """
    Ordered transform stages applied during backup.

    Compression always precedes encryption, so encryption is the last
    transform applied on backup and the first one removed on restore.
    The checksum stage is implicit and always runs last.
    """

    stages: Tuple[StageDescriptor, ...] = ()

    def __post_init__(self):
        kinds = [stage.kind for stage in self.stages]
        for kind in kinds:
            if kind not in (COMPRESSION, ENCRYPTION):
                raise ConfigurationError(f"Unknown pipeline stage kind: {kind!r}")
        if len(set(kinds)) != len(kinds):
            raise ConfigurationError(f"Duplicate pipeline stages: {kinds}")
        if kinds == [ENCRYPTION, COMPRESSION]:
            raise ConfigurationError("Encryption must come after compression")
        for stage in self.stages:
            if stage.kind == ENCRYPTION and not stage.key_ref:
                raise ConfigurationError("Encryption stage requires a key reference")

    def stage(self, kind: str) -> Optional[StageDescriptor]:
        for stage in self.stages:
            if stage.kind == kind:
                return stage
        return None

    @property
    def extension(self) -> str:
        """File extension describing the artifact layers, e.g. ``sql.gz.enc``."""
        extensions = {'gzip': 'gz', 'bz2': 'bz2', 'xz': 'xz', 'zstd': 'zst'}
        parts = ['sql']
        compression = self.stage(COMPRESSION)
        if compression and compression.algorithm in extensions:
            parts.append(extensions[compression.algorithm])
        if self.stage(ENCRYPTION):
            parts.append('enc')
        return '.'.join(parts)

    def to_json(self) -> str:
        return json.dumps([stage.to_dict() for stage in self.stages], sort_keys=True)

    @classmethod
    def from_json(cls, payload: Optional[str]) -> 'PipelineConfig':
        if not payload:
            return cls()
        data: List[Dict[str, Any]] = json.loads(payload)
        return cls(tuple(StageDescriptor.from_dict(item) for item in data))


@dataclass(frozen=True)
class RetentionPolicy:
    min_keep: int = 7
    max_age: timedelta = timedelta(days=30)

    def __post_init__(self):
        if self.min_keep < 0:
            raise ConfigurationError(f"min_keep must be >= 0, got {self.min_keep}")
        if self.max_age < timedelta(0):
            raise ConfigurationError(f"max_age must be non-negative, got {self.max_age}")


@dataclass(frozen=True)
class BackupJob:
    database: DatabaseConfig
    storage: StorageSettings
    pipeline: PipelineConfig = PipelineConfig()
    retention: Optional[RetentionPolicy] = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def target(self) -> str:
        return self.database.target
