"""
Error taxonomy for backup and restore jobs.

Every failure that leaves the core is one of these kinds. Errors carry the
job id, the stage they happened in and, for transfers, how many attempts
were made, so a failed run can be diagnosed from its message alone.
"""

from enum import Enum
from typing import Optional, Dict, Any


class BackupError(Exception):
    """Base class for all dbkeep errors."""

    exit_code = 1

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def job_id(self) -> Optional[str]:
        return self.details.get('job_id')

    @property
    def stage(self) -> Optional[str]:
        return self.details.get('stage')

    def with_context(self, **context) -> 'BackupError':
        """Attach context without overwriting what an inner layer already set."""
        for key, value in context.items():
            if value is not None:
                self.details.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if self.details:
            details = ', '.join(f"{k}={v}" for k, v in sorted(self.details.items()))
            return f"{self.message} ({details})"
        return self.message


class ConfigurationError(BackupError):
    """Raised when configuration is missing or invalid."""
    exit_code = 2


class DatabaseConnectionError(BackupError):
    """Raised when the database engine is unreachable or rejects the credentials."""
    exit_code = 3


class DumpError(BackupError):
    """Raised when the engine rejects or aborts a dump."""
    exit_code = 6


class RestoreError(BackupError):
    """Raised when the engine rejects a restore stream."""
    exit_code = 6


class TransferErrorKind(str, Enum):
    TRANSIENT = 'transient'
    PERMANENT = 'permanent'


class TransferError(BackupError):
    """Raised when object storage fails to accept or return data."""
    exit_code = 4

    def __init__(
        self,
        message: str,
        kind: TransferErrorKind = TransferErrorKind.PERMANENT,
        attempts: int = 1,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        details.setdefault('kind', kind.value)
        details.setdefault('attempts', attempts)
        super().__init__(message, details)
        self.kind = kind
        self.attempts = attempts

    @property
    def is_transient(self) -> bool:
        return self.kind == TransferErrorKind.TRANSIENT


class IntegrityError(BackupError):
    """Raised when artifact bytes fail an integrity check. Never retried."""
    exit_code = 5


class ChecksumMismatch(IntegrityError):
    """Raised when the stored artifact hash differs from the catalog."""
    pass


class AuthenticationFailure(IntegrityError):
    """Raised when authenticated decryption rejects the artifact."""
    pass


class RetentionPolicyViolation(BackupError):
    """Raised internally when a sweep would go below the minimum-keep count."""
    pass


class CatalogError(BackupError):
    """Raised when a catalog mutation would break a catalog invariant."""
    pass


class JobCancelled(BackupError):
    """Raised in every stage once a job has been cancelled."""
    exit_code = 130
