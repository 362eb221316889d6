"""
Exception hierarchy for dbkeeper.

Errors fall into four groups:
- Configuration errors: fatal, never retried
- Transient errors: connection refused, timeouts, I/O hiccups (retried)
- Integrity errors: checksum/size mismatch, failed restore-verify (never retried)
- Cancellation: the caller's RunContext was cancelled or its deadline passed
"""

from typing import Any, Dict, Optional


class DbKeeperError(Exception):
    """Base exception for all dbkeeper errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DbKeeperError):
    """Raised when configuration is missing or invalid."""
    pass


class IntegrityError(DbKeeperError):
    """Raised when a stored backup is present but suspect."""
    pass


class BackupNotFound(DbKeeperError):
    """Raised when no metadata exists for a backup id."""
    pass


class RestoreError(DbKeeperError):
    """Raised when a restore cannot be completed."""
    pass


class CancelledError(DbKeeperError):
    """Base for cancellation signals. Never retried."""
    pass


class OperationCancelled(CancelledError):
    """Raised when the caller cancelled the running operation."""

    def __init__(self, message: str = "operation cancelled", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class DeadlineExceeded(CancelledError):
    """Raised when the caller's deadline passed before the operation finished."""

    def __init__(self, message: str = "deadline exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
