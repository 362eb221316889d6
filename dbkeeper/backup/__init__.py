"""
Backup module for dbkeeper.

This module handles the backup lifecycle including:
- Database drivers (PostgreSQL and SQLite)
- Compression
- Storage (local filesystem and S3)
- Run orchestration and cleanup
- GFS retention policy
- Integrity validation and restore
"""

from .context import RunContext
from .engine import BackupEngine, BackupResult, EngineConfig, RunState
from .metadata import BackupRecord
from .restore import RestoreEngine, RestoreOptions, RestoreResult
from .retention import GFSRotator, RetentionPolicy
from .retry import RetryConfig, with_retry
from .storage import LocalStorage, S3Storage, create_storage
from .validator import BackupValidator, ValidationResult

__all__ = [
    'RunContext',
    'BackupEngine',
    'BackupResult',
    'EngineConfig',
    'RunState',
    'BackupRecord',
    'RestoreEngine',
    'RestoreOptions',
    'RestoreResult',
    'GFSRotator',
    'RetentionPolicy',
    'RetryConfig',
    'with_retry',
    'LocalStorage',
    'S3Storage',
    'create_storage',
    'BackupValidator',
    'ValidationResult'
]
