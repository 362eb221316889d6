"""
Backup engine - orchestrates a single backup run and retention cleanup.

Run workflow:
1. Connect to the source database (retried) and read its version
2. Dump the database to a temporary file
3. Compress the dump (if configured)
4. Compute the artifact checksum
5. Upload the artifact, then write its metadata record (both retried)
6. Verify the stored backup by restoring it (if configured)
7. Record the outcome, update metrics and notify

Cleanup workflow:
1. List every metadata record in storage
2. Ask the GFS rotator which records the policy no longer protects
3. Delete the files of each such record, data files first and metadata last
"""

import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from dbkeeper.config import DatabaseSettings, Settings
from dbkeeper.exceptions import BackupNotFound, CancelledError, ConfigurationError
from .compression import SUPPORTED_COMPRESSION, compress_file, get_file_size
from .context import RunContext, ensure_context
from .drivers import DatabaseDriver, create_driver
from .metadata import (
    ArtifactInfo, BackupRecord, DatabaseInfo, MetadataError, RetentionHint,
    calculate_checksum, generate_backup_id, is_metadata_key, metadata_key
)
from .retention import GFSRotator, RetentionPolicy
from .retry import RetryConfig, with_retry
from .storage import NotFoundError, StorageBackend, StorageError
from .validator import BackupValidator, ValidationResult


logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    DUMPING = 'dumping'
    COMPRESSING = 'compressing'
    CHECKSUMMING = 'checksumming'
    PERSISTING = 'persisting'
    VERIFYING = 'verifying'
    DONE = 'done'
    FAILED = 'failed'


@dataclass(frozen=True)
class EngineConfig:
    """Everything the engine needs to know, fixed for its lifetime."""

    database: DatabaseSettings
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    compression: str = 'gzip'
    verify_after_backup: bool = False
    retry: RetryConfig = field(default_factory=RetryConfig)
    temp_dir: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> 'EngineConfig':
        return cls(
            database=settings.database,
            retention=RetentionPolicy(
                keep_daily=settings.retention.daily,
                keep_weekly=settings.retention.weekly,
                keep_monthly=settings.retention.monthly,
                max_age_days=settings.retention.max_age_days
            ),
            compression=settings.backup.compression,
            verify_after_backup=settings.backup.verify_after_backup,
            retry=RetryConfig(
                max_attempts=settings.backup.retry_attempts,
                initial_wait=settings.backup.retry_initial_wait,
                max_wait=settings.backup.retry_max_wait,
                multiplier=settings.backup.retry_multiplier
            ),
            temp_dir=settings.backup.temp_dir
        )


@dataclass
class BackupResult:
    """
    Outcome of one run, returned whether or not the run succeeded.

    On failure `state` is FAILED, `failed_stage` names the stage that was
    running and the size fields show how far the run got.
    """

    id: str
    timestamp: datetime
    state: RunState = RunState.IDLE
    failed_stage: Optional[RunState] = None
    size: int = 0
    compressed_size: int = 0
    duration: float = 0.0
    checksum: str = ''
    verified: bool = False
    verify_error: Optional[str] = None
    error: Optional[str] = None
    storage_key: Optional[str] = None
    record: Optional[BackupRecord] = None
    logs: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == RunState.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat().replace('+00:00', 'Z'),
            'state': self.state.value,
            'failed_stage': self.failed_stage.value if self.failed_stage else None,
            'success': self.success,
            'size_bytes': self.size,
            'compressed_size_bytes': self.compressed_size,
            'duration_seconds': round(self.duration, 3),
            'checksum': self.checksum,
            'verified': self.verified,
            'verify_error': self.verify_error,
            'error': self.error,
            'storage_key': self.storage_key,
            'logs': list(self.logs),
        }


class BackupEngine:
    """
    Drives backup runs and cleanup against one database and one storage backend.

    The engine is not safe for concurrent run() calls; the scheduler
    guarantees at most one run at a time. last_run and last_error may be
    read from other threads while a run is in progress.

    Args:
        config: Immutable engine configuration
        storage: Backend holding artifacts and metadata
        driver_factory: Callable building a driver from DatabaseSettings
        notifier: Optional WebhookNotifier
        metrics: Optional BackupMetrics
    """

    def __init__(
        self,
        config: EngineConfig,
        storage: StorageBackend,
        driver_factory: Callable[[DatabaseSettings], DatabaseDriver] = create_driver,
        notifier=None,
        metrics=None
    ):
        if config.compression not in SUPPORTED_COMPRESSION:
            raise ConfigurationError(f"unsupported compression: {config.compression}")

        self.config = config
        self.storage = storage
        self.driver_factory = driver_factory
        self.notifier = notifier
        self.metrics = metrics
        self.rotator = GFSRotator(config.retention)
        self.validator = BackupValidator(storage, config.database.type)

        self._lock = threading.Lock()
        self._last_run: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @property
    def last_run(self) -> Optional[datetime]:
        """Start time of the last successful run, or None."""
        with self._lock:
            return self._last_run

    @property
    def last_error(self) -> Optional[str]:
        """Error of the last run if it failed, else None."""
        with self._lock:
            return self._last_error

    def run(self, ctx: Optional[RunContext] = None) -> BackupResult:
        """
        Execute one backup run.

        Never raises for pipeline failures: the returned result carries the
        error and the stage that failed.

        Args:
            ctx: Cancellation/deadline signal for the whole run

        Returns:
            BackupResult describing the run
        """
        ctx = ensure_context(ctx)
        started_at = datetime.now(timezone.utc)
        started_clock = time.monotonic()
        result = BackupResult(id=generate_backup_id(started_at), timestamp=started_at)

        self._log(result, f"Starting backup {result.id} (database type: {self.config.database.type})")

        try:
            with tempfile.TemporaryDirectory(prefix='dbkeeper-', dir=self.config.temp_dir) as temp_dir:
                self._execute(result, temp_dir, started_clock, ctx)

        except Exception as e:
            result.duration = time.monotonic() - started_clock
            result.failed_stage = result.state
            result.state = RunState.FAILED
            result.error = f"{result.failed_stage.value} failed: {e}"
            self._log(result, f"Backup {result.id} failed during {result.failed_stage.value}: {e}")
            logger.error(f"Backup {result.id} failed during {result.failed_stage.value}: {e}")

            with self._lock:
                self._last_error = result.error

            if self.metrics is not None:
                self.metrics.record_failure()
            if self.notifier is not None:
                self.notifier.notify_failure(result.id, result.error)

            return result

        result.state = RunState.DONE
        with self._lock:
            self._last_run = started_at
            self._last_error = None

        self._log(
            result,
            f"Backup completed: {result.size} bytes, {result.compressed_size} stored, "
            f"{result.duration:.1f}s, verified={result.verified}"
        )

        if self.metrics is not None:
            self.metrics.record_success(result.duration, result.compressed_size, time.time())
        if self.notifier is not None:
            self.notifier.notify_success(result.id, result.size, result.duration)

        return result

    def _execute(self, result: BackupResult, temp_dir: str, started_clock: float, ctx: RunContext):
        """Run the pipeline stages, advancing result.state as each begins."""
        result.state = RunState.CONNECTING
        driver = self.driver_factory(self.config.database)

        with driver:
            self._log(result, f"Connecting to {self.config.database.display_host}")
            with_retry(lambda: driver.connect(ctx), self.config.retry, ctx=ctx, name='connect')

            try:
                db_version = driver.version(ctx)
            except CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Failed to get database version for {result.id}: {e}")
                db_version = 'unknown'
            self._log(result, f"Connected (version: {db_version})")

            result.state = RunState.DUMPING
            dump_path = os.path.join(temp_dir, f"{result.id}.{driver.file_extension}")
            try:
                with open(dump_path, 'wb') as sink:
                    driver.dump(sink, ctx)
            finally:
                if os.path.exists(dump_path):
                    result.size = os.path.getsize(dump_path)
            self._log(result, f"Dump written: {result.size / 1024 / 1024:.2f} MB")

        result.state = RunState.COMPRESSING
        artifact_path = dump_path
        if self.config.compression == 'gzip':
            artifact_path = compress_file(dump_path, dump_path + '.gz', ctx)
            os.remove(dump_path)
            self._log(result, f"Compressed with gzip: {os.path.basename(artifact_path)}")
        result.compressed_size = get_file_size(artifact_path)

        result.state = RunState.CHECKSUMMING
        try:
            result.checksum = calculate_checksum(artifact_path, ctx)
        except CancelledError:
            raise
        except OSError as e:
            logger.warning(f"Failed to calculate checksum for {result.id}: {e}")
            self._log(result, f"Warning: checksum unavailable: {e}")

        result.state = RunState.PERSISTING
        storage_key = os.path.basename(artifact_path)
        with_retry(
            lambda: self._upload(storage_key, artifact_path, ctx),
            self.config.retry, ctx=ctx, name=f"upload {storage_key}"
        )
        result.storage_key = storage_key
        self._log(result, f"Uploaded artifact: {storage_key}")

        result.duration = time.monotonic() - started_clock
        record = self._build_record(result, driver, db_version, storage_key)
        result.record = record
        self._write_metadata(result, record, ctx)

        if self.config.verify_after_backup:
            result.state = RunState.VERIFYING
            self._verify(result, record, ctx)

        result.duration = time.monotonic() - started_clock

    def _upload(self, key: str, path: str, ctx: RunContext):
        with open(path, 'rb') as source:
            self.storage.write(key, source, ctx)

    def _build_record(self, result: BackupResult, driver: DatabaseDriver, db_version: str,
                      storage_key: str) -> BackupRecord:
        keep_until, tier = self.rotator.get_retention_info(result.timestamp)
        database = self.config.database

        record = BackupRecord(
            id=result.id,
            timestamp=result.timestamp,
            tier=tier,
            source=DatabaseInfo(
                name=database.display_name,
                host=database.display_host,
                version=db_version
            ),
            artifact=ArtifactInfo(
                method=driver.method,
                format=driver.format,
                compression=self.config.compression,
                size_bytes=result.size,
                compressed_size_bytes=result.compressed_size,
                duration_seconds=result.duration,
                checksum=result.checksum
            ),
            retention=RetentionHint(keep_until=keep_until, policy=tier)
        )
        record.add_file(storage_key)
        # Listed before serializing so cleanup removes the metadata object too
        record.add_file(record.metadata_key)
        return record

    def _write_metadata(self, result: BackupResult, record: BackupRecord, ctx: RunContext):
        """Persist the record. Failure leaves an orphaned artifact and is only logged."""
        try:
            with_retry(
                lambda: self.storage.write_bytes(record.metadata_key, record.to_json(), ctx),
                self.config.retry, ctx=ctx, name=f"write {record.metadata_key}"
            )
        except CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to write metadata for {record.id}: {e}")
            self._log(result, f"Warning: failed to write metadata: {e}")
            return

        self._log(result, f"Metadata written: {record.metadata_key}")

    def _verify(self, result: BackupResult, record: BackupRecord, ctx: RunContext):
        """Restore-verify the stored backup. Failure is recorded, not raised."""
        self._log(result, "Verifying backup integrity")
        try:
            self.validator.verify_restore_integrity(record, ctx)
        except CancelledError:
            raise
        except Exception as e:
            result.verify_error = str(e)
            logger.error(f"Backup verification FAILED for {record.id}: {e}")
            self._log(result, f"Verification failed: {e}")
            if self.notifier is not None:
                self.notifier.notify_failure(record.id, f"backup verification failed: {e}")
            return

        result.verified = True
        self._log(result, "Backup verified successfully")

    def cleanup(self, ctx: Optional[RunContext] = None) -> int:
        """
        Delete backups the retention policy no longer protects.

        Deletion is best effort: a file that cannot be deleted is logged and
        the remaining files and records are still processed. Data files go
        before the metadata record.

        Returns:
            Number of records whose files were all deleted

        Raises:
            StorageError: If storage cannot be listed
            CancelledError: If ctx is cancelled
        """
        ctx = ensure_context(ctx)
        logger.info("Running backup cleanup")

        records = self.list_backups(ctx)
        to_delete = self.rotator.determine_backups_to_delete(records)
        doomed_ids = {record.id for record in to_delete}

        deleted_count = 0
        for record in to_delete:
            ctx.check()
            logger.info(f"Deleting old backup {record.id} ({record.timestamp.isoformat()})")

            keys = [key for key in record.files if not is_metadata_key(key)]
            keys.append(record.metadata_key)

            complete = True
            for key in keys:
                try:
                    self.storage.delete(key, ctx)
                except CancelledError:
                    raise
                except Exception as e:
                    complete = False
                    logger.warning(f"Failed to delete {key} of backup {record.id}: {e}")

            if complete:
                deleted_count += 1
            else:
                logger.warning(f"Backup {record.id} only partially deleted")

        if self.metrics is not None:
            remaining = [r for r in records if r.id not in doomed_ids]
            self.metrics.set_storage_used(sum(r.artifact.compressed_size_bytes for r in remaining))

        logger.info(f"Cleanup completed: deleted {deleted_count} of {len(to_delete)} backups")
        return deleted_count

    def list_backups(self, ctx: Optional[RunContext] = None) -> List[BackupRecord]:
        """
        Read every metadata record in storage, newest first.

        Unreadable or corrupt metadata objects are logged and skipped.
        Artifacts without metadata are not listed.

        Raises:
            StorageError: If storage cannot be listed
        """
        ctx = ensure_context(ctx)
        records = []

        for info in self.storage.list('', ctx):
            if not is_metadata_key(info.key):
                continue

            try:
                records.append(BackupRecord.from_json(self.storage.read_bytes(info.key, ctx)))
            except CancelledError:
                raise
            except (StorageError, MetadataError) as e:
                logger.warning(f"Skipping metadata {info.key}: {e}")

        records.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
        return records

    def get_backup(self, backup_id: str, ctx: Optional[RunContext] = None) -> BackupRecord:
        """
        Load one record by id.

        Raises:
            BackupNotFound: If no metadata exists for the id
            MetadataError: If the metadata cannot be parsed
        """
        try:
            data = self.storage.read_bytes(metadata_key(backup_id), ctx)
        except NotFoundError:
            raise BackupNotFound(f"backup not found: {backup_id}", details={'backup_id': backup_id})
        return BackupRecord.from_json(data)

    def validate_backup(self, backup_id: str, ctx: Optional[RunContext] = None) -> ValidationResult:
        """Load a record and run the cheap integrity check against it."""
        return self.validator.validate(self.get_backup(backup_id, ctx), ctx)

    def _log(self, result: BackupResult, message: str):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        result.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{result.id}] {message}")
