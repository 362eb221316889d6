"""
Restore a stored backup into a database.

Workflow:
1. Load the backup's metadata and find its data artifact
2. Stop here for a dry run
3. Download the artifact to a temporary directory
4. Verify its checksum (if requested)
5. Decompress (if .gz)
6. Hand the dump to the database driver's restore
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from dbkeeper.config import DatabaseSettings
from dbkeeper.exceptions import BackupNotFound, CancelledError, DbKeeperError, IntegrityError, RestoreError
from .compression import decompress_file, is_compressed
from .context import RunContext, ensure_context
from .drivers import DatabaseDriver, create_driver
from .metadata import BackupRecord, calculate_checksum, checksums_match, metadata_key
from .storage import NotFoundError, StorageBackend, copy_to_file


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestoreOptions:
    backup_id: str
    target_db: Optional[str] = None
    dry_run: bool = False
    verify_checksum: bool = False


@dataclass
class RestoreResult:
    backup_id: str
    target_db: Optional[str] = None
    success: bool = False
    checksum_valid: bool = False
    source_file: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backup_id': self.backup_id,
            'target_db': self.target_db,
            'success': self.success,
            'checksum_valid': self.checksum_valid,
            'source_file': self.source_file,
            'error': self.error,
        }


class RestoreEngine:
    """
    Restores backups from storage using the configured database driver.

    Args:
        database: Settings of the database to restore into
        storage: Backend holding the backups
        driver_factory: Callable building a driver from DatabaseSettings
        verify_checksum: Always verify checksums, regardless of options
        temp_dir: Parent directory for temporary files
    """

    def __init__(
        self,
        database: DatabaseSettings,
        storage: StorageBackend,
        driver_factory: Callable[[DatabaseSettings], DatabaseDriver] = create_driver,
        verify_checksum: bool = False,
        temp_dir: Optional[str] = None
    ):
        self.database = database
        self.storage = storage
        self.driver_factory = driver_factory
        self.verify_checksum = verify_checksum
        self.temp_dir = temp_dir

    def restore(self, options: RestoreOptions, ctx: Optional[RunContext] = None) -> RestoreResult:
        """
        Restore one backup.

        Failures after the backup has been located are reported in the
        result rather than raised.

        Raises:
            BackupNotFound: If no metadata exists for options.backup_id
            CancelledError: If ctx is cancelled
        """
        ctx = ensure_context(ctx)
        result = RestoreResult(backup_id=options.backup_id, target_db=options.target_db)
        logger.info(f"Starting restore of {options.backup_id} (target: {options.target_db or 'default'})")

        record = self._load_record(options.backup_id, ctx)

        try:
            result.source_file = record.data_file
            if result.source_file is None:
                raise RestoreError("no backup file found in metadata")

            result.target_db = self._resolve_target(options.target_db, record)

            if options.dry_run:
                logger.info(f"Dry run: would restore {result.source_file} into {result.target_db}")
                result.success = True
                return result

            with tempfile.TemporaryDirectory(prefix='dbkeeper-restore-', dir=self.temp_dir) as temp_dir:
                self._restore_file(record, result, options, temp_dir, ctx)

        except CancelledError:
            raise
        except (DbKeeperError, OSError) as e:
            result.error = str(e)
            logger.error(f"Restore of {options.backup_id} failed: {e}")
            return result

        result.success = True
        logger.info(f"Restore completed: {options.backup_id} -> {result.target_db}")
        return result

    def _load_record(self, backup_id: str, ctx: RunContext) -> BackupRecord:
        try:
            data = self.storage.read_bytes(metadata_key(backup_id), ctx)
        except NotFoundError:
            raise BackupNotFound(f"backup not found: {backup_id}", details={'backup_id': backup_id})
        return BackupRecord.from_json(data)

    def _resolve_target(self, target: Optional[str], record: BackupRecord) -> str:
        if target:
            return target
        if self.database.is_sqlite:
            return self.database.path or self.database.name
        return record.source.name or self.database.display_name

    def _restore_file(self, record: BackupRecord, result: RestoreResult, options: RestoreOptions,
                      temp_dir: str, ctx: RunContext):
        data_file = result.source_file
        local_path = copy_to_file(
            self.storage, data_file, os.path.join(temp_dir, os.path.basename(data_file)), ctx
        )

        if options.verify_checksum or self.verify_checksum:
            self._verify_checksum(record, result, local_path, ctx)

        if is_compressed(local_path):
            compressed_path = local_path
            local_path = decompress_file(compressed_path, compressed_path[:-len('.gz')], ctx)
            os.remove(compressed_path)

        driver = self.driver_factory(self.database)
        with driver:
            try:
                driver.restore(local_path, result.target_db, ctx)
            except CancelledError:
                raise
            except DbKeeperError as e:
                raise RestoreError(f"{driver.type} restore failed: {e}")

    def _verify_checksum(self, record: BackupRecord, result: RestoreResult, path: str, ctx: RunContext):
        expected = record.artifact.checksum
        if not expected:
            logger.warning(f"No checksum recorded for {record.id}, skipping verification")
            return

        actual = calculate_checksum(path, ctx)
        if not checksums_match(expected, actual):
            logger.error(f"CRITICAL: checksum verification failed for {record.id}")
            raise IntegrityError(
                f"checksum mismatch: expected {expected}, got {actual} - backup may be corrupted",
                details={'backup_id': record.id}
            )

        result.checksum_valid = True
        logger.info(f"Checksum verified for {record.id}")
