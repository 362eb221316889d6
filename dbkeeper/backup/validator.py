"""
Integrity checks for stored backups.

validate() is the cheap check: the artifact exists, has the recorded size
and (when a checksum was recorded) hashes to the recorded checksum. All
checks run and all findings are reported together.

verify_restore_integrity() is the strong check: the artifact is loaded
into a throwaway database (SQLite) or parsed by pg_restore (PostgreSQL).
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dbkeeper.config import POSTGRES_TYPES, SQLITE_TYPES
from dbkeeper.exceptions import CancelledError, IntegrityError
from .compression import decompress_file, is_compressed
from .context import RunContext, ensure_context
from .drivers import load_sql_script, pg_restore_list, sqlite_integrity_check
from .metadata import BackupRecord, checksum_stream, checksums_match
from .storage import StorageBackend, copy_to_file


logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Findings of one validate() call. `valid` is the conjunction of all checks run."""

    backup_id: str
    valid: bool = True
    file_exists: bool = False
    size_match: bool = False
    checksum_ok: bool = False
    errors: List[str] = field(default_factory=list)

    def fail(self, message: str):
        self.valid = False
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backup_id': self.backup_id,
            'valid': self.valid,
            'file_exists': self.file_exists,
            'size_match': self.size_match,
            'checksum_ok': self.checksum_ok,
            'errors': list(self.errors),
        }


class BackupValidator:
    """
    Checks stored backups against their metadata.

    Args:
        storage: Backend holding the artifacts
        db_type: Database type the artifacts were dumped from
    """

    def __init__(self, storage: StorageBackend, db_type: str = 'postgres'):
        self.storage = storage
        self.db_type = (db_type or 'postgres').lower()

    def validate(self, record: BackupRecord, ctx: Optional[RunContext] = None) -> ValidationResult:
        """
        Check existence, size and checksum of a backup's data artifact.

        A record with no data file fails without touching storage. A missing
        artifact stops further checks; otherwise size and checksum are both
        checked and both reported.

        Raises:
            StorageError: If storage cannot be queried (as opposed to a
                finding about the artifact itself)
        """
        ctx = ensure_context(ctx)
        result = ValidationResult(backup_id=record.id)

        if not record.files:
            result.fail("no files listed in metadata")
            return result

        data_file = record.data_file
        if data_file is None:
            result.fail("backup file not found in metadata")
            return result

        result.file_exists = self.storage.exists(data_file, ctx)
        if not result.file_exists:
            result.fail(f"backup file does not exist: {data_file}")
            return result

        expected_size = record.artifact.compressed_size_bytes
        actual_size = self.storage.size(data_file, ctx)
        result.size_match = actual_size == expected_size
        if not result.size_match:
            result.fail(f"size mismatch: expected {expected_size}, got {actual_size}")

        if record.artifact.checksum:
            stream = self.storage.read(data_file, ctx)
            try:
                actual_checksum = checksum_stream(stream, ctx)
            finally:
                stream.close()

            result.checksum_ok = checksums_match(record.artifact.checksum, actual_checksum)
            if not result.checksum_ok:
                result.fail(
                    f"checksum mismatch: expected {record.artifact.checksum}, got {actual_checksum}"
                )
        else:
            result.checksum_ok = True

        if result.valid:
            logger.debug(f"Backup {record.id} passed validation")
        else:
            logger.warning(f"Backup {record.id} failed validation: {'; '.join(result.errors)}")

        return result

    def verify_restore_integrity(self, record: BackupRecord, ctx: Optional[RunContext] = None):
        """
        Prove the backup is usable by loading it into a disposable database.

        SQLite dumps are replayed into a temporary database file followed by
        PRAGMA integrity_check. PostgreSQL archives are read with
        `pg_restore --list`.

        Raises:
            IntegrityError: On any failure while fetching, decompressing,
                loading or checking the artifact
            CancelledError: If ctx is cancelled
        """
        ctx = ensure_context(ctx)
        data_file = record.data_file
        if data_file is None:
            raise IntegrityError("no backup file found in metadata", details={'backup_id': record.id})

        with tempfile.TemporaryDirectory(prefix='dbkeeper-verify-') as temp_dir:
            stage = 'download'
            try:
                local_path = copy_to_file(
                    self.storage, data_file, os.path.join(temp_dir, os.path.basename(data_file)), ctx
                )

                if is_compressed(data_file):
                    stage = 'decompress'
                    local_path = decompress_file(local_path, local_path[:-len('.gz')], ctx)

                stage = 'load'
                if self.db_type in SQLITE_TYPES:
                    self._verify_sqlite(local_path, temp_dir, ctx)
                elif self.db_type in POSTGRES_TYPES:
                    self._verify_postgres(local_path, ctx)
                else:
                    raise IntegrityError(f"unsupported database type: {self.db_type}")

            except CancelledError:
                raise
            except IntegrityError as e:
                e.details.setdefault('backup_id', record.id)
                raise
            except Exception as e:
                raise IntegrityError(
                    f"restore verification failed during {stage}: {e}",
                    details={'backup_id': record.id}
                )

        logger.info(f"Backup {record.id} verified by restore")

    def _verify_sqlite(self, script_path: str, temp_dir: str, ctx: RunContext):
        database_path = os.path.join(temp_dir, 'verify.db')
        ctx.check()
        load_sql_script(script_path, database_path)

        ctx.check()
        outcome = sqlite_integrity_check(database_path)
        if outcome != 'ok':
            raise IntegrityError(f"integrity check failed: {outcome}")

    def _verify_postgres(self, archive_path: str, ctx: RunContext):
        listing = pg_restore_list(archive_path, ctx)
        if not listing.strip():
            raise IntegrityError("backup appears to be empty")
        logger.debug(f"pg_restore listed {listing.count(chr(10))} archive entries")
