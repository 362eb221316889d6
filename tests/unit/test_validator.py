"""
Unit tests for backup validation (dbkeeper/backup/validator.py).
"""

import gzip
import hashlib
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from dbkeeper.backup.validator import BackupValidator
from dbkeeper.backup.storage import StorageError
from dbkeeper.exceptions import IntegrityError


PAYLOAD = b'backup archive contents' * 40


def stored_record(storage, make_record, payload=PAYLOAD, checksum=None):
    if checksum is None:
        checksum = 'sha256:' + hashlib.sha256(payload).hexdigest()
    record = make_record(datetime(2024, 1, 15, 2), compressed_size=len(payload), checksum=checksum)
    storage.write_bytes(record.data_file, payload)
    return record


class TestValidate:
    """Test the cheap existence/size/checksum check."""

    def test_intact_backup_is_valid(self, local_storage, make_record):
        record = stored_record(local_storage, make_record)

        result = BackupValidator(local_storage).validate(record)

        assert result.valid
        assert result.file_exists and result.size_match and result.checksum_ok
        assert result.errors == []

    def test_flipped_byte_fails_checksum_only(self, local_storage, make_record):
        record = stored_record(local_storage, make_record)
        data = bytearray(PAYLOAD)
        data[5] ^= 0x01
        local_storage.write_bytes(record.data_file, bytes(data))

        result = BackupValidator(local_storage).validate(record)

        assert result.valid is False
        assert result.size_match is True
        assert result.checksum_ok is False
        assert len(result.errors) == 1
        assert result.errors[0].startswith('checksum mismatch')

    def test_size_and_checksum_both_reported(self, local_storage, make_record):
        record = stored_record(local_storage, make_record)
        local_storage.write_bytes(record.data_file, PAYLOAD + b'extra')

        result = BackupValidator(local_storage).validate(record)

        assert result.valid is False
        assert len(result.errors) == 2
        assert result.errors[0].startswith('size mismatch')

    def test_missing_artifact(self, local_storage, make_record):
        record = make_record(datetime(2024, 1, 15, 2), compressed_size=10)

        result = BackupValidator(local_storage).validate(record)

        assert result.valid is False
        assert result.file_exists is False
        assert 'does not exist' in result.errors[0]

    def test_empty_files_fails_without_storage_io(self, make_record):
        storage = MagicMock()
        record = make_record(datetime(2024, 1, 15, 2), files=[])

        result = BackupValidator(storage).validate(record)

        assert result.valid is False
        assert result.errors == ['no files listed in metadata']
        assert storage.method_calls == []

    def test_metadata_only_files(self, make_record):
        storage = MagicMock()
        record = make_record(datetime(2024, 1, 15, 2), files=['backup_20240115_020000.meta.json'])

        result = BackupValidator(storage).validate(record)

        assert result.valid is False
        assert storage.method_calls == []

    def test_no_recorded_checksum_passes_checksum_check(self, local_storage, make_record):
        record = stored_record(local_storage, make_record, checksum='')

        result = BackupValidator(local_storage).validate(record)

        assert result.valid
        assert result.checksum_ok is True

    def test_storage_failure_propagates(self, make_record):
        storage = MagicMock()
        storage.exists.side_effect = StorageError('exists', 'k', message='connection reset')

        with pytest.raises(StorageError):
            BackupValidator(storage).validate(make_record(datetime(2024, 1, 15, 2)))

    def test_to_dict(self, local_storage, make_record):
        record = stored_record(local_storage, make_record)

        data = BackupValidator(local_storage).validate(record).to_dict()

        assert data == {
            'backup_id': record.id,
            'valid': True,
            'file_exists': True,
            'size_match': True,
            'checksum_ok': True,
            'errors': [],
        }


class TestVerifyRestoreIntegrity:
    """Test restore-based verification."""

    def test_valid_sqlite_dump(self, local_storage, make_record):
        script = b"CREATE TABLE t (x INTEGER);\nINSERT INTO t VALUES (1);\n"
        record = make_record(datetime(2024, 1, 15, 2), files=['backup_20240115_020000.sql.gz'])
        local_storage.write_bytes(record.data_file, gzip.compress(script))

        BackupValidator(local_storage, 'sqlite').verify_restore_integrity(record)

    def test_invalid_sqlite_dump(self, local_storage, make_record):
        record = make_record(datetime(2024, 1, 15, 2), files=['backup_20240115_020000.sql'])
        local_storage.write_bytes(record.data_file, b'NOT SQL AT ALL;')

        with pytest.raises(IntegrityError, match='during load') as exc_info:
            BackupValidator(local_storage, 'sqlite').verify_restore_integrity(record)

        assert exc_info.value.details['backup_id'] == record.id

    def test_corrupt_gzip(self, local_storage, make_record):
        record = make_record(datetime(2024, 1, 15, 2), files=['backup_20240115_020000.sql.gz'])
        local_storage.write_bytes(record.data_file, b'not gzip')

        with pytest.raises(IntegrityError, match='during decompress'):
            BackupValidator(local_storage, 'sqlite').verify_restore_integrity(record)

    def test_missing_artifact(self, local_storage, make_record):
        record = make_record(datetime(2024, 1, 15, 2))

        with pytest.raises(IntegrityError, match='during download'):
            BackupValidator(local_storage, 'sqlite').verify_restore_integrity(record)

    @patch('dbkeeper.backup.validator.pg_restore_list')
    def test_postgres_archive_listing(self, mock_list, local_storage, make_record):
        mock_list.return_value = ';\n; Archive created at 2024-01-15\n3; 2615 2200 SCHEMA - public\n'
        record = make_record(datetime(2024, 1, 15, 2))
        local_storage.write_bytes(record.data_file, gzip.compress(b'PGDMP archive'))

        BackupValidator(local_storage, 'postgres').verify_restore_integrity(record)

        assert mock_list.call_args.args[0].endswith('backup_20240115_020000.dump')

    @patch('dbkeeper.backup.validator.pg_restore_list')
    def test_postgres_empty_listing(self, mock_list, local_storage, make_record):
        mock_list.return_value = '   '
        record = make_record(datetime(2024, 1, 15, 2))
        local_storage.write_bytes(record.data_file, gzip.compress(b'PGDMP'))

        with pytest.raises(IntegrityError, match='empty'):
            BackupValidator(local_storage, 'postgres').verify_restore_integrity(record)
