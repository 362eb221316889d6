"""
Unit tests for the backup engine (dbkeeper/backup/engine.py).

Tests the run pipeline with a scriptable driver and a real SQLite source,
failure reporting per stage, and retention cleanup against local storage.
"""

import hashlib
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeDriver, sqlite_rows
from dbkeeper.backup.context import RunContext
from dbkeeper.backup.engine import BackupEngine, EngineConfig, RunState
from dbkeeper.backup.retention import RetentionPolicy
from dbkeeper.backup.retry import RetryConfig
from dbkeeper.backup.storage import StorageError
from dbkeeper.config import DatabaseSettings, Settings
from dbkeeper.exceptions import BackupNotFound, ConfigurationError, IntegrityError


FAST_RETRY = RetryConfig(max_attempts=3, initial_wait=0.01, max_wait=0.02, multiplier=2.0)
NO_RETRY = RetryConfig(max_attempts=1, initial_wait=0.01)
KEEP_ALL = RetentionPolicy(keep_daily=100, keep_weekly=100, keep_monthly=100, max_age_days=0)


def make_engine(storage, driver, tmp_path, notifier=None, metrics=None, **overrides):
    options = {
        'database': DatabaseSettings(type='postgres', name='app'),
        'retention': KEEP_ALL,
        'compression': 'gzip',
        'retry': FAST_RETRY,
        'temp_dir': str(tmp_path),
    }
    options.update(overrides)
    return BackupEngine(
        EngineConfig(**options),
        storage,
        driver_factory=lambda settings: driver,
        notifier=notifier,
        metrics=metrics
    )


def store_record(storage, record, payload=b'archive-bytes'):
    """Write a record's data file and metadata into storage."""
    record.artifact.compressed_size_bytes = len(payload)
    if record.data_file:
        storage.write_bytes(record.data_file, payload)
    storage.write_bytes(record.metadata_key, record.to_json())


class TestEngineConfig:
    """Test building engine config from settings."""

    def test_from_settings(self):
        settings = Settings.from_mapping({
            'DBKEEPER_DB_TYPE': 'sqlite',
            'DBKEEPER_DB_PATH': '/data/app.db',
            'DBKEEPER_KEEP_DAILY': 3,
            'DBKEEPER_MAX_AGE_DAYS': 0,
            'DBKEEPER_COMPRESSION': 'none',
            'DBKEEPER_RETRY_ATTEMPTS': 5,
            'TEMP_DIR': '/scratch',
        })

        config = EngineConfig.from_settings(settings)

        assert config.database.path == '/data/app.db'
        assert config.retention.keep_daily == 3
        assert config.retention.max_age_days == 0
        assert config.compression == 'none'
        assert config.retry.max_attempts == 5
        assert config.temp_dir == '/scratch'

    def test_unsupported_compression_rejected(self, local_storage, fake_driver, tmp_path):
        with pytest.raises(ConfigurationError, match='unsupported compression'):
            make_engine(local_storage, fake_driver, tmp_path, compression='zstd')


class TestBackupRun:
    """Test successful runs."""

    def test_successful_run_stores_artifact_and_metadata(self, local_storage, fake_driver, tmp_path):
        notifier = MagicMock()
        metrics = MagicMock()
        engine = make_engine(local_storage, fake_driver, tmp_path, notifier=notifier, metrics=metrics)

        result = engine.run()

        assert result.success
        assert result.state == RunState.DONE
        assert result.failed_stage is None
        assert result.storage_key == f"{result.id}.dump.gz"
        assert result.size == len(fake_driver.payload)
        assert 0 < result.compressed_size < result.size

        stored = local_storage.read_bytes(result.storage_key)
        assert len(stored) == result.compressed_size
        assert result.checksum == 'sha256:' + hashlib.sha256(stored).hexdigest()

        record = engine.get_backup(result.id)
        assert record.files == [result.storage_key, f"{result.id}.meta.json"]
        assert record.source.name == 'app'
        assert record.source.version == '16.2'
        assert record.artifact.method == 'pg_dump'
        assert record.artifact.compression == 'gzip'
        assert record.artifact.checksum == result.checksum
        assert record.retention.policy == record.tier

        assert fake_driver.closed
        assert engine.last_run == result.timestamp
        assert engine.last_error is None
        metrics.record_success.assert_called_once()
        notifier.notify_success.assert_called_once_with(result.id, result.size, result.duration)

    def test_run_without_compression(self, local_storage, fake_driver, tmp_path):
        engine = make_engine(local_storage, fake_driver, tmp_path, compression='none')

        result = engine.run()

        assert result.success
        assert result.storage_key == f"{result.id}.dump"
        assert result.compressed_size == result.size
        assert local_storage.read_bytes(result.storage_key) == fake_driver.payload

    def test_logs_are_timestamped(self, local_storage, fake_driver, tmp_path):
        result = make_engine(local_storage, fake_driver, tmp_path).run()

        assert result.logs
        assert all(line.startswith('[') and ' UTC] ' in line for line in result.logs)

    def test_temp_files_removed(self, local_storage, fake_driver, tmp_path):
        work = tmp_path / 'work'
        work.mkdir()

        make_engine(local_storage, fake_driver, tmp_path, temp_dir=str(work)).run()

        assert os.listdir(work) == []

    def test_temp_files_removed_after_dump_failure(self, local_storage, tmp_path):
        work = tmp_path / 'work'
        work.mkdir()
        driver = FakeDriver(dump_error=RuntimeError('pg_dump failed (exit 1)'))

        result = make_engine(local_storage, driver, tmp_path, temp_dir=str(work)).run()

        assert result.failed_stage == RunState.DUMPING
        assert os.listdir(work) == []

    def test_temp_files_removed_after_upload_failure(self, local_storage, fake_driver, tmp_path):
        work = tmp_path / 'work'
        work.mkdir()
        engine = make_engine(local_storage, fake_driver, tmp_path, temp_dir=str(work), retry=NO_RETRY)

        with patch.object(local_storage, 'write', side_effect=StorageError('write', 'k', message='disk full')):
            result = engine.run()

        assert result.failed_stage == RunState.PERSISTING
        assert os.listdir(work) == []

    def test_checksum_failure_is_not_fatal(self, local_storage, fake_driver, tmp_path):
        """Test a run whose checksum cannot be computed still stores an unverifiable backup."""
        engine = make_engine(local_storage, fake_driver, tmp_path)

        with patch('dbkeeper.backup.engine.calculate_checksum', side_effect=OSError('read error')):
            result = engine.run()

        assert result.success
        assert result.checksum == ''
        assert any('checksum unavailable: read error' in line for line in result.logs)
        assert engine.get_backup(result.id).artifact.checksum == ''

        validation = engine.validate_backup(result.id)
        assert validation.valid
        assert validation.checksum_ok

    def test_transient_connect_error_is_retried(self, local_storage, tmp_path):
        driver = FakeDriver(connect_errors=[RuntimeError('connection refused')])

        result = make_engine(local_storage, driver, tmp_path).run()

        assert result.success
        assert driver.connect_calls == 2

    def test_version_failure_is_not_fatal(self, local_storage, tmp_path):
        driver = FakeDriver(version_error=RuntimeError('permission denied for function version'))
        engine = make_engine(local_storage, driver, tmp_path)

        result = engine.run()

        assert result.success
        assert engine.get_backup(result.id).source.version == 'unknown'

    def test_metadata_write_failure_is_not_fatal(self, local_storage, fake_driver, tmp_path):
        """Test an artifact with no metadata still counts as a successful run."""
        engine = make_engine(local_storage, fake_driver, tmp_path, retry=NO_RETRY)

        with patch.object(local_storage, 'write_bytes', side_effect=StorageError('write', 'x', message='disk full')):
            result = engine.run()

        assert result.success
        assert local_storage.exists(result.storage_key)
        assert not local_storage.exists(f"{result.id}.meta.json")
        assert any('failed to write metadata' in line for line in result.logs)

    def test_sqlite_backup_with_restore_verification(self, local_storage, sqlite_db, tmp_path):
        """Test a real SQLite dump round-trips through storage and verifies."""
        settings = DatabaseSettings(type='sqlite', path=sqlite_db)
        engine = BackupEngine(
            EngineConfig(database=settings, retention=KEEP_ALL, verify_after_backup=True,
                         retry=FAST_RETRY, temp_dir=str(tmp_path)),
            local_storage
        )

        result = engine.run()

        assert result.success
        assert result.verified is True
        assert result.verify_error is None
        assert result.storage_key.endswith('.sql.gz')

        record = engine.get_backup(result.id)
        assert record.artifact.method == 'sqlite'
        assert record.source.host == 'local'
        assert engine.validate_backup(result.id).valid

    def test_verification_failure_keeps_backup(self, local_storage, sqlite_db, tmp_path):
        notifier = MagicMock()
        engine = BackupEngine(
            EngineConfig(database=DatabaseSettings(type='sqlite', path=sqlite_db), retention=KEEP_ALL,
                         verify_after_backup=True, retry=FAST_RETRY, temp_dir=str(tmp_path)),
            local_storage,
            notifier=notifier
        )

        with patch.object(engine.validator, 'verify_restore_integrity',
                          side_effect=IntegrityError('integrity check failed: corrupt')):
            result = engine.run()

        assert result.state == RunState.DONE
        assert result.verified is False
        assert 'integrity check failed' in result.verify_error
        assert local_storage.exists(result.storage_key)
        notifier.notify_failure.assert_called_once()
        assert 'backup verification failed' in notifier.notify_failure.call_args.args[1]


class TestBackupRunFailures:
    """Test failure reporting per stage."""

    def test_authentication_failure_at_connect(self, local_storage, tmp_path):
        driver = FakeDriver(connect_errors=[RuntimeError('password authentication failed')] * 3)
        notifier = MagicMock()
        metrics = MagicMock()
        engine = make_engine(local_storage, driver, tmp_path, notifier=notifier, metrics=metrics)

        result = engine.run()

        assert not result.success
        assert result.state == RunState.FAILED
        assert result.failed_stage == RunState.CONNECTING
        assert result.error.startswith('connecting failed:')
        assert driver.connect_calls == 1
        assert local_storage.list() == []
        assert engine.last_error == result.error
        assert engine.last_run is None
        metrics.record_failure.assert_called_once()
        notifier.notify_failure.assert_called_once_with(result.id, result.error)

    def test_dump_failure_reports_partial_size(self, local_storage, tmp_path):
        driver = FakeDriver(dump_error=RuntimeError('pg_dump failed (exit 1)'))

        result = make_engine(local_storage, driver, tmp_path).run()

        assert result.failed_stage == RunState.DUMPING
        assert result.size == len(driver.payload) // 2
        assert result.compressed_size == 0
        assert driver.closed
        assert local_storage.list() == []

    def test_upload_failure(self, local_storage, fake_driver, tmp_path):
        engine = make_engine(local_storage, fake_driver, tmp_path, retry=NO_RETRY)

        with patch.object(local_storage, 'write', side_effect=StorageError('write', 'k', message='quota exceeded')):
            result = engine.run()

        assert result.failed_stage == RunState.PERSISTING
        assert 'quota exceeded' in result.error
        assert result.compressed_size > 0
        assert result.checksum.startswith('sha256:')

    def test_cancelled_context(self, local_storage, fake_driver, tmp_path):
        ctx = RunContext()
        ctx.cancel()

        result = make_engine(local_storage, fake_driver, tmp_path).run(ctx)

        assert result.state == RunState.FAILED
        assert result.failed_stage == RunState.CONNECTING
        assert 'cancelled' in result.error
        assert fake_driver.connect_calls == 0

    def test_success_clears_last_error(self, local_storage, tmp_path):
        driver = FakeDriver(dump_error=RuntimeError('disk full'))
        engine = make_engine(local_storage, driver, tmp_path)
        engine.run()
        assert engine.last_error is not None

        driver.dump_error = None
        result = engine.run()

        assert result.success
        assert engine.last_error is None


class TestListAndGet:
    """Test reading records back."""

    def test_list_newest_first_skipping_corrupt_metadata(self, local_storage, fake_driver, make_record, tmp_path):
        older = make_record(datetime(2024, 1, 10, 2))
        newer = make_record(datetime(2024, 1, 12, 2))
        store_record(local_storage, older)
        store_record(local_storage, newer)
        local_storage.write_bytes('backup_broken.meta.json', b'{not json')
        local_storage.write_bytes('orphan.dump.gz', b'no metadata')

        records = make_engine(local_storage, fake_driver, tmp_path).list_backups()

        assert [r.id for r in records] == [newer.id, older.id]

    def test_get_backup_not_found(self, local_storage, fake_driver, tmp_path):
        with pytest.raises(BackupNotFound):
            make_engine(local_storage, fake_driver, tmp_path).get_backup('backup_19990101_000000')

    def test_validate_backup_detects_tampering(self, local_storage, fake_driver, tmp_path):
        engine = make_engine(local_storage, fake_driver, tmp_path)
        result = engine.run()
        data = bytearray(local_storage.read_bytes(result.storage_key))
        data[len(data) // 2] ^= 0xFF
        local_storage.write_bytes(result.storage_key, bytes(data))

        validation = engine.validate_backup(result.id)

        assert validation.valid is False
        assert validation.size_match is True
        assert validation.checksum_ok is False


class TestCleanup:
    """Test retention cleanup."""

    def test_cleanup_deletes_unprotected_records(self, local_storage, fake_driver, make_record, tmp_path):
        metrics = MagicMock()
        records = [make_record(datetime(2024, 1, day, 2)) for day in (8, 9, 10, 11)]
        for record in records:
            store_record(local_storage, record)
        policy = RetentionPolicy(keep_daily=2, keep_weekly=0, keep_monthly=0, max_age_days=0)
        engine = make_engine(local_storage, fake_driver, tmp_path, retention=policy, metrics=metrics)

        deleted = engine.cleanup()

        assert deleted == 2
        assert [r.id for r in engine.list_backups()] == [records[3].id, records[2].id]
        for record in records[:2]:
            assert not local_storage.exists(record.data_file)
            assert not local_storage.exists(record.metadata_key)
        metrics.set_storage_used.assert_called_once_with(2 * len(b'archive-bytes'))

    def test_cleanup_nothing_to_delete(self, local_storage, fake_driver, make_record, tmp_path):
        store_record(local_storage, make_record(datetime(2024, 1, 8, 2)))

        assert make_engine(local_storage, fake_driver, tmp_path).cleanup() == 0

    def test_cleanup_removes_metadata_not_listed_in_files(self, local_storage, fake_driver, make_record, tmp_path):
        """Test records written without their metadata key in files are still fully removed."""
        record = make_record(datetime(2024, 1, 8, 2), files=['backup_20240108_020000.dump.gz'])
        store_record(local_storage, record)
        policy = RetentionPolicy(keep_daily=0, keep_weekly=0, keep_monthly=0, max_age_days=0)

        deleted = make_engine(local_storage, fake_driver, tmp_path, retention=policy).cleanup()

        assert deleted == 1
        assert local_storage.list() == []

    def test_partial_delete_failure_continues(self, local_storage, fake_driver, make_record, tmp_path):
        first = make_record(datetime(2024, 1, 8, 2))
        second = make_record(datetime(2024, 1, 9, 2))
        store_record(local_storage, first)
        store_record(local_storage, second)
        policy = RetentionPolicy(keep_daily=0, keep_weekly=0, keep_monthly=0, max_age_days=0)
        engine = make_engine(local_storage, fake_driver, tmp_path, retention=policy)
        real_delete = local_storage.delete

        def flaky_delete(key, ctx=None):
            if key == first.data_file:
                raise StorageError('delete', key, message='permission denied')
            real_delete(key, ctx)

        with patch.object(local_storage, 'delete', side_effect=flaky_delete):
            deleted = engine.cleanup()

        assert deleted == 1
        assert local_storage.exists(first.data_file)
        assert not local_storage.exists(first.metadata_key)
        assert not local_storage.exists(second.metadata_key)

    def test_cleanup_list_failure_propagates(self, local_storage, fake_driver, tmp_path):
        engine = make_engine(local_storage, fake_driver, tmp_path)

        with patch.object(local_storage, 'list', side_effect=StorageError('list', message='unreachable')):
            with pytest.raises(StorageError):
                engine.cleanup()

    def test_backup_then_restore_sqlite_rows(self, local_storage, sqlite_db, tmp_path):
        """Test the stored SQL dump restores the original rows."""
        from dbkeeper.backup.compression import decompress_file
        from dbkeeper.backup.drivers import load_sql_script

        engine = BackupEngine(
            EngineConfig(database=DatabaseSettings(type='sqlite', path=sqlite_db), retention=KEEP_ALL,
                         retry=FAST_RETRY, temp_dir=str(tmp_path)),
            local_storage
        )
        result = engine.run()

        archive = local_storage.get_full_path(result.storage_key)
        script = decompress_file(archive, str(tmp_path / 'restored.sql'))
        load_sql_script(script, str(tmp_path / 'restored.db'))

        assert sqlite_rows(str(tmp_path / 'restored.db')) == ['alice', 'bob', 'carol']
