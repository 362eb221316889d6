"""
Shared pytest fixtures for dbkeeper tests.

This module provides fixtures for:
- Flask app, test client and CLI runner wired to a SQLite source and local storage
- A real SQLite database to back up
- Local storage and a moto-backed S3 bucket
- A scriptable fake database driver for engine failure paths
- BackupRecord factories for retention and validation tests
"""

import os
import sqlite3
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from dbkeeper import create_app
from dbkeeper.backup.drivers import DatabaseDriver
from dbkeeper.backup.metadata import ArtifactInfo, BackupRecord, DatabaseInfo
from dbkeeper.backup.storage import LocalStorage


@pytest.fixture
def sqlite_db(tmp_path):
    """
    Create a small SQLite database to back up.

    Contains a `users` table with three rows.
    """
    path = tmp_path / 'source.db'
    connection = sqlite3.connect(path)
    connection.execute('CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL)')
    connection.executemany('INSERT INTO users (name) VALUES (?)', [('alice',), ('bob',), ('carol',)])
    connection.commit()
    connection.close()
    return str(path)


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / 'backups'
    path.mkdir()
    return str(path)


@pytest.fixture
def local_storage(storage_dir):
    return LocalStorage(storage_dir)


@pytest.fixture
def config_overrides(tmp_path, sqlite_db, storage_dir):
    """Configuration for an app backing up `sqlite_db` into `storage_dir`."""
    temp_dir = tmp_path / 'temp'
    return {
        'DBKEEPER_DB_TYPE': 'sqlite',
        'DBKEEPER_DB_PATH': sqlite_db,
        'DBKEEPER_DB_NAME': '',
        'DBKEEPER_STORAGE_BACKEND': 'local',
        'DBKEEPER_STORAGE_PATH': storage_dir,
        'DBKEEPER_COMPRESSION': 'gzip',
        'DBKEEPER_WEBHOOK_URL': '',
        'DBKEEPER_RETRY_ATTEMPTS': 1,
        'TEMP_DIR': str(temp_dir),
    }


@pytest.fixture(scope='function')
def app(config_overrides):
    """Flask app with test configuration and no scheduler thread."""
    app = create_app('testing', config_overrides=config_overrides, start_scheduler=False)
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('dbkeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.get_job.return_value = None

        yield scheduler_instance


class FakeDriver(DatabaseDriver):
    """
    Scriptable driver.

    Args:
        payload: Bytes written by dump()
        connect_errors: Exceptions raised by successive connect() calls
        version_error: Exception raised by version()
        dump_error: Exception raised by dump() after writing half the payload
    """

    type = 'postgres'
    file_extension = 'dump'
    method = 'pg_dump'
    format = 'custom'

    def __init__(self, payload=b'-- fake dump --\n' * 64, connect_errors=None, version_error=None,
                 dump_error=None):
        self.payload = payload
        self.connect_errors = list(connect_errors or [])
        self.version_error = version_error
        self.dump_error = dump_error
        self.connect_calls = 0
        self.closed = False
        self.restored = []

    def connect(self, ctx=None):
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    def version(self, ctx=None):
        if self.version_error is not None:
            raise self.version_error
        return '16.2'

    def dump(self, sink, ctx=None):
        if self.dump_error is not None:
            sink.write(self.payload[:len(self.payload) // 2])
            raise self.dump_error
        sink.write(self.payload)

    def restore(self, source_path, target=None, ctx=None):
        with open(source_path, 'rb') as f:
            self.restored.append((f.read(), target))

    def close(self):
        self.closed = True


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def make_record():
    """
    Factory for BackupRecords.

    Usage: make_record(datetime(2024, 1, 15, 2, 0), files=[...], compressed_size=...)
    """
    def _make(timestamp, files=None, compressed_size=0, checksum='', compression='gzip'):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        backup_id = timestamp.strftime('backup_%Y%m%d_%H%M%S')
        if files is None:
            files = [f"{backup_id}.dump.gz", f"{backup_id}.meta.json"]
        return BackupRecord(
            id=backup_id,
            timestamp=timestamp,
            source=DatabaseInfo(name='app', host='localhost', version='16.2'),
            artifact=ArtifactInfo(
                method='pg_dump',
                format='custom',
                compression=compression,
                size_bytes=compressed_size * 3,
                compressed_size_bytes=compressed_size,
                checksum=checksum
            ),
            files=list(files)
        )
    return _make


def sqlite_rows(path, query='SELECT name FROM users ORDER BY id'):
    """Read rows from a SQLite database file."""
    connection = sqlite3.connect(path)
    try:
        return [row[0] for row in connection.execute(query).fetchall()]
    finally:
        connection.close()
