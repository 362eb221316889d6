"""
Storage backends for backup artifacts and metadata.

Supports:
- LocalStorage: Files under a base directory
- S3Storage: Objects in an S3 (or S3-compatible) bucket

Both store opaque bytes at flat keys such as "backup_20240115_020000.dump.gz".
"""

import io
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from dbkeeper.exceptions import CancelledError, ConfigurationError, DbKeeperError
from .context import RunContext


logger = logging.getLogger(__name__)

# Streams larger than one chunk go through multipart upload
UPLOAD_CHUNK_SIZE = 10 * 1024 * 1024
COPY_CHUNK_SIZE = 1024 * 1024

_NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')


class StorageError(DbKeeperError):
    """Raised when a storage operation fails."""

    def __init__(self, op: str, key: str = '', cause: Optional[BaseException] = None, message: str = ''):
        self.op = op
        self.key = key
        self.cause = cause
        text = message or (str(cause) if cause is not None else 'failed')
        super().__init__(f"{op} {key}: {text}" if key else f"{op}: {text}")


class NotFoundError(StorageError):
    """Raised when the requested key does not exist."""

    def __init__(self, op: str, key: str = ''):
        super().__init__(op, key, message='not found')


@dataclass
class FileInfo:
    """One stored object as reported by list()."""

    key: str
    size: int
    modified: datetime


class StorageBackend(ABC):
    """
    Durable key/bytes store.

    Every method accepts an optional RunContext and checks it before doing
    I/O so a cancelled run stops promptly.
    """

    @abstractmethod
    def write(self, key: str, source: BinaryIO, ctx: Optional[RunContext] = None):
        """Store the remaining bytes of `source` at `key`, replacing any existing object."""

    @abstractmethod
    def read(self, key: str, ctx: Optional[RunContext] = None) -> BinaryIO:
        """Open `key` for reading. The caller closes the returned stream."""

    @abstractmethod
    def delete(self, key: str, ctx: Optional[RunContext] = None):
        """Remove `key`. Deleting a missing key is not an error."""

    @abstractmethod
    def list(self, prefix: str = '', ctx: Optional[RunContext] = None) -> List[FileInfo]:
        """List stored objects whose key starts with `prefix`, newest first."""

    @abstractmethod
    def exists(self, key: str, ctx: Optional[RunContext] = None) -> bool:
        """True if `key` is stored."""

    @abstractmethod
    def size(self, key: str, ctx: Optional[RunContext] = None) -> int:
        """Size of `key` in bytes. Raises NotFoundError if missing."""

    def write_bytes(self, key: str, data: bytes, ctx: Optional[RunContext] = None):
        self.write(key, io.BytesIO(data), ctx)

    def read_bytes(self, key: str, ctx: Optional[RunContext] = None) -> bytes:
        stream = self.read(key, ctx)
        try:
            return stream.read()
        finally:
            stream.close()

    @staticmethod
    def _check(ctx: Optional[RunContext]):
        if ctx is not None:
            ctx.check()


class LocalStorage(StorageBackend):
    """
    Stores objects as files under a base directory.

    Keys map directly to relative paths: {base_path}/{key}
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for stored backups (created if missing)
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError('init', str(self.base_path), e)

    def _full_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        base = self.base_path.resolve()
        if path != base and base not in path.parents:
            raise StorageError('resolve', key, message='key escapes storage directory')
        return path

    def write(self, key: str, source: BinaryIO, ctx: Optional[RunContext] = None):
        self._check(ctx)
        dest_path = self._full_path(key)
        temp_path = dest_path.with_name(dest_path.name + '.partial')

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with open(temp_path, 'wb') as out:
                while True:
                    self._check(ctx)
                    chunk = source.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)

            os.replace(temp_path, dest_path)

        except CancelledError:
            temp_path.unlink(missing_ok=True)
            raise
        except PermissionError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError('write', key, message=f"permission denied: {e}")
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError('write', key, e)

    def read(self, key: str, ctx: Optional[RunContext] = None) -> BinaryIO:
        self._check(ctx)
        try:
            return open(self._full_path(key), 'rb')
        except FileNotFoundError:
            raise NotFoundError('read', key)
        except OSError as e:
            raise StorageError('read', key, e)

    def delete(self, key: str, ctx: Optional[RunContext] = None):
        self._check(ctx)
        try:
            self._full_path(key).unlink(missing_ok=True)
        except PermissionError as e:
            raise StorageError('delete', key, message=f"permission denied: {e}")
        except OSError as e:
            raise StorageError('delete', key, e)

    def list(self, prefix: str = '', ctx: Optional[RunContext] = None) -> List[FileInfo]:
        self._check(ctx)
        files = []

        try:
            for file_path in self.base_path.rglob('*'):
                if not file_path.is_file() or file_path.name.endswith('.partial'):
                    continue

                key = file_path.relative_to(self.base_path).as_posix()
                if prefix and not key.startswith(prefix):
                    continue

                stat = file_path.stat()
                files.append(FileInfo(
                    key=key,
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                ))

        except OSError as e:
            raise StorageError('list', prefix, e)

        files.sort(key=lambda f: f.modified, reverse=True)
        return files

    def exists(self, key: str, ctx: Optional[RunContext] = None) -> bool:
        self._check(ctx)
        try:
            return self._full_path(key).is_file()
        except OSError as e:
            raise StorageError('exists', key, e)

    def size(self, key: str, ctx: Optional[RunContext] = None) -> int:
        self._check(ctx)
        try:
            return self._full_path(key).stat().st_size
        except FileNotFoundError:
            raise NotFoundError('size', key)
        except OSError as e:
            raise StorageError('size', key, e)

    def get_full_path(self, key: str) -> str:
        return str(self._full_path(key))


class S3Storage(StorageBackend):
    """
    Stores objects in an S3 bucket, optionally under a key prefix.

    Works with AWS and S3-compatible services (MinIO, R2, ...) through
    `endpoint`.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        use_ssl: bool = True,
        prefix: str = ''
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: Access key ID (None = default credential chain)
            secret_key: Secret access key
            endpoint: Custom endpoint host or URL for S3-compatible services
            use_ssl: Use https when `endpoint` has no scheme
            prefix: Key prefix prepended to every key
        """
        if not bucket_name:
            raise ConfigurationError("S3 bucket name is required")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/') + '/' if prefix.strip('/') else ''

        endpoint_url = None
        if endpoint:
            if '://' in endpoint:
                endpoint_url = endpoint
            else:
                endpoint_url = f"{'https' if use_ssl else 'http'}://{endpoint}"

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                use_ssl=use_ssl,
                config=BotoConfig(retries={'max_attempts': 1})
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError('init', bucket_name, message=f"failed to initialize S3 client: {e}")

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get('Error', {}).get('Code', 'Unknown'))

    def _client_error(self, op: str, key: str, error: ClientError) -> StorageError:
        code = self._error_code(error)
        if code in _NOT_FOUND_CODES:
            return NotFoundError(op, key)
        if code in ('403', 'AccessDenied'):
            return StorageError(op, key, message=f"access denied ({code})")
        return StorageError(op, key, message=f"S3 {op} failed ({code}): {error}")

    def write(self, key: str, source: BinaryIO, ctx: Optional[RunContext] = None):
        self._check(ctx)
        object_key = self._object_key(key)

        try:
            first_chunk = source.read(UPLOAD_CHUNK_SIZE)
            if len(first_chunk) < UPLOAD_CHUNK_SIZE:
                self.s3_client.put_object(Bucket=self.bucket_name, Key=object_key, Body=first_chunk)
            else:
                self._multipart_upload(object_key, first_chunk, source, ctx)

        except ClientError as e:
            raise self._client_error('write', key, e)
        except BotoCoreError as e:
            raise StorageError('write', key, e)

    def _multipart_upload(self, object_key: str, first_chunk: bytes, source: BinaryIO,
                          ctx: Optional[RunContext] = None):
        """
        Upload a large stream in UPLOAD_CHUNK_SIZE parts.

        The upload is aborted on any error, including cancellation, so no
        orphaned parts are left in the bucket.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=object_key)
        upload_id = response['UploadId']
        parts = []

        try:
            data = first_chunk
            part_number = 1

            while data:
                self._check(ctx)

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )
                parts.append({'PartNumber': part_number, 'ETag': response['ETag']})

                part_number += 1
                data = source.read(UPLOAD_CHUNK_SIZE)

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {object_key}: {abort_error}")
            raise

    def read(self, key: str, ctx: Optional[RunContext] = None) -> BinaryIO:
        self._check(ctx)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=self._object_key(key))
            return response['Body']
        except ClientError as e:
            raise self._client_error('read', key, e)
        except BotoCoreError as e:
            raise StorageError('read', key, e)

    def delete(self, key: str, ctx: Optional[RunContext] = None):
        self._check(ctx)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._object_key(key))
        except ClientError as e:
            error = self._client_error('delete', key, e)
            if not isinstance(error, NotFoundError):
                raise error
        except BotoCoreError as e:
            raise StorageError('delete', key, e)

    def list(self, prefix: str = '', ctx: Optional[RunContext] = None) -> List[FileInfo]:
        self._check(ctx)
        files = []

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self._object_key(prefix)):
                self._check(ctx)
                for obj in page.get('Contents', []):
                    files.append(FileInfo(
                        key=obj['Key'][len(self.prefix):],
                        size=obj['Size'],
                        modified=obj['LastModified']
                    ))

        except ClientError as e:
            raise self._client_error('list', prefix, e)
        except BotoCoreError as e:
            raise StorageError('list', prefix, e)

        files.sort(key=lambda f: f.modified, reverse=True)
        return files

    def exists(self, key: str, ctx: Optional[RunContext] = None) -> bool:
        try:
            self.size(key, ctx)
            return True
        except NotFoundError:
            return False

    def size(self, key: str, ctx: Optional[RunContext] = None) -> int:
        self._check(ctx)
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self._object_key(key))
            return int(response['ContentLength'])
        except ClientError as e:
            raise self._client_error('size', key, e)
        except BotoCoreError as e:
            raise StorageError('size', key, e)

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If the bucket is missing or not accessible
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            code = self._error_code(e)
            if code == '404':
                raise StorageError('connect', self.bucket_name, message='bucket does not exist')
            if code == '403':
                raise StorageError('connect', self.bucket_name, message='access denied')
            raise StorageError('connect', self.bucket_name, message=f"S3 connection test failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError('connect', self.bucket_name, e)


def create_storage(settings) -> StorageBackend:
    """
    Factory function to create the configured storage backend.

    Args:
        settings: StorageSettings instance

    Returns:
        LocalStorage or S3Storage instance

    Raises:
        ConfigurationError: If the backend name is unknown
    """
    if settings.backend == 'local':
        return LocalStorage(settings.path)
    elif settings.backend == 's3':
        s3 = settings.s3
        return S3Storage(
            bucket_name=s3.bucket,
            region=s3.region,
            access_key=s3.access_key or None,
            secret_key=s3.secret_key or None,
            endpoint=s3.endpoint or None,
            use_ssl=s3.use_ssl,
            prefix=s3.prefix
        )
    else:
        raise ConfigurationError(f"Invalid storage backend: {settings.backend}")


def copy_to_file(storage: StorageBackend, key: str, dest_path: str, ctx: Optional[RunContext] = None) -> str:
    """Download `key` to a local file."""
    stream = storage.read(key, ctx)
    try:
        with open(dest_path, 'wb') as out:
            while True:
                if ctx is not None:
                    ctx.check()
                chunk = stream.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
    finally:
        stream.close()
    return dest_path
