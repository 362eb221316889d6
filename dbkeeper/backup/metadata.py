"""
Backup metadata model.

Each backup run persists two objects keyed by its id:
- <id>.<ext>[.gz]   canonical data artifact
- <id>.meta.json    this record, serialized as JSON

The JSON layout (field names, RFC 3339 timestamps, "sha256:<hex>"
checksums) is shared with other tools reading the same storage and must
not change.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dbkeeper.exceptions import DbKeeperError
from .context import RunContext


METADATA_SUFFIX = '.meta.json'
CHECKSUM_PREFIX = 'sha256:'
CHUNK_SIZE = 1024 * 1024

_FRACTION_RE = re.compile(r'\.(\d+)')


class MetadataError(DbKeeperError):
    """Raised when a metadata document cannot be parsed."""
    pass


def generate_backup_id(timestamp: datetime) -> str:
    """
    Build the backup id for a run started at `timestamp`.

    Format: backup_YYYYMMDD_HHMMSS (UTC)
    """
    return as_utc(timestamp).strftime('backup_%Y%m%d_%H%M%S')


def metadata_key(backup_id: str) -> str:
    return f"{backup_id}{METADATA_SUFFIX}"


def is_metadata_key(key: str) -> bool:
    return key.endswith(METADATA_SUFFIX)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC 3339 with a trailing Z."""
    return as_utc(value).isoformat().replace('+00:00', 'Z')


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp.

    Accepts a trailing Z and fractional seconds of any precision (other
    writers emit nanoseconds); the fraction is truncated to microseconds.
    """
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    text = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    return as_utc(datetime.fromisoformat(text))


def calculate_checksum(path: str, ctx: Optional[RunContext] = None) -> str:
    """
    SHA-256 of a local file.

    Returns:
        Checksum string in the form "sha256:<hex>"
    """
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            if ctx is not None:
                ctx.check()
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return CHECKSUM_PREFIX + digest.hexdigest()


def checksum_stream(stream, ctx: Optional[RunContext] = None) -> str:
    """SHA-256 of a readable binary stream, as "sha256:<hex>"."""
    digest = hashlib.sha256()
    while True:
        if ctx is not None:
            ctx.check()
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        digest.update(chunk)
    return CHECKSUM_PREFIX + digest.hexdigest()


def checksums_match(expected: str, actual: str) -> bool:
    """Compare checksums, tolerating a missing "sha256:" prefix on either side."""
    def normalize(value: str) -> str:
        value = value.strip().lower()
        if value.startswith(CHECKSUM_PREFIX):
            value = value[len(CHECKSUM_PREFIX):]
        return value

    return normalize(expected) == normalize(actual)


@dataclass
class DatabaseInfo:
    """The database that was dumped."""

    name: str = ''
    host: str = ''
    version: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'host': self.host, 'version': self.version}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DatabaseInfo':
        return cls(
            name=data.get('name', ''),
            host=data.get('host', ''),
            version=data.get('version', '')
        )


@dataclass
class ArtifactInfo:
    """How the dump was produced and what it cost."""

    method: str = ''
    format: str = ''
    compression: str = 'none'
    size_bytes: int = 0
    compressed_size_bytes: int = 0
    duration_seconds: float = 0.0
    checksum: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method,
            'format': self.format,
            'compression': self.compression,
            'size_bytes': self.size_bytes,
            'compressed_size_bytes': self.compressed_size_bytes,
            'duration_seconds': self.duration_seconds,
            'checksum': self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ArtifactInfo':
        return cls(
            method=data.get('method', ''),
            format=data.get('format', ''),
            compression=data.get('compression', 'none'),
            size_bytes=int(data.get('size_bytes', 0) or 0),
            compressed_size_bytes=int(data.get('compressed_size_bytes', 0) or 0),
            duration_seconds=float(data.get('duration_seconds', 0.0) or 0.0),
            checksum=data.get('checksum', '') or ''
        )


@dataclass
class RetentionHint:
    """Informational expiry computed when the backup was created."""

    keep_until: Optional[datetime] = None
    policy: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'keep_until': format_timestamp(self.keep_until) if self.keep_until else None,
            'policy': self.policy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RetentionHint':
        keep_until = data.get('keep_until')
        return cls(
            keep_until=parse_timestamp(keep_until) if keep_until else None,
            policy=data.get('policy', '') or ''
        )


@dataclass
class BackupRecord:
    """
    Persisted description of one backup.

    The id is the only lookup key. `tier` and `retention` are informational:
    cleanup reclassifies from `timestamp` against the live policy.
    """

    id: str
    timestamp: datetime
    tier: str = 'daily'
    source: DatabaseInfo = field(default_factory=DatabaseInfo)
    artifact: ArtifactInfo = field(default_factory=ArtifactInfo)
    files: List[str] = field(default_factory=list)
    retention: RetentionHint = field(default_factory=RetentionHint)

    def __post_init__(self):
        self.timestamp = as_utc(self.timestamp)

    @property
    def metadata_key(self) -> str:
        return metadata_key(self.id)

    @property
    def data_file(self) -> Optional[str]:
        """The canonical data artifact: first entry that is not a metadata key."""
        for key in self.files:
            if not is_metadata_key(key):
                return key
        return None

    def add_file(self, key: str):
        self.files.append(key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': format_timestamp(self.timestamp),
            'type': self.tier,
            'database': self.source.to_dict(),
            'backup': self.artifact.to_dict(),
            'files': list(self.files),
            'retention': self.retention.to_dict(),
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode('utf-8')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        try:
            return cls(
                id=data['id'],
                timestamp=parse_timestamp(data['timestamp']),
                tier=data.get('type', 'daily') or 'daily',
                source=DatabaseInfo.from_dict(data.get('database') or {}),
                artifact=ArtifactInfo.from_dict(data.get('backup') or {}),
                files=list(data.get('files') or []),
                retention=RetentionHint.from_dict(data.get('retention') or {})
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MetadataError(f"failed to parse metadata: {e}")

    @classmethod
    def from_json(cls, data: bytes) -> 'BackupRecord':
        try:
            document = json.loads(data)
        except ValueError as e:
            raise MetadataError(f"failed to parse metadata: {e}")
        if not isinstance(document, dict):
            raise MetadataError("failed to parse metadata: expected a JSON object")
        return cls.from_dict(document)
