"""
Compression helpers for dump artifacts.

Supports:
- gzip: dump file is replaced by <dump>.gz
- none: dump file is stored as-is
"""

import gzip
import os
from typing import Optional

from dbkeeper.exceptions import CancelledError, DbKeeperError
from .context import RunContext


SUPPORTED_COMPRESSION = ('gzip', 'none')
GZIP_EXTENSION = '.gz'
CHUNK_SIZE = 1024 * 1024


class CompressionError(DbKeeperError):
    """Raised when compression or decompression fails."""
    pass


def is_compressed(key: str) -> bool:
    """True if a stored key names a gzip artifact."""
    return key.endswith(GZIP_EXTENSION)


def _copy(src, dst, ctx: Optional[RunContext]):
    while True:
        if ctx is not None:
            ctx.check()
        chunk = src.read(CHUNK_SIZE)
        if not chunk:
            break
        dst.write(chunk)


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass


def compress_file(source_path: str, dest_path: str, ctx: Optional[RunContext] = None) -> str:
    """
    Gzip `source_path` into `dest_path`.

    Args:
        source_path: File to compress
        dest_path: Output path (conventionally source_path + '.gz')
        ctx: Cancellation signal, checked between chunks

    Returns:
        dest_path

    Raises:
        CompressionError: If compression fails (partial output is removed)
    """
    try:
        with open(source_path, 'rb') as src, gzip.open(dest_path, 'wb') as dst:
            _copy(src, dst, ctx)
        return dest_path
    except CancelledError:
        _remove_partial(dest_path)
        raise
    except OSError as e:
        _remove_partial(dest_path)
        raise CompressionError(f"Failed to compress {os.path.basename(source_path)}: {e}")


def decompress_file(source_path: str, dest_path: str, ctx: Optional[RunContext] = None) -> str:
    """
    Gunzip `source_path` into `dest_path`.

    Raises:
        CompressionError: If the input is not valid gzip data or I/O fails
    """
    try:
        with gzip.open(source_path, 'rb') as src, open(dest_path, 'wb') as dst:
            _copy(src, dst, ctx)
        return dest_path
    except CancelledError:
        _remove_partial(dest_path)
        raise
    except (OSError, EOFError) as e:
        _remove_partial(dest_path)
        raise CompressionError(f"Failed to decompress {os.path.basename(source_path)}: {e}")


def get_file_size(path: str) -> int:
    """
    Get the size of a file in bytes.

    Raises:
        CompressionError: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(path)
    except FileNotFoundError:
        raise CompressionError(f"File not found: {path}")
    except OSError as e:
        raise CompressionError(f"Failed to get file size: {e}")
