"""
Database drivers that produce and consume dump streams.

Supports:
- PostgresDriver: pg_dump/pg_restore (custom format) with a psycopg2 session
  for connectivity and version checks
- SQLiteDriver: pure-Python SQL text dump via sqlite3.Connection.iterdump()
"""

import logging
import os
import shutil
import sqlite3
import subprocess
import tempfile
from pathlib import Path
from typing import BinaryIO, List, Optional
from urllib.parse import urlsplit, urlunsplit

import psycopg2

from dbkeeper.config import DatabaseSettings, POSTGRES_TYPES, SQLITE_TYPES
from dbkeeper.exceptions import ConfigurationError, DbKeeperError
from .context import RunContext, ensure_context


logger = logging.getLogger(__name__)

# How often a running subprocess is polled for cancellation
PROCESS_POLL_INTERVAL = 0.5


class DriverError(DbKeeperError):
    """Raised when a database driver operation fails."""
    pass


def run_process(
    args: List[str],
    ctx: Optional[RunContext] = None,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[BinaryIO] = None,
    env: Optional[dict] = None
) -> str:
    """
    Run an external program, terminating it if ctx is cancelled.

    Args:
        args: Program and arguments
        ctx: Cancellation signal, polled while the process runs
        stdin: File to feed as standard input
        stdout: File receiving standard output (captured if None)
        env: Extra environment variables

    Returns:
        Captured standard output (empty if `stdout` was given)

    Raises:
        DriverError: If the program is missing or exits non-zero
        CancelledError: If ctx was cancelled while the program ran
    """
    ctx = ensure_context(ctx)
    program = args[0]

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    with tempfile.TemporaryFile() as stderr_file, tempfile.TemporaryFile() as capture_file:
        try:
            process = subprocess.Popen(
                args,
                stdin=stdin if stdin is not None else subprocess.DEVNULL,
                stdout=stdout if stdout is not None else capture_file,
                stderr=stderr_file,
                env=process_env
            )
        except FileNotFoundError:
            raise DriverError(f"{program} not found in PATH")
        except OSError as e:
            raise DriverError(f"failed to start {program}: {e}")

        while True:
            try:
                returncode = process.wait(timeout=PROCESS_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if ctx.error() is not None:
                    logger.warning(f"Terminating {program} (pid {process.pid}) after cancellation")
                    process.terminate()
                    try:
                        process.wait(timeout=10)
                    except subprocess.TimeoutExpired:
                        process.kill()
                        process.wait()
                    ctx.check()

        stderr_file.seek(0)
        error_output = stderr_file.read().decode('utf-8', errors='replace').strip()

        if returncode != 0:
            raise DriverError(f"{program} failed (exit {returncode}): {error_output}")

        capture_file.seek(0)
        return capture_file.read().decode('utf-8', errors='replace')


class DatabaseDriver:
    """
    Base class for database drivers.

    Lifecycle: connect() -> version()/dump()/restore() -> close().
    Drivers are context managers that close on exit.
    """

    type = ''
    file_extension = ''
    method = ''
    format = ''

    def connect(self, ctx: Optional[RunContext] = None):
        raise NotImplementedError

    def version(self, ctx: Optional[RunContext] = None) -> str:
        raise NotImplementedError

    def dump(self, sink: BinaryIO, ctx: Optional[RunContext] = None):
        """Write a full dump of the database to `sink`."""
        raise NotImplementedError

    def restore(self, source_path: str, target: Optional[str] = None, ctx: Optional[RunContext] = None):
        """Load an uncompressed dump file into `target` (default: the configured database)."""
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class PostgresDriver(DatabaseDriver):
    """
    PostgreSQL driver.

    Dumps with `pg_dump -F c` (custom archive format) and restores with
    `pg_restore`. The psycopg2 session is only used for the connectivity
    check and server version.
    """

    type = 'postgres'
    file_extension = 'dump'
    method = 'pg_dump'
    format = 'custom'

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings
        self.connection = None

    def _connect_kwargs(self) -> dict:
        if self.settings.url:
            return {'dsn': self.settings.url, 'connect_timeout': 10}
        return {
            'host': self.settings.host,
            'port': self.settings.port,
            'dbname': self.settings.name,
            'user': self.settings.user or None,
            'password': self.settings.password or None,
            'connect_timeout': 10,
        }

    def _connection_args(self, database: Optional[str] = None) -> List[str]:
        if self.settings.url:
            url = self.settings.url
            if database is not None:
                url = urlunsplit(urlsplit(url)._replace(path='/' + database))
            return ['--dbname', url]

        args = ['-h', self.settings.host, '-p', str(self.settings.port)]
        if self.settings.user:
            args += ['-U', self.settings.user]
        args += ['-d', database or self.settings.name]
        return args

    def _env(self) -> dict:
        return {'PGPASSWORD': self.settings.password} if self.settings.password else {}

    def connect(self, ctx: Optional[RunContext] = None):
        ensure_context(ctx).check()
        try:
            self.connection = psycopg2.connect(**self._connect_kwargs())
        except psycopg2.Error as e:
            raise DriverError(f"failed to connect to database: {str(e).strip()}")

    def version(self, ctx: Optional[RunContext] = None) -> str:
        if self.connection is None:
            raise DriverError("database not connected")
        ensure_context(ctx).check()

        try:
            with self.connection.cursor() as cursor:
                cursor.execute('SELECT version()')
                row = cursor.fetchone()
        except psycopg2.Error as e:
            raise DriverError(f"failed to get postgres version: {str(e).strip()}")

        version = row[0] if row else ''
        parts = version.split()
        return parts[1] if len(parts) >= 2 else version

    def dump(self, sink: BinaryIO, ctx: Optional[RunContext] = None):
        run_process(
            ['pg_dump'] + self._connection_args() + ['-F', 'c'],
            ctx=ctx,
            stdout=sink,
            env=self._env()
        )

    def restore(self, source_path: str, target: Optional[str] = None, ctx: Optional[RunContext] = None):
        args = ['pg_restore'] + self._connection_args(target) + [source_path]
        run_process(args, ctx=ctx, env=self._env())

    def close(self):
        if self.connection is not None:
            try:
                self.connection.close()
            except psycopg2.Error as e:
                logger.warning(f"Failed to close postgres connection: {e}")
            self.connection = None


class SQLiteDriver(DatabaseDriver):
    """
    SQLite driver.

    Produces a plain SQL script with Connection.iterdump(); restore replays
    it into a fresh database file.
    """

    type = 'sqlite'
    file_extension = 'sql'
    method = 'sqlite'
    format = 'sql'

    def __init__(self, settings: DatabaseSettings):
        path = settings.path or settings.name
        if not path:
            raise ConfigurationError("sqlite database path is required")

        self.settings = settings
        self.path = path
        self.connection = None

    def connect(self, ctx: Optional[RunContext] = None):
        ensure_context(ctx).check()
        if not os.path.exists(self.path):
            raise DriverError(f"sqlite database file does not exist: {self.path}")

        try:
            # Percent-encoded so "?", "#" and "%" in the path stay part of the file name
            uri = Path(self.path).absolute().as_uri() + '?mode=ro'
            connection = sqlite3.connect(uri, uri=True, check_same_thread=False)
            connection.execute('SELECT 1')
        except sqlite3.Error as e:
            raise DriverError(f"failed to open sqlite database: {e}")

        self.connection = connection

    def version(self, ctx: Optional[RunContext] = None) -> str:
        if self.connection is None:
            raise DriverError("database not connected")
        try:
            return self.connection.execute('SELECT sqlite_version()').fetchone()[0]
        except sqlite3.Error as e:
            raise DriverError(f"failed to get sqlite version: {e}")

    def dump(self, sink: BinaryIO, ctx: Optional[RunContext] = None):
        if self.connection is None:
            raise DriverError("database not connected")
        ctx = ensure_context(ctx)

        try:
            for count, statement in enumerate(self.connection.iterdump()):
                if count % 1000 == 0:
                    ctx.check()
                sink.write(statement.encode('utf-8'))
                sink.write(b'\n')
        except sqlite3.Error as e:
            raise DriverError(f"sqlite dump failed: {e}")

    def restore(self, source_path: str, target: Optional[str] = None, ctx: Optional[RunContext] = None):
        """
        Replay a SQL dump into `target` (default: the configured path).

        An existing target file is moved aside to <target>.bak first.
        """
        ensure_context(ctx).check()
        target_path = target or self.path

        if os.path.exists(target_path):
            backup_path = f"{target_path}.bak"
            try:
                shutil.move(target_path, backup_path)
            except OSError as e:
                raise DriverError(f"failed to move existing database aside: {e}")
            logger.info(f"Existing database moved to {backup_path}")

        load_sql_script(source_path, target_path)

    def close(self):
        if self.connection is not None:
            self.connection.close()
            self.connection = None


def load_sql_script(script_path: str, database_path: str):
    """
    Execute a SQL dump file against a SQLite database file.

    Raises:
        DriverError: If the script cannot be read or executed
    """
    try:
        with open(script_path, 'r', encoding='utf-8') as f:
            script = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise DriverError(f"failed to read sql script: {e}")

    connection = sqlite3.connect(database_path)
    try:
        connection.executescript(script)
        connection.commit()
    except sqlite3.Error as e:
        raise DriverError(f"failed to execute sql script: {e}")
    finally:
        connection.close()


def sqlite_integrity_check(database_path: str) -> str:
    """Run PRAGMA integrity_check and return its first result row."""
    connection = sqlite3.connect(database_path)
    try:
        row = connection.execute('PRAGMA integrity_check').fetchone()
    except sqlite3.Error as e:
        raise DriverError(f"integrity check query failed: {e}")
    finally:
        connection.close()
    return row[0] if row else ''


def pg_restore_list(archive_path: str, ctx: Optional[RunContext] = None) -> str:
    """
    List the table of contents of a pg_dump custom archive.

    Needs no database connection, so it is a cheap structural check.
    """
    return run_process(['pg_restore', '--list', archive_path], ctx=ctx)


def create_driver(settings: DatabaseSettings) -> DatabaseDriver:
    """
    Factory function to create the driver for a database type.

    Raises:
        ConfigurationError: If the type is unsupported
    """
    db_type = (settings.type or 'postgres').lower()

    if db_type in POSTGRES_TYPES:
        return PostgresDriver(settings)
    elif db_type in SQLITE_TYPES:
        return SQLiteDriver(settings)
    else:
        raise ConfigurationError(f"unsupported database type: {settings.type}")
