"""
Command line interface.

Commands are registered on the Flask app, so they are available both as
`flask --app dbkeeper <command>` and through the `dbkeeper` console script.
"""

import signal
import sys
from datetime import datetime, timezone

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from dbkeeper.backup.restore import RestoreOptions
from dbkeeper.exceptions import BackupNotFound, DbKeeperError
from dbkeeper.services import get_components
from dbkeeper.utils.formatting import format_bytes, format_duration


@click.command('backup')
@with_appcontext
def backup_command():
    """Run a backup immediately."""
    result = get_components().scheduler.run_now(cleanup=False)
    if result is None:
        raise click.ClickException("A backup is already in progress")

    if not result.success:
        for line in result.logs:
            click.echo(line, err=True)
        raise click.ClickException(f"Backup failed: {result.error}")

    click.echo("Backup completed successfully")
    click.echo(f"  ID: {result.id}")
    click.echo(f"  Size: {format_bytes(result.size)}")
    click.echo(f"  Compressed: {format_bytes(result.compressed_size)}")
    click.echo(f"  Duration: {format_duration(result.duration)}")
    if result.verify_error:
        click.echo(f"  Verification FAILED: {result.verify_error}")
    elif result.verified:
        click.echo("  Verified: yes")


@click.command('list')
@with_appcontext
def list_command():
    """List stored backups, newest first."""
    try:
        records = get_components().engine.list_backups()
    except DbKeeperError as e:
        raise click.ClickException(f"Failed to list backups: {e}")

    if not records:
        click.echo("No backups found")
        return

    click.echo(f"{'ID':<26} {'DATE':<20} {'SIZE':<12} {'TYPE':<8}")
    for record in records:
        click.echo(
            f"{record.id:<26} {record.timestamp.strftime('%Y-%m-%d %H:%M:%S'):<20} "
            f"{format_bytes(record.artifact.compressed_size_bytes):<12} {record.tier:<8}"
        )


@click.command('cleanup')
@with_appcontext
def cleanup_command():
    """Delete backups the retention policy no longer protects."""
    try:
        count = get_components().scheduler.run_cleanup()
    except DbKeeperError as e:
        raise click.ClickException(f"Cleanup failed: {e}")

    if count is None:
        raise click.ClickException("A backup is in progress, try again later")

    click.echo(f"Cleanup completed: {count} backups deleted")


@click.command('verify')
@with_appcontext
@click.argument('backup_id')
def verify_command(backup_id):
    """Check a backup's artifact against its metadata."""
    try:
        result = get_components().engine.validate_backup(backup_id)
    except BackupNotFound:
        raise click.ClickException(f"Backup not found: {backup_id}")
    except DbKeeperError as e:
        raise click.ClickException(f"Verification failed: {e}")

    if not result.valid:
        click.echo(f"Backup {backup_id} is INVALID")
        for error in result.errors:
            click.echo(f"  - {error}")
        raise click.ClickException("backup validation failed")

    click.echo(f"Backup {backup_id} is valid")
    click.echo(f"  File exists: {result.file_exists}")
    click.echo(f"  Size match: {result.size_match}")
    click.echo(f"  Checksum OK: {result.checksum_ok}")


@click.command('restore')
@with_appcontext
@click.argument('backup_id')
@click.option('--target', 'target_db', default=None, help='Target database (or SQLite path)')
@click.option('--dry-run', is_flag=True, help='Show what would be restored')
@click.option('--verify-checksum', is_flag=True, help='Verify the artifact checksum first')
def restore_command(backup_id, target_db, dry_run, verify_checksum):
    """Restore a backup into a database."""
    options = RestoreOptions(
        backup_id=backup_id,
        target_db=target_db,
        dry_run=dry_run,
        verify_checksum=verify_checksum
    )

    try:
        result = get_components().restore_engine.restore(options)
    except BackupNotFound:
        raise click.ClickException(f"Backup not found: {backup_id}")
    except DbKeeperError as e:
        raise click.ClickException(f"Restore failed: {e}")

    if not result.success:
        raise click.ClickException(f"Restore failed: {result.error}")

    if dry_run:
        click.echo(f"Dry run: would restore {result.source_file} into {result.target_db}")
        click.echo("Dry run completed - no changes made")
        return

    click.echo("Restore completed successfully")
    click.echo(f"  Backup: {result.backup_id}")
    click.echo(f"  Target database: {result.target_db}")
    if result.checksum_valid:
        click.echo("  Checksum: verified")


@click.command('health')
@with_appcontext
def health_command():
    """Summarize stored backups and flag overdue ones."""
    components = get_components()
    try:
        records = components.engine.list_backups()
    except DbKeeperError as e:
        raise click.ClickException(f"Failed to list backups: {e}")

    total_size = sum(r.artifact.compressed_size_bytes for r in records)
    last_backup = records[0].timestamp if records else None

    if last_backup is None:
        status = "warning: no backups found"
    elif components.scheduler.is_stale(last_backup, datetime.now(timezone.utc)):
        status = "warning: backup overdue"
    else:
        status = "healthy"

    click.echo(f"Status: {status}")
    if last_backup is not None:
        click.echo(f"Last backup: {last_backup.strftime('%Y-%m-%d %H:%M:%S')}")
    click.echo(f"Total backups: {len(records)}")
    click.echo(f"Storage used: {format_bytes(total_size)}")


@click.command('daemon')
@with_appcontext
@click.option('--host', default='0.0.0.0', help='Status API bind address')
@click.option('--port', default=8080, type=int, help='Status API port')
def daemon_command(host, port):
    """Run scheduled backups and serve the status API."""
    app = current_app._get_current_object()
    scheduler = get_components().scheduler

    def _terminate(signum, frame):
        sys.exit(0)

    signal.signal(signal.SIGTERM, _terminate)

    scheduler.start()
    try:
        app.run(host=host, port=port, use_reloader=False)
    finally:
        app.logger.info("Shutting down")
        scheduler.stop()


def register_commands(app):
    """Attach the dbkeeper commands to app.cli."""
    for command in (backup_command, list_command, cleanup_command, verify_command,
                    restore_command, health_command, daemon_command):
        app.cli.add_command(command)


def _create_cli_app():
    from dbkeeper import create_app
    return create_app(start_scheduler=False)


main = FlaskGroup(create_app=_create_cli_app, help='dbkeeper - database backup lifecycle manager')
