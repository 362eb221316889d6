"""
Backup routes - list, inspect, run, clean up, verify and restore backups.
"""

import logging

from flask import Blueprint, jsonify, request

from dbkeeper.auth import api_token_required
from dbkeeper.backup.metadata import MetadataError
from dbkeeper.backup.restore import RestoreOptions
from dbkeeper.backup.storage import StorageError
from dbkeeper.exceptions import BackupNotFound
from dbkeeper.services import get_components


logger = logging.getLogger(__name__)

bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _not_found(backup_id: str):
    return jsonify({'error': f"Backup not found: {backup_id}"}), 404


@bp.route('/', methods=['GET'])
@api_token_required
def list_backups():
    """
    List stored backups, newest first.

    Query params:
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with backup records and pagination metadata
    """
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1
    if offset < 0:
        offset = 0

    try:
        records = get_components().engine.list_backups()
    except StorageError as e:
        logger.error(f"Failed to list backups: {e}")
        return jsonify({'error': f"Failed to list backups: {e}"}), 500

    page = records[offset:offset + limit]

    return jsonify({
        'backups': [record.to_dict() for record in page],
        'total': len(records),
        'limit': limit,
        'offset': offset
    })


@bp.route('/', methods=['POST'])
@api_token_required
def run_backup():
    """
    Run a backup now.

    Query params:
        - wait: "false" to queue the run on the scheduler instead of waiting

    Returns:
        200 with the run result, 500 if the run failed, 202 when queued,
        409 if a run is already in progress
    """
    scheduler = get_components().scheduler
    wait = request.args.get('wait', 'true').lower() != 'false'

    if scheduler.is_busy():
        return jsonify({'error': 'A backup is already in progress'}), 409

    if not wait:
        if not scheduler.is_running():
            return jsonify({'error': 'Scheduler is not running'}), 400
        job_id = scheduler.trigger_now()
        return jsonify({'message': 'Backup queued', 'job_id': job_id}), 202

    result = scheduler.run_now()
    if result is None:
        return jsonify({'error': 'A backup is already in progress'}), 409

    return jsonify(result.to_dict()), 200 if result.success else 500


@bp.route('/cleanup', methods=['POST'])
@api_token_required
def cleanup_backups():
    """
    Apply the retention policy.

    Returns:
        The number of backups deleted, or 409 while a backup is running
    """
    try:
        deleted = get_components().scheduler.run_cleanup()
    except StorageError as e:
        logger.error(f"Cleanup failed: {e}")
        return jsonify({'error': f"Cleanup failed: {e}"}), 500

    if deleted is None:
        return jsonify({'error': 'A backup is already in progress'}), 409

    return jsonify({'deleted': deleted})


@bp.route('/<backup_id>', methods=['GET'])
@api_token_required
def get_backup(backup_id):
    """Get one backup's metadata record."""
    try:
        record = get_components().engine.get_backup(backup_id)
    except BackupNotFound:
        return _not_found(backup_id)
    except (StorageError, MetadataError) as e:
        return jsonify({'error': str(e)}), 500

    return jsonify(record.to_dict())


@bp.route('/<backup_id>/verify', methods=['POST'])
@api_token_required
def verify_backup(backup_id):
    """
    Check a backup's artifact against its metadata.

    Returns:
        JSON validation result (valid, file_exists, size_match, checksum_ok, errors)
    """
    try:
        result = get_components().engine.validate_backup(backup_id)
    except BackupNotFound:
        return _not_found(backup_id)
    except (StorageError, MetadataError) as e:
        return jsonify({'error': str(e)}), 500

    return jsonify(result.to_dict())


@bp.route('/<backup_id>/restore', methods=['POST'])
@api_token_required
def restore_backup(backup_id):
    """
    Restore a backup.

    JSON body (all optional):
        - target_db: Database (or SQLite path) to restore into
        - dry_run: Only resolve what would be restored
        - verify_checksum: Verify the artifact checksum before restoring
    """
    data = request.get_json(silent=True) or {}

    options = RestoreOptions(
        backup_id=backup_id,
        target_db=data.get('target_db') or None,
        dry_run=bool(data.get('dry_run', False)),
        verify_checksum=bool(data.get('verify_checksum', False))
    )

    try:
        result = get_components().restore_engine.restore(options)
    except BackupNotFound:
        return _not_found(backup_id)
    except (StorageError, MetadataError) as e:
        return jsonify({'error': str(e)}), 500

    return jsonify(result.to_dict()), 200 if result.success else 500
