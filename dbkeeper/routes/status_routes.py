"""
Status routes - health check and Prometheus metrics.
"""

from flask import Blueprint, Response, jsonify

from dbkeeper.backup.metadata import format_timestamp
from dbkeeper.services import get_components


bp = Blueprint('status', __name__)


@bp.route('/health', methods=['GET'])
def health():
    """
    Report backup health.

    Unhealthy (503) when the last run failed or the last successful backup
    is older than the alert window.

    Returns:
        JSON with status, last_run, last_error, next_run, scheduler_running
    """
    components = get_components()
    engine = components.engine
    scheduler = components.scheduler

    last_run = engine.last_run
    last_error = engine.last_error
    next_run = scheduler.next_run()

    healthy = last_error is None and not scheduler.is_stale(last_run)

    payload = {
        'status': 'healthy' if healthy else 'unhealthy',
        'last_run': format_timestamp(last_run) if last_run else None,
        'last_error': last_error,
        'next_run': format_timestamp(next_run) if next_run else None,
        'scheduler_running': scheduler.is_running(),
        'backup_in_progress': scheduler.is_busy(),
    }

    return jsonify(payload), 200 if healthy else 503


@bp.route('/metrics', methods=['GET'])
def metrics():
    """Prometheus exposition of the backup metrics."""
    backup_metrics = get_components().metrics
    return Response(backup_metrics.render(), mimetype=backup_metrics.content_type)
