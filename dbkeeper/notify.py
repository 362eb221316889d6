"""
Webhook notifications for backup outcomes.

Events:
- backup.completed: run finished (artifact stored)
- backup.failed: run failed, or post-backup verification failed
- backup.alert: no successful backup within the alert window
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx


logger = logging.getLogger(__name__)

USER_AGENT = 'dbkeeper/1.0'


class WebhookNotifier:
    """
    Posts JSON payloads to a webhook URL.

    Delivery failures are logged and never raised: a broken webhook must not
    fail a backup.
    """

    def __init__(self, webhook_url: str, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        """
        Args:
            webhook_url: Endpoint receiving POSTed JSON
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    def notify_success(self, backup_id: str, size_bytes: int, duration_seconds: float):
        self._send({
            'event': 'backup.completed',
            'timestamp': _now(),
            'backup_id': backup_id,
            'status': 'success',
            'message': f"Backup {backup_id} completed successfully",
            'details': {
                'size_bytes': size_bytes,
                'duration_ms': int(duration_seconds * 1000),
            },
        })

    def notify_failure(self, backup_id: str, error: Any):
        self._send({
            'event': 'backup.failed',
            'timestamp': _now(),
            'backup_id': backup_id,
            'status': 'failure',
            'message': f"Backup {backup_id} failed",
            'details': {'error': str(error)},
        })

    def notify_alert(self, message: str):
        self._send({
            'event': 'backup.alert',
            'timestamp': _now(),
            'status': 'alert',
            'message': message,
        })

    def _send(self, payload: Dict[str, Any]):
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.webhook_url,
                    json=payload,
                    headers={'User-Agent': USER_AGENT}
                )
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook ({payload['event']}): {e}")
            return

        if response.status_code >= 400:
            logger.warning(f"Webhook returned error status {response.status_code} for {payload['event']}")
        else:
            logger.debug(f"Webhook sent: {payload['event']}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def create_notifier(webhook_url: Optional[str]) -> Optional[WebhookNotifier]:
    """Return a notifier, or None when no webhook is configured."""
    if not webhook_url:
        return None
    return WebhookNotifier(webhook_url)
