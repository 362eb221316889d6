"""
Prometheus metrics for backup runs.

Each BackupMetrics instance owns its own CollectorRegistry so several apps
(or tests) in one process do not collide on metric names.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST


class BackupMetrics:
    """Collectors updated by the engine and rendered by the /metrics route."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, namespace: str = 'dbkeeper'):
        self.registry = CollectorRegistry()

        self.backup_duration = Histogram(
            'backup_duration_seconds',
            'Duration of backup runs',
            namespace=namespace,
            buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),
            registry=self.registry
        )
        self.backup_size = Gauge(
            'backup_size_bytes',
            'Stored size of the most recent backup',
            namespace=namespace,
            registry=self.registry
        )
        self.backups_total = Counter(
            'backups_total',
            'Successful backup runs',
            namespace=namespace,
            registry=self.registry
        )
        self.backup_failures = Counter(
            'backup_failures_total',
            'Failed backup runs',
            namespace=namespace,
            registry=self.registry
        )
        self.last_backup_timestamp = Gauge(
            'last_backup_timestamp',
            'Unix time of the last successful backup',
            namespace=namespace,
            registry=self.registry
        )
        self.last_backup_success = Gauge(
            'last_backup_success',
            '1 if the last backup run succeeded, 0 otherwise',
            namespace=namespace,
            registry=self.registry
        )
        self.storage_used = Gauge(
            'storage_used_bytes',
            'Bytes used by stored backups',
            namespace=namespace,
            registry=self.registry
        )

    def record_success(self, duration_seconds: float, size_bytes: int, finished_at: float):
        self.backup_duration.observe(duration_seconds)
        self.backup_size.set(size_bytes)
        self.backups_total.inc()
        self.last_backup_timestamp.set(finished_at)
        self.last_backup_success.set(1)

    def record_failure(self):
        self.backup_failures.inc()
        self.last_backup_success.set(0)

    def set_storage_used(self, size_bytes: int):
        self.storage_used.set(size_bytes)

    def render(self) -> bytes:
        return generate_latest(self.registry)
