"""
Unit tests for Prometheus metrics (dbkeeper/metrics.py).
"""

from dbkeeper.metrics import BackupMetrics


def sample(metrics, name, labels=None):
    return metrics.registry.get_sample_value(name, labels or {})


class TestBackupMetrics:
    """Test collector updates."""

    def test_record_success(self):
        metrics = BackupMetrics()

        metrics.record_success(12.5, 4096, 1705284000.0)

        assert sample(metrics, 'dbkeeper_backups_total') == 1
        assert sample(metrics, 'dbkeeper_backup_size_bytes') == 4096
        assert sample(metrics, 'dbkeeper_last_backup_timestamp') == 1705284000.0
        assert sample(metrics, 'dbkeeper_last_backup_success') == 1
        assert sample(metrics, 'dbkeeper_backup_duration_seconds_count') == 1
        assert sample(metrics, 'dbkeeper_backup_duration_seconds_sum') == 12.5

    def test_record_failure(self):
        metrics = BackupMetrics()
        metrics.record_success(1.0, 10, 1.0)

        metrics.record_failure()

        assert sample(metrics, 'dbkeeper_backup_failures_total') == 1
        assert sample(metrics, 'dbkeeper_last_backup_success') == 0
        assert sample(metrics, 'dbkeeper_backups_total') == 1

    def test_storage_used(self):
        metrics = BackupMetrics()

        metrics.set_storage_used(123456)

        assert sample(metrics, 'dbkeeper_storage_used_bytes') == 123456

    def test_instances_do_not_share_registry(self):
        first = BackupMetrics()
        second = BackupMetrics()

        first.record_failure()

        assert sample(second, 'dbkeeper_backup_failures_total') == 0

    def test_render(self):
        metrics = BackupMetrics()
        metrics.record_success(1.0, 10, 1.0)

        output = metrics.render().decode()

        assert 'dbkeeper_backups_total 1.0' in output
        assert metrics.content_type.startswith('text/plain')
