"""
APScheduler wiring for recurring backups.

Manages:
- The recurring backup job (cron expression): run a backup, then clean up
- An hourly monitor job: refresh the storage-used metric and alert when
  no backup has succeeded within the alert window
- Manual triggers ("run now")

Backup runs are serialized: the engine is not safe for concurrent runs, so
a manual trigger that arrives while a run is in progress is refused.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dbkeeper.backup.context import RunContext
from dbkeeper.backup.engine import BackupEngine, BackupResult
from dbkeeper.exceptions import CancelledError, ConfigurationError


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup'
MONITOR_JOB_ID = 'monitor'


def parse_schedule(schedule: str, timezone_name: str = 'UTC') -> CronTrigger:
    """
    Parse a standard 5-field crontab expression.

    Raises:
        ConfigurationError: If the expression is invalid
    """
    try:
        return CronTrigger.from_crontab(schedule, timezone=timezone_name)
    except ValueError as e:
        raise ConfigurationError(f"invalid cron schedule '{schedule}': {e}")


class BackupScheduler:
    """
    Runs the engine on a cron schedule.

    Args:
        engine: BackupEngine to drive
        schedule: 5-field crontab expression
        metrics: Optional BackupMetrics (storage-used refresh)
        notifier: Optional WebhookNotifier (stale-backup alerts)
        alert_after_hours: Alert when the last success is older than this
        timezone_name: Timezone the cron expression is evaluated in
    """

    def __init__(
        self,
        engine: BackupEngine,
        schedule: str,
        metrics=None,
        notifier=None,
        alert_after_hours: int = 26,
        timezone_name: str = 'UTC'
    ):
        self.engine = engine
        self.schedule = schedule
        self.metrics = metrics
        self.notifier = notifier
        self.alert_after_hours = alert_after_hours
        self.timezone_name = timezone_name
        self.trigger = parse_schedule(schedule, timezone_name)

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._current_ctx: Optional[RunContext] = None
        self._last_result: Optional[BackupResult] = None

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }

        self.scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers=2)},
            job_defaults=job_defaults,
            timezone=timezone_name
        )

    @property
    def last_result(self) -> Optional[BackupResult]:
        with self._state_lock:
            return self._last_result

    def start(self):
        """Register the jobs and start the background scheduler."""
        if self.scheduler.running:
            logger.info("Scheduler already running")
            return

        self.scheduler.add_job(
            func=self._scheduled_run,
            trigger=self.trigger,
            id=BACKUP_JOB_ID,
            name='Scheduled backup',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.check_alerts,
            trigger=IntervalTrigger(hours=1),
            id=MONITOR_JOB_ID,
            name='Backup monitor',
            replace_existing=True
        )

        self.scheduler.start()
        next_run = self.next_run()
        logger.info(
            f"Scheduler started (schedule: {self.schedule}, "
            f"next run: {next_run.isoformat() if next_run else 'N/A'})"
        )

    def stop(self):
        """Cancel any run in progress and shut the scheduler down."""
        with self._state_lock:
            if self._current_ctx is not None:
                self._current_ctx.cancel()

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self.scheduler.running

    def is_busy(self) -> bool:
        """True while a backup or cleanup holds the run lock."""
        return self._run_lock.locked()

    def next_run(self) -> Optional[datetime]:
        """Next fire time of the backup job, or None when not scheduled."""
        job = self.scheduler.get_job(BACKUP_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.astimezone(timezone.utc)

    @contextmanager
    def _exclusive(self, ctx: RunContext):
        """Hold the run lock for one backup or cleanup. Yields False when busy."""
        if not self._run_lock.acquire(blocking=False):
            yield False
            return

        with self._state_lock:
            self._current_ctx = ctx
        try:
            yield True
        finally:
            with self._state_lock:
                self._current_ctx = None
            self._run_lock.release()

    def run_now(self, ctx: Optional[RunContext] = None, cleanup: bool = True) -> Optional[BackupResult]:
        """
        Run a backup (and by default a cleanup) synchronously in the calling thread.

        Returns:
            The BackupResult, or None if another run is already in progress
        """
        ctx = ctx or RunContext()
        with self._exclusive(ctx) as acquired:
            if not acquired:
                logger.warning("Backup already in progress, skipping")
                return None

            result = self.engine.run(ctx)
            with self._state_lock:
                self._last_result = result

            if cleanup:
                try:
                    deleted = self.engine.cleanup(ctx)
                    logger.info(f"Post-backup cleanup removed {deleted} backups")
                except CancelledError:
                    logger.warning("Cleanup cancelled")
                except Exception as e:
                    logger.error(f"Cleanup failed: {e}")

            return result

    def run_cleanup(self, ctx: Optional[RunContext] = None) -> Optional[int]:
        """
        Apply the retention policy while no backup is running.

        Returns:
            Number of backups deleted, or None if a run is in progress

        Raises:
            StorageError: If storage cannot be listed
        """
        ctx = ctx or RunContext()
        with self._exclusive(ctx) as acquired:
            if not acquired:
                logger.warning("Backup in progress, skipping cleanup")
                return None
            return self.engine.cleanup(ctx)

    def trigger_now(self) -> str:
        """
        Queue a one-off backup on the scheduler's worker pool.

        Returns:
            The id of the queued APScheduler job
        """
        now = datetime.now(timezone.utc)
        job_id = f"manual_{int(now.timestamp())}"
        self.scheduler.add_job(
            func=self._scheduled_run,
            trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
            id=job_id,
            name='Manual backup',
            replace_existing=True
        )
        logger.info(f"Manual backup queued ({job_id})")
        return job_id

    def _scheduled_run(self):
        result = self.run_now()
        if result is not None:
            logger.info(f"Scheduled backup {result.id} finished: {result.state.value}")

    def check_alerts(self):
        """
        Refresh the storage-used metric and alert on stale backups.

        Alerts only once a first successful backup has been recorded.
        """
        if self.metrics is not None:
            try:
                records = self.engine.list_backups()
                self.metrics.set_storage_used(sum(r.artifact.compressed_size_bytes for r in records))
            except Exception as e:
                logger.warning(f"Failed to refresh storage usage: {e}")

        last_run = self.engine.last_run
        if last_run is None or not self.is_stale(last_run):
            return

        message = (
            f"No backup in {self.alert_after_hours} hours. "
            f"Last backup: {last_run.isoformat().replace('+00:00', 'Z')}"
        )
        logger.warning(message)
        if self.notifier is not None:
            self.notifier.notify_alert(message)

    def is_stale(self, last_run: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """True when `last_run` is older than the alert window."""
        if last_run is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - last_run > timedelta(hours=self.alert_after_hours)
