"""
Grandfather-Father-Son retention policy.

Every backup is "daily"; a backup taken on the week-boundary day (Sunday)
is also "weekly"; a backup taken on the first day of a month is also
"monthly". Each tier keeps its own quota of the newest backups carrying
that tag, and a backup kept by any tier is kept overall. max_age_days is
an absolute ceiling that overrides tier protection.

Tier membership is always recomputed from the timestamp, so a policy
change applies retroactively to existing backups.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Set, Tuple

from .metadata import BackupRecord, as_utc


logger = logging.getLogger(__name__)

# datetime.weekday() value of the week-boundary day
WEEK_BOUNDARY_WEEKDAY = 6  # Sunday

# Month length used for the informational keep-until hint
DAYS_PER_MONTH = 30


class BackupType(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Quotas per tier plus an absolute age ceiling.

    A quota of 0 keeps nothing for that tier; max_age_days of 0 disables
    the ceiling.
    """

    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 6
    max_age_days: int = 90

    def limit_for(self, backup_type: BackupType) -> int:
        if backup_type == BackupType.MONTHLY:
            return self.keep_monthly
        if backup_type == BackupType.WEEKLY:
            return self.keep_weekly
        return self.keep_daily

    def calculate_retention_date(self, backup_time: datetime, backup_type: BackupType) -> datetime:
        """
        Estimate how long a new backup of the given tier will be kept.

        Daily backups: keep_daily days; weekly: keep_weekly * 7 days;
        monthly: keep_monthly * 30 days. Clamped to max_age_days when that
        is set and smaller.
        """
        if backup_type == BackupType.MONTHLY:
            retention_days = self.keep_monthly * DAYS_PER_MONTH
        elif backup_type == BackupType.WEEKLY:
            retention_days = self.keep_weekly * 7
        else:
            retention_days = self.keep_daily

        if 0 < self.max_age_days < retention_days:
            retention_days = self.max_age_days

        return as_utc(backup_time) + timedelta(days=retention_days)


def classify_backup(timestamp: datetime) -> FrozenSet[BackupType]:
    """Return every tier a backup taken at `timestamp` belongs to."""
    timestamp = as_utc(timestamp)
    types = {BackupType.DAILY}

    if timestamp.weekday() == WEEK_BOUNDARY_WEEKDAY:
        types.add(BackupType.WEEKLY)

    if timestamp.day == 1:
        types.add(BackupType.MONTHLY)

    return frozenset(types)


def get_primary_type(timestamp: datetime) -> BackupType:
    """Label for a new record: monthly beats weekly beats daily."""
    types = classify_backup(timestamp)
    if BackupType.MONTHLY in types:
        return BackupType.MONTHLY
    if BackupType.WEEKLY in types:
        return BackupType.WEEKLY
    return BackupType.DAILY


@dataclass
class RotationPlan:
    """Outcome of one rotation pass, both lists newest first."""

    keep: List[BackupRecord] = field(default_factory=list)
    delete: List[BackupRecord] = field(default_factory=list)
    expired: Set[str] = field(default_factory=set)


class GFSRotator:
    """
    Applies a RetentionPolicy to a set of backup records.
    """

    def __init__(self, policy: RetentionPolicy):
        self.policy = policy

    def plan(self, records: Iterable[BackupRecord], now: Optional[datetime] = None) -> RotationPlan:
        """
        Split records into those to keep and those to delete.

        Records are walked newest to oldest once. For each tier a record
        carries, if that tier's counter is below its quota the counter
        advances and the record is kept. Records no tier kept are deleted,
        and so is any record older than max_age_days.

        Args:
            records: Backup records (not modified)
            now: Reference time for max-age (default: current UTC time)

        Returns:
            RotationPlan with disjoint keep/delete lists
        """
        ordered = sorted(records, key=lambda r: (r.timestamp, r.id), reverse=True)
        plan = RotationPlan()
        if not ordered:
            return plan

        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        max_age = timedelta(days=self.policy.max_age_days)
        counters = {backup_type: 0 for backup_type in BackupType}

        for record in ordered:
            kept = False
            for backup_type in classify_backup(record.timestamp):
                if counters[backup_type] < self.policy.limit_for(backup_type):
                    counters[backup_type] += 1
                    kept = True

            if self.policy.max_age_days > 0 and now - record.timestamp > max_age:
                plan.expired.add(record.id)
                plan.delete.append(record)
            elif kept:
                plan.keep.append(record)
            else:
                plan.delete.append(record)

        logger.debug(
            f"Rotation plan: keep {len(plan.keep)}, delete {len(plan.delete)} "
            f"(expired {len(plan.expired)}; counters daily={counters[BackupType.DAILY]} "
            f"weekly={counters[BackupType.WEEKLY]} monthly={counters[BackupType.MONTHLY]})"
        )

        return plan

    def determine_backups_to_delete(
        self,
        records: Iterable[BackupRecord],
        now: Optional[datetime] = None
    ) -> List[BackupRecord]:
        """Records the policy no longer protects, newest first, each listed once."""
        return self.plan(records, now).delete

    def get_retention_info(self, backup_time: datetime) -> Tuple[datetime, str]:
        """
        Informational retention hint for a new backup.

        Returns:
            Tuple of (keep_until, tier label)
        """
        primary_type = get_primary_type(backup_time)
        keep_until = self.policy.calculate_retention_date(backup_time, primary_type)
        return keep_until, primary_type.value
