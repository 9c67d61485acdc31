"""
Per-transaction expiry timers on top of the shared APScheduler instance.

Timers live in process memory only; `PayoutService.reconcile_pending()`
re-arms or expires PENDING rows after a restart.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

ExpireCallback = Callable[[str], Awaitable[object]]


def _aware(moment: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes unless the client is tz-aware
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class ExpirationScheduler:
    """Single-shot deadline timer per transaction"""

    JOB_PREFIX = "expire:"

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.scheduler = scheduler
        self._clock = clock

    @classmethod
    def job_id(cls, tx_id: str) -> str:
        return f"{cls.JOB_PREFIX}{tx_id}"

    def delay_for(self, expires_at: datetime) -> float:
        """Seconds until `expires_at`, clamped to >= 0."""
        return max(0.0, (_aware(expires_at) - self._clock()).total_seconds())

    def arm(self, tx_id: str, expires_at: datetime, on_expire: ExpireCallback) -> float:
        delay = self.delay_for(expires_at)
        self.scheduler.add_job(
            on_expire,
            "date",
            run_date=self._clock() + timedelta(seconds=delay),
            args=[tx_id],
            id=self.job_id(tx_id),
            name=f"Expire {tx_id}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug(f"Expiry armed for {tx_id} in {delay:.1f}s")
        return delay

    def disarm(self, tx_id: str) -> bool:
        try:
            self.scheduler.remove_job(self.job_id(tx_id))
            return True
        except JobLookupError:
            return False

    def is_armed(self, tx_id: str) -> bool:
        return self.scheduler.get_job(self.job_id(tx_id)) is not None

    def outstanding(self) -> int:
        return sum(1 for job in self.scheduler.get_jobs() if job.id.startswith(self.JOB_PREFIX))

