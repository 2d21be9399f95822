"""
Timer Service using APScheduler.

Holds at most one one-shot DateTrigger job per schedule (job id
``schedule:{id}``). Also builds CronTriggers for CRON next-run computation.
"""
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from core.logging import get_logger

logger = get_logger(__name__)

FireCallback = Callable[[int], Awaitable[Any]]

# Crontab weekday numbers: 0 and 7 are Sunday
CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_NUMERIC_WEEKDAYS = re.compile(r"^(\*|\d+)(?:-(\d+))?(?:/(\d+))?$")


def cron_day_of_week(field: str) -> str:
    """
    Translate a crontab day-of-week field into APScheduler weekday names.

    APScheduler numbers weekdays from Monday = 0, crontab from Sunday = 0, so
    numeric entries are expanded to names ("1-5" -> "mon,tue,wed,thu,fri").
    Named entries are the same in both and pass through.
    """
    if field.strip() == "*":
        return "*"

    names: List[str] = []
    for part in field.split(","):
        match = _NUMERIC_WEEKDAYS.match(part.strip())
        if match is None:
            names.append(part.strip())
            continue
        start, end, step = match.groups()
        first = 0 if start == "*" else int(start)
        if end is not None:
            last = int(end)
        else:
            last = 6 if (start == "*" or step) else first
        if first > 7 or last > 7:
            raise ValueError(f"Invalid day of week: {part!r}")
        for day in range(first, last + 1, int(step or 1)):
            if CRON_WEEKDAYS[day] not in names:
                names.append(CRON_WEEKDAYS[day])
    return ",".join(names)


def build_cron_trigger(cron_expression: str, timezone: Any = "UTC") -> CronTrigger:
    """
    Build a CronTrigger from a cron expression.

    Args:
        cron_expression: 6-field cron expression (second minute hour day month weekday)
                        or 5-field (minute hour day month weekday)
        timezone: Timezone the fields are evaluated in (default: UTC)

    Raises:
        ValueError: if the expression has too few fields or an invalid field.
    """
    parts = cron_expression.split()

    if len(parts) >= 6:
        # 6-field format: second minute hour day month weekday
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=cron_day_of_week(parts[5]),
            timezone=timezone
        )
    if len(parts) == 5:
        # 5-field format: minute hour day month weekday (default second=0)
        return CronTrigger(
            second='0',
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=cron_day_of_week(parts[4]),
            timezone=timezone
        )
    raise ValueError(f"Cron expression needs 5 or 6 fields, got {len(parts)}: {cron_expression!r}")


def _next_run_iso(job) -> Optional[str]:
    # Jobs added before the scheduler starts have no next_run_time yet
    next_run = getattr(job, "next_run_time", None)
    return next_run.isoformat() if next_run else None


class TimerService:
    """One-shot schedule timers on an AsyncIOScheduler."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._callback: Optional[FireCallback] = None

    def set_callback(self, callback: FireCallback) -> None:
        """Coroutine called with the schedule id when a timer fires."""
        self._callback = callback

    @staticmethod
    def job_id(schedule_id: int) -> str:
        return f"schedule:{schedule_id}"

    def start(self):
        """Start the scheduler if not already running."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("[Scheduler] Started")

    def shutdown(self):
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Shutdown")

    async def _fire(self, schedule_id: int):
        if self._callback is None:
            logger.warning("[Scheduler] Timer fired without a callback", schedule_id=schedule_id)
            return
        await self._callback(schedule_id)

    def arm(self, schedule_id: int, run_at: datetime) -> str:
        """
        Arm the timer of a schedule, replacing any existing one.

        A fire time in the past is armed for now.
        """
        self.cancel(schedule_id)

        now = datetime.now(timezone.utc)
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=timezone.utc)
        if run_at < now:
            run_at = now

        job_id = self.job_id(schedule_id)
        self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_at, timezone="UTC"),
            id=job_id,
            replace_existing=True,
            args=[schedule_id],
            misfire_grace_time=None,
        )
        logger.info("[Scheduler] Timer armed", schedule_id=schedule_id, run_at=run_at.isoformat())
        return job_id

    def cancel(self, schedule_id: int) -> bool:
        """
        Cancel the timer of a schedule.

        Returns:
            True if a job was removed, False if none was armed
        """
        try:
            self.scheduler.remove_job(self.job_id(schedule_id))
            logger.info("[Scheduler] Timer cancelled", schedule_id=schedule_id)
            return True
        except JobLookupError:
            return False

    def get_all_jobs(self) -> List[Dict]:
        """Get list of all armed timers."""
        return [
            {
                "id": job.id,
                "next_run_time": _next_run_iso(job),
                "trigger": str(job.trigger)
            }
            for job in self.scheduler.get_jobs()
        ]
