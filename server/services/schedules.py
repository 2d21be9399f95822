"""Recurring schedules: next-run calculation and lifecycle.

- ``calculate_next_run_at`` is pure and always returns an aware UTC datetime.
- ``ScheduleStore`` is the persistence port over the Database service.
- ``ScheduleService`` saves, toggles, deletes and fires schedules, keeping at
  most one armed timer per schedule id (every change cancels before arming).
"""

import calendar
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TYPE_CHECKING

import pytz

from constants import SCHEDULE_TRIGGER, SCHEDULE_TYPES
from core.logging import get_logger
from models.database import ScheduledWorkflow
from services.execution.errors import ScheduleNotFoundError, ScheduleValidationError
from services.scheduler import TimerService, build_cron_trigger

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)

INTERVAL_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}

DEFAULT_HOUR = 9
DEFAULT_MINUTE = 0
FALLBACK_DELAY = timedelta(hours=1)

# Keys stored in their own columns rather than in ScheduledWorkflow.config
_META_KEYS = ("scheduleType", "timezone", "startDate", "endDate", "enabled",
              "nextRunAt", "lastRunAt")

Launcher = Callable[[str, Dict[str, Any], str], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value: Any) -> Optional[datetime]:
    """Parse an ISO string or datetime into an aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise ScheduleValidationError(f"Invalid date: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _zone(name: Optional[str]):
    try:
        return pytz.timezone(name or "UTC")
    except pytz.UnknownTimeZoneError as e:
        raise ScheduleValidationError(f"Unknown timezone: {name}") from e


def _at(tz, year: int, month: int, day: int, hour: int, minute: int) -> datetime:
    """Wall-clock time in ``tz`` as an aware UTC datetime."""
    local = tz.localize(datetime(year, month, day, hour, minute))
    return local.astimezone(timezone.utc)


def _js_weekday(day: date) -> int:
    """Weekday with Sunday = 0 ... Saturday = 6."""
    return (day.weekday() + 1) % 7


def _int(config: Mapping[str, Any], key: str, default: int) -> int:
    value = config.get(key)
    return default if value is None or value == "" else int(value)


# =============================================================================
# NEXT RUN CALCULATION
# =============================================================================

def _interval_value(config: Mapping[str, Any]) -> float:
    value = config.get("intervalValue")
    if value is None or value == "":
        return 1.0
    number = float(value)
    if not math.isfinite(number) or number <= 0:
        raise ScheduleValidationError("Interval value must be a positive finite number")
    return number


def _next_interval(config: Mapping[str, Any], reference: datetime) -> datetime:
    value = _interval_value(config)
    unit = INTERVAL_UNITS.get(config.get("intervalUnit") or "hours", INTERVAL_UNITS["hours"])
    return reference + unit * value


def _next_daily(config: Mapping[str, Any], reference: datetime, tz) -> datetime:
    hour, minute = _int(config, "hour", DEFAULT_HOUR), _int(config, "minute", DEFAULT_MINUTE)
    local = reference.astimezone(tz)
    candidate = _at(tz, local.year, local.month, local.day, hour, minute)
    if candidate <= reference:
        following = local.date() + timedelta(days=1)
        candidate = _at(tz, following.year, following.month, following.day, hour, minute)
    return candidate


def _next_weekly(config: Mapping[str, Any], reference: datetime, tz) -> datetime:
    hour, minute = _int(config, "hour", DEFAULT_HOUR), _int(config, "minute", DEFAULT_MINUTE)
    days = {int(d) for d in (config.get("daysOfWeek") or [1])}
    local = reference.astimezone(tz)

    for offset in range(8):
        day = local.date() + timedelta(days=offset)
        if _js_weekday(day) not in days:
            continue
        candidate = _at(tz, day.year, day.month, day.day, hour, minute)
        if candidate > reference:
            return candidate

    fallback = local.date() + timedelta(days=7)
    return _at(tz, fallback.year, fallback.month, fallback.day, hour, minute)


def _clamped(tz, year: int, month: int, day: int, hour: int, minute: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return _at(tz, year, month, min(day, last_day), hour, minute)


def _next_monthly(config: Mapping[str, Any], reference: datetime, tz) -> datetime:
    hour, minute = _int(config, "hour", DEFAULT_HOUR), _int(config, "minute", DEFAULT_MINUTE)
    day = _int(config, "dayOfMonth", 1)
    local = reference.astimezone(tz)

    candidate = _clamped(tz, local.year, local.month, day, hour, minute)
    if candidate <= reference:
        year, month = (local.year + 1, 1) if local.month == 12 else (local.year, local.month + 1)
        candidate = _clamped(tz, year, month, day, hour, minute)
    return candidate


def _next_cron(config: Mapping[str, Any], reference: datetime, tz) -> datetime:
    trigger = build_cron_trigger(config.get("cronExpression") or "", timezone=tz)
    # CronTrigger treats "now" as eligible; the next run must be strictly later
    fire = trigger.get_next_fire_time(None, reference + timedelta(microseconds=1))
    if fire is None:
        return reference + FALLBACK_DELAY
    return fire.astimezone(timezone.utc)


def calculate_next_run_at(config: Mapping[str, Any], reference: Optional[datetime] = None) -> datetime:
    """Next fire time of a schedule strictly after ``reference``.

    A ``startDate`` later than the reference acts as an activation floor:
    calendar types may fire at ``startDate`` itself and INTERVAL fires one
    interval after it.
    """
    reference = parse_instant(reference) or _utcnow()
    schedule_type = config.get("scheduleType")
    tz = _zone(config.get("timezone"))

    start_date = parse_instant(config.get("startDate"))
    if start_date is not None and start_date > reference:
        if schedule_type == "INTERVAL":
            return _next_interval(config, start_date)
        reference = start_date - timedelta(microseconds=1)

    if schedule_type == "INTERVAL":
        return _next_interval(config, reference)
    if schedule_type == "DAILY":
        return _next_daily(config, reference, tz)
    if schedule_type == "WEEKLY":
        return _next_weekly(config, reference, tz)
    if schedule_type == "MONTHLY":
        return _next_monthly(config, reference, tz)
    if schedule_type == "CRON":
        return _next_cron(config, reference, tz)
    return reference + FALLBACK_DELAY


def validate_schedule_config(config: Mapping[str, Any]) -> None:
    """Reject configurations that cannot produce a next run.

    Raises:
        ScheduleValidationError
    """
    schedule_type = config.get("scheduleType")
    if schedule_type not in SCHEDULE_TYPES:
        raise ScheduleValidationError(f"Unknown schedule type: {schedule_type}")
    _zone(config.get("timezone"))

    try:
        if schedule_type == "INTERVAL":
            _interval_value(config)
            if (config.get("intervalUnit") or "hours") not in INTERVAL_UNITS:
                raise ScheduleValidationError(f"Unknown interval unit: {config.get('intervalUnit')}")
            _next_interval(config, _utcnow())
        if schedule_type in ("DAILY", "WEEKLY", "MONTHLY"):
            if not 0 <= _int(config, "hour", DEFAULT_HOUR) <= 23:
                raise ScheduleValidationError("Hour must be between 0 and 23")
            if not 0 <= _int(config, "minute", DEFAULT_MINUTE) <= 59:
                raise ScheduleValidationError("Minute must be between 0 and 59")
        if schedule_type == "WEEKLY":
            days = config.get("daysOfWeek")
            if days is not None and (not days or any(not 0 <= int(d) <= 6 for d in days)):
                raise ScheduleValidationError("Days of week must be a non-empty list of 0 (Sunday) to 6")
        if schedule_type == "MONTHLY" and not 1 <= _int(config, "dayOfMonth", 1) <= 31:
            raise ScheduleValidationError("Day of month must be between 1 and 31")
    except (TypeError, ValueError, OverflowError) as e:
        raise ScheduleValidationError(f"Invalid schedule field: {e}") from e

    if schedule_type == "CRON":
        try:
            build_cron_trigger(config.get("cronExpression") or "", timezone=_zone(config.get("timezone")))
        except ValueError as e:
            raise ScheduleValidationError(f"Invalid cron expression: {e}") from e


# =============================================================================
# PERSISTENCE PORT
# =============================================================================

class ScheduleStore:
    """Schedule persistence backed by the Database service."""

    def __init__(self, database: "Database"):
        self.database = database

    async def upsert(self, workflow_id: str, node_id: str, values: Dict[str, Any]) -> ScheduledWorkflow:
        return await self.database.upsert_schedule(workflow_id, node_id, values)

    async def get(self, workflow_id: str, node_id: str) -> Optional[ScheduledWorkflow]:
        return await self.database.get_schedule(workflow_id, node_id)

    async def get_by_id(self, schedule_id: int) -> Optional[ScheduledWorkflow]:
        return await self.database.get_schedule_by_id(schedule_id)

    async def delete(self, schedule_id: int) -> bool:
        return await self.database.delete_schedule(schedule_id)

    async def set_enabled(self, schedule_id: int, enabled: bool,
                          next_run_at: Optional[datetime] = None) -> Optional[ScheduledWorkflow]:
        values: Dict[str, Any] = {"enabled": enabled}
        if next_run_at is not None:
            values["next_run_at"] = next_run_at
        return await self.database.update_schedule(schedule_id, **values)

    async def update_run_times(self, schedule_id: int, last_run_at: Optional[datetime],
                               next_run_at: Optional[datetime],
                               enabled: Optional[bool] = None) -> Optional[ScheduledWorkflow]:
        values: Dict[str, Any] = {"last_run_at": last_run_at, "next_run_at": next_run_at}
        if enabled is not None:
            values["enabled"] = enabled
        return await self.database.update_schedule(schedule_id, **values)

    async def list_enabled(self) -> List[ScheduledWorkflow]:
        return await self.database.list_enabled_schedules()


# =============================================================================
# LIFECYCLE
# =============================================================================

class ScheduleService:
    """Saves schedules and turns timer fires into workflow runs."""

    def __init__(self, store: ScheduleStore, timer: TimerService,
                 launcher: Optional[Launcher] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.timer = timer
        self.launcher = launcher
        self._clock = clock
        timer.set_callback(self.fire)

    def set_launcher(self, launcher: Launcher) -> None:
        """Coroutine ``(workflow_id, initial_data, caller_id)`` that starts a run."""
        self.launcher = launcher

    async def save_schedule(self, user_id: str, workflow_id: str, node_id: str,
                            config: Mapping[str, Any]) -> ScheduledWorkflow:
        """Validate, compute the first run, upsert and re-arm the timer.

        Raises:
            ScheduleValidationError: unknown type/timezone, bad fields, or an
                end date that has already passed.
        """
        validate_schedule_config(config)
        now = self._clock()
        start_date = parse_instant(config.get("startDate"))
        end_date = parse_instant(config.get("endDate"))
        if end_date is not None and end_date <= now:
            raise ScheduleValidationError("End date has already passed")

        next_run_at = calculate_next_run_at(config, now)
        schedule = await self.store.upsert(workflow_id, node_id, {
            "user_id": user_id,
            "schedule_type": config["scheduleType"],
            "timezone": config.get("timezone") or "UTC",
            "config": {k: v for k, v in config.items() if k not in _META_KEYS},
            "enabled": True,
            "next_run_at": next_run_at,
            "start_date": start_date,
            "end_date": end_date,
        })

        self.timer.cancel(schedule.id)
        self.timer.arm(schedule.id, next_run_at)
        logger.info("Schedule saved", schedule_id=schedule.id, workflow_id=workflow_id,
                    node_id=node_id, schedule_type=schedule.schedule_type,
                    next_run_at=next_run_at.isoformat())
        return schedule

    async def toggle_schedule(self, schedule_id: int, enabled: bool) -> ScheduledWorkflow:
        schedule = await self._require(schedule_id)
        self.timer.cancel(schedule_id)

        if not enabled:
            schedule = await self.store.set_enabled(schedule_id, False)
            logger.info("Schedule disabled", schedule_id=schedule_id)
            return schedule

        now = self._clock()
        if schedule.end_date is not None and schedule.end_date <= now:
            raise ScheduleValidationError("End date has already passed")
        next_run_at = calculate_next_run_at(schedule.to_schedule_config(), now)
        schedule = await self.store.set_enabled(schedule_id, True, next_run_at=next_run_at)
        self.timer.arm(schedule_id, next_run_at)
        logger.info("Schedule enabled", schedule_id=schedule_id, next_run_at=next_run_at.isoformat())
        return schedule

    async def delete_schedule(self, schedule_id: int) -> bool:
        self.timer.cancel(schedule_id)
        deleted = await self.store.delete(schedule_id)
        if not deleted:
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")
        logger.info("Schedule deleted", schedule_id=schedule_id)
        return True

    async def get_schedule(self, workflow_id: str, node_id: str) -> Optional[ScheduledWorkflow]:
        return await self.store.get(workflow_id, node_id)

    async def restore(self) -> int:
        """Re-arm every enabled schedule (startup)."""
        schedules = await self.store.list_enabled()
        now = self._clock()
        for schedule in schedules:
            next_run_at = schedule.next_run_at or calculate_next_run_at(schedule.to_schedule_config(), now)
            self.timer.arm(schedule.id, next_run_at)
        logger.info("Schedules restored", count=len(schedules))
        return len(schedules)

    async def fire(self, schedule_id: int) -> None:
        """Timer callback: start the run, then advance (or end) the schedule."""
        schedule = await self.store.get_by_id(schedule_id)
        if schedule is None or not schedule.enabled:
            logger.info("Skipping fire of missing or disabled schedule", schedule_id=schedule_id)
            return

        now = self._clock()
        if schedule.next_run_at is not None and schedule.next_run_at > now:
            # Stale timer from before the last save
            self.timer.arm(schedule_id, schedule.next_run_at)
            return

        carrier = {
            SCHEDULE_TRIGGER: {
                "scheduleId": schedule.id,
                "nodeId": schedule.node_id,
                "scheduledAt": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
                "triggeredAt": now.isoformat(),
                "scheduleType": schedule.schedule_type,
            }
        }

        if self.launcher is None:
            logger.warning("No workflow launcher configured", schedule_id=schedule_id)
        else:
            try:
                await self.launcher(schedule.workflow_id, carrier, schedule.user_id)
                logger.info("Scheduled run started", schedule_id=schedule_id,
                            workflow_id=schedule.workflow_id)
            except Exception as e:
                logger.error("Scheduled run failed", schedule_id=schedule_id,
                             workflow_id=schedule.workflow_id, error=str(e))

        # Saves, toggles and deletes made while the launch was awaited own the timer now
        current = await self.store.get_by_id(schedule_id)
        if current is None or not current.enabled or current.updated_at != schedule.updated_at:
            logger.info("Schedule changed during its fire, not re-arming", schedule_id=schedule_id)
            return

        next_run_at = calculate_next_run_at(schedule.to_schedule_config(), now)
        enabled = schedule.end_date is None or next_run_at <= schedule.end_date
        await self.store.update_run_times(schedule_id, last_run_at=now,
                                          next_run_at=next_run_at if enabled else None,
                                          enabled=None if enabled else False)
        if enabled:
            self.timer.arm(schedule_id, next_run_at)
        else:
            logger.info("Schedule reached its end date", schedule_id=schedule_id)

    async def _require(self, schedule_id: int) -> ScheduledWorkflow:
        schedule = await self.store.get_by_id(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")
        return schedule
