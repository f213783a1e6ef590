"""
Next-run calculation for job schedules.

Everything here is pure: given a job definition and a reference instant it
returns the next UTC run time, or None when the job should not run on its own
(disabled, manual, or past its end date). The reference instant is always the
base for the calculation, never the job's last run, so a process that was
stopped for hours schedules one run in the near future instead of replaying
every missed tick.
"""
import calendar
import logging
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

from apscheduler.triggers.cron import CronTrigger

from core.timeutil import ensure_utc, utcnow
from dataexport.models import ScheduleType

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 60
FALLBACK_DELAY = timedelta(hours=1)
SAFETY_BUFFER = timedelta(minutes=1)
WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def parse_week_days(value: Optional[str]) -> List[int]:
    """Parse "0,2,4" into sorted weekday numbers (0=Monday). Defaults to Monday."""
    days = set()
    for part in (value or "").split(","):
        part = part.strip()
        if part.isdigit() and 0 <= int(part) <= 6:
            days.add(int(part))
    return sorted(days) if days else [0]


CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _cron_day_number(token: str) -> int:
    token = token.strip().lower()
    if token in CRON_DAY_NAMES:
        return CRON_DAY_NAMES.index(token)
    if token.isdigit() and 0 <= int(token) <= 7:
        return int(token) % 7
    raise ValueError(f"Invalid day of week '{token}'")


def _cron_days(field: str) -> str:
    """
    Translate a crontab day-of-week field (0 or 7 = Sunday) into day names.
    APScheduler numbers days from Monday, so numeric fields cannot be passed through.
    """
    if field == "*":
        return field
    days = set()
    for item in field.split(","):
        value, _, step = item.partition("/")
        step = int(step) if step else 1
        if step < 1:
            raise ValueError(f"Invalid step in day of week '{item}'")
        if value == "*":
            first, last = 0, 6
        elif "-" in value:
            start, end = value.split("-", 1)
            first, last = _cron_day_number(start), _cron_day_number(end)
            if end.strip() == "7":
                last = 7
            if last < first:
                raise ValueError(f"Invalid day of week range '{value}'")
        else:
            first = _cron_day_number(value)
            last = 6 if step > 1 else first
        days.update(day % 7 for day in range(first, last + 1, step))
    return ",".join(CRON_DAY_NAMES[day] for day in sorted(days))


def cron_trigger(expression: str) -> CronTrigger:
    """Build a UTC trigger from a standard 5-field crontab expression."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(minute=minute, hour=hour, day=day, month=month,
                       day_of_week=_cron_days(day_of_week), timezone=timezone.utc)


def _at(day, run_time: Optional[time]) -> datetime:
    run_time = run_time or time(0, 0)
    return datetime(day.year, day.month, day.day, run_time.hour, run_time.minute,
                    run_time.second, tzinfo=timezone.utc)


def _next_interval(job, base: datetime, now: datetime) -> datetime:
    minutes = job.interval_minutes if job.interval_minutes and job.interval_minutes > 0 else DEFAULT_INTERVAL_MINUTES
    step = timedelta(minutes=minutes)
    next_run = base + step
    if next_run <= now:
        missed = (now - next_run) // step + 1
        next_run += step * missed
    return next_run


def _next_cron(job, base: datetime, now: datetime) -> Optional[datetime]:
    expression = (job.cron_expression or "").strip()
    if not expression:
        logger.warning("[SCHEDULE] Job %s has a cron schedule without an expression", job.id)
        return None

    try:
        trigger = cron_trigger(expression)
    except (ValueError, TypeError) as e:
        logger.warning(f"[SCHEDULE] Invalid cron expression '{expression}' for job {job.id}: {e}")
        return now + FALLBACK_DELAY

    # Fire times are whole seconds; nudging past `base` makes the match strictly later
    next_run = trigger.get_next_fire_time(None, base + timedelta(microseconds=1))
    if next_run is not None and next_run <= now:
        next_run = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    return ensure_utc(next_run)


def _next_daily(job, base: datetime, now: datetime) -> datetime:
    next_run = _at(base.date(), job.start_time)
    if next_run <= now:
        next_run += timedelta(days=1)
    return next_run


def _next_weekly(job, base: datetime, now: datetime) -> datetime:
    selected = parse_week_days(job.week_days)
    today = base.weekday()
    for offset in range(7):
        if (today + offset) % 7 not in selected:
            continue
        candidate = _at(base.date() + timedelta(days=offset), job.start_time)
        if candidate <= now:
            continue
        return candidate
    # Only today is selected and its time has passed
    return _at(base.date() + timedelta(days=7), job.start_time)


def _next_monthly(job, base: datetime, now: datetime) -> datetime:
    day = max(1, min(31, job.month_day or 1))

    def on(year: int, month: int) -> datetime:
        clamped = min(day, calendar.monthrange(year, month)[1])
        return _at(datetime(year, month, clamped).date(), job.start_time)

    next_run = on(base.year, base.month)
    if next_run <= now:
        if base.month == 12:
            next_run = on(base.year + 1, 1)
        else:
            next_run = on(base.year, base.month + 1)
    return next_run


_CALCULATORS = {
    ScheduleType.INTERVAL: _next_interval,
    ScheduleType.CRON: _next_cron,
    ScheduleType.DAILY: _next_daily,
    ScheduleType.WEEKLY: _next_weekly,
    ScheduleType.MONTHLY: _next_monthly,
}


def _apply_time_window(job, next_run: datetime, now: datetime) -> datetime:
    """Move a run that lands outside start_time..end_time to the next window start."""
    start, end = job.start_time, job.end_time
    current = next_run.timetz().replace(tzinfo=None)

    if start <= end:
        inside = start <= current <= end
    else:
        # Window wraps midnight, e.g. 22:00-04:00
        inside = current >= start or current <= end
    if inside:
        return next_run

    snapped = _at(next_run.date(), start)
    if start <= end and current > end:
        snapped += timedelta(days=1)
    if snapped <= now:
        snapped += timedelta(days=1)
    return snapped


def compute_next_run(job, reference_time: Optional[datetime] = None) -> Optional[datetime]:
    """
    Next UTC instant `job` should run, or None.
    A non-None result is always strictly later than `reference_time`.
    """
    now = ensure_utc(reference_time) or utcnow()

    if not job.is_enabled or not job.schedule_type or job.schedule_type == ScheduleType.MANUAL:
        return None

    end_date = ensure_utc(job.end_date)
    if end_date is not None and end_date < now:
        return None

    calculator = _CALCULATORS.get(job.schedule_type)
    if calculator is None:
        logger.warning("[SCHEDULE] Unknown schedule type '%s' for job %s", job.schedule_type, job.id)
        return None

    base = now
    start_date = ensure_utc(job.start_date)
    if start_date is not None and start_date > now:
        base = start_date

    next_run = calculator(job, base, now)
    if next_run is None:
        return None

    if next_run <= now:
        logger.warning(
            "[SCHEDULE] Job %s computed past run %s, recomputing from now + 1 minute",
            job.id, next_run.isoformat(),
        )
        next_run = calculator(job, now + SAFETY_BUFFER, now) or next_run

    if job.start_time is not None and job.end_time is not None:
        next_run = _apply_time_window(job, next_run, now)

    if next_run <= now:
        logger.error(
            "[SCHEDULE] Job %s still has no future run (%s), falling back to now + 1 hour",
            job.id, next_run.isoformat(),
        )
        next_run = now + FALLBACK_DELAY

    return next_run


def describe_schedule(job) -> str:
    """Short human-readable summary of a job's schedule."""
    at = job.start_time.strftime("%H:%M") if job.start_time else "00:00"
    kind = job.schedule_type or ScheduleType.MANUAL
    if kind == ScheduleType.INTERVAL:
        minutes = job.interval_minutes if job.interval_minutes and job.interval_minutes > 0 else DEFAULT_INTERVAL_MINUTES
        return f"Every {minutes} minutes"
    if kind == ScheduleType.CRON:
        return f"Cron: {job.cron_expression or '(none)'}"
    if kind == ScheduleType.DAILY:
        return f"Daily at {at}"
    if kind == ScheduleType.WEEKLY:
        names = ", ".join(WEEKDAY_NAMES[d] for d in parse_week_days(job.week_days))
        return f"Weekly on {names} at {at}"
    if kind == ScheduleType.MONTHLY:
        return f"Monthly on day {job.month_day or 1} at {at}"
    return "Manual"
