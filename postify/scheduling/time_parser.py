"""
Turn human time expressions into exact UTC instants.

Supported input (case-insensitive, surrounding whitespace ignored):

- ``in 15m`` / ``in 2 hours`` / ``in 3d`` (unit defaults to minutes)
- ``2025-03-01T14:30[:SS][Z|+HH:MM]`` (ISO; no offset means tenant zone)
- ``2025-03-01 14:30[:SS]``
- ``03/01/2025 14:30`` (month first)
- ``14:30[:SS]`` (today, or tomorrow if already past)
- ``[next|this] monday [HH:MM[:SS]]`` (default 09:00)
- ``tomorrow [HH:MM[:SS]]`` (default 09:00)
- ``today HH:MM[:SS]`` (rejected if already past)

Wall-clock expressions are resolved in the tenant's zone and converted to
UTC. Every result must be at least one minute and at most 180 days ahead.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from postify.exceptions import ParseError
from postify.utils import ensure_utc, utc_now

DEFAULT_MIN_LEAD = timedelta(minutes=1)
DEFAULT_MAX_AHEAD_DAYS = 180
DEFAULT_HOUR = 9

WEEKDAYS = {
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
    "sunday": 7,
}

_TIME = r"(\d{1,2}):(\d{2})(?::(\d{2}))?"

_RELATIVE = re.compile(
    r"^in\s+(\d+)\s*(m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)?$"
)
_TOMORROW = re.compile(rf"^tomorrow(?:\s+{_TIME})?$")
_TODAY = re.compile(rf"^today\s+{_TIME}$")
_WEEKDAY = re.compile(
    rf"^(?:(next|this)\s+)?({'|'.join(WEEKDAYS)})(?:\s+{_TIME})?$"
)
_ISO = re.compile(r"^\d{4}-\d{2}-\d{2}t\d{2}:\d{2}(:\d{2})?(\.\d+)?(z|[+-]\d{2}:\d{2})?$")
_DATE_TIME = re.compile(r"^(\d{4})-(\d{2})-(\d{2})\s+" + _TIME + "$")
_US_DATE_TIME = re.compile(r"^(\d{2})/(\d{2})/(\d{4})\s+(\d{1,2}):(\d{2})$")
_BARE_TIME = re.compile(rf"^{_TIME}$")

# Per-unit ceilings for relative offsets: one week of minutes or hours.
_RELATIVE_LIMITS = {"m": 10080, "h": 168}

FORMAT_HELP = (
    'Use "in 30m", "in 2h", "in 1d", "tomorrow 09:00", "next monday 14:30", '
    '"2025-12-25 14:30", "14:30" or "12/25/2025 14:30"'
)


def resolve_zone(tz: str) -> ZoneInfo:
    """Load an IANA zone.

    Raises:
        ParseError: If the zone name is unknown.
    """
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ParseError(f"Unknown timezone: {tz}") from exc


def _clock_time(
    hour: Optional[str], minute: Optional[str], second: Optional[str], default_hour: int
) -> Tuple[int, int, int]:
    if hour is None:
        return default_hour, 0, 0
    h, m, s = int(hour), int(minute or 0), int(second or 0)
    if not (0 <= h <= 23 and 0 <= m <= 59 and 0 <= s <= 59):
        raise ParseError("Invalid time. Use HH:MM or HH:MM:SS (24-hour format)")
    return h, m, s


def _at(local: datetime, h: int, m: int, s: int) -> datetime:
    return local.replace(hour=h, minute=m, second=s, microsecond=0)


def _parse_relative(match: "re.Match[str]", now: datetime, max_days: int) -> datetime:
    amount = int(match.group(1))
    unit = (match.group(2) or "m")[0]
    if unit == "d":
        if not 1 <= amount <= max_days:
            raise ParseError(f"Days must be between 1 and {max_days}")
        return now + timedelta(days=amount)
    limit = _RELATIVE_LIMITS[unit]
    if not 1 <= amount <= limit:
        label = "Minutes" if unit == "m" else "Hours"
        raise ParseError(f"{label} must be between 1 and {limit:,} (1 week)")
    if unit == "h":
        return now + timedelta(hours=amount)
    return now + timedelta(minutes=amount)


def _parse_natural(text: str, local_now: datetime, default_hour: int) -> Optional[datetime]:
    match = _TOMORROW.match(text)
    if match:
        h, m, s = _clock_time(*match.groups(), default_hour=default_hour)
        return _at(local_now + timedelta(days=1), h, m, s)

    match = _WEEKDAY.match(text)
    if match:
        prefix, day_name = match.group(1), match.group(2)
        h, m, s = _clock_time(*match.groups()[2:], default_hour=default_hour)
        target_day = WEEKDAYS[day_name]
        current_day = local_now.isoweekday()
        if prefix == "next":
            # Always the following week.
            days = (7 - current_day) + target_day
        else:
            days = target_day - current_day
            if days <= 0:
                days += 7
        return _at(local_now, h, m, s) + timedelta(days=days)

    match = _TODAY.match(text)
    if match:
        h, m, s = _clock_time(*match.groups(), default_hour=default_hour)
        target = _at(local_now, h, m, s)
        if target <= local_now:
            raise ParseError(
                "That time has already passed today. Use 'tomorrow' or a future time."
            )
        return target

    return None


def _parse_absolute(text: str, zone: ZoneInfo, local_now: datetime) -> Optional[datetime]:
    if _ISO.match(text):
        raw = text.upper()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ParseError(f"Invalid date: {text}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=zone)

    match = _DATE_TIME.match(text)
    if match:
        year, month, day = (int(v) for v in match.groups()[:3])
        h, m, s = _clock_time(*match.groups()[3:], default_hour=0)
        return _build(zone, year, month, day, h, m, s)

    match = _US_DATE_TIME.match(text)
    if match:
        month, day, year = (int(v) for v in match.groups()[:3])
        h, m, s = _clock_time(match.group(4), match.group(5), None, default_hour=0)
        return _build(zone, year, month, day, h, m, s)

    match = _BARE_TIME.match(text)
    if match:
        h, m, s = _clock_time(*match.groups(), default_hour=0)
        target = _at(local_now, h, m, s)
        if target <= local_now:
            target += timedelta(days=1)
        return target

    return None


def _build(zone: ZoneInfo, year: int, month: int, day: int, h: int, m: int, s: int) -> datetime:
    try:
        return datetime(year, month, day, h, m, s, tzinfo=zone)
    except ValueError as exc:
        raise ParseError(f"Invalid date: {exc}") from exc


def parse_target(
    text: str,
    tz: str = "UTC",
    now: Optional[datetime] = None,
    min_lead: timedelta = DEFAULT_MIN_LEAD,
    max_days: int = DEFAULT_MAX_AHEAD_DAYS,
    default_hour: int = DEFAULT_HOUR,
) -> datetime:
    """Parse *text* into a UTC instant.

    Args:
        text: Human time expression.
        tz: Tenant IANA zone used for wall-clock expressions.
        now: Reference instant (defaults to the current time). A single
            ``now`` is used for both resolving and bounds checking.
        min_lead: Minimum distance into the future.
        max_days: Maximum distance into the future, in days.
        default_hour: Hour used when a day is given without a time.

    Returns:
        Timezone-aware UTC datetime.

    Raises:
        ParseError: If the expression is not understood or out of bounds.
    """
    zone = resolve_zone(tz)
    now = ensure_utc(now) if now is not None else utc_now()
    normalized = " ".join(text.strip().lower().split())
    if not normalized:
        raise ParseError(f"Empty time expression. {FORMAT_HELP}")

    match = _RELATIVE.match(normalized)
    if match:
        target = _parse_relative(match, now, max_days)
    else:
        local_now = now.astimezone(zone)
        target = _parse_natural(normalized, local_now, default_hour)
        if target is None:
            target = _parse_absolute(normalized, zone, local_now)
        if target is None:
            raise ParseError(f"Unrecognized time '{text.strip()}'. {FORMAT_HELP}")

    target = target.astimezone(timezone.utc)
    if target < now + min_lead:
        raise ParseError("Scheduled time must be at least 1 minute in the future")
    if target > now + timedelta(days=max_days):
        raise ParseError(f"Cannot schedule more than {max_days} days in advance")
    return target


__all__ = ["parse_target", "resolve_zone", "WEEKDAYS", "FORMAT_HELP"]
