"""Five-field cron expression evaluation.

Format: ``minute hour day-of-month month day-of-week``.

Supported field syntax:

- ``*`` wildcard
- ``5`` exact value
- ``1-5`` inclusive range
- ``*/15`` step over the whole field (matches ``value % 15 == 0``)
- ``0-30/5`` range with step
- ``5/15`` start with step (5, 20, 35, ...)
- ``1,15,30`` lists, where every element may use any of the above

Day-of-week runs 0-6 with 0 = Sunday; 7 is accepted as Sunday too.

Day-of-month and day-of-week are ANDed: ``0 9 1 * 1`` fires only when the
1st of the month is a Monday. Classic cron ORs them when both are
restricted; schedules that rely on that behaviour must be split into two
jobs.

Everything here is pure and safe to call from any task.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from jobscheduler.jobs.errors import InvalidCronExpressionError

# One year of minutes. Bounds the search for expressions that never fire
# (e.g. "0 0 31 2 *").
MAX_ITERATIONS = 525_600

_ATOM_RE = re.compile(r"^(\*|\d+(?:-\d+)?)(?:/(\d+))?$")

_FIELDS = ("minute", "hour", "day_of_month", "month", "day_of_week")

FIELD_BOUNDS = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day_of_month": (1, 31),
    "month": (1, 12),
    "day_of_week": (0, 7),
}

_MONTH_NAMES = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]
_DAY_NAMES = [
    "Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday",
]


@dataclass(frozen=True)
class CronParts:
    """The five raw fields of a parsed expression."""

    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str


def _validate_field(expression: str, name: str, value: str) -> None:
    low, high = FIELD_BOUNDS[name]
    for element in value.split(","):
        m = _ATOM_RE.match(element)
        if not m:
            raise InvalidCronExpressionError(
                expression, f"bad {name} element {element!r}"
            )
        base, step = m.group(1), m.group(2)
        if step is not None and int(step) == 0:
            raise InvalidCronExpressionError(expression, f"zero step in {name}")
        if base == "*":
            continue
        if "-" in base:
            start, end = (int(x) for x in base.split("-"))
            if start > end:
                raise InvalidCronExpressionError(
                    expression, f"{name} range {base} runs backwards"
                )
            bounds = (start, end)
        else:
            bounds = (int(base),)
        for v in bounds:
            if v < low or v > high:
                raise InvalidCronExpressionError(
                    expression, f"{name} value {v} outside {low}-{high}"
                )


def _matches_element(element: str, value: int) -> bool:
    m = _ATOM_RE.match(element)
    if not m:
        return False
    base, step = m.group(1), m.group(2)
    step_n = int(step) if step is not None else None
    if step_n == 0:
        return False

    if base == "*":
        return step_n is None or value % step_n == 0

    if "-" in base:
        start, end = (int(x) for x in base.split("-"))
        if not start <= value <= end:
            return False
        return step_n is None or (value - start) % step_n == 0

    start = int(base)
    if step_n is None:
        return value == start
    return value >= start and (value - start) % step_n == 0


def _cron_weekday(dt: datetime) -> int:
    # datetime.weekday() is Monday=0; cron is Sunday=0
    return (dt.weekday() + 1) % 7


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


class CronEvaluator:
    """Parses, validates and evaluates cron expressions."""

    @staticmethod
    def parse(expression: str) -> CronParts:
        """
        Split an expression into its five fields and validate each one.

        Raises:
            InvalidCronExpressionError: Wrong field count, malformed element,
                value outside the field's bounds, backwards range or zero step.
        """
        if not isinstance(expression, str):
            raise InvalidCronExpressionError(repr(expression), "not a string")
        fields = expression.split()
        if len(fields) != 5:
            raise InvalidCronExpressionError(
                expression, f"expected 5 fields, got {len(fields)}"
            )
        for name, value in zip(_FIELDS, fields):
            _validate_field(expression, name, value)
        return CronParts(*fields)

    @staticmethod
    def matches_cron_part(part: str, value: int) -> bool:
        """Check a single value against one field. Malformed parts never match."""
        return any(_matches_element(e, value) for e in part.split(","))

    @classmethod
    def matches_day_of_week(cls, part: str, day: int) -> bool:
        """Day-of-week match where both 0 and 7 mean Sunday."""
        day %= 7
        if cls.matches_cron_part(part, day):
            return True
        return day == 0 and cls.matches_cron_part(part, 7)

    @classmethod
    def is_valid(cls, expression: str) -> bool:
        try:
            cls.parse(expression)
            cls.get_next_run_time(expression)
        except (InvalidCronExpressionError, ValueError, OverflowError):
            return False
        return True

    @classmethod
    def get_next_run_time(
        cls,
        expression: str,
        from_instant: Optional[datetime] = None,
        tz: Optional[tzinfo] = None,
    ) -> datetime:
        """
        Find the first minute strictly after ``from_instant`` matching all five fields.

        Args:
            expression: Five-field cron expression
            from_instant: Search origin (defaults to now, UTC). Seconds and
                microseconds are truncated.
            tz: Timezone whose wall clock the expression is written in. When
                omitted, an aware ``from_instant`` is matched in its own zone.

        Returns:
            An aware datetime in ``tz`` when ``from_instant`` is aware, otherwise
            a naive datetime. Aware results are always strictly later than
            ``from_instant``, including across a DST fall-back hour.

            If nothing matches within one year (an impossible date such as
            Feb 31), midnight of the following day is returned instead so a
            misconfigured job keeps being revisited rather than silently never
            running again.

        Raises:
            InvalidCronExpressionError: If the expression does not parse.
        """
        parts = cls.parse(expression)

        if from_instant is None:
            from_instant = datetime.now(timezone.utc)

        aware = from_instant.tzinfo is not None
        zone: Optional[tzinfo] = None
        if aware:
            zone = tz or from_instant.tzinfo
            local = from_instant.astimezone(zone)
        else:
            local = from_instant

        start = local.replace(tzinfo=None, second=0, microsecond=0)
        candidate = start + timedelta(minutes=1)
        limit = start + timedelta(minutes=MAX_ITERATIONS)

        while candidate <= limit:
            if not cls.matches_cron_part(parts.month, candidate.month):
                candidate = _first_of_next_month(candidate)
                continue

            if not (
                cls.matches_cron_part(parts.day_of_month, candidate.day)
                and cls.matches_day_of_week(parts.day_of_week, _cron_weekday(candidate))
            ):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue

            if not cls.matches_cron_part(parts.hour, candidate.hour):
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue

            if not cls.matches_cron_part(parts.minute, candidate.minute):
                candidate += timedelta(minutes=1)
                continue

            if not aware:
                return candidate

            resolved = _resolve_wall_clock(candidate, zone, from_instant)
            if resolved is not None:
                return resolved
            candidate += timedelta(minutes=1)

        fallback = local.replace(
            hour=0, minute=0, second=0, microsecond=0, tzinfo=None
        ) + timedelta(days=1)
        if aware:
            return fallback.replace(tzinfo=zone).astimezone(timezone.utc).astimezone(zone)
        return fallback

    @classmethod
    def describe(cls, expression: str) -> str:
        """Human-readable summary, e.g. "at 9:00 AM on Monday through Friday"."""
        try:
            parts = cls.parse(expression)
        except InvalidCronExpressionError:
            return "invalid cron expression"

        descriptions: list[str] = []

        if parts.minute.isdigit() and parts.hour.isdigit():
            hour = int(parts.hour)
            ampm = "PM" if hour >= 12 else "AM"
            display_hour = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
            descriptions.append(f"at {display_hour}:{int(parts.minute):02d} {ampm}")
        elif parts.minute.startswith("*/") and parts.hour == "*":
            step = parts.minute.split("/")[1]
            descriptions.append("every minute" if step == "1" else f"every {step} minutes")
        elif parts.minute == "*" and parts.hour == "*":
            descriptions.append("every minute")
        elif parts.minute.isdigit() and parts.hour == "*":
            descriptions.append(f"at minute {int(parts.minute)} of every hour")

        if parts.day_of_month != "*":
            if parts.day_of_month.isdigit():
                descriptions.append(f"on the {_ordinal(int(parts.day_of_month))}")
            elif "," in parts.day_of_month:
                descriptions.append(f"on the {parts.day_of_month.replace(',', ', ')}")

        if parts.month != "*":
            months = parts.month.split(",")
            if all(m.isdigit() for m in months):
                names = ", ".join(_MONTH_NAMES[int(m) - 1] for m in months)
                descriptions.append(f"in {names}")

        if parts.day_of_week != "*":
            dow = parts.day_of_week
            if dow.isdigit():
                descriptions.append(f"on {_DAY_NAMES[int(dow) % 7]}")
            elif re.fullmatch(r"\d-\d", dow):
                first, last = (int(x) % 7 for x in dow.split("-"))
                descriptions.append(f"on {_DAY_NAMES[first]} through {_DAY_NAMES[last]}")
            elif all(d.isdigit() for d in dow.split(",")):
                names = ", ".join(_DAY_NAMES[int(d) % 7] for d in dow.split(","))
                descriptions.append(f"on {names}")

        return " ".join(descriptions) or "custom schedule"


def _first_of_next_month(dt: datetime) -> datetime:
    if dt.month == 12:
        return dt.replace(year=dt.year + 1, month=1, day=1, hour=0, minute=0)
    return dt.replace(month=dt.month + 1, day=1, hour=0, minute=0)


def _resolve_wall_clock(
    wall: datetime, zone: tzinfo, after: datetime
) -> Optional[datetime]:
    """Attach ``zone`` to a naive wall-clock time, returning the first reading later than ``after``.

    During a fall-back hour the same wall time occurs twice (fold 0 and 1);
    during a spring-forward gap it does not exist and normalises forward.
    """
    for fold in (0, 1):
        instant = wall.replace(tzinfo=zone, fold=fold).astimezone(timezone.utc)
        if instant > after:
            return instant.astimezone(zone)
    return None


def get_next_run_time(
    expression: str,
    from_instant: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> datetime:
    """Module-level shortcut for CronEvaluator.get_next_run_time."""
    return CronEvaluator.get_next_run_time(expression, from_instant, tz)
