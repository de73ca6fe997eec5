"""
Cron expression evaluation.

Supports conventional five-field expressions (minute hour day-of-month
month day-of-week) and six-field expressions with a leading seconds field.
Fields are validated and expanded here; croniter computes due instants
from the expanded form. As in Vixie cron, a day matches if either day
field matches when both are restricted, and if both match when either
starts with `*`. All evaluation happens in UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache

from croniter import CroniterError, croniter

MONTH_NAMES = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}
WEEKDAY_NAMES = {"SUN": 0, "MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6}

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# Give up looking for a match this many years past the start instant
_SEARCH_HORIZON_YEARS = 8


def _parse_value(token: str, names: dict[str, int] | None) -> int:
    if names and token.upper() in names:
        return names[token.upper()]
    if not token.isdigit():
        raise ValueError(f"Invalid cron value: {token!r}")
    return int(token)


def _parse_field(
    field: str,
    low: int,
    high: int,
    names: dict[str, int] | None = None,
) -> frozenset[int]:
    """
    Expand one cron field into the set of matching values.

    Accepts `*`, `?`, single values, ranges `a-b`, steps `*/n`, `a-b/n`
    and `a/n`, and comma separated lists of those.
    """
    values: set[int] = set()
    for part in field.split(","):
        if not part:
            raise ValueError(f"Empty item in cron field {field!r}")

        step = 1
        if "/" in part:
            part, step_token = part.split("/", 1)
            if not step_token.isdigit() or int(step_token) == 0:
                raise ValueError(f"Invalid cron step in {field!r}")
            step = int(step_token)

        if part in ("*", "?"):
            start, end = low, high
        elif "-" in part:
            start_token, end_token = part.split("-", 1)
            start = _parse_value(start_token, names)
            end = _parse_value(end_token, names)
        else:
            start = _parse_value(part, names)
            end = high if step > 1 else start

        if start < low or end > high or start > end:
            raise ValueError(f"Cron field {field!r} out of range {low}-{high}")
        values.update(range(start, end + 1, step))

    return frozenset(values)


def _render_field(values: frozenset[int], low: int, high: int) -> str:
    if values == frozenset(range(low, high + 1)):
        return "*"
    return ",".join(str(v) for v in sorted(values))


@dataclass(frozen=True)
class CronExpression:
    """Parsed cron expression."""

    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_restricted: bool
    weekdays_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        """
        Parse a five or six field cron expression.

        Raises:
            ValueError: If the expression is malformed.
        """
        text = MACROS.get(expression.strip().lower(), expression)
        fields = text.split()
        if len(fields) == 5:
            fields = ["0", *fields]
        if len(fields) != 6:
            raise ValueError(f"Cron expression must have 5 or 6 fields: {expression!r}")

        second, minute, hour, day, month, weekday = fields
        weekdays = _parse_field(weekday, 0, 7, WEEKDAY_NAMES)
        if 7 in weekdays:
            weekdays = (weekdays - {7}) | {0}

        return cls(
            seconds=_parse_field(second, 0, 59),
            minutes=_parse_field(minute, 0, 59),
            hours=_parse_field(hour, 0, 23),
            days=_parse_field(day, 1, 31),
            months=_parse_field(month, 1, 12, MONTH_NAMES),
            weekdays=weekdays,
            days_restricted=not day.startswith(("*", "?")),
            weekdays_restricted=not weekday.startswith(("*", "?")),
        )

    @property
    def day_or(self) -> bool:
        # A field starting with `*` (including `*/n`) joins the other day field with AND
        return self.days_restricted and self.weekdays_restricted

    @property
    def canonical(self) -> str:
        """Six-field numeric form, seconds first."""
        return " ".join(
            (
                _render_field(self.seconds, 0, 59),
                _render_field(self.minutes, 0, 59),
                _render_field(self.hours, 0, 23),
                _render_field(self.days, 1, 31),
                _render_field(self.months, 1, 12),
                _render_field(self.weekdays, 0, 6),
            )
        )

    def next_after(self, after: datetime) -> datetime:
        """
        First matching instant strictly after `after`.

        Naive datetimes are interpreted as UTC. The result is UTC.

        Raises:
            ValueError: If nothing matches within the search horizon.
        """
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        after = after.astimezone(timezone.utc)

        try:
            iterator = croniter(
                self.canonical,
                after,
                day_or=self.day_or,
                second_at_beginning=True,
                max_years_between_matches=_SEARCH_HORIZON_YEARS,
            )
            moment = iterator.get_next(datetime)
            while moment <= after:
                moment = iterator.get_next(datetime)
        except CroniterError as e:
            raise ValueError("Cron expression never matches") from e

        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc)


@lru_cache(maxsize=256)
def _parse_cached(expression: str) -> CronExpression:
    return CronExpression.parse(expression)


def next_occurrence(expression: str | CronExpression, after: datetime) -> datetime:
    """
    Compute the next instant matching a cron expression.

    Args:
        expression: Cron expression text or a parsed CronExpression.
        after: Instant to search from (exclusive).

    Returns:
        The first matching UTC instant strictly after `after`.
    """
    if isinstance(expression, str):
        expression = _parse_cached(expression)
    return expression.next_after(after)
