"""
Five-field cron expressions evaluated in UTC

Fields are minute, hour, day-of-month, month and day-of-week. Each field accepts ``*``,
a value, a range ``a-b``, a step ``*/n`` or ``a-b/n``, and comma lists of those.
Day-of-week runs 0-6 from Sunday; 7 is accepted as Sunday.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Optional, Tuple

from ..utils.clock import to_naive_utc

# bounds per field, in order
FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

# an expression that never fires within this horizon is rejected
SEARCH_HORIZON_DAYS = 366 * 5


class CronError(ValueError):
    pass


@dataclass(frozen=True)
class CronExpression:
    source: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    day_restricted: bool
    weekday_restricted: bool

    def day_matches(self, moment: datetime) -> bool:
        # isoweekday: Monday=1 .. Sunday=7, cron: Sunday=0
        weekday = moment.isoweekday() % 7
        day_ok = moment.day in self.days
        weekday_ok = weekday in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self.day_matches(moment)
        )


def _parse_int(token: str, name: str, low: int, high: int) -> int:
    if not token.isdigit():
        raise CronError(f"Invalid {name} value '{token}'")
    value = int(token)
    if value < low or value > high:
        raise CronError(f"{name} value {value} out of range {low}-{high}")
    return value


def _parse_field(text: str, name: str, low: int, high: int) -> Tuple[FrozenSet[int], bool]:
    values = set()
    restricted = True
    for part in text.split(","):
        if not part:
            raise CronError(f"Empty entry in {name} field")
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            step = _parse_int(step_text, f"{name} step", 1, high)
        if base == "*":
            # a star, stepped or not, leaves the field unrestricted for day matching
            start, end = low, high
            restricted = False
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start = _parse_int(start_text, name, low, high)
            end = _parse_int(end_text, name, low, high)
            if start > end:
                raise CronError(f"Invalid {name} range '{base}'")
        else:
            start = _parse_int(base, name, low, high)
            # "5/15" means every 15 starting at 5
            end = high if step_text else start
        values.update(range(start, end + 1, step))
    return frozenset(values), restricted


def parse(expression: str) -> CronExpression:
    """Parse an expression, raising CronError naming the offending field"""
    if not isinstance(expression, str):
        raise CronError("Cron expression must be a string")
    parts = expression.split()
    if len(parts) != 5:
        raise CronError("Cron expression must have 5 fields: minute hour day month weekday")

    parsed = []
    restricted = []
    for text, (name, low, high) in zip(parts, FIELDS):
        values, is_restricted = _parse_field(text, name, low, high)
        parsed.append(values)
        restricted.append(is_restricted)

    weekdays = frozenset(0 if d == 7 else d for d in parsed[4])
    return CronExpression(
        source=" ".join(parts),
        minutes=parsed[0],
        hours=parsed[1],
        days=parsed[2],
        months=parsed[3],
        weekdays=weekdays,
        day_restricted=restricted[2],
        weekday_restricted=restricted[4],
    )


def next_run(expression, after: datetime) -> datetime:
    """
    First matching minute strictly after ``after``

    ``expression`` may be a string or a parsed CronExpression. Returns a naive UTC
    datetime. Raises CronError if nothing matches within the search horizon.
    """
    cron = parse(expression) if isinstance(expression, str) else expression
    moment = to_naive_utc(after).replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = moment + timedelta(days=SEARCH_HORIZON_DAYS)

    while moment < limit:
        if moment.month not in cron.months:
            year = moment.year + (1 if moment.month == 12 else 0)
            month = 1 if moment.month == 12 else moment.month + 1
            moment = datetime(year, month, 1)
            continue
        if not cron.day_matches(moment):
            moment = datetime(moment.year, moment.month, moment.day) + timedelta(days=1)
            continue
        if moment.hour not in cron.hours:
            moment = moment.replace(minute=0) + timedelta(hours=1)
            continue
        if moment.minute not in cron.minutes:
            moment += timedelta(minutes=1)
            continue
        return moment

    raise CronError(f"Cron expression '{cron.source}' never fires")


def validate(expression: str) -> Tuple[bool, str]:
    """Parse and make sure the expression fires at least once"""
    try:
        next_run(parse(expression), datetime(2000, 1, 1))
    except CronError as e:
        return False, str(e)
    return True, ""


def safe_next_run(expression: str, after: datetime) -> Optional[datetime]:
    try:
        return next_run(expression, after)
    except CronError:
        return None
