"""
Schedule expressions for the cron runner.

Wraps APScheduler's CronTrigger and IntervalTrigger behind a small
immutable Schedule object that can validate an expression up front and
then repeatedly produce the next fire time.

Supported syntax:
- 5 fields: minute hour day-of-month month day-of-week
- 6 fields: second minute hour day-of-month month day-of-week
- Descriptors: @yearly, @annually, @monthly, @weekly, @daily,
  @midnight, @hourly and @every <duration> (e.g. "@every 1h30m")
- An optional CRON_TZ=<zone> or TZ=<zone> prefix

Day-of-week follows cron numbering (0 = Sunday, 6 = Saturday). When both
day-of-month and day-of-week are restricted, a day matching either one
fires, as in classic cron.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional, Set

from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class InvalidScheduleError(ValueError):
    """Raised when a schedule expression cannot be parsed."""
    pass


# Descriptors expand to 6-field expressions (seconds first)
DESCRIPTORS = {
    '@yearly': '0 0 0 1 1 *',
    '@annually': '0 0 0 1 1 *',
    '@monthly': '0 0 0 1 * *',
    '@weekly': '0 0 0 * * 0',
    '@daily': '0 0 0 * * *',
    '@midnight': '0 0 0 * * *',
    '@hourly': '0 0 * * * *',
}

# Cron day-of-week numbering, index 0 is Sunday
CRON_DAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']

# APScheduler orders days from Monday
APSCHEDULER_DAY_ORDER = ['mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun']

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1,
    'm': 60,
    'h': 3600,
}

_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')


def parse_duration(text: str) -> timedelta:
    """
    Parse a Go-style duration string such as "1h30m", "90s" or "250ms".

    Raises:
        InvalidScheduleError: If the string is not a valid duration
    """
    text = text.strip()
    if not text:
        raise InvalidScheduleError("empty duration")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise InvalidScheduleError(f"invalid duration '{text}'")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    return timedelta(seconds=total)


def _day_value(token: str, field: str) -> int:
    """Resolve a single day-of-week token (number or name) to cron numbering."""
    name = token.lower()
    if name in CRON_DAY_NAMES:
        return CRON_DAY_NAMES.index(name)
    if not token.isdigit():
        raise InvalidScheduleError(f"invalid day-of-week '{token}' in '{field}'")
    value = int(token)
    if value > 6:
        raise InvalidScheduleError(
            f"day-of-week value {value} out of range (0-6) in '{field}'"
        )
    return value


def translate_day_of_week(field: str) -> str:
    """
    Translate a cron day-of-week field into APScheduler's day names.

    APScheduler numbers days from Monday, cron from Sunday, so numeric
    values are expanded to an explicit list of names.

    Args:
        field: Cron day-of-week field (e.g. "1-5", "0,6", "*/2", "mon-fri")

    Returns:
        Equivalent APScheduler day_of_week expression
    """
    days: Set[int] = set()

    for part in field.split(','):
        base, _, step_text = part.partition('/')
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise InvalidScheduleError(f"invalid step '{step_text}' in '{field}'")
            step = int(step_text)

        if base in ('*', '?'):
            start, end = 0, 6
        elif '-' in base:
            low, _, high = base.partition('-')
            start, end = _day_value(low, field), _day_value(high, field)
            if start > end:
                raise InvalidScheduleError(
                    f"beginning of range ({start}) beyond end of range ({end}) in '{field}'"
                )
        else:
            start = _day_value(base, field)
            # "3/2" means from 3 to the end of the week in steps of 2
            end = 6 if step_text else start

        days.update(range(start, end + 1, step))

    if len(days) == 7:
        return '*'
    names = {CRON_DAY_NAMES[d] for d in days}
    return ','.join(d for d in APSCHEDULER_DAY_ORDER if d in names)


def is_unrestricted(field: str) -> bool:
    """True if any part of a day field is "*" or "?" without a step above 1."""
    for part in field.split(','):
        base, _, step = part.partition('/')
        if base in ('*', '?') and step in ('', '1'):
            return True
    return False


class Schedule:
    """
    Immutable recurrence rule producing fire times.

    Use Schedule.parse() to build one; it raises InvalidScheduleError for
    malformed expressions so nothing is triggered from a bad schedule.
    """

    def __init__(
        self,
        expression: str,
        trigger,
        interval: Optional[timedelta] = None,
        timezone=None
    ):
        self._expression = expression
        self._trigger = trigger
        self._interval = interval
        self._timezone = timezone or trigger.timezone

    @property
    def expression(self) -> str:
        return self._expression

    @property
    def timezone(self):
        return self._timezone

    @property
    def interval(self) -> Optional[timedelta]:
        """Fixed interval for @every schedules, None for cron schedules."""
        return self._interval

    @classmethod
    def parse(cls, expression: str) -> 'Schedule':
        """
        Parse and validate a schedule expression.

        Args:
            expression: Cron expression or descriptor

        Returns:
            Schedule instance

        Raises:
            InvalidScheduleError: If the expression is malformed
        """
        if not expression or not expression.strip():
            raise InvalidScheduleError("empty schedule expression")

        spec = expression.strip()
        timezone = None
        if spec.startswith('CRON_TZ=') or spec.startswith('TZ='):
            prefix, _, spec = spec.partition(' ')
            timezone = prefix.split('=', 1)[1]
            spec = spec.strip()
            if not timezone:
                raise InvalidScheduleError(f"missing timezone in '{expression}'")

        try:
            if spec.startswith('@every'):
                return cls._parse_every(expression, spec, timezone)

            if spec.startswith('@'):
                if spec not in DESCRIPTORS:
                    raise InvalidScheduleError(f"unrecognized descriptor: {spec}")
                spec = DESCRIPTORS[spec]

            fields = spec.split()
            if len(fields) == 5:
                fields.insert(0, '0')
            elif len(fields) != 6:
                raise InvalidScheduleError(
                    f"expected 5 or 6 fields, found {len(fields)}: '{spec}'"
                )

            second, minute, hour, day, month, day_of_week = fields
            if day == '?':
                day = '*'
            weekdays = translate_day_of_week(day_of_week)

            def cron(day, day_of_week):
                return CronTrigger(
                    second=second,
                    minute=minute,
                    hour=hour,
                    day=day,
                    month=month,
                    day_of_week=day_of_week,
                    timezone=timezone,
                )

            if is_unrestricted(day) or is_unrestricted(day_of_week):
                trigger = cron(day, weekdays)
                zone = trigger.timezone
            else:
                # Both day fields restricted: fire on a day matching either
                by_day, by_weekday = cron(day, '*'), cron('*', weekdays)
                trigger = OrTrigger([by_day, by_weekday])
                zone = by_day.timezone
        except InvalidScheduleError:
            raise
        except (ValueError, LookupError) as e:
            # APScheduler raises ValueError for bad fields, KeyError for unknown zones
            raise InvalidScheduleError(f"invalid schedule '{expression}': {e}") from e

        logger.debug(f"Parsed schedule '{expression}' as {trigger}")
        return cls(expression, trigger, timezone=zone)

    @classmethod
    def _parse_every(cls, expression: str, spec: str, timezone: Optional[str]) -> 'Schedule':
        duration_text = spec[len('@every'):].strip()
        if not duration_text:
            raise InvalidScheduleError(f"missing duration in '{expression}'")

        interval = parse_duration(duration_text)
        # Whole seconds only, with a one second floor
        seconds = max(1, int(interval.total_seconds()))
        interval = timedelta(seconds=seconds)

        trigger = IntervalTrigger(seconds=seconds, timezone=timezone)
        return cls(expression, trigger, interval=interval)

    def now(self) -> datetime:
        """Current time in the schedule's timezone."""
        return datetime.now(self.timezone)

    def next(self, after: datetime) -> Optional[datetime]:
        """
        Compute the first fire time strictly after the given instant.

        Args:
            after: Reference instant (naive values are taken as local time)

        Returns:
            Next fire time, or None if the schedule can never fire again
        """
        after = after.astimezone(self.timezone)

        if self._interval is not None:
            previous = after.replace(microsecond=0)
            return self._trigger.get_next_fire_time(previous, after)

        # CronTrigger includes "now" itself, so nudge past it
        return self._trigger.get_next_fire_time(None, after + timedelta(microseconds=1))

    def __repr__(self):
        return f"Schedule({self._expression!r})"

    def __str__(self):
        return self._expression
