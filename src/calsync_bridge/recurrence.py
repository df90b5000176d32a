"""Recurrence rule parsing and expansion into concrete occurrences.

One occurrence-generation core serves two call sites:

* ingestion: :func:`normalize_recurrence` turns the provider's ``recurrence``
  lines into a :class:`~calsync_bridge.models.RecurrenceRule` and
  :func:`next_occurrence` computes the next-occurrence hint stored on the row;
* local reads: :func:`materialize_occurrences` expands a stored recurring row
  over a query window.

Expansion is delegated to :mod:`dateutil.rrule`. The rule is compiled with the
anchor as ``DTSTART`` in the anchor's own fixed UTC offset, so wall-clock
fields (BYHOUR, weekday, month day) are read in that offset and every start
comes back aware in it.
"""

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from itertools import islice, takewhile
from typing import Iterable, Iterator, List, Optional, Sequence, Set

from dateutil.parser import isoparse
from dateutil.rrule import rrule, rrulestr
from pydantic import ValidationError as PydanticValidationError
import pytz

from .exceptions import RecurrenceError
from .models import Event, Frequency, Occurrence, RecurrenceRule

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 366
DEFAULT_DURATION = timedelta(minutes=15)


def anchor_timezone(anchor: datetime) -> tzinfo:
    """Fixed-offset tzinfo matching the anchor's UTC offset."""
    offset = anchor.utcoffset()
    if offset is None:
        return pytz.UTC
    return pytz.FixedOffset(int(offset.total_seconds() // 60))


def offset_minutes(value: datetime) -> int:
    offset = value.utcoffset()
    return int(offset.total_seconds() // 60) if offset is not None else 0


def _localize(value: datetime, tz: tzinfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def _parse_until(raw: str, tz: tzinfo) -> datetime:
    try:
        parsed = isoparse(raw)
    except ValueError as e:
        raise RecurrenceError(f"Invalid UNTIL value: {raw}") from e
    if len(raw) == 8:
        # Date-only UNTIL includes the whole day
        parsed = datetime.combine(parsed.date(), time(23, 59, 59))
    return _localize(parsed, tz)


def _first_int(raw: str, key: str) -> int:
    values = [v for v in raw.split(',') if v.strip()]
    if len(values) > 1:
        logger.debug(f"Only the first {key} value is honoured: {raw}")
    try:
        return int(values[0])
    except (ValueError, IndexError) as e:
        raise RecurrenceError(f"Invalid {key} value: {raw}") from e


def parse_rrule(value: str, tz: tzinfo = pytz.UTC) -> RecurrenceRule:
    """Parse an ``RRULE`` string (with or without the ``RRULE:`` prefix).

    Args:
        value: Rule text, e.g. ``FREQ=WEEKLY;BYDAY=MO,WE;BYHOUR=19``
        tz: Zone used for a floating ``UNTIL`` value

    Raises:
        RecurrenceError: If the rule is malformed or its frequency unsupported
    """
    text = (value or '').strip()
    if text.upper().startswith('RRULE:'):
        text = text[len('RRULE:'):]

    parts = {}
    for pair in text.split(';'):
        key, sep, val = pair.partition('=')
        key = key.strip().upper()
        val = val.strip()
        if sep and key and val:
            parts[key] = val

    freq = parts.get('FREQ', '').upper()
    try:
        frequency = Frequency(freq)
    except ValueError:
        raise RecurrenceError(f"Unsupported recurrence frequency: {freq or '<missing>'}")

    try:
        rule = RecurrenceRule(
            freq=frequency,
            interval=int(parts.get('INTERVAL', '1')),
            by_day=[d.strip() for d in parts['BYDAY'].split(',') if d.strip()] if 'BYDAY' in parts else [],
            by_month_day=[int(d) for d in parts['BYMONTHDAY'].split(',') if d.strip()] if 'BYMONTHDAY' in parts else [],
            by_hour=_first_int(parts['BYHOUR'], 'BYHOUR') if 'BYHOUR' in parts else None,
            by_minute=_first_int(parts['BYMINUTE'], 'BYMINUTE') if 'BYMINUTE' in parts else None,
            by_second=_first_int(parts['BYSECOND'], 'BYSECOND') if 'BYSECOND' in parts else None,
            count=int(parts['COUNT']) if 'COUNT' in parts else None,
            until=_parse_until(parts['UNTIL'], tz) if 'UNTIL' in parts else None,
        )
    except (PydanticValidationError, ValueError) as e:
        if isinstance(e, RecurrenceError):
            raise
        raise RecurrenceError(f"Invalid recurrence rule '{value}': {e}") from e

    # dateutil rejects combinations the field checks above let through
    compile_rule(rule, datetime.now(tz).replace(microsecond=0))
    return rule


def _parse_exdate_line(line: str, tz: tzinfo) -> List[date]:
    """Dates excluded by one ``EXDATE`` line, expressed in the anchor's offset."""
    head, _, values = line.partition(':')
    params = {}
    for param in head.split(';')[1:]:
        key, _, val = param.partition('=')
        params[key.strip().upper()] = val.strip()

    value_tz = tz
    if 'TZID' in params:
        try:
            value_tz = pytz.timezone(params['TZID'])
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Unknown EXDATE TZID {params['TZID']}, using anchor offset")

    dates = []
    for raw in values.split(','):
        raw = raw.strip()
        if not raw:
            continue
        try:
            parsed = isoparse(raw)
        except ValueError:
            logger.warning(f"Ignoring unparseable EXDATE value: {raw}")
            continue
        if params.get('VALUE') == 'DATE' or len(raw) == 8:
            dates.append(parsed.date())
            continue
        if parsed.tzinfo is None:
            if hasattr(value_tz, 'localize'):
                parsed = value_tz.localize(parsed)
            else:
                parsed = parsed.replace(tzinfo=value_tz)
        dates.append(parsed.astimezone(tz).date())
    return dates


def normalize_recurrence(lines: Sequence[str], anchor_start: datetime) -> RecurrenceRule:
    """Convert provider recurrence lines into the internal rule.

    ``BYHOUR``/``BYMINUTE``/``BYSECOND`` are filled from the anchor's own
    wall-clock time when the rule leaves them out, so that the stored rule
    expands at the same local time regardless of the reader's zone.

    Args:
        lines: Provider recurrence list, e.g. ``["RRULE:FREQ=WEEKLY;BYDAY=MO"]``
        anchor_start: Start of the recurring master, with its UTC offset

    Raises:
        RecurrenceError: If no usable ``RRULE`` line is present
    """
    tz = anchor_timezone(anchor_start)
    local = anchor_start.astimezone(tz)

    rrule_line = next((line for line in lines if line.upper().startswith('RRULE:')), None)
    if rrule_line is None:
        raise RecurrenceError(f"No RRULE line in recurrence: {list(lines)}")

    rule = parse_rrule(rrule_line, tz)
    exception_dates = set(rule.exception_dates)
    for line in lines:
        if line.upper().startswith('EXDATE'):
            exception_dates.update(_parse_exdate_line(line, tz))

    return rule.model_copy(update={
        'by_hour': rule.by_hour if rule.by_hour is not None else local.hour,
        'by_minute': rule.by_minute if rule.by_minute is not None else local.minute,
        'by_second': rule.by_second if rule.by_second is not None else local.second,
        'exception_dates': sorted(exception_dates),
    })


def compile_rule(rule: RecurrenceRule, anchor: datetime) -> rrule:
    """Build the dateutil rule for ``rule`` starting at ``anchor``.

    ``anchor`` must already be expressed in its fixed offset; every generated
    start inherits that offset. Exception dates are not part of the compiled
    rule, callers filter them by calendar date.
    """
    text = rule.to_rrule_string()
    try:
        return rrulestr(text, dtstart=anchor)
    except (ValueError, TypeError) as e:
        raise RecurrenceError(f"Invalid recurrence rule '{text}': {e}") from e


def _starts_from(
    rule: RecurrenceRule,
    anchor: datetime,
    after: datetime,
    excluded: Set[date],
) -> Iterator[datetime]:
    """Occurrence starts at or after ``after``, skipping excluded local dates."""
    for start in compile_rule(rule, anchor).xafter(after, inc=True):
        if start.date() not in excluded:
            yield start


def expand(
    rule: RecurrenceRule,
    anchor_start: datetime,
    anchor_end: Optional[datetime],
    window_start: datetime,
    window_end: datetime,
    exception_dates: Optional[Iterable[date]] = None,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
    until: Optional[datetime] = None,
) -> List[datetime]:
    """Concrete occurrence starts of ``rule`` that intersect the window.

    Args:
        rule: Recurrence rule
        anchor_start: Start of the first instance; nothing is emitted before it
        anchor_end: End of the first instance; defines every occurrence's duration
        window_start: Query window start (inclusive overlap)
        window_end: Query window end (exclusive)
        exception_dates: Extra calendar dates (anchor offset) to skip
        max_occurrences: Upper bound on emitted occurrences
        until: Explicit "repeat until" bound; clamps the window end

    Returns:
        Ascending list of aware datetimes in the anchor's offset
    """
    tz = anchor_timezone(anchor_start)
    # dateutil drops sub-second precision from DTSTART
    anchor = anchor_start.astimezone(tz).replace(microsecond=0)
    duration = anchor_end - anchor_start if anchor_end and anchor_end > anchor_start else DEFAULT_DURATION

    gen_start = max((window_start - duration).astimezone(tz), anchor)
    gen_end = window_end.astimezone(tz)
    for bound in (rule.until, until):
        if bound is not None:
            gen_end = min(gen_end, _localize(bound, tz))

    excluded = set(rule.exception_dates)
    excluded.update(exception_dates or ())

    in_range = takewhile(lambda start: start <= gen_end, _starts_from(rule, anchor, gen_start, excluded))
    overlapping = (
        start for start in in_range
        if start < window_end and start + duration > window_start
    )
    return list(islice(overlapping, max_occurrences))


def next_occurrence(
    rule: RecurrenceRule,
    anchor_start: datetime,
    anchor_end: Optional[datetime],
    now: datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> Optional[datetime]:
    """First occurrence starting at or after ``now``; None once the rule ended.

    Only the first ``max_occurrences`` starts from ``now`` on are considered,
    which bounds the search when exception dates swallow a long run.
    """
    tz = anchor_timezone(anchor_start)
    if anchor_start >= now:
        return anchor_start.astimezone(tz)

    anchor = anchor_start.astimezone(tz).replace(microsecond=0)
    for start in islice(compile_rule(rule, anchor).xafter(now, inc=True), max_occurrences):
        if start.date() not in rule.exception_dates:
            return start
    return None


def materialize_occurrences(
    event: Event,
    window_start: datetime,
    window_end: datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> List[Occurrence]:
    """Expand a stored recurring event into virtual occurrences for a window."""
    if not event.is_recurring or not event.rrule:
        return []

    tz = anchor_timezone(event.start)
    rule = parse_rrule(event.rrule, tz)
    duration = event.end - event.start if event.end > event.start else DEFAULT_DURATION

    starts = expand(
        rule,
        event.start,
        event.end,
        window_start,
        window_end,
        exception_dates=event.exception_dates,
        max_occurrences=max_occurrences,
    )
    return [
        Occurrence(
            parent_id=event.id,
            user_id=event.user_id,
            external_id=event.external_id,
            title=event.title,
            description=event.description,
            start=start,
            end=start + duration,
            timezone=event.timezone,
        )
        for start in starts
    ]
