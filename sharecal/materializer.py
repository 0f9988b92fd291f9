"""
Occurrence materializer.

Turns one CanonicalEvent into the ordered list of dated Occurrences the
calendar renders. Pure and deterministic: no I/O, no shared state, so
independent events can be expanded in any order.

Rules, first match wins (an event is never expanded by two rules):

1. Multi-day: start and end on different calendar days -> one occurrence
   per day of the inclusive span, id suffixed with the day.
2. Custom dates: one occurrence per listed date, each with its own time
   window when custom_times has one.
3. Recurring (Daily/Weekly/Monthly/Yearly): instances from the anchor
   date until repeat_end_date (default one year), capped at 100.
4. Default: a single occurrence on the anchor date.

Periodic recurrence is expanded by recurring_ical_events over an
icalendar VEVENT carrying the matching RRULE.
"""

from datetime import datetime, date, time, timedelta
from typing import Optional

import pytz
from icalendar import Calendar as ICalCalendar, Event as ICalEvent
import recurring_ical_events

from .debug import debug_print
from .event_wrapper import CanonicalEvent, Occurrence, RepeatOption
from .timezone_utils import (
    all_day_bounds, date_key, ensure_utc, iter_days, normalize_all_day, restamp
)


RECURRENCE_CAP = 100
DEFAULT_REPEAT_YEARS = 1

_FREQUENCIES = {
    RepeatOption.DAILY: "DAILY",
    RepeatOption.WEEKLY: "WEEKLY",
    RepeatOption.MONTHLY: "MONTHLY",
    RepeatOption.YEARLY: "YEARLY",
}


def _debug_print(msg: str, error: bool = False) -> None:
    debug_print("MATERIALIZE", msg, error)


def add_years(day: date, years: int) -> date:
    """Same calendar day `years` later; Feb 29 falls back to Feb 28."""
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)


class _Times:
    """Effective start/end of an event after the edge-case defaults."""
    __slots__ = ['start', 'end', 'all_day', 'time_unknown']

    def __init__(self, start: datetime, end: datetime, all_day: bool, time_unknown: bool):
        self.start = start
        self.end = end
        self.all_day = all_day
        self.time_unknown = time_unknown


def _anchor_date(event: CanonicalEvent) -> Optional[date]:
    if event.date is not None:
        return event.date
    if event.start_datetime is not None:
        return ensure_utc(event.start_datetime).date()
    return None


def _effective_times(event: CanonicalEvent, anchor: date) -> _Times:
    """
    Resolve start/end with the edge policy applied.

    A missing end means start + 1 hour. Missing or unparseable timestamps
    mean the event has no time: it is shown all day on its anchor date.
    """
    if event.start_datetime is None or event.timestamps_malformed:
        start, end = all_day_bounds(anchor)
        return _Times(start, end, True, True)

    start = ensure_utc(event.start_datetime)
    end = ensure_utc(event.end_datetime) if event.end_datetime else start + timedelta(hours=1)
    if end < start:
        end = start + timedelta(hours=1)
    if event.is_all_day:
        start, end = normalize_all_day(start, end)
    return _Times(start, end, event.is_all_day, False)


def _occurrence(
    event: CanonicalEvent,
    day: date,
    start: datetime,
    end: datetime,
    times: _Times,
    viewer_id: str,
    reminder: Optional[datetime] = None,
    per_day: bool = False,
) -> Occurrence:
    return Occurrence(
        base_id=event.id,
        date_key=date_key(day),
        start=start,
        end=end,
        is_all_day=times.all_day,
        title=event.title,
        owner_id=event.user_id,
        per_day=per_day,
        description=event.description,
        location=event.location,
        category=event.category,
        photos=tuple(event.display_photos(viewer_id)),
        reminder_time=reminder,
        time_unknown=times.time_unknown,
    )


# ==================== Rules ====================

def _expand_multi_day(event: CanonicalEvent, times: _Times, viewer_id: str) -> list[Occurrence]:
    """One occurrence per day of the span, keeping the displayed hours."""
    occurrences = []
    first, last = times.start.date(), times.end.date()
    for day in iter_days(first, last):
        if times.all_day:
            start, end = all_day_bounds(day)
        else:
            start, end = restamp(day, times.start), restamp(day, times.end)
            if end < start:
                # Overnight hours: the day's part runs to midnight
                end = pytz.UTC.localize(datetime.combine(day, time(23, 59, 59)))
        reminder = event.reminder_time if day == first else None
        occurrences.append(_occurrence(event, day, start, end, times, viewer_id, reminder, per_day=True))
    return occurrences


def _expand_custom(event: CanonicalEvent, times: _Times, viewer_id: str) -> list[Occurrence]:
    """One occurrence per custom date, with per-date windows where given."""
    occurrences = []
    offset = event.reminder_offset
    for day in sorted(set(event.custom_dates)):
        custom = event.custom_times.get(date_key(day))
        if times.all_day:
            start, end = all_day_bounds(day)
        else:
            start = restamp(day, custom.start if custom and custom.start else times.start)
            end = restamp(day, custom.end if custom and custom.end else times.end)
            if end < start:
                end = start + timedelta(hours=1)

        reminder = None
        if custom and custom.reminder and custom.start:
            reminder = start - (ensure_utc(custom.start) - ensure_utc(custom.reminder))
        elif offset is not None:
            reminder = start - offset
        occurrences.append(_occurrence(event, day, start, end, times, viewer_id, reminder))
    return occurrences


def _build_vevent(event: CanonicalEvent, start: datetime, end: datetime, until: datetime) -> ICalCalendar:
    """Minimal VCALENDAR holding this event with its RRULE."""
    freq = _FREQUENCIES[event.repeat_option]
    vevent = ICalEvent()
    vevent.add('uid', event.id)
    vevent.add('summary', event.title)
    vevent.add('dtstart', start)
    vevent.add('dtend', end)
    vevent.add('rrule', {'freq': freq, 'until': until})

    vcal = ICalCalendar()
    vcal.add('prodid', '-//sharecal//materializer//')
    vcal.add('version', '2.0')
    vcal.add_component(vevent)
    return vcal


def _expand_recurring(
    event: CanonicalEvent,
    anchor: date,
    times: _Times,
    viewer_id: str,
    cap: int,
    default_years: int,
) -> list[Occurrence]:
    """
    Expand a periodic event from its anchor date.

    The RRULE runs until repeat_end_date; instances are pulled lazily and
    expansion stops after `cap` of them, so skipped dates (the 31st in
    short months, Feb 29) never shorten the series.
    """
    start = restamp(anchor, times.start)
    duration = times.end - times.start
    offset = event.reminder_offset

    until_day = event.repeat_end_date or add_years(anchor, default_years)
    if until_day < anchor:
        until_day = anchor
    until = pytz.UTC.localize(datetime.combine(until_day, time(23, 59, 59)))

    vcal = _build_vevent(event, start, start + duration, until)
    expanded = recurring_ical_events.of(vcal).after(start - timedelta(seconds=1))

    starts = []
    for ical_event in expanded:
        dtstart = ical_event.get('DTSTART')
        if dtstart is None:
            continue
        value = dtstart.dt
        if isinstance(value, date) and not isinstance(value, datetime):
            value = datetime.combine(value, times.start.timetz().replace(tzinfo=None))
        starts.append(ensure_utc(value))
        if len(starts) >= cap:
            break
    starts.sort()

    occurrences = []
    for instance_start in starts[:cap]:
        reminder = instance_start - offset if offset is not None else None
        occurrences.append(_occurrence(
            event, instance_start.date(), instance_start, instance_start + duration,
            times, viewer_id, reminder
        ))
    return occurrences


def _single(event: CanonicalEvent, anchor: date, times: _Times, viewer_id: str) -> list[Occurrence]:
    start = restamp(anchor, times.start)
    end = start + (times.end - times.start)
    if times.all_day:
        start, end = all_day_bounds(anchor)
    return [_occurrence(event, anchor, start, end, times, viewer_id, event.reminder_time)]


# ==================== Public API ====================

def materialize(
    event: CanonicalEvent,
    viewer_id: str = "",
    recurrence_cap: int = RECURRENCE_CAP,
    default_repeat_years: int = DEFAULT_REPEAT_YEARS,
) -> list[Occurrence]:
    """
    Expand one canonical event into its occurrences.

    Args:
        event: The event to expand
        viewer_id: Who is looking; private photos are only shown to the owner
        recurrence_cap: Upper bound on periodic instances
        default_repeat_years: Span of a periodic event without an end date

    Returns:
        Occurrences ordered by start. Empty only when the event has
        neither an anchor date nor a start time.
    """
    anchor = _anchor_date(event)
    if anchor is None:
        _debug_print(f"Event {event.id} has no date and no start, nothing to show", error=True)
        return []

    times = _effective_times(event, anchor)

    if not times.time_unknown and times.start.date() != times.end.date():
        return _expand_multi_day(event, times, viewer_id)

    if event.custom_dates:
        return _expand_custom(event, times, viewer_id)

    if event.repeat_option.is_periodic:
        try:
            occurrences = _expand_recurring(
                event, anchor, times, viewer_id, max(recurrence_cap, 1), default_repeat_years
            )
            if occurrences:
                return occurrences
        except Exception as e:
            _debug_print(f"Error expanding recurring event {event.id}: {e}", error=True)
        # Fallback: the anchor occurrence alone

    return _single(event, anchor, times, viewer_id)
