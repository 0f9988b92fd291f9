"""
ICS import: pull an external calendar feed into the user's own events.

Each VEVENT becomes an owned CanonicalEvent with the id
`ics_<subscription id>_<UID>` and a category named after the feed, and is
upserted, so importing the same feed again overwrites instead of
duplicating. Events that disappeared from the feed since the last import
are deleted.

Simple RRULEs (FREQ=DAILY/WEEKLY/MONTHLY/YEARLY, interval 1, optional
UNTIL) map onto the event's repeat option. Anything richer (COUNT, BYDAY
lists, intervals, EXDATE, moved instances) is expanded up front with
recurring_ical_events and stored as custom dates.
"""

import asyncio
import functools
import hashlib
from datetime import datetime, date, timedelta
from typing import Optional

import pytz
import requests
from icalendar import Calendar as ICalCalendar
import recurring_ical_events

from .debug import debug_print
from .errors import NotFound
from .event_wrapper import CanonicalEvent, Category, CustomTime, RepeatOption
from .materializer import RECURRENCE_CAP
from .timezone_utils import all_day_bounds, date_key, ensure_utc, parse_date


def _debug_print(msg: str, error: bool = False) -> None:
    debug_print("ICS", msg, error)


_SIMPLE_FREQUENCIES = {
    "DAILY": RepeatOption.DAILY,
    "WEEKLY": RepeatOption.WEEKLY,
    "MONTHLY": RepeatOption.MONTHLY,
    "YEARLY": RepeatOption.YEARLY,
}
_SIMPLE_RULE_PARTS = {"FREQ", "INTERVAL", "UNTIL", "WKST"}


class ICSSubscription:
    """
    Handler for one ICS calendar feed.

    Fetches the raw VCALENDAR text; conversion happens in
    parse_ics_events().
    """

    def __init__(self, name: str, url: str, color: str = "#34a853"):
        """
        Initialize an ICS subscription.

        Args:
            name: Display name, also used as the imported events' category
            url: URL to fetch the ICS file from
            color: Category color (hex format)
        """
        self.name = name
        self.url = url
        self.color = color
        self.id = self._generate_id(url)

        self._raw_data: Optional[str] = None
        self._last_fetch: Optional[datetime] = None
        self._error: Optional[str] = None

    @staticmethod
    def _generate_id(url: str) -> str:
        """Generate a stable ID from the URL."""
        return hashlib.md5(url.encode()).hexdigest()[:12]

    @property
    def id_prefix(self) -> str:
        return f"ics_{self.id}_"

    def fetch(self, timeout: int = 30) -> bool:
        """
        Fetch the ICS file from the URL.

        Returns:
            True if successful, False otherwise (see `error`).
        """
        try:
            response = requests.get(
                self.url,
                timeout=timeout,
                headers={
                    'User-Agent': 'sharecal/1.0',
                    'Accept': 'text/calendar'
                }
            )
            response.raise_for_status()

            # Ensure proper UTF-8 decoding
            response.encoding = 'utf-8'
            self._raw_data = response.text
            self._last_fetch = datetime.now(pytz.UTC)
            self._error = None
            return True

        except requests.RequestException as e:
            self._error = f"Network error: {e}"
            _debug_print(f"Fetching {self.name} failed: {e}", error=True)
            return False

    @property
    def raw_data(self) -> Optional[str]:
        return self._raw_data

    @property
    def last_fetch(self) -> Optional[datetime]:
        return self._last_fetch

    @property
    def error(self) -> Optional[str]:
        return self._error

    def set_error(self, message: str) -> None:
        self._error = message

    def event_id(self, uid: str) -> str:
        return f"{self.id_prefix}{uid}"


# ==================== Conversion ====================

def _is_date_only(value) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _bounds(component) -> tuple[datetime, datetime, bool]:
    """(start, end, is_all_day) of a VEVENT in storage form."""
    dtstart = component.get('DTSTART').dt
    dtend = component.get('DTEND').dt if component.get('DTEND') is not None else None
    duration = component.get('DURATION').dt if component.get('DURATION') is not None else None

    if _is_date_only(dtstart):
        if _is_date_only(dtend):
            # DTEND is exclusive for all-day events
            last = max(dtend - timedelta(days=1), dtstart)
        elif duration is not None:
            last = max(dtstart + duration - timedelta(days=1), dtstart)
        else:
            last = dtstart
        return all_day_bounds(dtstart)[0], all_day_bounds(last)[1], True

    start = ensure_utc(dtstart)
    if isinstance(dtend, datetime):
        end = ensure_utc(dtend)
    elif duration is not None:
        end = start + duration
    else:
        end = start + timedelta(hours=1)
    if end < start:
        end = start + timedelta(hours=1)
    return start, end, False


def _is_simple_rule(component) -> bool:
    rrule = component.get('RRULE')
    if rrule is None:
        return False
    if component.get('EXDATE') is not None or component.get('RDATE') is not None:
        return False
    if not set(rrule.keys()) <= _SIMPLE_RULE_PARTS:
        return False
    freq = (rrule.get('FREQ') or [None])[0]
    interval = (rrule.get('INTERVAL') or [1])[0]
    return freq in _SIMPLE_FREQUENCIES and int(interval) == 1


def _expand_instances(vcal: ICalCalendar, uid: str, start: datetime, years: int = 1) -> list:
    """Instances of one UID over the next `years`, capped like the materializer."""
    window_end = start + timedelta(days=366 * years)
    instances = [
        inst for inst in recurring_ical_events.of(vcal).between(start, window_end)
        if str(inst.get('UID')) == uid
    ]
    instances.sort(key=lambda inst: _bounds(inst)[0])
    return instances[:RECURRENCE_CAP]


def _component_uid(component) -> str:
    uid = component.get('UID')
    if uid:
        return str(uid)
    seed = f"{component.get('SUMMARY')}|{component.get('DTSTART').to_ical()}"
    return hashlib.md5(seed.encode()).hexdigest()[:16]


def parse_ics_events(ical_text: str, subscription: ICSSubscription, owner_id: str) -> list[CanonicalEvent]:
    """
    Convert every VEVENT of a feed into an owned CanonicalEvent.

    Malformed components are skipped, never fatal.
    """
    vcal = ICalCalendar.from_ical(ical_text)
    category = Category(subscription.name, subscription.color)

    events = []
    seen = set()
    for component in vcal.walk('VEVENT'):
        # Moved instances are handled through their master's expansion
        if component.get('RECURRENCE-ID') is not None or component.get('DTSTART') is None:
            continue
        uid = _component_uid(component)
        if uid in seen:
            continue
        seen.add(uid)

        try:
            start, end, is_all_day = _bounds(component)
        except (AttributeError, TypeError, ValueError) as e:
            _debug_print(f"Skipping {uid}: {e}", error=True)
            continue

        event = CanonicalEvent(
            id=subscription.event_id(uid),
            title=str(component.get('SUMMARY') or 'Untitled'),
            date=start.date(),
            start_datetime=start,
            end_datetime=end,
            is_all_day=is_all_day,
            user_id=owner_id,
            description=str(component.get('DESCRIPTION')) if component.get('DESCRIPTION') else None,
            location=str(component.get('LOCATION')) if component.get('LOCATION') else None,
            category=category,
        )

        if _is_simple_rule(component):
            rrule = component.get('RRULE')
            event.repeat_option = _SIMPLE_FREQUENCIES[rrule['FREQ'][0]]
            until = (rrule.get('UNTIL') or [None])[0]
            event.repeat_end_date = parse_date(until) if until is not None else None
        elif component.get('RRULE') is not None or component.get('RDATE') is not None:
            instances = _expand_instances(vcal, uid, start)
            for instance in instances:
                inst_start, inst_end, _ = _bounds(instance)
                event.custom_dates.append(inst_start.date())
                if not is_all_day:
                    event.custom_times[date_key(inst_start)] = CustomTime(start=inst_start, end=inst_end)
            event.repeat_option = RepeatOption.CUSTOM if instances else RepeatOption.NONE

        events.append(event.normalized())

    _debug_print(f"Parsed {len(events)} event(s) from {subscription.name}")
    return events


async def import_subscription(store, subscription: ICSSubscription, owner_id: str,
                              timeout: int = 30) -> Optional[int]:
    """
    Fetch a feed and upsert its events into the owner's calendar.

    Returns:
        Number of events imported, or None if the feed could not be
        fetched or parsed (see subscription.error).
    """
    loop = asyncio.get_running_loop()
    ok = await loop.run_in_executor(None, functools.partial(subscription.fetch, timeout))
    if not ok:
        return None

    try:
        events = parse_ics_events(subscription.raw_data, subscription, owner_id)
    except ValueError as e:
        subscription.set_error(f"Parse error: {e}")
        _debug_print(f"Cannot parse {subscription.name}: {e}", error=True)
        return None

    for event in events:
        await store.upsert_event(event.to_row())

    # Drop events that vanished from the feed
    current = {event.id for event in events}
    for row in await store.fetch_own_events(owner_id):
        row_id = str(row.get("id", ""))
        if row_id.startswith(subscription.id_prefix) and row_id not in current:
            try:
                await store.delete_event_cascade(row_id)
            except NotFound:
                pass
            _debug_print(f"Removed {row_id}, no longer in {subscription.name}")

    return len(events)
