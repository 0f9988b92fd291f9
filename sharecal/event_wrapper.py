"""
Value types shared by the materializer, the sharing state machine and the
date index.

CanonicalEvent is the owned source of truth for one logical event.
SharedEvent is a directed sharing relationship between two users over a
snapshot of an event. Occurrence is a derived, date-anchored rendering
instance and is never persisted.

Rows travel to and from the store as plain dicts in snake_case wire
shape; the to_row()/from_row() pairs here are the only place that knows
that shape.
"""

import re
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, date
from enum import Enum
from typing import Any, Optional

from .debug import debug_print
from .timezone_utils import (
    format_utc, parse_utc, parse_date, date_key, ensure_utc, normalize_all_day
)


def _debug_print(msg: str) -> None:
    debug_print("MODEL", msg)


class RepeatOption(Enum):
    """How an event repeats."""
    NONE = "None"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"
    CUSTOM = "Custom"

    @classmethod
    def from_wire(cls, value: Any) -> 'RepeatOption':
        """Parse a stored repeat option; unknown values mean no repetition."""
        if isinstance(value, cls):
            return value
        for option in cls:
            if isinstance(value, str) and option.value.lower() == value.lower():
                return option
        return cls.NONE

    @property
    def is_periodic(self) -> bool:
        return self in (RepeatOption.DAILY, RepeatOption.WEEKLY,
                        RepeatOption.MONTHLY, RepeatOption.YEARLY)


class SharingStatus(Enum):
    """Stored states of a shared event. Cancellation deletes the row instead."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


@dataclass(frozen=True)
class Category:
    name: str
    color: str = "#4285f4"


@dataclass
class CustomTime:
    """Independent time window for one date of a Custom event."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    reminder: Optional[datetime] = None
    repeat: str = "None"

    def to_wire(self) -> dict:
        return {
            "start": format_utc(self.start),
            "end": format_utc(self.end),
            "reminder": format_utc(self.reminder),
            "repeat": self.repeat,
        }

    @classmethod
    def from_wire(cls, data: Any) -> Optional['CustomTime']:
        """Parse one custom-time entry. Malformed entries yield None."""
        if not isinstance(data, dict):
            return None
        return cls(
            start=parse_utc(data.get("start")),
            end=parse_utc(data.get("end")),
            reminder=parse_utc(data.get("reminder")),
            repeat=str(data.get("repeat") or "None"),
        )


def new_event_id() -> str:
    """Generate an id for a new canonical event."""
    return f"event_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _parse_date_list(values: Any) -> list[date]:
    days = []
    for value in values or []:
        day = parse_date(value)
        if day is None:
            _debug_print(f"Dropping malformed custom date {value!r}")
            continue
        days.append(day)
    return days


def _parse_custom_times(data: Any) -> dict[str, CustomTime]:
    if not isinstance(data, dict):
        return {}
    times = {}
    for key, value in data.items():
        day = parse_date(key)
        entry = CustomTime.from_wire(value)
        if day is None or entry is None:
            _debug_print(f"Dropping malformed custom time for {key!r}")
            continue
        times[date_key(day)] = entry
    return times


@dataclass
class CanonicalEvent:
    """
    The single owned source-of-truth record for a logical event.

    start_datetime/end_datetime are aware UTC datetimes, or None when the
    stored value is missing or could not be parsed (the materializer then
    treats the event as having no time).
    """
    id: str
    title: str
    date: Optional[date]
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None
    is_all_day: bool = False
    user_id: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    category: Optional[Category] = None
    reminder_time: Optional[datetime] = None
    repeat_option: RepeatOption = RepeatOption.NONE
    repeat_end_date: Optional[date] = None
    custom_dates: list[date] = field(default_factory=list)
    custom_times: dict[str, CustomTime] = field(default_factory=dict)
    photos: list[str] = field(default_factory=list)
    private_photos: list[str] = field(default_factory=list)

    # Set by from_row() when a stored timestamp was present but unparseable
    timestamps_malformed: bool = False

    # ==================== Shape ====================

    @property
    def is_multi_day(self) -> bool:
        """Start and end fall on different calendar days."""
        if self.start_datetime is None or self.end_datetime is None:
            return False
        return ensure_utc(self.start_datetime).date() != ensure_utc(self.end_datetime).date()

    @property
    def reminder_offset(self):
        """How long before the start the reminder fires, or None."""
        if self.reminder_time is None or self.start_datetime is None:
            return None
        return ensure_utc(self.start_datetime) - ensure_utc(self.reminder_time)

    def display_photos(self, viewer_id: str) -> list[str]:
        """Public photos plus, for the owner only, the private ones."""
        if viewer_id and viewer_id == self.user_id:
            return self.photos + [p for p in self.private_photos if p not in self.photos]
        return list(self.photos)

    def normalized(self) -> 'CanonicalEvent':
        """
        Copy with all-day hours fixed to 12:00/13:00 UTC and the anchor
        date aligned to the start.
        """
        event = replace(self)
        if event.start_datetime is not None:
            event.start_datetime = ensure_utc(event.start_datetime)
            if event.is_all_day:
                event.start_datetime, event.end_datetime = normalize_all_day(
                    event.start_datetime, event.end_datetime
                )
            if event.date is None:
                event.date = event.start_datetime.date()
        return event

    # ==================== Wire format ====================

    def to_row(self) -> dict:
        """Serialize to an `events` row."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "date": date_key(self.date) if self.date else None,
            "start_datetime": format_utc(self.start_datetime),
            "end_datetime": format_utc(self.end_datetime),
            "is_all_day": self.is_all_day,
            "category_name": self.category.name if self.category else None,
            "category_color": self.category.color if self.category else None,
            "reminder_time": format_utc(self.reminder_time),
            "repeat_option": self.repeat_option.value,
            "repeat_end_date": date_key(self.repeat_end_date) if self.repeat_end_date else None,
            "custom_dates": [date_key(d) for d in self.custom_dates],
            "custom_times": {k: v.to_wire() for k, v in self.custom_times.items()},
            "photos": list(self.photos),
            "private_photos": list(self.private_photos),
            "user_id": self.user_id,
        }

    def snapshot(self) -> dict:
        """
        Denormalized copy for a shared_events.event_data column.

        Same shape as an events row minus user_id; private photos never
        leave the owner.
        """
        data = self.to_row()
        del data["user_id"]
        data["private_photos"] = []
        return data

    @classmethod
    def from_row(cls, row: dict, owner_id: Optional[str] = None) -> 'CanonicalEvent':
        """
        Build from an `events` row (or an event_data snapshot).

        Never raises on malformed timestamps or custom-time maps; those
        fields fall back to None/empty and the event is flagged.
        """
        raw_start = row.get("start_datetime")
        raw_end = row.get("end_datetime")
        start = parse_utc(raw_start)
        end = parse_utc(raw_end)
        malformed = (raw_start not in (None, "") and start is None) or \
                    (raw_end not in (None, "") and end is None)
        if malformed:
            _debug_print(f"Event {row.get('id')}: unparseable timestamps {raw_start!r}/{raw_end!r}")

        category = None
        if row.get("category_name"):
            category = Category(row["category_name"], row.get("category_color") or "#4285f4")

        return cls(
            id=str(row.get("id", "")),
            title=row.get("title") or "Untitled",
            date=parse_date(row.get("date")) or (start.date() if start else None),
            start_datetime=start,
            end_datetime=end,
            is_all_day=bool(row.get("is_all_day", False)),
            user_id=owner_id if owner_id is not None else (row.get("user_id") or ""),
            description=row.get("description"),
            location=row.get("location"),
            category=category,
            reminder_time=parse_utc(row.get("reminder_time")),
            repeat_option=RepeatOption.from_wire(row.get("repeat_option")),
            repeat_end_date=parse_date(row.get("repeat_end_date")),
            custom_dates=_parse_date_list(row.get("custom_dates")),
            custom_times=_parse_custom_times(row.get("custom_times")),
            photos=list(row.get("photos") or []),
            private_photos=list(row.get("private_photos") or []),
            timestamps_malformed=malformed,
        )


def split_photos(display: list[str], private: set[str]) -> tuple[list[str], list[str]]:
    """
    Split an edited display list back into (public, private) lists.

    The display list merges both kinds; membership in `private` decides
    which list a URL is written back to.
    """
    public = [p for p in display if p not in private]
    private_list = [p for p in display if p in private]
    return public, private_list


# ==================== Sharing ====================

@dataclass
class Profile:
    """Public profile fields used to label shared occurrences."""
    id: str
    username: str = ""
    full_name: str = ""
    avatar_url: Optional[str] = None
    push_token: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or "Someone"

    @classmethod
    def from_row(cls, row: dict) -> 'Profile':
        return cls(
            id=row["id"],
            username=row.get("username") or "",
            full_name=row.get("full_name") or "",
            avatar_url=row.get("avatar_url"),
            push_token=row.get("expo_push_token"),
        )


@dataclass
class SharedEvent:
    """A directed sharing relationship over a snapshot of one event."""
    id: str
    original_event_id: Optional[str]
    shared_by: str
    shared_with: str
    status: SharingStatus
    event_data: dict
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def accepted_copy_id(self) -> str:
        """Id of the recipient-owned event created when this share is accepted."""
        source = self.original_event_id or self.event_data.get("id") or self.id
        return f"accepted_{source}_{self.shared_with}"

    @property
    def sender_base_id(self) -> str:
        """Base id the sender's calendar knows this event by."""
        return self.original_event_id or self.event_data.get("id") or f"shared_{self.id}"

    @property
    def title(self) -> str:
        return self.event_data.get("title") or "Untitled"

    def snapshot_event(self, as_id: str, owner_id: str) -> CanonicalEvent:
        """Read-only CanonicalEvent view of the snapshot under a given id."""
        event = CanonicalEvent.from_row(self.event_data, owner_id=owner_id)
        event.id = as_id
        event.private_photos = []
        return event

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "original_event_id": self.original_event_id,
            "shared_by": self.shared_by,
            "shared_with": self.shared_with,
            "status": self.status.value,
            "event_data": self.event_data,
            "message": self.message,
            "created_at": format_utc(self.created_at),
            "updated_at": format_utc(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: dict) -> 'SharedEvent':
        return cls(
            id=str(row["id"]),
            original_event_id=row.get("original_event_id"),
            shared_by=row["shared_by"],
            shared_with=row["shared_with"],
            status=SharingStatus(row.get("status", "pending")),
            event_data=row.get("event_data") or {},
            created_at=parse_utc(row.get("created_at")),
            updated_at=parse_utc(row.get("updated_at")),
            message=row.get("message"),
        )


@dataclass(frozen=True)
class SharingAnnotation:
    """How a shared occurrence is labelled for the viewer."""
    shared_event_id: str
    status: SharingStatus
    shared_by: str
    shared_by_display_name: str
    shared_by_avatar: Optional[str] = None
    viewer_is_sender: bool = False
    recipients: tuple[str, ...] = ()
    message: Optional[str] = None

    @property
    def label(self) -> str:
        if self.viewer_is_sender and self.status == SharingStatus.PENDING:
            return "sent - pending"
        if self.viewer_is_sender:
            return "sent - accepted"
        return f"shared by {self.shared_by_display_name}"


# ==================== Occurrences ====================

_DATE_SUFFIX = re.compile(r"^(?P<base>.+)_(?P<day>\d{4}-\d{2}-\d{2})$")


def compose_occurrence_id(base_id: str, day_key: str, per_day: bool) -> str:
    """Occurrence id: the base id, suffixed with the date for multi-day parts."""
    return f"{base_id}_{day_key}" if per_day else base_id


def split_occurrence_id(occurrence_id: str) -> tuple[str, Optional[str]]:
    """
    Recover (base_id, date_key) from an occurrence id that arrived from
    outside (wire, command line).

    Inverse of compose_occurrence_id(): strips a trailing _YYYY-MM-DD only
    when it is a real calendar date.
    """
    match = _DATE_SUFFIX.match(occurrence_id)
    if match and parse_date(match.group("day")) is not None:
        return match.group("base"), match.group("day")
    return occurrence_id, None


@dataclass(frozen=True)
class Occurrence:
    """One calendar-cell-worthy instance of an event."""
    base_id: str
    date_key: str
    start: datetime
    end: datetime
    is_all_day: bool
    title: str
    owner_id: str = ""
    per_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    category: Optional[Category] = None
    photos: tuple[str, ...] = ()
    reminder_time: Optional[datetime] = None
    time_unknown: bool = False
    sharing: Optional[SharingAnnotation] = None

    @property
    def occurrence_id(self) -> str:
        return compose_occurrence_id(self.base_id, self.date_key, self.per_day)

    @property
    def is_shared(self) -> bool:
        return self.sharing is not None

    @property
    def shared_status(self) -> Optional[SharingStatus]:
        return self.sharing.status if self.sharing else None

    @property
    def shared_by_display_name(self) -> Optional[str]:
        return self.sharing.shared_by_display_name if self.sharing else None

    @property
    def shared_by_avatar(self) -> Optional[str]:
        return self.sharing.shared_by_avatar if self.sharing else None

    def with_sharing(self, annotation: Optional[SharingAnnotation]) -> 'Occurrence':
        return replace(self, sharing=annotation)

    def __repr__(self):
        return f"Occurrence(id={self.occurrence_id!r}, title={self.title!r}, start={self.start})"
