"""
Date index builder and reconciler.

Merges occurrences from three independently fetched sources (the
viewer's own events, accepted shares, sent-but-pending shares) into one
date-keyed index.

A DateIndex is never modified in place: every change returns a new
index, and the caller swaps it in with a single assignment, so readers
never see a half-built index.

Every change to an event goes through replace_event()/without_base_id(),
which drop all of the event's occurrences from every date before any
replacement is added; a multi-day or custom event may sit on many dates.
"""

from datetime import date
from typing import Iterable, Iterator, Optional

from .debug import debug_print
from .event_wrapper import (
    CanonicalEvent, Occurrence, Profile, SharedEvent, SharingAnnotation, SharingStatus
)
from .materializer import materialize, RECURRENCE_CAP, DEFAULT_REPEAT_YEARS
from .sharing import annotate, is_visible, target_base_id, role_of, ShareRole
from .timezone_utils import date_key


def _debug_print(msg: str) -> None:
    debug_print("INDEX", msg)


def sort_for_display(occurrences: Iterable[Occurrence]) -> list[Occurrence]:
    """Render order inside one day: all-day first, then by start time."""
    return sorted(occurrences, key=lambda o: (not o.is_all_day, o.start, o.title, o.base_id))


class DateIndex:
    """Mapping of date key ('YYYY-MM-DD') to the occurrences on that day."""

    def __init__(self, buckets: Optional[dict[str, tuple[Occurrence, ...]]] = None):
        self._buckets: dict[str, tuple[Occurrence, ...]] = dict(buckets or {})

    @classmethod
    def from_occurrences(cls, occurrences: Iterable[Occurrence]) -> 'DateIndex':
        return cls().with_occurrences(occurrences)

    # ==================== Queries ====================

    def get(self, day) -> list[Occurrence]:
        """Occurrences on one day (date or date key), in no particular order."""
        key = day if isinstance(day, str) else date_key(day)
        return list(self._buckets.get(key, ()))

    def dates(self) -> list[str]:
        return sorted(self._buckets)

    def between(self, first: date, last: date) -> dict[str, list[Occurrence]]:
        """Days from first to last inclusive that have occurrences, display-sorted."""
        lo, hi = date_key(first), date_key(last)
        return {
            key: sort_for_display(self._buckets[key])
            for key in sorted(self._buckets) if lo <= key <= hi
        }

    def occurrences_of(self, base_id: str) -> list[Occurrence]:
        return [o for o in self if o.base_id == base_id]

    def find(self, occurrence_id: str) -> Optional[Occurrence]:
        for occurrence in self:
            if occurrence.occurrence_id == occurrence_id:
                return occurrence
        return None

    def base_ids(self) -> set[str]:
        return {o.base_id for o in self}

    def __iter__(self) -> Iterator[Occurrence]:
        for key in sorted(self._buckets):
            yield from self._buckets[key]

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())

    def __contains__(self, day) -> bool:
        key = day if isinstance(day, str) else date_key(day)
        return key in self._buckets

    def __repr__(self):
        return f"DateIndex(days={len(self._buckets)}, occurrences={len(self)})"

    # ==================== Changes (copy-on-write) ====================

    def without_base_id(self, base_id: str) -> 'DateIndex':
        """Index with every occurrence of one event removed from every day."""
        buckets = {}
        removed = 0
        for key, bucket in self._buckets.items():
            kept = tuple(o for o in bucket if o.base_id != base_id)
            removed += len(bucket) - len(kept)
            if kept:
                buckets[key] = kept
        if removed:
            _debug_print(f"Removed {removed} occurrence(s) of {base_id}")
        return DateIndex(buckets)

    def with_occurrences(self, occurrences: Iterable[Occurrence]) -> 'DateIndex':
        buckets = dict(self._buckets)
        for occurrence in occurrences:
            buckets[occurrence.date_key] = buckets.get(occurrence.date_key, ()) + (occurrence,)
        return DateIndex(buckets)

    def replace_event(self, base_id: str, occurrences: Iterable[Occurrence]) -> 'DateIndex':
        """Drop all of an event's occurrences, then add its new ones."""
        return self.without_base_id(base_id).with_occurrences(occurrences)


# ==================== Reconciliation ====================

def _latest_shares(streams: Iterable[Iterable[SharedEvent]]) -> list[SharedEvent]:
    """
    One record per share id across the streams.

    The streams are fetched separately and may disagree about a status;
    the most recently updated copy wins.
    """
    latest: dict[str, SharedEvent] = {}
    for stream in streams:
        for shared in stream:
            current = latest.get(shared.id)
            if current is None or _stamp(shared) >= _stamp(current):
                latest[shared.id] = shared
    return list(latest.values())


def _stamp(shared: SharedEvent):
    stamp = shared.updated_at or shared.created_at
    return stamp.timestamp() if stamp else 0.0


def _group_annotation(
    group: list[SharedEvent], viewer_id: str, profiles: dict[str, Profile]
) -> SharingAnnotation:
    """
    One label for all shares of the same event.

    A sender who shared one event with several friends sees a single set
    of occurrences, pending while any recipient has not yet answered.
    """
    group = sorted(group, key=lambda s: (s.status != SharingStatus.PENDING, s.shared_with))
    recipients = tuple(sorted({s.shared_with for s in group}))
    return annotate(group[0], viewer_id, profiles, recipients)


def build_index(
    viewer_id: str,
    own_events: Iterable[CanonicalEvent],
    accepted_shared: Iterable[SharedEvent] = (),
    sent_pending_shared: Iterable[SharedEvent] = (),
    profiles: Optional[dict[str, Profile]] = None,
    recurrence_cap: int = RECURRENCE_CAP,
    default_repeat_years: int = DEFAULT_REPEAT_YEARS,
) -> DateIndex:
    """
    Build the viewer's complete date index from scratch.

    Args:
        viewer_id: The user whose calendar this is
        own_events: Canonical events the viewer owns (accepted copies included)
        accepted_shared: Accepted shares the viewer sent or received
        sent_pending_shared: Pending shares the viewer sent
        profiles: Profiles for labelling shared occurrences

    Returns:
        The new index. A share only contributes if the visibility rule
        admits it for this viewer, whichever stream it arrived in. A share
        whose event is already among the viewer's own events labels those
        occurrences instead of adding a second copy.
    """
    profiles = profiles or {}

    by_base_id: dict[str, list[Occurrence]] = {}
    for event in own_events:
        by_base_id[event.id] = materialize(event, viewer_id, recurrence_cap, default_repeat_years)

    groups: dict[str, list[SharedEvent]] = {}
    for shared in _latest_shares((accepted_shared, sent_pending_shared)):
        if not is_visible(shared, viewer_id):
            continue
        groups.setdefault(target_base_id(shared, viewer_id), []).append(shared)

    for base_id, group in groups.items():
        annotation = _group_annotation(group, viewer_id, profiles)
        occurrences = by_base_id.get(base_id)
        if occurrences is None:
            # Not among our own rows (yet): show the snapshot read-only
            shared = group[0]
            owner = viewer_id if role_of(shared, viewer_id) == ShareRole.RECIPIENT else shared.shared_by
            snapshot = shared.snapshot_event(as_id=base_id, owner_id=owner)
            occurrences = materialize(snapshot, viewer_id, recurrence_cap, default_repeat_years)
        by_base_id[base_id] = [o.with_sharing(annotation) for o in occurrences]

    index = DateIndex.from_occurrences(o for occs in by_base_id.values() for o in occs)
    _debug_print(f"Built index for {viewer_id}: {len(by_base_id)} event(s), {len(index)} occurrence(s)")
    return index
