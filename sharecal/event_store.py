"""
Calendar store for sharecal.

Single entry point for one signed-in user: loads the three event streams,
keeps the reconciled DateIndex, and performs every mutation in the order
the sharing rules require.

Mutations follow one pattern: check permissions, write to the store,
update the local index only after the write is confirmed, then refresh
from the store so the index is rebuilt from scratch.
"""

import asyncio
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from .change_feed import ChangeEvent
from .config import Config
from .context import EngineContext
from .date_index import DateIndex, build_index, sort_for_display
from .debug import debug_print
from .errors import NotFound, PermissionDenied, StoreError, StoreUnavailable
from .event_storage import EventStorageBackend, RECIPIENT, SENDER, create_storage_backend
from .event_wrapper import (
    CanonicalEvent, Occurrence, Profile, SharedEvent, SharingStatus,
    new_event_id, split_occurrence_id, split_photos,
)
from .ics_subscription import ICSSubscription, import_subscription
from .materializer import DEFAULT_REPEAT_YEARS, RECURRENCE_CAP, materialize
from .notifications import (
    ExpoPushNotifier, LoggingNotifier, Notifier, ShareNotice, ShareNoticeKind
)
from .sharing import (
    check_cancel, create_shares, fork_accepted_event, role_of, transition, ShareRole
)
from .timezone_utils import format_utc, utc_now


def _debug_print(msg: str, error: bool = False) -> None:
    debug_print("STORE", msg, error)


T = TypeVar("T")

REFRESH_KEY = "refresh"


@dataclass
class PendingShare:
    """A received share waiting for the recipient to accept or decline."""
    shared: SharedEvent
    sender: Optional[Profile] = None

    @property
    def sender_name(self) -> str:
        return self.sender.display_name if self.sender else "Someone"

    @property
    def title(self) -> str:
        return self.shared.title

    @property
    def message(self) -> Optional[str]:
        return self.shared.message


def _parse_shares(rows: Iterable[dict]) -> list[SharedEvent]:
    shares = []
    for row in rows:
        try:
            shares.append(SharedEvent.from_row(row))
        except (KeyError, ValueError) as e:
            _debug_print(f"Skipping malformed shared_events row {row.get('id')}: {e}", error=True)
    return shares


class CalendarStore:
    """
    One user's calendar: the date index plus the operations that change it.

    Reads go to the in-memory index; writes go to the EventStorageBackend.
    """

    def __init__(
        self,
        store: EventStorageBackend,
        context: EngineContext,
        notifier: Optional[Notifier] = None,
        recurrence_cap: int = RECURRENCE_CAP,
        default_repeat_years: int = DEFAULT_REPEAT_YEARS,
        refresh_debounce: float = 0.5,
        accept_timeout: float = 5.0,
    ):
        self.store = store
        self.context = context
        self.notifier = notifier or LoggingNotifier()
        self.recurrence_cap = recurrence_cap
        self.default_repeat_years = default_repeat_years
        self.refresh_debounce = refresh_debounce
        self.accept_timeout = accept_timeout

        self._index = DateIndex()
        self._events: dict[str, CanonicalEvent] = {}
        self._shares: dict[str, SharedEvent] = {}
        self._profiles: dict[str, Profile] = {}
        self._generation = 0

        self.last_error: Optional[str] = None
        self.last_refresh = None
        self._on_change_callback: Optional[Callable[[], None]] = None

    @classmethod
    def from_config(cls, config: Config) -> 'CalendarStore':
        store = create_storage_backend(
            config.store, config.password_program, config.engine.poll_interval
        )
        if config.notifications.push_enabled:
            notifier = ExpoPushNotifier(store, config.notifications.push_url)
        else:
            notifier = LoggingNotifier()
        return cls(
            store,
            EngineContext(user_id=config.user_id),
            notifier,
            recurrence_cap=config.engine.recurrence_cap,
            default_repeat_years=config.engine.default_repeat_years,
            refresh_debounce=config.engine.refresh_debounce,
            accept_timeout=config.sharing.accept_timeout,
        )

    @property
    def user_id(self) -> str:
        return self.context.user_id

    @property
    def index(self) -> DateIndex:
        return self._index

    def set_on_change_callback(self, callback: Callable[[], None]) -> None:
        self._on_change_callback = callback

    def _notify_change(self) -> None:
        if self._on_change_callback:
            self._on_change_callback()

    # ==================== Lifecycle ====================

    async def start(self) -> bool:
        """Subscribe to remote changes and load the calendar."""
        subscription = self.store.subscribe_changes(self.user_id, self.handle_change)
        self.context.add_subscription("events", subscription)
        return await self.refresh()

    async def stop(self) -> None:
        self.context.close()
        await self.context.drain()
        await self.store.close()

    def handle_change(self, change: ChangeEvent) -> None:
        """
        Change-feed callback. Inserts and updates schedule a debounced
        refresh; deletes are ignored.
        """
        if not change.triggers_refresh:
            _debug_print(f"Ignoring remote {change.kind.value} on {change.record.get('id')}")
            return
        self.context.debounce(REFRESH_KEY, self.refresh_debounce, self.refresh)

    # ==================== Loading ====================

    async def refresh(self) -> bool:
        """
        Re-fetch every stream and rebuild the index from scratch.

        Returns:
            True if the index was rebuilt. On a read failure the previous
            index stays in place, last_error is set and False is returned.
        """
        self._generation += 1
        generation = self._generation
        me = self.user_id

        try:
            own_rows, sent_accepted, received_accepted, sent_pending = await asyncio.gather(
                self.store.fetch_own_events(me),
                self.store.fetch_shared_events(me, SENDER, [SharingStatus.ACCEPTED.value]),
                self.store.fetch_shared_events(me, RECIPIENT, [SharingStatus.ACCEPTED.value]),
                self.store.fetch_shared_events(me, SENDER, [SharingStatus.PENDING.value]),
            )
        except StoreError as e:
            self.last_error = str(e)
            _debug_print(f"Refresh failed, keeping current index: {e}", error=True)
            return False

        own_events = [CanonicalEvent.from_row(row) for row in own_rows]
        accepted = _parse_shares(sent_accepted + received_accepted)
        pending = _parse_shares(sent_pending)
        profiles = await self._load_profiles(
            {s.shared_by for s in accepted + pending} | {s.shared_with for s in accepted + pending}
        )

        if generation != self._generation:
            _debug_print("Refresh superseded by a newer one, discarding")
            return True

        index = build_index(
            me, own_events, accepted, pending, profiles,
            recurrence_cap=self.recurrence_cap,
            default_repeat_years=self.default_repeat_years,
        )
        # Swap everything at once
        self._index = index
        self._events = {event.id: event for event in own_events}
        self._shares = {share.id: share for share in accepted + pending}
        self._profiles = profiles
        self.last_error = None
        self.last_refresh = utc_now()
        self._notify_change()
        return True

    async def _load_profiles(self, user_ids: set[str]) -> dict[str, Profile]:
        user_ids.discard("")
        if not user_ids:
            return {}
        try:
            rows = await self.store.get_profiles(user_ids)
        except StoreError as e:
            # Labels fall back to "Someone"
            _debug_print(f"Cannot load profiles: {e}", error=True)
            return dict(self._profiles)
        return {row["id"]: Profile.from_row(row) for row in rows}

    # ==================== Queries ====================

    def occurrences_on(self, day) -> list[Occurrence]:
        """Occurrences on one day (date or 'YYYY-MM-DD'), display-sorted."""
        return sort_for_display(self._index.get(day))

    def agenda(self, first: date, last: date) -> dict[str, list[Occurrence]]:
        """Occurrences per day from first to last inclusive, display-sorted."""
        return self._index.between(first, last)

    def get_event(self, event_id: str) -> Optional[CanonicalEvent]:
        return self._events.get(self._resolve_base_id(event_id))

    async def pending_actions(self) -> list[PendingShare]:
        """Received shares waiting for an answer, newest first."""
        rows = await self.store.fetch_shared_events(
            self.user_id, RECIPIENT, [SharingStatus.PENDING.value]
        )
        shares = _parse_shares(rows)
        profiles = await self._load_profiles({s.shared_by for s in shares})
        return [PendingShare(s, profiles.get(s.shared_by)) for s in shares]

    async def pending_count(self) -> int:
        rows = await self.store.fetch_shared_events(
            self.user_id, RECIPIENT, [SharingStatus.PENDING.value]
        )
        return len(rows)

    # ==================== Helpers ====================

    def _resolve_base_id(self, identifier: str) -> str:
        """Accept either a base id or a per-day occurrence id."""
        if identifier in self._events or identifier in self._index.base_ids():
            return identifier
        base_id, day = split_occurrence_id(identifier)
        return base_id if day else identifier

    def _materialize(self, event: CanonicalEvent) -> list[Occurrence]:
        return materialize(event, self.user_id, self.recurrence_cap, self.default_repeat_years)

    async def _owned_event(self, event_id: str) -> Optional[CanonicalEvent]:
        """
        The caller's own event, from the index or the store.

        Raises PermissionDenied if the event belongs to someone else;
        returns None if it does not exist.
        """
        event = self._events.get(event_id)
        if event is None:
            row = await self.store.get_event(event_id)
            if row is None:
                return None
            event = CanonicalEvent.from_row(row)
        if event.user_id != self.user_id:
            raise PermissionDenied(f"Event {event_id} is owned by {event.user_id}, not {self.user_id}")
        return event

    async def _load_share(self, shared_id: str) -> SharedEvent:
        row = await self.store.get_shared_event(shared_id)
        if row is None:
            raise NotFound("shared_events", shared_id)
        return SharedEvent.from_row(row)

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        """Wait for a store call at most accept_timeout seconds."""
        try:
            return await asyncio.wait_for(awaitable, self.accept_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"{what} got no answer within {self.accept_timeout:g}s") from e

    async def _schedule_reminders(self, event: CanonicalEvent) -> None:
        await self.notifier.cancel_reminders(event.id)
        now = utc_now()
        for occurrence in self._materialize(event):
            if occurrence.reminder_time is not None and occurrence.reminder_time > now:
                await self.notifier.schedule_reminder(event.id, occurrence.title, occurrence.reminder_time)

    def _drop_local(self, base_id: str) -> None:
        self._events.pop(base_id, None)
        self._index = self._index.without_base_id(base_id)

    def _put_local(self, event: CanonicalEvent) -> None:
        self._events[event.id] = event
        self._index = self._index.replace_event(event.id, self._materialize(event))

    async def _discard_copy(self, copy_id: str) -> None:
        """
        Delete a recipient copy that no accepted share backs. Failures
        are logged only.
        """
        if self._accepted_share_for_copy(copy_id) is not None:
            return
        try:
            await self.store.delete_event(copy_id)
            _debug_print(f"Removed accepted copy {copy_id}")
        except NotFound:
            return
        except StoreError as e:
            _debug_print(f"Cannot remove accepted copy {copy_id}: {e}", error=True)
            return
        await self.notifier.cancel_reminders(copy_id)
        self._drop_local(copy_id)

    def _accepted_share_for_copy(self, base_id: str) -> Optional[SharedEvent]:
        for share in self._shares.values():
            if share.status == SharingStatus.ACCEPTED and share.shared_with == self.user_id \
                    and share.accepted_copy_id == base_id:
                return share
        return None

    # ==================== Own events ====================

    async def create_event(
        self,
        event: CanonicalEvent,
        share_with: Iterable[str] = (),
        message: Optional[str] = None,
    ) -> CanonicalEvent:
        """
        Store a new event owned by the current user, optionally sharing it
        right away.
        """
        if event.user_id and event.user_id != self.user_id:
            raise PermissionDenied(f"Cannot create an event owned by {event.user_id}")
        event = event.normalized()
        event.user_id = self.user_id
        if not event.id:
            event.id = new_event_id()

        await self.store.insert_event(event.to_row())
        _debug_print(f"Created {event.id} ({event.title!r})")
        self._put_local(event)
        await self._schedule_reminders(event)

        share_with = list(share_with)
        if share_with:
            await self.share_event(event.id, share_with, message)
        else:
            await self.refresh()
        return event

    async def edit_event(
        self, event: CanonicalEvent, display_photos: Optional[list[str]] = None
    ) -> Optional[CanonicalEvent]:
        """
        Overwrite an existing event.

        Every prior occurrence of the event is removed before the new ones
        are added. If the event no longer exists in the store, its stale
        occurrences are removed and None is returned.

        Args:
            event: The edited event
            display_photos: Edited merged photo list, if the photos were
                edited as one list. Photos that were private stay private;
                everything else is written back as public.
        """
        base_id = self._resolve_base_id(event.id)
        existing = await self._owned_event(base_id)
        if event.user_id and event.user_id != self.user_id:
            raise PermissionDenied(f"Cannot hand event {base_id} to {event.user_id}")
        if existing is None:
            _debug_print(f"Edit of missing event {base_id}, dropping stale occurrences")
            await self.notifier.cancel_reminders(base_id)
            self._drop_local(base_id)
            self._notify_change()
            return None

        event = event.normalized()
        event.id = base_id
        event.user_id = self.user_id
        if display_photos is not None:
            event.photos, event.private_photos = split_photos(
                display_photos, set(existing.private_photos)
            )
        try:
            await self.store.update_event(base_id, event.to_row())
        except NotFound:
            await self.notifier.cancel_reminders(base_id)
            self._drop_local(base_id)
            self._notify_change()
            return None

        self._put_local(event)
        await self._schedule_reminders(event)
        await self.refresh()
        return event

    async def delete_event(self, event_id: str) -> bool:
        """
        Delete an event and everything derived from it.

        For the owner of an original this cascades to every share of it.
        For a recipient's accepted copy this declines the share after the
        fact instead (see remove_shared_occurrence).

        Returns:
            False if the event was already gone; local cleanup happens
            either way.
        """
        base_id = self._resolve_base_id(event_id)
        if self._accepted_share_for_copy(base_id) is not None:
            await self.remove_shared_occurrence(base_id)
            return True

        existing = await self._owned_event(base_id)
        found = existing is not None
        if found:
            try:
                removed = await self.store.delete_event_cascade(base_id)
                _debug_print(f"Deleted {base_id} and {removed} share(s)")
            except NotFound:
                found = False

        await self.notifier.cancel_reminders(base_id)
        self._drop_local(base_id)
        self._notify_change()
        await self.refresh()
        return found

    # ==================== Sharing ====================

    async def share_event(
        self, event_id: str, friend_ids: Iterable[str], message: Optional[str] = None
    ) -> list[SharedEvent]:
        """Create one pending share per friend, each with a snapshot of the event."""
        base_id = self._resolve_base_id(event_id)
        event = await self._owned_event(base_id)
        if event is None:
            raise NotFound("events", base_id)

        shares = create_shares(event, self.user_id, friend_ids, message)
        if shares:
            await self.store.insert_shared_events([s.to_row() for s in shares])
            for share in shares:
                await self.notifier.notify_share(ShareNotice(
                    ShareNoticeKind.SHARED, share.shared_with, self.user_id, event.title, event.id
                ))
        await self.refresh()
        return shares

    async def accept_share(self, shared_id: str) -> CanonicalEvent:
        """
        Accept a received share.

        The recipient's own copy is written first, then the status flips.
        If the status write fails the copy is removed again, so a share
        that is still pending never has a copy in the recipient's events.
        The copy's id is fixed per share, so a retry overwrites rather
        than duplicates.
        """
        shared = await self._bounded(self._load_share(shared_id), "Loading share")
        updated = transition(shared, SharingStatus.ACCEPTED, self.user_id)
        fork = fork_accepted_event(shared, self.user_id)

        await self._bounded(self.store.upsert_event(fork.to_row()), "Writing accepted copy")
        try:
            await self._bounded(
                self.store.update_shared_status(
                    shared.id, SharingStatus.ACCEPTED.value, format_utc(updated.updated_at)
                ),
                "Accepting share",
            )
        except StoreError:
            await self._discard_copy(fork.id)
            raise
        _debug_print(f"Accepted {shared.id} as {fork.id}")

        self._put_local(fork)
        await self._schedule_reminders(fork)
        await self.notifier.notify_share(ShareNotice(
            ShareNoticeKind.ACCEPTED, shared.shared_with, shared.shared_by, shared.title, fork.id
        ))
        await self.refresh()
        return fork

    async def decline_share(self, shared_id: str) -> SharedEvent:
        """Decline a received pending share. The row is kept as declined."""
        shared = await self._bounded(self._load_share(shared_id), "Loading share")
        updated = transition(shared, SharingStatus.DECLINED, self.user_id)
        await self._bounded(
            self.store.update_shared_status(
                shared.id, SharingStatus.DECLINED.value, format_utc(updated.updated_at)
            ),
            "Declining share",
        )
        # A copy left behind by an accept that failed part-way
        await self._discard_copy(shared.accepted_copy_id)
        await self.notifier.notify_share(ShareNotice(
            ShareNoticeKind.DECLINED, shared.shared_with, shared.shared_by, shared.title,
            shared.original_event_id
        ))
        await self.refresh()
        return updated

    async def cancel_share(self, shared_id: str) -> None:
        """Withdraw a pending share you sent; the row is deleted."""
        shared = await self._load_share(shared_id)
        check_cancel(shared, self.user_id)
        try:
            await self.store.delete_shared_event(shared.id)
        except NotFound:
            _debug_print(f"Share {shared.id} already gone")
        await self.notifier.notify_share(ShareNotice(
            ShareNoticeKind.CANCELLED, shared.shared_with, shared.shared_by, shared.title,
            shared.original_event_id
        ))
        await self.refresh()

    async def remove_shared_occurrence(self, occurrence_id: str) -> SharedEvent:
        """
        Recipient removes an accepted shared event from their calendar.

        The share becomes declined and the recipient's own copy is deleted.
        The sender's original and its occurrences are untouched.
        """
        base_id = self._resolve_base_id(occurrence_id)
        share = self._accepted_share_for_copy(base_id)
        if share is None:
            occurrence = self._index.find(occurrence_id) or next(
                iter(self._index.occurrences_of(base_id)), None
            )
            if occurrence is None or occurrence.sharing is None:
                raise NotFound("shared_events", base_id)
            share = await self._load_share(occurrence.sharing.shared_event_id)
        if role_of(share, self.user_id) != ShareRole.RECIPIENT:
            raise PermissionDenied(f"Only the recipient may remove shared event {share.id}")

        updated = transition(share, SharingStatus.DECLINED, self.user_id)
        await self._bounded(
            self.store.update_shared_status(
                share.id, SharingStatus.DECLINED.value, format_utc(updated.updated_at)
            ),
            "Removing shared event",
        )
        copy_id = share.accepted_copy_id
        try:
            await self.store.delete_event(copy_id)
        except NotFound:
            _debug_print(f"Accepted copy {copy_id} already gone")

        await self.notifier.cancel_reminders(copy_id)
        self._drop_local(copy_id)
        self._notify_change()
        await self.notifier.notify_share(ShareNotice(
            ShareNoticeKind.DECLINED, share.shared_with, share.shared_by, share.title,
            share.original_event_id
        ))
        await self.refresh()
        return updated

    # ==================== Import ====================

    async def import_subscription(self, subscription: ICSSubscription) -> Optional[int]:
        """Import an ICS feed into the user's events, then refresh."""
        count = await import_subscription(self.store, subscription, self.user_id)
        if count is None:
            self.last_error = subscription.error
            return None
        await self.refresh()
        return count
