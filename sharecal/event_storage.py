"""
Event Store Interface and local implementations.

EventStorageBackend is the contract the engine consumes: async CRUD over
two logical tables, `events` and `shared_events`, plus profile lookups
and a change subscription. Rows are plain dicts in snake_case wire shape
(see event_wrapper.CanonicalEvent.to_row / SharedEvent.to_row).

Implementations:
- MemoryEventStorage: in-process tables (tests, embedding)
- JsonEventStorage: MemoryEventStorage persisted to one JSON file
- PostgrestEventStore (rest_store.py): Supabase/PostgREST over HTTP
"""

import copy
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

from .change_feed import CallbackSubscription, ChangeCallback, ChangeEvent, ChangeKind
from .debug import debug_print
from .errors import NotFound, StoreError


def _debug_print(msg: str, error: bool = False) -> None:
    debug_print("STORAGE", msg, error)


SENDER = "sender"
RECIPIENT = "recipient"


class EventStorageBackend(ABC):
    """
    Abstract base class for event stores.

    Writes raise NotFound when the addressed row is gone and StoreError
    (or a subclass) for any other failure.
    """

    # ==================== events ====================

    @abstractmethod
    async def fetch_own_events(self, user_id: str) -> list[dict]:
        """All events owned by a user."""

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[dict]:
        """One event row, or None."""

    @abstractmethod
    async def insert_event(self, row: dict) -> dict:
        """Insert a new event row; returns the stored row."""

    @abstractmethod
    async def upsert_event(self, row: dict) -> dict:
        """Insert or overwrite an event row by id."""

    @abstractmethod
    async def update_event(self, event_id: str, row: dict) -> dict:
        """Overwrite the fields of an existing event row."""

    @abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete one event row only."""

    @abstractmethod
    async def delete_event_cascade(self, event_id: str) -> int:
        """
        Delete an event together with every shared_events row referencing
        it, whatever their status.

        Shared rows go first, so a failure part-way never leaves shares
        pointing at a missing event. Returns the number of shared rows
        removed; raises NotFound (after removing the shares) if the event
        row itself was already gone.
        """

    # ==================== shared_events ====================

    @abstractmethod
    async def fetch_shared_events(
        self, user_id: str, role: str, statuses: Iterable[str]
    ) -> list[dict]:
        """Shares the user sent (role=SENDER) or received (role=RECIPIENT)."""

    @abstractmethod
    async def get_shared_event(self, shared_id: str) -> Optional[dict]:
        """One shared_events row, or None."""

    @abstractmethod
    async def insert_shared_events(self, rows: list[dict]) -> list[dict]:
        """Insert share rows; all or nothing."""

    @abstractmethod
    async def update_shared_status(self, shared_id: str, status: str, updated_at: str) -> dict:
        """Set status and updated_at of a share."""

    @abstractmethod
    async def delete_shared_event(self, shared_id: str) -> None:
        """Delete one share row (cancellation)."""

    # ==================== profiles & changes ====================

    @abstractmethod
    async def get_profiles(self, user_ids: Iterable[str]) -> list[dict]:
        """Profile rows (id, username, full_name, avatar_url) for the ids."""

    @abstractmethod
    def subscribe_changes(self, user_id: str, callback: ChangeCallback):
        """Deliver ChangeEvents for the user's `events` rows until closed."""

    async def close(self) -> None:
        """Release connections."""


class MemoryEventStorage(EventStorageBackend):
    """
    In-process tables.

    Rows are deep-copied on the way in and out, so callers can never
    mutate stored state behind the store's back. Every write to `events`
    is reported to the owner's change subscribers.
    """

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.shared_events: dict[str, dict] = {}
        self.profiles: dict[str, dict] = {}
        self._subscribers: list[tuple[str, ChangeCallback]] = []

    def _persist(self) -> None:
        """Hook for subclasses that keep the tables somewhere durable."""

    def _notify(self, kind: ChangeKind, row: dict) -> None:
        owner = row.get("user_id")
        for user_id, callback in list(self._subscribers):
            if user_id == owner:
                callback(ChangeEvent(kind, "events", copy.deepcopy(row)))

    def add_profile(self, user_id: str, username: str = "", full_name: str = "",
                    avatar_url: Optional[str] = None, push_token: Optional[str] = None) -> None:
        self.profiles[user_id] = {
            "id": user_id, "username": username, "full_name": full_name,
            "avatar_url": avatar_url, "expo_push_token": push_token,
        }

    # ==================== events ====================

    async def fetch_own_events(self, user_id: str) -> list[dict]:
        return [copy.deepcopy(r) for r in self.events.values() if r.get("user_id") == user_id]

    async def get_event(self, event_id: str) -> Optional[dict]:
        row = self.events.get(event_id)
        return copy.deepcopy(row) if row else None

    async def insert_event(self, row: dict) -> dict:
        if row["id"] in self.events:
            raise StoreError(f"duplicate key value violates unique constraint: events.id={row['id']}")
        self.events[row["id"]] = copy.deepcopy(row)
        self._persist()
        self._notify(ChangeKind.INSERT, row)
        return copy.deepcopy(row)

    async def upsert_event(self, row: dict) -> dict:
        kind = ChangeKind.UPDATE if row["id"] in self.events else ChangeKind.INSERT
        self.events[row["id"]] = copy.deepcopy(row)
        self._persist()
        self._notify(kind, row)
        return copy.deepcopy(row)

    async def update_event(self, event_id: str, row: dict) -> dict:
        if event_id not in self.events:
            raise NotFound("events", event_id)
        stored = self.events[event_id]
        stored.update(copy.deepcopy(row))
        stored["id"] = event_id
        self._persist()
        self._notify(ChangeKind.UPDATE, stored)
        return copy.deepcopy(stored)

    async def delete_event(self, event_id: str) -> None:
        row = self.events.pop(event_id, None)
        if row is None:
            raise NotFound("events", event_id)
        self._persist()
        self._notify(ChangeKind.DELETE, row)

    async def delete_event_cascade(self, event_id: str) -> int:
        doomed = [sid for sid, r in self.shared_events.items()
                  if r.get("original_event_id") == event_id]
        for shared_id in doomed:
            del self.shared_events[shared_id]
        if doomed:
            self._persist()
        _debug_print(f"Cascade for {event_id}: {len(doomed)} shared row(s)")
        await self.delete_event(event_id)
        return len(doomed)

    # ==================== shared_events ====================

    async def fetch_shared_events(self, user_id: str, role: str, statuses: Iterable[str]) -> list[dict]:
        column = "shared_by" if role == SENDER else "shared_with"
        wanted = set(statuses)
        rows = [r for r in self.shared_events.values()
                if r.get(column) == user_id and r.get("status") in wanted]
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return copy.deepcopy(rows)

    async def get_shared_event(self, shared_id: str) -> Optional[dict]:
        row = self.shared_events.get(shared_id)
        return copy.deepcopy(row) if row else None

    async def insert_shared_events(self, rows: list[dict]) -> list[dict]:
        for row in rows:
            if row["id"] in self.shared_events:
                raise StoreError(f"duplicate key value: shared_events.id={row['id']}")
        for row in rows:
            self.shared_events[row["id"]] = copy.deepcopy(row)
        self._persist()
        return copy.deepcopy(rows)

    async def update_shared_status(self, shared_id: str, status: str, updated_at: str) -> dict:
        row = self.shared_events.get(shared_id)
        if row is None:
            raise NotFound("shared_events", shared_id)
        row["status"] = status
        row["updated_at"] = updated_at
        self._persist()
        return copy.deepcopy(row)

    async def delete_shared_event(self, shared_id: str) -> None:
        if self.shared_events.pop(shared_id, None) is None:
            raise NotFound("shared_events", shared_id)
        self._persist()

    # ==================== profiles & changes ====================

    async def get_profiles(self, user_ids: Iterable[str]) -> list[dict]:
        return [copy.deepcopy(self.profiles[u]) for u in set(user_ids) if u in self.profiles]

    def subscribe_changes(self, user_id: str, callback: ChangeCallback) -> CallbackSubscription:
        entry = (user_id, callback)
        self._subscribers.append(entry)

        def _detach():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return CallbackSubscription(_detach)


class JsonEventStorage(MemoryEventStorage):
    """
    MemoryEventStorage persisted to one JSON file.

    Structure: {"events": {...}, "shared_events": {...}, "profiles": {...}}
    The whole file is rewritten after every write.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._load()
        _debug_print(f"Initialized JSON storage at {self.path}")

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read {self.path}: {e}") from e

        self.events = data.get("events", {})
        self.shared_events = data.get("shared_events", {})
        self.profiles = data.get("profiles", {})
        _debug_print(f"Loaded {len(self.events)} events, {len(self.shared_events)} shares")

    def _persist(self) -> None:
        data = {
            "events": self.events,
            "shared_events": self.shared_events,
            "profiles": self.profiles,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError as e:
            _debug_print(f"Error saving {self.path}: {e}", error=True)
            raise StoreError(f"Cannot write {self.path}: {e}") from e

    def add_profile(self, user_id: str, username: str = "", full_name: str = "",
                    avatar_url: Optional[str] = None, push_token: Optional[str] = None) -> None:
        super().add_profile(user_id, username, full_name, avatar_url, push_token)
        self._persist()


def get_default_storage_path() -> Path:
    """Default JSON store location respecting XDG."""
    xdg_data = os.environ.get('XDG_DATA_HOME', os.path.expanduser('~/.local/share'))
    return Path(xdg_data) / 'sharecal' / 'storage.json'


def create_storage_backend(store_config, password_program: str = "/usr/bin/pass",
                           poll_interval: float = 30.0) -> EventStorageBackend:
    """Factory: build the backend named by a StoreConfig."""
    if store_config.backend == "postgrest":
        from .rest_store import PostgrestEventStore
        return PostgrestEventStore(
            url=store_config.url,
            api_key=store_config.get_api_key(password_program),
            timeout=store_config.timeout,
            poll_interval=poll_interval,
        )
    if store_config.backend == "json":
        return JsonEventStorage(store_config.json_path or get_default_storage_path())
    raise ValueError(f"Unknown store backend: {store_config.backend}")
