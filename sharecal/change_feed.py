"""
Change notifications for the current user's `events` rows.

Stores push ChangeEvents to subscribers. The in-memory store emits them
directly on every write; remote stores without a push channel are
watched by PollingChangeFeed, which re-reads the user's rows on an
interval and reports what changed.

Consumers refresh on insert and update. Deletes are reported but the
calendar ignores them, so a remote echo of a removal cannot clobber a
local removal that is still waiting for the server.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .debug import debug_print
from .errors import StoreError


def _debug_print(msg: str, error: bool = False) -> None:
    debug_print("FEED", msg, error)


class ChangeKind(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    table: str
    record: dict

    @property
    def triggers_refresh(self) -> bool:
        return self.kind in (ChangeKind.INSERT, ChangeKind.UPDATE)


ChangeCallback = Callable[[ChangeEvent], None]


class CallbackSubscription:
    """Subscription handle that detaches a callback when closed."""

    def __init__(self, detach: Callable[[], None]):
        self._detach = detach
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._detach()


def _row_digest(row: dict) -> str:
    return hashlib.sha1(json.dumps(row, sort_keys=True, default=str).encode()).hexdigest()


class PollingChangeFeed:
    """
    Poll a store for changes to one user's events.

    Args:
        store: Any EventStorageBackend
        user_id: Whose events to watch
        callback: Receives one ChangeEvent per changed row
        interval: Seconds between polls
    """

    def __init__(self, store: Any, user_id: str, callback: ChangeCallback, interval: float = 30.0):
        self._store = store
        self._user_id = user_id
        self._callback = callback
        self._interval = interval
        self._digests: Optional[dict[str, str]] = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> 'PollingChangeFeed':
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.poll()
            except StoreError as e:
                _debug_print(f"Poll for {self._user_id} failed: {e}", error=True)
            await asyncio.sleep(self._interval)

    async def poll(self) -> list[ChangeEvent]:
        """
        Read the user's rows once and report differences from last time.

        The first poll only records a baseline.
        """
        rows = await self._store.fetch_own_events(self._user_id)
        digests = {str(row["id"]): _row_digest(row) for row in rows}
        by_id = {str(row["id"]): row for row in rows}

        changes = []
        if self._digests is not None:
            for row_id, digest in digests.items():
                previous = self._digests.get(row_id)
                if previous is None:
                    changes.append(ChangeEvent(ChangeKind.INSERT, "events", by_id[row_id]))
                elif previous != digest:
                    changes.append(ChangeEvent(ChangeKind.UPDATE, "events", by_id[row_id]))
            for row_id in self._digests.keys() - digests.keys():
                changes.append(ChangeEvent(ChangeKind.DELETE, "events", {"id": row_id}))
        self._digests = digests

        for change in changes:
            self._callback(change)
        if changes:
            _debug_print(f"{len(changes)} change(s) for {self._user_id}")
        return changes
