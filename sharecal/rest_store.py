"""
PostgREST (Supabase) event store.

Talks to the `events`, `shared_events` and `profiles` tables over the
PostgREST HTTP API with requests. Every HTTP call is blocking, so each
one runs on a small thread pool and is awaited from the event loop with
run_in_executor; the loop itself never blocks on the network.

Transport failures are translated at this boundary:
- connection errors and timeouts -> StoreUnavailable
- HTTP 401/403 -> StoreAuthError
- any other HTTP error -> StoreError
- a write addressing no row -> NotFound
"""

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Optional

import requests

from .change_feed import ChangeCallback, PollingChangeFeed
from .debug import debug_print
from .errors import NotFound, StoreAuthError, StoreError, StoreUnavailable
from .event_storage import EventStorageBackend, SENDER


def _debug_print(msg: str, error: bool = False) -> None:
    debug_print("REST", msg, error)


RETURN_ROWS = "return=representation"
UPSERT = "resolution=merge-duplicates,return=representation"


def _in_filter(values: Iterable[str]) -> str:
    quoted = ",".join(f'"{v}"' for v in values)
    return f"in.({quoted})"


class PostgrestEventStore(EventStorageBackend):
    """
    Event store backed by a PostgREST endpoint.

    Args:
        url: Project base URL (the REST root is <url>/rest/v1)
        api_key: Anon or service key, sent as `apikey`
        access_token: User JWT for row-level security; defaults to api_key
        timeout: Per-request timeout in seconds
        poll_interval: Seconds between change polls
        session: Injected requests.Session (tests)
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
        poll_interval: float = 30.0,
        max_workers: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = url.rstrip('/') + '/rest/v1'
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.session.headers.update({
            'apikey': api_key,
            'Authorization': f'Bearer {access_token or api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': 'sharecal/1.0',
        })
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="network")

    # ==================== Transport ====================

    def _request(
        self,
        method: str,
        table: str,
        params: Optional[dict] = None,
        body: Any = None,
        prefer: Optional[str] = None,
    ) -> list[dict]:
        """Blocking HTTP call; runs on the worker pool."""
        headers = {'Prefer': prefer} if prefer else {}
        url = f"{self.base_url}/{table}"
        try:
            response = self.session.request(
                method, url, params=params, json=body, headers=headers, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise StoreUnavailable(f"{method} {table} timed out: {e}") from e
        except requests.RequestException as e:
            raise StoreUnavailable(f"{method} {table} failed: {e}") from e

        if response.status_code in (401, 403):
            raise StoreAuthError(f"{method} {table}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise StoreError(f"{method} {table}: HTTP {response.status_code}: {response.text}")
        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as e:
            raise StoreError(f"{method} {table}: invalid JSON response") from e
        return data if isinstance(data, list) else [data]

    async def _call(self, method: str, table: str, **kwargs) -> list[dict]:
        loop = asyncio.get_running_loop()
        _debug_print(f"{method} {table} {kwargs.get('params') or ''}")
        return await loop.run_in_executor(
            self._executor, functools.partial(self._request, method, table, **kwargs)
        )

    # ==================== events ====================

    async def fetch_own_events(self, user_id: str) -> list[dict]:
        return await self._call("GET", "events", params={
            "select": "*", "user_id": f"eq.{user_id}", "order": "date.asc",
        })

    async def get_event(self, event_id: str) -> Optional[dict]:
        rows = await self._call("GET", "events", params={"select": "*", "id": f"eq.{event_id}"})
        return rows[0] if rows else None

    async def insert_event(self, row: dict) -> dict:
        rows = await self._call("POST", "events", body=row, prefer=RETURN_ROWS)
        return rows[0] if rows else row

    async def upsert_event(self, row: dict) -> dict:
        rows = await self._call("POST", "events", body=row, prefer=UPSERT,
                                params={"on_conflict": "id"})
        return rows[0] if rows else row

    async def update_event(self, event_id: str, row: dict) -> dict:
        fields = {k: v for k, v in row.items() if k != "id"}
        rows = await self._call("PATCH", "events", params={"id": f"eq.{event_id}"},
                                body=fields, prefer=RETURN_ROWS)
        if not rows:
            raise NotFound("events", event_id)
        return rows[0]

    async def delete_event(self, event_id: str) -> None:
        rows = await self._call("DELETE", "events", params={"id": f"eq.{event_id}"},
                                prefer=RETURN_ROWS)
        if not rows:
            raise NotFound("events", event_id)

    async def delete_event_cascade(self, event_id: str) -> int:
        shared = await self._call("DELETE", "shared_events",
                                  params={"original_event_id": f"eq.{event_id}"},
                                  prefer=RETURN_ROWS)
        _debug_print(f"Cascade for {event_id}: {len(shared)} shared row(s)")
        await self.delete_event(event_id)
        return len(shared)

    # ==================== shared_events ====================

    async def fetch_shared_events(self, user_id: str, role: str, statuses: Iterable[str]) -> list[dict]:
        column = "shared_by" if role == SENDER else "shared_with"
        return await self._call("GET", "shared_events", params={
            "select": "*",
            column: f"eq.{user_id}",
            "status": _in_filter(statuses),
            "order": "created_at.desc",
        })

    async def get_shared_event(self, shared_id: str) -> Optional[dict]:
        rows = await self._call("GET", "shared_events",
                                params={"select": "*", "id": f"eq.{shared_id}"})
        return rows[0] if rows else None

    async def insert_shared_events(self, rows: list[dict]) -> list[dict]:
        if not rows:
            return []
        return await self._call("POST", "shared_events", body=rows, prefer=RETURN_ROWS)

    async def update_shared_status(self, shared_id: str, status: str, updated_at: str) -> dict:
        rows = await self._call("PATCH", "shared_events", params={"id": f"eq.{shared_id}"},
                                body={"status": status, "updated_at": updated_at},
                                prefer=RETURN_ROWS)
        if not rows:
            raise NotFound("shared_events", shared_id)
        return rows[0]

    async def delete_shared_event(self, shared_id: str) -> None:
        rows = await self._call("DELETE", "shared_events", params={"id": f"eq.{shared_id}"},
                                prefer=RETURN_ROWS)
        if not rows:
            raise NotFound("shared_events", shared_id)

    # ==================== profiles & changes ====================

    async def get_profiles(self, user_ids: Iterable[str]) -> list[dict]:
        ids = sorted(set(user_ids))
        if not ids:
            return []
        return await self._call("GET", "profiles", params={
            "select": "id,username,full_name,avatar_url,expo_push_token",
            "id": _in_filter(ids),
        })

    def subscribe_changes(self, user_id: str, callback: ChangeCallback) -> PollingChangeFeed:
        return PollingChangeFeed(self, user_id, callback, self.poll_interval).start()

    async def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.session.close()
