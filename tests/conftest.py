"""
Shared pytest fixtures for all tests.

Provides an in-memory event store with three users' profiles, event
factories, and CalendarStore instances bound to each user.
"""

from datetime import date

import pytest
import pytest_asyncio

from sharecal.context import EngineContext
from sharecal.event_storage import MemoryEventStorage
from sharecal.event_store import CalendarStore
from sharecal.event_wrapper import CanonicalEvent, RepeatOption
from sharecal.notifications import LoggingNotifier
from sharecal.timezone_utils import parse_utc


ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"


def build_event(
    event_id: str = "event_1",
    title: str = "Standup",
    start: str = "2025-01-15T09:00:00Z",
    end: str = "2025-01-15T10:00:00Z",
    user_id: str = ALICE,
    **kwargs,
) -> CanonicalEvent:
    start_dt = parse_utc(start)
    end_dt = parse_utc(end) if end else None
    kwargs.setdefault("date", start_dt.date() if start_dt else date(2025, 1, 15))
    if "repeat_option" in kwargs and isinstance(kwargs["repeat_option"], str):
        kwargs["repeat_option"] = RepeatOption.from_wire(kwargs["repeat_option"])
    return CanonicalEvent(
        id=event_id,
        title=title,
        start_datetime=start_dt,
        end_datetime=end_dt,
        user_id=user_id,
        **kwargs,
    )


@pytest.fixture
def make_event():
    """Factory for CanonicalEvents owned by Alice unless told otherwise."""
    return build_event


@pytest.fixture
def memory_store():
    """MemoryEventStorage with Alice, Bob and Carol's profiles."""
    store = MemoryEventStorage()
    store.add_profile(ALICE, username="alice", full_name="Alice Smith",
                      avatar_url="https://img.example/alice.png")
    store.add_profile(BOB, username="bob")
    store.add_profile(CAROL, username="carol", full_name="Carol Jones")
    return store


@pytest.fixture
def notifier():
    return LoggingNotifier()


def _calendar(store, user_id, notifier) -> CalendarStore:
    return CalendarStore(
        store,
        EngineContext(user_id=user_id),
        notifier,
        refresh_debounce=0.01,
        accept_timeout=1.0,
    )


@pytest_asyncio.fixture
async def alice_calendar(memory_store, notifier):
    """Alice's CalendarStore, loaded."""
    calendar = _calendar(memory_store, ALICE, notifier)
    await calendar.refresh()
    yield calendar
    calendar.context.close()


@pytest_asyncio.fixture
async def bob_calendar(memory_store):
    """Bob's CalendarStore, loaded, with its own notifier."""
    calendar = _calendar(memory_store, BOB, LoggingNotifier())
    await calendar.refresh()
    yield calendar
    calendar.context.close()


@pytest_asyncio.fixture
async def carol_calendar(memory_store):
    calendar = _calendar(memory_store, CAROL, LoggingNotifier())
    await calendar.refresh()
    yield calendar
    calendar.context.close()
