"""
Tests for the engine context (debounce, subscriptions) and the polling change feed.
"""

import asyncio

import pytest

from conftest import ALICE, BOB
from sharecal.change_feed import ChangeKind, PollingChangeFeed
from sharecal.context import EngineContext
from sharecal.event_storage import MemoryEventStorage


class FakeSubscription:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class TestDebounce:

    @pytest.mark.asyncio
    async def test_burst_coalesces_into_one_call(self):
        """Test that repeated debounce calls inside the delay fire the callback once."""
        context = EngineContext(ALICE)
        calls = []

        async def callback():
            calls.append(1)

        for _ in range(5):
            context.debounce("refresh", 0.02, callback)
        assert context.has_pending_timer("refresh")

        await asyncio.sleep(0.06)
        await context.drain()

        assert calls == [1]
        assert not context.has_pending_timer("refresh")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        context = EngineContext(ALICE)
        calls = []

        async def record(name):
            calls.append(name)

        context.debounce("a", 0.01, lambda: record("a"))
        context.debounce("b", 0.01, lambda: record("b"))
        await asyncio.sleep(0.04)
        await context.drain()

        assert sorted(calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_close_cancels_timers_and_subscriptions(self):
        """Test that closing the context stops pending callbacks from firing."""
        context = EngineContext(ALICE)
        calls = []

        async def callback():
            calls.append(1)

        subscription = FakeSubscription()
        context.add_subscription("events", subscription)
        context.debounce("refresh", 0.01, callback)
        context.close()

        await asyncio.sleep(0.03)
        assert calls == []
        assert subscription.closed
        assert context.subscriptions == {}


def test_replacing_subscription_closes_previous():
    context = EngineContext(ALICE)
    first, second = FakeSubscription(), FakeSubscription()
    context.add_subscription("events", first)
    context.add_subscription("events", second)

    assert first.closed
    assert not second.closed
    assert context.subscriptions["events"] is second


def test_contexts_do_not_share_state():
    one, two = EngineContext(ALICE), EngineContext(BOB)
    one.add_subscription("events", FakeSubscription())
    assert two.subscriptions == {}


class TestPollingChangeFeed:

    @pytest.mark.asyncio
    async def test_first_poll_is_baseline(self, make_event):
        store = MemoryEventStorage()
        await store.insert_event(make_event().to_row())
        seen = []
        feed = PollingChangeFeed(store, ALICE, seen.append)

        assert await feed.poll() == []
        assert seen == []

    @pytest.mark.asyncio
    async def test_reports_inserts_updates_and_deletes(self, make_event):
        store = MemoryEventStorage()
        await store.insert_event(make_event("event_1").to_row())
        await store.insert_event(make_event("event_2").to_row())
        seen = []
        feed = PollingChangeFeed(store, ALICE, seen.append)
        await feed.poll()

        await store.update_event("event_1", {"title": "Renamed"})
        await store.delete_event("event_2")
        await store.insert_event(make_event("event_3").to_row())

        changes = await feed.poll()
        kinds = {c.record["id"]: c.kind for c in changes}
        assert kinds == {
            "event_1": ChangeKind.UPDATE,
            "event_2": ChangeKind.DELETE,
            "event_3": ChangeKind.INSERT,
        }
        assert seen == changes
        assert [c.triggers_refresh for c in changes if c.kind == ChangeKind.DELETE] == [False]

        assert await feed.poll() == []

    @pytest.mark.asyncio
    async def test_other_users_rows_are_not_watched(self, make_event):
        store = MemoryEventStorage()
        feed = PollingChangeFeed(store, ALICE, lambda change: None)
        await feed.poll()

        await store.insert_event(make_event("event_bob", user_id=BOB).to_row())
        assert await feed.poll() == []

    @pytest.mark.asyncio
    async def test_start_and_close(self):
        feed = PollingChangeFeed(MemoryEventStorage(), ALICE, lambda change: None, interval=0.01)
        assert feed.start() is feed
        await asyncio.sleep(0.03)
        feed.close()
        feed.close()
