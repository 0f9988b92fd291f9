"""
Per-client engine context.

Bundles what one signed-in client needs between calls: who the current
user is, which change subscriptions are open, and which debounce timers
are in flight. Passed explicitly into CalendarStore; nothing here is
module-level state.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

from .debug import debug_print


def _debug_print(msg: str) -> None:
    debug_print("CONTEXT", msg)


class Subscription(Protocol):
    """Anything that can be closed to stop change delivery."""

    def close(self) -> None: ...


@dataclass
class EngineContext:
    """State for one client instance of the engine."""
    user_id: str
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    debounce_timers: dict[str, asyncio.TimerHandle] = field(default_factory=dict)
    _tasks: set = field(default_factory=set, repr=False)

    def add_subscription(self, name: str, subscription: Subscription) -> None:
        """Register a subscription, closing any previous one under the same name."""
        previous = self.subscriptions.pop(name, None)
        if previous is not None:
            previous.close()
        self.subscriptions[name] = subscription

    def remove_subscription(self, name: str) -> None:
        subscription = self.subscriptions.pop(name, None)
        if subscription is not None:
            subscription.close()

    def debounce(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        """
        Run callback once, `delay` seconds after the last call with this key.

        Repeated calls inside the delay restart the timer, so a burst of
        change notifications costs a single refresh.
        """
        loop = loop or asyncio.get_running_loop()
        timer = self.debounce_timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        def _fire():
            self.debounce_timers.pop(key, None)
            task = loop.create_task(callback())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self.debounce_timers[key] = loop.call_later(delay, _fire)

    def has_pending_timer(self, key: str) -> bool:
        return key in self.debounce_timers

    async def drain(self) -> None:
        """Wait for debounced callbacks that have already fired."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel every timer and close every subscription."""
        for timer in self.debounce_timers.values():
            timer.cancel()
        self.debounce_timers.clear()
        for name in list(self.subscriptions):
            self.remove_subscription(name)
        _debug_print(f"Context for {self.user_id} closed")
