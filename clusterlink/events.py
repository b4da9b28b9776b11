"""
Subscriber-list event hooks.

Connections, the manager and the relay server publish notifications through
EventHook instances. Subscribers can be plain callables or coroutine
functions; a subscriber that raises is reported and skipped so it can never
stop delivery to the others.
"""

import asyncio
import inspect
from typing import Any, Callable, List, Set

from .utils import print_debug, print_error


class EventHook:
    """Ordered list of callbacks for one notification."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Callable[..., Any]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, callback: Callable[..., Any]) -> Callable[..., Any]:
        """Register a callback. Returns it so the method works as a decorator."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[..., Any]) -> None:
        """Remove a callback; unknown callbacks are ignored."""
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def __len__(self) -> int:
        return len(self._subscribers)

    def emit(self, *args) -> None:
        """Call every subscriber now.

        Coroutines returned by async subscribers are scheduled as tasks on
        the running loop in subscription order.
        """
        for callback in list(self._subscribers):
            try:
                result = callback(*args)
            except Exception as e:
                print_error(f"{self.name} subscriber {_describe(callback)} failed: {e}")
                continue

            if inspect.isawaitable(result):
                self._schedule(callback, result)

    async def emit_async(self, *args) -> None:
        """Call every subscriber and await async ones in order."""
        for callback in list(self._subscribers):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                print_error(f"{self.name} subscriber {_describe(callback)} failed: {e}")

    def _schedule(self, callback, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: nothing can drive the coroutine
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            print_debug(f"{self.name}: dropped async subscriber {_describe(callback)} (no loop)", level=3)
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                print_error(f"{self.name} subscriber {_describe(callback)} failed: {exc}")

        task.add_done_callback(_done)


def _describe(callback) -> str:
    return getattr(callback, "__qualname__", None) or repr(callback)
