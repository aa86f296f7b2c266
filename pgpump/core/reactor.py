"""
Reactor Access

Thin facade over the running asyncio event loop: descriptor readiness
subscriptions, one-shot timers and next-tick scheduling.
"""

import asyncio
import logging
from typing import Any, Callable, Optional
from weakref import WeakKeyDictionary

logger = logging.getLogger(__name__)


class Reactor:
    """
    Per-loop event reactor.

    All socket pumps of a connection share one reactor; every callback it
    dispatches runs on the loop thread.
    """

    _reactors: "WeakKeyDictionary[asyncio.AbstractEventLoop, Reactor]" = WeakKeyDictionary()

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop

    @classmethod
    def current(cls) -> "Reactor":
        """
        Get the reactor for the running loop.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        return cls.for_loop(asyncio.get_running_loop())

    @classmethod
    def for_loop(cls, loop: asyncio.AbstractEventLoop) -> "Reactor":
        """Get (or create) the reactor bound to ``loop``."""
        reactor = cls._reactors.get(loop)
        if reactor is None:
            reactor = cls(loop)
            cls._reactors[loop] = reactor
        return reactor

    def is_running(self) -> bool:
        """Check if the underlying loop is running."""
        return self.loop.is_running()

    def time(self) -> float:
        """Monotonic reactor clock, in seconds."""
        return self.loop.time()

    def watch_readable(self, fd: int, callback: Callable[[], Any]) -> None:
        """Invoke ``callback`` whenever ``fd`` becomes readable."""
        self.loop.add_reader(fd, callback)

    def unwatch_readable(self, fd: int) -> bool:
        """Cancel a readability subscription; returns whether one existed."""
        return self.loop.remove_reader(fd)

    def watch_writable(self, fd: int, callback: Callable[[], Any]) -> None:
        """Invoke ``callback`` whenever ``fd`` becomes writable."""
        self.loop.add_writer(fd, callback)

    def unwatch_writable(self, fd: int) -> bool:
        """Cancel a writability subscription; returns whether one existed."""
        return self.loop.remove_writer(fd)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        """Arm a one-shot timer."""
        return self.loop.call_later(delay, callback, *args)

    def next_tick(self, callback: Callable[..., Any], *args: Any) -> asyncio.Handle:
        """Run ``callback`` on the next loop iteration."""
        return self.loop.call_soon(callback, *args)


def cancel_timer(timer: Optional[asyncio.TimerHandle]) -> None:
    """Cancel ``timer`` if it is armed."""
    if timer is not None:
        timer.cancel()
