"""
pgpump Core Async Utilities

Deferred results, the reactor facade and the coroutine bridge.
"""

from .future import Future, when_all
from .reactor import Reactor
from .bridge import wait_for, current_context

__all__ = [
    'Future',
    'when_all',
    'Reactor',
    'wait_for',
    'current_context',
]
