"""
Coroutine Bridge

Turns a callback-settled Future into an apparently synchronous call for code
running inside an asyncio coroutine. The awaiting task is suspended while the
reactor keeps driving other sockets and timers.
"""

import asyncio
from typing import Any, Hashable, Optional


async def wait_for(future) -> Any:
    """
    Suspend the current coroutine until ``future`` settles.

    Args:
        future: A ``pgpump.core.Future``

    Returns:
        The settled value

    Raises:
        The settlement error if the future failed
    """
    if future.is_ready():
        return future.get()

    loop = asyncio.get_running_loop()
    waiter = loop.create_future()

    def _resume(value, error):
        if waiter.done():
            return
        if error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(value)

    future.on_completion(_resume)
    return await waiter


def current_context(context: Optional[Hashable] = None) -> Hashable:
    """
    Resolve the caller context used to key per-caller state.

    An explicitly passed handle wins; otherwise the running asyncio task is
    the context.

    Raises:
        RuntimeError: If no handle was given and no task is running
    """
    if context is not None:
        return context
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    if task is None:
        raise RuntimeError("No coroutine context: pass an explicit context handle")
    return task
