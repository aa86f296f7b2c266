"""Row-at-a-time iteration over a single-row-mode command."""

import asyncio
import logging
from typing import Any, Optional, Sequence

from .exceptions import PgError
from .pump import STOPPED
from .types import Row

logger = logging.getLogger(__name__)

_END = object()


class RowStream:
    """Async iterator of rows; the next row is requested only when consumed.

    The command is sent on the first ``__anext__``. Used as an async context
    manager, leaving the block early drains the remaining rows so the
    connection is free for the next command. :meth:`stop` abandons the
    remaining rows through a connection reset instead of reading them.
    """

    def __init__(self, connection: Any, sql: str, params: Sequence[Any] = ()):
        self.connection = connection
        self.sql = sql
        self.params = tuple(params)
        self.status = None
        self._future = None
        self._control = None
        self._waiter: Optional[asyncio.Future] = None
        self._error: Optional[BaseException] = None
        self._finished = False
        self._closing = False
        self._stopping = False
        self.stopped = False

    def __aiter__(self) -> "RowStream":
        return self

    async def __anext__(self) -> Row:
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        if self._finished:
            raise StopAsyncIteration

        self._waiter = asyncio.get_running_loop().create_future()
        if self._future is None:
            self._future = self.connection.stream_async(self.sql, *self.params, on_row=self._on_row)
            self._future.on_completion(self._on_done)
        else:
            self._control.next()

        item = await self._waiter
        if item is _END:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "RowStream":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            await self.aclose()
        except PgError as e:
            if exc_type is None:
                raise
            logger.warning(f"Error while draining abandoned stream: {e}")

    async def aclose(self) -> None:
        """Skip the remaining rows and wait for the command to complete."""
        if self._future is None or self._finished:
            return
        self._closing = True
        if self._control is not None:
            self._control.drain()
        await self._future

    async def stop(self) -> None:
        """Abandon the remaining rows by resetting the connection.

        Cheaper than :meth:`aclose` for a large result. The session is reset,
        so an open transaction on the connection is lost.
        """
        if self._future is None or self._finished:
            self._finished = True
            return
        self._closing = True
        self._stopping = True
        if self._control is not None:
            self._control.stop()
        await self._future

    def _on_row(self, result: Any, control: Any) -> None:
        self._control = control
        if self._stopping:
            control.stop()
            return
        if self._closing:
            control.drain()
            return
        row = result.one()
        result.clear()
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(row)

    def _on_done(self, value: Any, error: Optional[BaseException]) -> None:
        self._finished = True
        if value is STOPPED:
            self.stopped = True
            value = None
        self.status = value
        waiter = self._waiter
        if waiter is None or waiter.done():
            if error is not None:
                self._error = error
            return
        if error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(_END)
