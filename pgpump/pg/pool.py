"""PostgreSQL connection pool."""

import asyncio
import inspect
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Hashable, List, Optional

from ..core.bridge import current_context
from ..core.future import Future
from .connection import PgConnection
from .exceptions import PgConnectionError
from .options import PoolOptions
from .types import QueryResult, TxIsolation

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Awaitable[Any]]

# Reservation held while a new connection is being established.
_CONNECTING = object()


class _Waiter:
    __slots__ = ("context", "future")

    def __init__(self, context: Hashable, future: asyncio.Future):
        self.context = context
        self.future = future


class PgPool:
    """Coroutine-fair pool of non-blocking connections.

    Each caller context (the running task, or an explicit handle) gets a
    connection reserved to it for the duration of :meth:`execute` or
    :meth:`transaction`; nested calls from the same context reuse that
    connection. The pool grows lazily up to ``max_size``; beyond that,
    callers queue in FIFO order until a connection is released.

    Example:
        pool = await PgPool.connect("dbname=test", max_size=8)
        async with pool.transaction() as conn:
            await conn.exec("UPDATE stock SET qty = qty - 1 WHERE item_id = $1", 7)
    """

    def __init__(
        self,
        dsn: str = "",
        size: Optional[int] = None,
        max_size: Optional[int] = None,
        lazy: bool = False,
        connection_factory: Optional[ConnectionFactory] = None,
        disconnect_class: type = PgConnectionError,
        **connection_options: Any,
    ):
        """Initialize connection pool.

        Args:
            dsn: PostgreSQL connection string.
            size: Alias of ``max_size``.
            max_size: Maximum number of connections.
            lazy: Do not open a connection in :meth:`connect`.
            connection_factory: Coroutine function returning a connected
                connection (defaults to ``PgConnection.connect(dsn, ...)``).
            disconnect_class: Error class that marks a connection as broken;
                such connections are replaced instead of returned to the pool.
            **connection_options: Passed to ``PgConnection.connect``.
        """
        options: Dict[str, Any] = {"lazy": lazy, "disconnect_class": disconnect_class}
        if max_size is not None or size is not None:
            options["max_size"] = max_size if max_size is not None else size
        self.options = PoolOptions(**options)
        self.dsn = dsn
        self._connection_options = connection_options
        self._overrides: Dict[str, Any] = {}
        self._factory = connection_factory or self._connect
        self._available: List[Any] = []
        self._reserved: Dict[Hashable, Any] = {}
        self._pending: Deque[_Waiter] = deque()
        self._closed = False

    @classmethod
    async def connect(cls, dsn: str = "", **kwargs: Any) -> "PgPool":
        """Create a pool and, unless ``lazy``, open its first connection."""
        pool = cls(dsn, **kwargs)
        if not pool.options.lazy:
            await pool.execute(lambda conn: None)
        return pool

    async def _connect(self) -> PgConnection:
        return await PgConnection.connect(self.dsn, **self._connection_options)

    async def __aenter__(self) -> "PgPool":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # -- introspection --------------------------------------------------------

    @property
    def max_size(self) -> int:
        return self.options.max_size

    @property
    def disconnect_class(self) -> type:
        return self.options.disconnect_class

    @property
    def size(self) -> int:
        """Connections owned by the pool, including ones being established."""
        return len(self._available) + len(self._reserved)

    @property
    def available(self) -> List[Any]:
        return list(self._available)

    @property
    def reserved(self) -> Dict[Hashable, Any]:
        return {ctx: conn for ctx, conn in self._reserved.items() if conn is not _CONNECTING}

    def stats(self) -> dict:
        """Get pool statistics.

        Returns:
            Dict with keys: in_use, idle, connecting, waiting, max_size.
        """
        connecting = sum(1 for conn in self._reserved.values() if conn is _CONNECTING)
        return {
            "in_use": len(self._reserved) - connecting,
            "idle": len(self._available),
            "connecting": connecting,
            "waiting": len(self._pending),
            "max_size": self.max_size,
        }

    # -- options forwarded to every connection --------------------------------

    def _get_option(self, name: str) -> Any:
        if name in self._overrides:
            return self._overrides[name]
        return self._connection_options.get(name)

    @property
    def connect_timeout(self) -> Optional[float]:
        return self._get_option("connect_timeout")

    @connect_timeout.setter
    def connect_timeout(self, value: float) -> None:
        self._set_option("connect_timeout", value)

    @property
    def query_timeout(self) -> Optional[float]:
        return self._get_option("query_timeout")

    @query_timeout.setter
    def query_timeout(self, value: float) -> None:
        self._set_option("query_timeout", value)

    @property
    def async_autoreconnect(self) -> Optional[bool]:
        return self._get_option("async_autoreconnect")

    @async_autoreconnect.setter
    def async_autoreconnect(self, value: bool) -> None:
        self._set_option("async_autoreconnect", value)

    @property
    def on_autoreconnect(self) -> Optional[Callable[..., Any]]:
        return self._get_option("on_autoreconnect")

    @on_autoreconnect.setter
    def on_autoreconnect(self, value: Optional[Callable[..., Any]]) -> None:
        self._set_option("on_autoreconnect", value)

    @property
    def on_connect(self) -> Optional[Callable[..., Any]]:
        return self._get_option("on_connect")

    @on_connect.setter
    def on_connect(self, value: Optional[Callable[..., Any]]) -> None:
        self._set_option("on_connect", value)

    def _set_option(self, name: str, value: Any) -> None:
        self._overrides[name] = value
        for conn in self._connections():
            setattr(conn, name, value)

    def _apply_options(self, conn: Any) -> None:
        for name, value in self._overrides.items():
            setattr(conn, name, value)

    def _connections(self) -> List[Any]:
        return self._available + [c for c in self._reserved.values() if c is not _CONNECTING]

    # -- acquire / release ----------------------------------------------------

    async def acquire(self, context: Optional[Hashable] = None) -> Any:
        """Reserve a connection to ``context`` (default: the running task).

        Reentrant: a context that already holds a connection gets the same
        one back.

        Raises:
            PgConnectionError: If the pool is closed.
        """
        context = current_context(context)
        while True:
            conn = self._reserved.get(context)
            if conn is not None and conn is not _CONNECTING:
                return conn
            if self._closed:
                raise PgConnectionError("Pool is closed")

            if self._available:
                conn = self._available.pop()
                self._reserved[context] = conn
                return conn

            if self.size < self.max_size:
                return await self._grow(context)

            conn = await self._wait(context)
            if conn is not None:
                return conn
            # A slot was freed by a failed connection: try again.

    async def _wait(self, context: Hashable) -> Any:
        waiter = asyncio.get_running_loop().create_future()
        self._pending.append(_Waiter(context, waiter))
        logger.debug(f"Pool exhausted ({self.size}/{self.max_size}); {len(self._pending)} waiting")
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.result() is not None:
                # Woken with a connection but cancelled before resuming.
                self.release(context)
            else:
                self._pending = deque(w for w in self._pending if w.future is not waiter)
            raise

    async def _grow(self, context: Hashable) -> Any:
        self._reserved[context] = _CONNECTING
        logger.debug(f"Opening pool connection {self.size}/{self.max_size}")
        try:
            conn = await self._factory()
        except BaseException:
            self._drop(context)
            raise
        self._apply_options(conn)
        if self._closed:
            self._drop(context)
            conn.finish()
            raise PgConnectionError("Pool is closed")
        self._reserved[context] = conn
        return conn

    def release(self, context: Optional[Hashable] = None) -> None:
        """Return the connection reserved to ``context``.

        The longest-waiting caller, if any, is handed the connection and
        woken on the next loop iteration.
        """
        context = current_context(context)
        conn = self._reserved.pop(context, None)
        if conn is None or conn is _CONNECTING:
            return
        if self._closed:
            conn.finish()
            return
        while self._pending:
            waiter = self._pending.popleft()
            if waiter.future.done():
                continue
            self._reserved[waiter.context] = conn
            waiter.future.set_result(conn)
            return
        self._available.append(conn)

    def _drop(self, context: Hashable) -> None:
        """Forget the reservation of ``context`` and let one waiter retry."""
        self._reserved.pop(context, None)
        while self._pending:
            waiter = self._pending.popleft()
            if waiter.future.done():
                continue
            waiter.future.set_result(None)
            return

    async def _replace(self, context: Hashable, broken: Any, error: BaseException) -> None:
        logger.warning(f"Replacing broken pool connection: {error}")
        broken.finish()
        self._reserved[context] = _CONNECTING
        try:
            fresh = await self._factory()
        except Exception as e:
            logger.warning(f"Could not open replacement connection: {e}")
            self._drop(context)
            return
        self._apply_options(fresh)
        self._reserved[context] = fresh

    # -- running commands -----------------------------------------------------

    @asynccontextmanager
    async def hold(self, context: Optional[Hashable] = None) -> AsyncIterator[Any]:
        """Reserve a connection for the duration of the block.

        Nested holds from the same context share the connection and leave
        the release to the outermost one.
        """
        context = current_context(context)
        current = self._reserved.get(context)
        nested = current is not None and current is not _CONNECTING
        conn = await self.acquire(context)
        try:
            yield conn
        except BaseException as e:
            if isinstance(e, self.disconnect_class) and self._reserved.get(context) is conn:
                await self._replace(context, conn, e)
            raise
        finally:
            if not nested:
                self.release(context)

    async def execute(self, command: Callable[[Any], Any], context: Optional[Hashable] = None) -> Any:
        """Run ``command(conn)`` on a held connection and return its result.

        ``command`` may return an awaitable (coroutine or Future), which is
        awaited before the connection is released.
        """
        async with self.hold(context) as conn:
            result = command(conn)
            if inspect.isawaitable(result):
                result = await result
            return result

    def execute_async(self, command: Callable[[Any], Any]) -> Future:
        """Callback-style :meth:`execute`; the returned future is the caller context."""
        future: Future = Future()
        future.bind(Future.from_awaitable(self.execute(command, context=future)))
        return future

    @asynccontextmanager
    async def transaction(
        self,
        context: Optional[Hashable] = None,
        isolation: Optional[TxIsolation] = None,
    ) -> AsyncIterator[Any]:
        """Hold a connection and run the block in a transaction on it.

        Nested calls from the same context share both the connection and the
        transaction.
        """
        async with self.hold(context) as conn:
            async with conn.transaction(isolation) as tx:
                yield tx

    async def exec(self, sql: str, *params: Any) -> QueryResult:
        return await self.execute(lambda conn: conn.exec(sql, *params))

    query = exec

    async def prepare(self, name: str, sql: str, param_types: Any = None) -> QueryResult:
        return await self.execute(lambda conn: conn.prepare(name, sql, param_types))

    async def exec_prepared(self, name: str, *params: Any) -> QueryResult:
        return await self.execute(lambda conn: conn.exec_prepared(name, *params))

    async def describe_prepared(self, name: str) -> QueryResult:
        return await self.execute(lambda conn: conn.describe_prepared(name))

    async def describe_portal(self, name: str) -> QueryResult:
        return await self.execute(lambda conn: conn.describe_portal(name))

    def exec_async(self, sql: str, *params: Any) -> Future:
        return self.execute_async(lambda conn: conn.exec_async(sql, *params))

    query_async = exec_async

    def prepare_async(self, name: str, sql: str, param_types: Any = None) -> Future:
        return self.execute_async(lambda conn: conn.prepare_async(name, sql, param_types))

    def exec_prepared_async(self, name: str, *params: Any) -> Future:
        return self.execute_async(lambda conn: conn.exec_prepared_async(name, *params))

    def describe_prepared_async(self, name: str) -> Future:
        return self.execute_async(lambda conn: conn.describe_prepared_async(name))

    def describe_portal_async(self, name: str) -> Future:
        return self.execute_async(lambda conn: conn.describe_portal_async(name))

    # -- shutdown -------------------------------------------------------------

    def close(self) -> None:
        """Close idle connections; held ones are closed when released."""
        if self._closed:
            return
        self._closed = True
        for conn in self._available:
            conn.finish()
        self._available.clear()
        while self._pending:
            waiter = self._pending.popleft()
            if not waiter.future.done():
                waiter.future.set_exception(PgConnectionError("Pool is closed"))
        logger.debug("Pool closed")

    finish = close

