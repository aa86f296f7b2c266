"""Non-blocking PostgreSQL connection."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, Sequence, Set

import psycopg
from psycopg import pq

from ..core.future import Future
from ..core.reactor import Reactor, cancel_timer
from .exceptions import (
    PgError,
    PgBusyError,
    PgConnectionError,
    PgResetRequired,
    is_connection_failure,
)
from .handshake import HandshakePump
from .options import ConnectionOptions, split_options
from .pump import ResultPump, RowCallback, error_from_driver
from .reconnect import ReconnectPolicy
from .stream import RowStream
from .types import (
    CommandKind,
    ConnStatus,
    Notification,
    QueryResult,
    TransactionStatus,
    TxIsolation,
    py_encoding,
)

logger = logging.getLogger(__name__)


class _NotifyWait:
    """An outstanding wait_for_notify call."""

    def __init__(self, future: Future):
        self.future = future
        self.timer = None


class PgConnection:
    """A database session driven by the reactor.

    Every command comes in two flavors: ``*_async`` methods return a
    :class:`~pgpump.core.Future` for callback-style code, and the plain
    coroutine methods await that future.

    Only one command may be outstanding at a time; a notification wait can
    run alongside it. The connection object survives resets, so references
    held by callers stay valid across automatic reconnects.

    Example:
        conn = await PgConnection.connect("dbname=test", query_timeout=5)
        result = await conn.exec("SELECT $1::int AS answer", 42)
        print(result.scalar())
    """

    driver = pq.PGconn

    def __init__(
        self,
        pgconn: Any,
        options: Optional[ConnectionOptions] = None,
        reactor: Optional[Reactor] = None,
        conninfo: str = "",
    ):
        """Wrap a driver connection.

        Args:
            pgconn: Driver connection (``psycopg.pq.PGconn`` or compatible).
            options: Client options.
            reactor: Reactor that drives the socket (defaults to the running loop's).
            conninfo: Connection string the driver was started with.
        """
        self.pgconn = pgconn
        self.options = options or ConnectionOptions()
        self.reactor = reactor or Reactor.current()
        self.conninfo = conninfo
        self.encoding = "utf-8"
        self.last_transaction_status = TransactionStatus.IDLE
        self._command_aborted = False
        self._finished = False
        self._transaction_depth = 0
        self._session = 0
        self._pump: Optional[ResultPump] = None
        self._handshake: Optional[HandshakePump] = None
        self._notify_wait: Optional[_NotifyWait] = None
        self._readers: Set[Any] = set()
        self._reader_fd: Optional[int] = None

    def __repr__(self) -> str:
        return f"<PgConnection {self.status.value} tx={self.transaction_status.value}>"

    async def __aenter__(self) -> "PgConnection":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.finish()

    # -- options --------------------------------------------------------------

    @property
    def connect_timeout(self) -> float:
        return self.options.connect_timeout

    @connect_timeout.setter
    def connect_timeout(self, value: float) -> None:
        self.options.connect_timeout = value

    @property
    def query_timeout(self) -> float:
        return self.options.query_timeout

    @query_timeout.setter
    def query_timeout(self, value: float) -> None:
        self.options.query_timeout = value

    @property
    def async_autoreconnect(self) -> bool:
        return bool(self.options.async_autoreconnect)

    @async_autoreconnect.setter
    def async_autoreconnect(self, value: bool) -> None:
        self.options.async_autoreconnect = value

    @property
    def on_autoreconnect(self) -> Optional[Callable[..., Any]]:
        return self.options.on_autoreconnect

    @on_autoreconnect.setter
    def on_autoreconnect(self, value: Optional[Callable[..., Any]]) -> None:
        self.options.on_autoreconnect = value

    @property
    def on_connect(self) -> Optional[Callable[..., Any]]:
        return self.options.on_connect

    @on_connect.setter
    def on_connect(self, value: Optional[Callable[..., Any]]) -> None:
        self.options.on_connect = value

    # -- status ---------------------------------------------------------------

    @property
    def status(self) -> ConnStatus:
        if self._command_aborted:
            return ConnStatus.ABORTED
        if self._finished or self.pgconn.status != pq.ConnStatus.OK:
            return ConnStatus.BAD
        return ConnStatus.OK

    @property
    def transaction_status(self) -> TransactionStatus:
        if self._finished:
            return TransactionStatus.UNKNOWN
        return TransactionStatus.from_driver(self.pgconn.transaction_status)

    @property
    def socket(self) -> int:
        return self.pgconn.socket

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def busy(self) -> bool:
        """Whether a command or handshake is outstanding."""
        return self._pump is not None or self._handshake is not None

    def _mark_aborted(self) -> None:
        self._command_aborted = True

    # -- connect / reset / close ----------------------------------------------

    @classmethod
    def connect_async(cls, conninfo: str = "", *, driver: Any = None, **kwargs: Any) -> Future:
        """Start a non-blocking connect.

        Args:
            conninfo: libpq connection string or URI.
            driver: Driver connection class (defaults to ``psycopg.pq.PGconn``).
            **kwargs: Client options (``connect_timeout``, ``query_timeout``,
                ``async_autoreconnect``, ``on_autoreconnect``, ``on_connect``)
                and any libpq connection keywords.

        Returns:
            Future settled with the connected PgConnection.
        """
        reactor = Reactor.current()
        future: Future = Future(loop=reactor.loop)
        try:
            dsn, options = split_options(conninfo, **kwargs)
            pgconn = (driver or cls.driver).connect_start(dsn.encode())
        except PgError as e:
            future.fail(e)
            return future
        except psycopg.Error as e:
            future.fail(PgConnectionError(f"Failed to start connection: {e}"))
            return future

        connection = cls(pgconn, options, reactor, conninfo=dsn)
        logger.debug(f"Connecting {connection!r}")
        connection._start_handshake(future, is_reset=False)
        return future

    @classmethod
    async def connect(cls, conninfo: str = "", *, driver: Any = None, **kwargs: Any) -> "PgConnection":
        """Connect without blocking the loop; see :meth:`connect_async`."""
        return await cls.connect_async(conninfo, driver=driver, **kwargs)

    def reset_async(self) -> Future:
        """Re-establish the session on the same connection object.

        Clears an aborted state. A command still running on this connection
        fails with ``PgConnectionError("connection reset")``.
        """
        future: Future = Future(loop=self.reactor.loop)
        if self._finished:
            future.fail(PgConnectionError("connection is closed", connection=self))
            return future
        if self._handshake is not None:
            future.fail(PgBusyError("a connect or reset is already in progress", connection=self))
            return future

        self._command_aborted = False
        self._detach(PgConnectionError("connection reset", connection=self))
        try:
            self.pgconn.reset_start()
        except psycopg.Error as e:
            future.fail(PgConnectionError(str(e), connection=self))
            return future
        logger.debug(f"Resetting {self!r}")
        self._start_handshake(future, is_reset=True)
        return future

    async def reset(self) -> "PgConnection":
        """Reset the session; see :meth:`reset_async`."""
        return await self.reset_async()

    def _start_handshake(self, future: Future, is_reset: bool) -> None:
        handshake = HandshakePump(self, future, is_reset=is_reset)
        self._handshake = handshake
        handshake.start()

    def _handshake_finished(self, handshake: HandshakePump) -> None:
        if self._handshake is handshake:
            self._handshake = None

    def _configure_session(self, is_reset: bool) -> Any:
        """Apply post-handshake settings and run the ``on_connect`` hook."""
        self.pgconn.nonblocking = 1
        self.encoding = py_encoding(self.pgconn.parameter_status(b"client_encoding"))
        self.last_transaction_status = TransactionStatus.IDLE
        # Transactions opened by earlier sessions are gone.
        self._session += 1
        self._transaction_depth = 0
        if self.on_connect is not None:
            return self.on_connect(self, is_reset)
        return None

    def finish(self) -> None:
        """Close the connection; outstanding operations fail."""
        if self._finished:
            return
        error = PgConnectionError("connection closed", connection=self)
        self._detach(error)
        if self._handshake is not None:
            self._handshake.abandon(error)
        self._finish_driver()
        logger.debug("Connection closed")

    close = finish

    def _finish_driver(self) -> None:
        if not self._finished:
            self._finished = True
            self.pgconn.finish()

    def _detach(self, error: BaseException) -> None:
        pump = self._pump
        if pump is not None:
            pump.abandon(error)
            self._pump = None
        if self._notify_wait is not None:
            self._settle_notify_wait(error=error)
        if self._reader_fd is not None:
            self.reactor.unwatch_readable(self._reader_fd)
            self._reader_fd = None
        self._readers.clear()

    # -- shared readiness subscription ----------------------------------------

    def _watch_readable(self, owner: Any) -> None:
        if not self._readers:
            fd = self.socket
            self.reactor.watch_readable(fd, self._on_readable)
            self._reader_fd = fd
        self._readers.add(owner)

    def _unwatch_readable(self, owner: Any) -> None:
        if owner not in self._readers:
            return
        self._readers.discard(owner)
        if not self._readers and self._reader_fd is not None:
            self.reactor.unwatch_readable(self._reader_fd)
            self._reader_fd = None

    def _on_readable(self) -> None:
        pump = self._pump
        if pump is not None and pump in self._readers:
            pump.notify_readable()
        else:
            try:
                self.pgconn.consume_input()
            except psycopg.Error as e:
                if self._notify_wait is not None:
                    self._settle_notify_wait(error=error_from_driver(self, str(e)))
                return
        self._deliver_notification()

    # -- commands -------------------------------------------------------------

    def _pump_finished(self, pump: ResultPump) -> None:
        if self._pump is pump:
            self._pump = None

    def _dispatch(
        self,
        kind: CommandKind,
        args: Sequence[Any],
        on_row: Optional[RowCallback] = None,
    ) -> Future:
        """Send one command and pump its results into a future."""
        future: Future = Future(loop=self.reactor.loop)
        if self._finished:
            future.fail(PgConnectionError("connection is closed", connection=self))
            return future
        if self.busy:
            future.fail(PgBusyError("another command is already in progress", connection=self))
            return future
        if self._command_aborted:
            future.fail(PgResetRequired("previous query expired, need connection reset", connection=self))
            return future

        def send() -> None:
            if self.busy:
                raise PgBusyError("another command is already in progress", connection=self)
            self.last_transaction_status = self.transaction_status
            self._send_command(kind, args)
            if on_row is not None:
                self.pgconn.set_single_row_mode()
            pump = ResultPump(self, future, resend=send, on_row=on_row)
            self._pump = pump
            pump.start()

        self._submit(future, send)
        return future

    def _submit(self, future: Future, send: Callable[[], None]) -> None:
        """Run a send closure, routing failures through the reconnect policy."""
        try:
            send()
        except PgError as e:
            self._command_failed(future, e, send)
        except psycopg.Error as e:
            self._command_failed(future, error_from_driver(self, str(e)), send)
        except Exception as e:
            future.fail(e)

    def _command_failed(
        self,
        future: Future,
        error: PgError,
        resend: Optional[Callable[[], None]],
    ) -> None:
        if error.connection is None:
            error.connection = self
        if not is_connection_failure(error):
            future.fail(error)
            return
        was_in_transaction = self.last_transaction_status.in_transaction
        ReconnectPolicy(self, future, error, resend, was_in_transaction).run()

    def _send_command(self, kind: CommandKind, args: Sequence[Any]) -> None:
        pgconn = self.pgconn
        enc = self.encoding
        if kind is CommandKind.QUERY:
            sql, params = args
            if params:
                pgconn.send_query_params(sql.encode(enc), self._encode_params(params))
            else:
                pgconn.send_query(sql.encode(enc))
        elif kind is CommandKind.PREPARE:
            name, sql, param_types = args
            pgconn.send_prepare(name.encode(enc), sql.encode(enc), param_types=param_types)
        elif kind is CommandKind.QUERY_PREPARED:
            name, params = args
            pgconn.send_query_prepared(name.encode(enc), self._encode_params(params))
        elif kind is CommandKind.DESCRIBE_PREPARED:
            (name,) = args
            pgconn.send_describe_prepared(name.encode(enc))
        elif kind is CommandKind.DESCRIBE_PORTAL:
            (name,) = args
            pgconn.send_describe_portal(name.encode(enc))
        else:
            raise ValueError(f"Unknown command kind: {kind!r}")

    def _encode_params(self, params: Sequence[Any]) -> list:
        encoded = []
        for value in params:
            if value is None or isinstance(value, bytes):
                encoded.append(value)
            elif isinstance(value, bool):
                encoded.append(b"t" if value else b"f")
            else:
                encoded.append(str(value).encode(self.encoding))
        return encoded

    def exec_async(self, sql: str, *params: Any) -> Future:
        """Execute SQL (several ``;``-separated statements allowed without params).

        Returns:
            Future settled with the last statement's QueryResult.
        """
        return self._dispatch(CommandKind.QUERY, (sql, params))

    query_async = exec_async

    async def exec(self, sql: str, *params: Any) -> QueryResult:
        """Execute SQL; see :meth:`exec_async`."""
        return await self.exec_async(sql, *params)

    query = exec

    def prepare_async(self, name: str, sql: str, param_types: Optional[Sequence[int]] = None) -> Future:
        """Create a named prepared statement."""
        return self._dispatch(CommandKind.PREPARE, (name, sql, param_types))

    async def prepare(self, name: str, sql: str, param_types: Optional[Sequence[int]] = None) -> QueryResult:
        return await self.prepare_async(name, sql, param_types)

    def exec_prepared_async(self, name: str, *params: Any) -> Future:
        """Execute a named prepared statement."""
        return self._dispatch(CommandKind.QUERY_PREPARED, (name, params))

    async def exec_prepared(self, name: str, *params: Any) -> QueryResult:
        return await self.exec_prepared_async(name, *params)

    def describe_prepared_async(self, name: str) -> Future:
        return self._dispatch(CommandKind.DESCRIBE_PREPARED, (name,))

    async def describe_prepared(self, name: str) -> QueryResult:
        return await self.describe_prepared_async(name)

    def describe_portal_async(self, name: str) -> Future:
        return self._dispatch(CommandKind.DESCRIBE_PORTAL, (name,))

    async def describe_portal(self, name: str) -> QueryResult:
        return await self.describe_portal_async(name)

    def stream_async(self, sql: str, *params: Any, on_row: RowCallback) -> Future:
        """Execute SQL in single-row mode.

        ``on_row(result, control)`` receives each row as a one-row
        QueryResult; call ``control.next()`` for the next row or
        ``control.drain()`` to skip the rest. ``control.stop()`` abandons the
        rest through a connection reset, and the future then succeeds with
        :data:`~pgpump.pg.pump.STOPPED`.

        Returns:
            Future settled with the final status result.
        """
        return self._dispatch(CommandKind.QUERY, (sql, params), on_row=on_row)

    def stream(self, sql: str, *params: Any) -> RowStream:
        """Iterate rows one at a time.

        Example:
            async with conn.stream("SELECT * FROM big_table") as rows:
                async for row in rows:
                    ...
        """
        return RowStream(self, sql, params)

    # -- notifications --------------------------------------------------------

    def wait_for_notify_async(self, timeout: Optional[float] = None) -> Future:
        """Wait for a LISTEN/NOTIFY message.

        Returns:
            Future settled with a Notification, or None once ``timeout`` elapses.
        """
        future: Future = Future(loop=self.reactor.loop)
        if self._notify_wait is not None:
            future.fail(PgBusyError("already waiting for a notification", connection=self))
            return future
        if self.status is not ConnStatus.OK:
            future.fail(PgConnectionError("connection is not usable", connection=self))
            return future

        notify = self.pgconn.notifies()
        if notify is not None:
            future.succeed(self._notification(notify))
            return future

        wait = _NotifyWait(future)
        self._notify_wait = wait
        self._watch_readable(wait)
        if timeout is not None:
            wait.timer = self.reactor.call_later(timeout, self._settle_notify_wait)
        return future

    async def wait_for_notify(self, timeout: Optional[float] = None) -> Optional[Notification]:
        return await self.wait_for_notify_async(timeout)

    def _notification(self, notify: Any) -> Notification:
        return Notification(
            channel=notify.relname.decode(self.encoding),
            payload=notify.extra.decode(self.encoding),
            pid=notify.be_pid,
        )

    def _deliver_notification(self) -> None:
        if self._notify_wait is None:
            return
        notify = self.pgconn.notifies()
        if notify is not None:
            self._settle_notify_wait(value=self._notification(notify))

    def _settle_notify_wait(self, value: Any = None, error: Optional[BaseException] = None) -> None:
        wait = self._notify_wait
        if wait is None:
            return
        self._notify_wait = None
        cancel_timer(wait.timer)
        self._unwatch_readable(wait)
        if error is not None:
            wait.future.fail(error)
        else:
            wait.future.succeed(value)

    # -- transactions ---------------------------------------------------------

    @asynccontextmanager
    async def transaction(self, isolation: Optional[TxIsolation] = None) -> AsyncIterator["PgConnection"]:
        """Run a block inside a transaction.

        Nested calls join the outermost transaction (no savepoints). Only the
        outermost exit commits or rolls back, according to whether the block
        raised and to the live transaction status.

        A reset inside the block ends its transaction: the block no longer
        commits or rolls back, and if it exits without an exception it raises
        ``PgConnectionError`` so the lost work is not mistaken for committed.
        Blocks entered after the reset start a new transaction.
        """
        outermost = self._transaction_depth == 0
        if outermost:
            begin = "BEGIN" if isolation is None else f"BEGIN ISOLATION LEVEL {isolation.value}"
            await self.exec(begin)
        session = self._session
        self._transaction_depth += 1
        try:
            yield self
        except BaseException:
            if self._leave_transaction(session) and outermost:
                await self._rollback_after_error()
            raise
        else:
            if not self._leave_transaction(session):
                raise PgConnectionError("transaction was lost to a connection reset", connection=self)
            if outermost:
                status = self.transaction_status
                if status is TransactionStatus.INTRANS:
                    await self.exec("COMMIT")
                elif status is TransactionStatus.INERROR:
                    await self.exec("ROLLBACK")

    def _leave_transaction(self, session: int) -> bool:
        """Count one block exit; False when the block's session was reset."""
        if session != self._session:
            return False
        self._transaction_depth = max(self._transaction_depth - 1, 0)
        return True

    async def _rollback_after_error(self) -> None:
        if self.status is not ConnStatus.OK or self.busy:
            return
        if self.transaction_status not in (TransactionStatus.INTRANS, TransactionStatus.INERROR):
            return
        try:
            await self.exec("ROLLBACK")
        except PgError as e:
            logger.warning(f"Rollback failed: {e}")
