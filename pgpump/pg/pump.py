"""Non-blocking result extraction.

A ResultPump exists while one command is outstanding on a connection. It is
driven by socket readiness notifications from the reactor and pulls results
from the driver only while the driver reports it would not block.
"""

import logging
import weakref
from enum import Enum
from typing import Any, Callable, Optional

import psycopg
from psycopg import pq

from ..core.future import Future
from ..core.reactor import cancel_timer
from .exceptions import (
    PgError,
    PgConnectionError,
    PgProtocolError,
    PgResetRequired,
    PgTimeout,
    query_error_class,
)
from .types import QueryResult

logger = logging.getLogger(__name__)

RowCallback = Callable[[QueryResult, "ResultPump"], Any]

_ERROR_STATUSES = (pq.ExecStatus.FATAL_ERROR, pq.ExecStatus.NONFATAL_ERROR)
_COPY_STATUSES = (pq.ExecStatus.COPY_IN, pq.ExecStatus.COPY_OUT, pq.ExecStatus.COPY_BOTH)


class PumpMode(Enum):
    AGGREGATE = "aggregate"
    SINGLE_ROW = "single_row"


class PumpState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    DRAINING = "draining"
    DONE = "done"


# _drain() outcomes that leave the pump waiting.
_BUSY = object()
_PAUSED = object()

#: Value a single-row command settles with when abandoned through stop().
STOPPED = "stopped"


def _decode(raw: Optional[bytes], encoding: str) -> str:
    if not raw:
        return ""
    return raw.decode(encoding, "replace").strip()


def error_from_driver(connection: Any, message: Optional[str] = None) -> PgError:
    """Build the error for a driver-level failure.

    The live connection status decides between a lost connection and a
    protocol error on a connection that still looks healthy.
    """
    pgconn = connection.pgconn
    if not message:
        message = _decode(pgconn.error_message, connection.encoding) or "connection lost"
    if pgconn.status != pq.ConnStatus.OK:
        return PgConnectionError(message, connection=connection)
    return PgProtocolError(message, connection=connection)


def error_from_result(pgresult: Any, connection: Any) -> Optional[PgError]:
    """Build the error described by a driver result, if it carries one."""
    status = pgresult.status
    encoding = connection.encoding
    if status == pq.ExecStatus.BAD_RESPONSE:
        message = _decode(pgresult.error_message, encoding) or "bad response from server"
        return PgProtocolError(message, connection=connection, result=pgresult)
    if status in _COPY_STATUSES:
        connection._mark_aborted()
        return PgResetRequired(
            "COPY is not supported, need connection reset",
            connection=connection,
            result=pgresult,
        )
    if status not in _ERROR_STATUSES:
        return None

    message = _decode(pgresult.error_message, encoding)
    sqlstate = _decode(pgresult.error_field(pq.DiagnosticField.SQLSTATE), "ascii") or None
    detail = _decode(pgresult.error_field(pq.DiagnosticField.MESSAGE_DETAIL), encoding) or None
    if connection.pgconn.status != pq.ConnStatus.OK:
        return PgConnectionError(
            message or "connection lost", code=sqlstate, detail=detail,
            connection=connection, result=pgresult,
        )
    error_class = query_error_class(sqlstate)
    return error_class(message, code=sqlstate, detail=detail, connection=connection, result=pgresult)


class ResultPump:
    """Drains one command's results off a non-blocking connection.

    In aggregate mode every result but the last is discarded and the future
    succeeds with the last one. In single-row mode each row is handed to
    ``on_row(result, pump)`` as it arrives; the pump then waits until the
    consumer calls ``pump.next()`` (``pump.drain()`` reads and discards the
    rest, ``pump.stop()`` abandons them through a connection reset).
    Per-statement status rows are swallowed and the last one settles the
    future.

    The pump only keeps a weak reference to its connection; the connection
    owns the pump.
    """

    def __init__(
        self,
        connection: Any,
        future: Future,
        resend: Optional[Callable[[], None]] = None,
        on_row: Optional[RowCallback] = None,
    ):
        self._connection = weakref.ref(connection)
        self.reactor = connection.reactor
        self.future = future
        self.on_row = on_row
        self.mode = PumpMode.SINGLE_ROW if on_row is not None else PumpMode.AGGREGATE
        self.state = PumpState.IDLE
        self.last_result: Any = None
        self.notify_timestamp = 0.0
        self.rows_delivered = 0
        self._resend = resend
        self._timer = None
        self._fd: Optional[int] = None
        self._reading = False
        self._writing = False
        self._paused = False
        self._discard = False
        self._error: Optional[BaseException] = None

    def __repr__(self) -> str:
        return f"<ResultPump {self.mode.value} {self.state.value}>"

    @property
    def connection(self) -> Any:
        connection = self._connection()
        if connection is None:
            raise PgConnectionError("connection was closed while a command was running")
        return connection

    @property
    def resend(self) -> Optional[Callable[[], None]]:
        """The command's resubmission closure, unless rows were already handed out."""
        if self.rows_delivered:
            return None
        return self._resend

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Flush the command and start draining its results."""
        connection = self.connection
        self._fd = connection.socket
        self.state = PumpState.SENDING
        self._arm_timer()
        self._flush()

    def _flush(self) -> None:
        connection = self.connection
        try:
            pending = connection.pgconn.flush()
        except psycopg.Error as e:
            self._handle_error(error_from_driver(connection, str(e)))
            return
        if pending:
            if not self._writing:
                self.reactor.watch_writable(self._fd, self._flush)
                self._writing = True
            return
        if self._writing:
            self.reactor.unwatch_writable(self._fd)
            self._writing = False
        self.state = PumpState.DRAINING
        connection._watch_readable(self)
        self._reading = True
        self._fetch()

    def notify_readable(self) -> None:
        """Readiness callback: consume arrived bytes and pull what is complete."""
        if self.state is not PumpState.DRAINING:
            return
        connection = self.connection
        self.notify_timestamp = self.reactor.time()
        try:
            connection.pgconn.consume_input()
        except psycopg.Error as e:
            self._handle_error(error_from_driver(connection, str(e)))
            return
        if not self._paused:
            self._fetch()

    def next(self) -> None:
        """Request the next row (single-row mode)."""
        if self.state is PumpState.DRAINING and self._paused:
            self.reactor.next_tick(self._resume)

    def drain(self) -> None:
        """Discard the remaining rows and settle once the command completes."""
        self._discard = True
        self.next()

    def stop(self) -> Future:
        """Abandon the command by resetting the connection.

        Unlike :meth:`drain` the remaining rows are never read. Safe to call
        from inside ``on_row``. The command's future succeeds with
        :data:`STOPPED` once the reset completes, or fails with the reset
        error.

        Returns:
            The command's future.
        """
        if self.state is PumpState.DONE:
            return self.future
        connection = self.connection
        self._finish()
        logger.debug(f"Stopping single-row command on {connection!r}")
        connection.reset_async().on_completion(self._stopped)
        return self.future

    def _stopped(self, value: Any, error: Optional[BaseException]) -> None:
        if error is not None:
            self.future.fail(error)
        else:
            self.future.succeed(STOPPED)

    def _resume(self) -> None:
        if self.state is not PumpState.DRAINING or not self._paused:
            return
        self._paused = False
        self._arm_timer()
        self._fetch()

    def _pause(self) -> None:
        self._paused = True
        cancel_timer(self._timer)
        self._timer = None

    # -- result extraction --------------------------------------------------

    def _fetch(self) -> None:
        try:
            outcome = self._drain()
        except PgError as e:
            self._handle_error(e)
        except psycopg.Error as e:
            self._handle_error(error_from_driver(self.connection, str(e)))
        except Exception as e:
            self._finish()
            self.future.fail(e)
        else:
            if outcome is not _BUSY and outcome is not _PAUSED:
                self._finish()
                self.future.succeed(outcome)

    def _drain(self) -> Any:
        connection = self.connection
        pgconn = connection.pgconn
        # Loop instead of recursing: bursts of readiness must not grow the stack.
        while not pgconn.is_busy():
            pgresult = pgconn.get_result()
            if pgresult is None:
                return self._final_result(connection)

            if self.mode is PumpMode.AGGREGATE:
                self._retain(pgresult)
                continue

            if pgresult.status != pq.ExecStatus.SINGLE_TUPLE:
                error = error_from_result(pgresult, connection)
                if error is not None and self._error is None:
                    self._error = error
                self._retain(pgresult)
                continue

            if self._discard or self._error is not None:
                pgresult.clear()
                continue

            self._pause()
            self.rows_delivered += 1
            try:
                self.on_row(QueryResult(pgresult, connection.encoding), self)
            except Exception as e:
                if self.state is PumpState.DONE:
                    # Stopped from inside the consumer; the reset settles the future.
                    logger.debug(f"Row consumer raised {e!r} after stop")
                    return _PAUSED
                logger.debug(f"Row consumer raised {e!r}; discarding remaining rows")
                self._error = e
                self._discard = True
                self._paused = False
                self._arm_timer()
                continue
            return _PAUSED

        return _BUSY

    def _retain(self, pgresult: Any) -> None:
        if self.last_result is not None:
            self.last_result.clear()
        self.last_result = pgresult

    def _final_result(self, connection: Any) -> QueryResult:
        if self._error is not None:
            raise self._error
        pgresult = self.last_result
        if pgresult is None:
            raise error_from_driver(connection)
        error = error_from_result(pgresult, connection)
        if error is not None:
            raise error
        self.last_result = None
        return QueryResult(pgresult, connection.encoding)

    # -- timeout ------------------------------------------------------------

    def _arm_timer(self) -> None:
        timeout = self.connection.query_timeout
        if timeout <= 0:
            return
        cancel_timer(self._timer)
        self.notify_timestamp = self.reactor.time()
        self._timer = self.reactor.call_later(timeout, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self.state is PumpState.DONE or self._paused:
            return
        connection = self._connection()
        if connection is None:
            return
        timeout = connection.query_timeout
        quiet = self.reactor.time() - self.notify_timestamp
        if timeout > 0 and quiet < timeout:
            # Readiness arrived since the timer was armed; wait out the rest.
            self._timer = self.reactor.call_later(timeout - quiet, self._on_timer)
            return
        logger.warning(f"Query timeout expired after {quiet:.3f}s on {connection!r}")
        connection._mark_aborted()
        self._finish()
        self.future.fail(PgTimeout("query timeout expired (async)", connection=connection))

    # -- teardown -----------------------------------------------------------

    def _finish(self) -> None:
        """Cancel the readiness subscription and timer; release the connection slot."""
        if self.state is PumpState.DONE:
            return
        self.state = PumpState.DONE
        cancel_timer(self._timer)
        self._timer = None
        connection = self._connection()
        if self._writing:
            self.reactor.unwatch_writable(self._fd)
            self._writing = False
        if connection is not None:
            if self._reading:
                connection._unwatch_readable(self)
                self._reading = False
            connection._pump_finished(self)
        if self.last_result is not None:
            self.last_result.clear()
            self.last_result = None

    def _handle_error(self, error: PgError) -> None:
        connection = self._connection()
        self._finish()
        if connection is None:
            self.future.fail(error)
            return
        if error.connection is None:
            error.connection = connection
        connection._command_failed(self.future, error, self.resend)

    def abandon(self, error: BaseException) -> None:
        """Stop pumping and fail the command (connection reset or closed)."""
        if self.state is PumpState.DONE:
            return
        self._finish()
        self.future.fail(error)
