"""Non-blocking connect and reset.

Drives the driver's connect/reset poll step against socket readiness until
the handshake succeeds or fails.
"""

import inspect
import logging
from enum import Enum
from typing import Any, Optional

import psycopg
from psycopg import pq

from ..core.future import Future
from ..core.reactor import cancel_timer
from .exceptions import PgConnectionError, PgTimeout
from .pump import error_from_driver

logger = logging.getLogger(__name__)


class HandshakeState(Enum):
    PENDING = "pending"
    READ_WAIT = "read_wait"
    WRITE_WAIT = "write_wait"
    DONE = "done"


class HandshakePump:
    """Runs one connect or reset handshake for a connection.

    A failed or timed-out fresh connect finishes the driver connection so
    its descriptor is not leaked; a reset keeps the driver object, which the
    connection reuses.
    """

    def __init__(self, connection: Any, future: Future, is_reset: bool = False):
        self.connection = connection
        self.reactor = connection.reactor
        self.future = future
        self.is_reset = is_reset
        self.state = HandshakeState.PENDING
        self._timer = None
        self._fd: Optional[int] = None

    def __repr__(self) -> str:
        kind = "reset" if self.is_reset else "connect"
        return f"<HandshakePump {kind} {self.state.value}>"

    def start(self) -> None:
        timeout = self.connection.connect_timeout
        if timeout > 0:
            self._timer = self.reactor.call_later(timeout, self._on_timeout)
        self.poll()

    def poll(self) -> None:
        """Run one poll step and re-arm readiness as the driver asks."""
        if self.state is HandshakeState.DONE:
            return
        pgconn = self.connection.pgconn
        message = None
        try:
            if self.is_reset:
                status = pgconn.reset_poll()
            else:
                status = pgconn.connect_poll()
        except psycopg.Error as e:
            status = pq.PollingStatus.FAILED
            message = str(e)

        if status == pq.PollingStatus.READING:
            self._wait(HandshakeState.READ_WAIT)
            return
        if status == pq.PollingStatus.WRITING:
            self._wait(HandshakeState.WRITE_WAIT)
            return

        self._stop()
        if status == pq.PollingStatus.OK and pgconn.status == pq.ConnStatus.OK:
            self._succeed()
        else:
            self._fail(error_from_driver(self.connection, message))

    def _wait(self, state: HandshakeState) -> None:
        try:
            fd = self.connection.pgconn.socket
        except psycopg.Error as e:
            self._stop()
            self._fail(PgConnectionError(str(e), connection=self.connection))
            return
        if fd == self._fd and state is self.state:
            return
        self._unwatch()
        self._fd = fd
        self.state = state
        if state is HandshakeState.READ_WAIT:
            self.reactor.watch_readable(fd, self.poll)
        else:
            self.reactor.watch_writable(fd, self.poll)

    def _unwatch(self) -> None:
        if self._fd is None:
            return
        if self.state is HandshakeState.READ_WAIT:
            self.reactor.unwatch_readable(self._fd)
        elif self.state is HandshakeState.WRITE_WAIT:
            self.reactor.unwatch_writable(self._fd)
        self._fd = None

    def _stop(self) -> None:
        self._unwatch()
        self.state = HandshakeState.DONE
        cancel_timer(self._timer)
        self._timer = None
        self.connection._handshake_finished(self)

    def _on_timeout(self) -> None:
        self._timer = None
        if self.state is HandshakeState.DONE:
            return
        logger.warning(f"Connect timeout expired for {self.connection!r}")
        self._stop()
        self._fail(PgTimeout("timeout expired (async)", connection=self.connection))

    def _succeed(self) -> None:
        connection = self.connection
        try:
            hook_result = connection._configure_session(self.is_reset)
        except Exception as e:
            self._fail(e)
            return
        if hook_result is None or not (
            isinstance(hook_result, Future) or inspect.isawaitable(hook_result)
        ):
            logger.debug(f"Handshake complete for {connection!r}")
            self.future.succeed(connection)
            return

        def _hook_done(value, error):
            if error is not None:
                self._fail(error)
            else:
                logger.debug(f"Handshake complete for {connection!r}")
                self.future.succeed(connection)

        Future.from_awaitable(hook_result).on_completion(_hook_done)

    def _fail(self, error: BaseException) -> None:
        logger.debug(f"Handshake failed for {self.connection!r}: {error}")
        if not self.is_reset:
            self.connection._finish_driver()
        self.future.fail(error)

    def abandon(self, error: BaseException) -> None:
        """Stop the handshake because the connection is being closed."""
        if self.state is HandshakeState.DONE:
            return
        self._stop()
        self.future.fail(error)
