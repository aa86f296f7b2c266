"""Transaction-aware automatic reconnect.

When a command fails because its connection is gone, the connection is
reset and the command resubmitted once, subject to the ``async_autoreconnect``
flag, the ``on_autoreconnect`` hook and the transaction state captured when
the command was sent.

Precedence: a transaction that was open at send time always blocks the
resubmission, whatever the hook returns. The hook still runs, and an error it
returns, raises or fails with wins over the original error.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from ..core.future import Future

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Retry:
    """Resubmit the failed command."""


@dataclass(frozen=True)
class Abort:
    """Give up and fail with ``error``."""

    error: BaseException


@dataclass(frozen=True)
class Deferred:
    """Wait for ``future``; resubmit on success, fail with its error otherwise."""

    future: Future


HookOutcome = Union[Retry, Abort, Deferred]


def interpret_hook_result(value: Any, original_error: BaseException) -> HookOutcome:
    """Turn whatever ``on_autoreconnect`` returned into an explicit outcome."""
    if value is False:
        return Abort(original_error)
    if isinstance(value, BaseException):
        return Abort(value)
    if isinstance(value, Future):
        return Deferred(value)
    if inspect.isawaitable(value):
        return Deferred(Future.from_awaitable(value))
    return Retry()


class ReconnectPolicy:
    """Decides the fate of one command that failed on a dead connection."""

    def __init__(
        self,
        connection: Any,
        future: Future,
        error: BaseException,
        resend: Optional[Callable[[], None]],
        was_in_transaction: bool,
    ):
        self.connection = connection
        self.future = future
        self.error = error
        self.resend = resend
        self.was_in_transaction = was_in_transaction

    def run(self) -> None:
        connection = self.connection
        if not connection.async_autoreconnect:
            self.future.fail(self.error)
            return
        logger.info(f"Connection lost ({self.error}); resetting {connection!r}")
        connection.reset_async().on_completion(self._on_reset)

    def _on_reset(self, _value: Any, reset_error: Optional[BaseException]) -> None:
        if reset_error is not None:
            logger.warning(f"Automatic reset failed: {reset_error}")
            self.future.fail(reset_error)
            return

        hook = self.connection.on_autoreconnect
        if hook is None:
            self._resubmit()
            return

        try:
            returned = hook(self.connection, self.error)
        except Exception as e:
            self.future.fail(e)
            return

        outcome = interpret_hook_result(returned, self.error)
        logger.debug(f"on_autoreconnect outcome: {outcome}")
        if isinstance(outcome, Abort):
            self.future.fail(outcome.error)
        elif isinstance(outcome, Deferred):
            outcome.future.on_completion(self._on_hook_done)
        else:
            self._resubmit()

    def _on_hook_done(self, _value: Any, error: Optional[BaseException]) -> None:
        if error is not None:
            self.future.fail(error)
        else:
            self._resubmit()

    def _resubmit(self) -> None:
        if self.was_in_transaction or self.resend is None:
            # The server rolled the transaction back with the old session.
            self.future.fail(self.error)
            return
        logger.debug(f"Resubmitting command on {self.connection!r}")
        self.connection._submit(self.future, self.resend)
