"""
Deferred Results

One-shot result containers settled from reactor callbacks and consumed either
through completion callbacks or through ``await``.
"""

import asyncio
import inspect
import logging
from typing import TypeVar, Generic, Callable, List, Any, Optional

T = TypeVar('T')

logger = logging.getLogger(__name__)

_PENDING = "pending"
_SUCCEEDED = "succeeded"
_FAILED = "failed"

CompletionCallback = Callable[[Any, Optional[BaseException]], Any]


class Future(Generic[T]):
    """
    One-shot settleable result container.

    A future starts pending and is settled exactly once with either a value
    (``succeed``) or an error (``fail``). Settlement is applied on the next
    reactor tick, so the code calling ``succeed``/``fail`` never observes
    its own callbacks running.

    Supports both callbacks and async/await.

    Examples:
        # Callback style
        conn.exec_async("SELECT 1").on_completion(lambda value, error: ...)

        # Async/await
        result = await conn.exec_async("SELECT 1")
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """
        Create a pending future.

        Args:
            loop: Event loop used to defer settlement (defaults to the
                running loop, if any)
        """
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        self._loop = loop
        self._state = _PENDING
        self._settling = False
        self._value: Optional[T] = None
        self._exception: Optional[BaseException] = None
        self._callbacks: List[CompletionCallback] = []

    def __repr__(self) -> str:
        return f"<Future {self._state}>"

    def __await__(self):
        """Suspend the awaiting coroutine until the future settles."""
        from .bridge import wait_for

        return wait_for(self).__await__()

    # -- settlement ---------------------------------------------------------

    def succeed(self, value: Optional[T] = None) -> bool:
        """
        Settle the future with a value.

        Returns:
            False if the future was already settled (the call is ignored)
        """
        return self._begin_settle(_SUCCEEDED, value, None)

    def fail(self, error: BaseException) -> bool:
        """
        Settle the future with an error.

        Returns:
            False if the future was already settled (the call is ignored)
        """
        return self._begin_settle(_FAILED, None, error)

    def protect(self, func: Callable[[], Any], fail_value: Any = None) -> Any:
        """
        Run ``func`` and fail the future with anything it raises.

        Returns:
            Whatever ``func`` returned, or ``fail_value`` on error
        """
        try:
            return func()
        except Exception as e:
            self.fail(e)
            return fail_value

    def bind(self, other: "Future[T]") -> "Future[T]":
        """Settle this future with the outcome of ``other``."""

        def _mirror(value, error):
            if error is not None:
                self.fail(error)
            else:
                self.succeed(value)

        other.on_completion(_mirror)
        return self

    def _begin_settle(self, state: str, value: Any, error: Optional[BaseException]) -> bool:
        if self._settling:
            return False
        self._settling = True
        loop = self._loop
        if loop is None or loop.is_closed():
            self._settle(state, value, error)
        else:
            loop.call_soon(self._settle, state, value, error)
        return True

    def _settle(self, state: str, value: Any, error: Optional[BaseException]) -> None:
        self._state = state
        self._value = value
        self._exception = error
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    def _run_callback(self, callback: CompletionCallback) -> None:
        try:
            callback(self._value, self._exception)
        except Exception:
            logger.exception(f"Future completion callback {callback!r} raised")

    # -- observation --------------------------------------------------------

    def on_completion(self, callback: CompletionCallback) -> "Future[T]":
        """
        Register ``callback(value, error)`` to run once on settlement.

        Runs immediately when the future is already settled. Callbacks run
        in registration order.
        """
        if self._state == _PENDING:
            self._callbacks.append(callback)
        else:
            self._run_callback(callback)
        return self

    def add_callback(self, callback: Callable[[T], Any]) -> "Future[T]":
        """Register a callback for the success outcome only."""
        return self.on_completion(
            lambda value, error: callback(value) if error is None else None
        )

    def add_errback(self, callback: Callable[[BaseException], Any]) -> "Future[T]":
        """Register a callback for the failure outcome only."""
        return self.on_completion(
            lambda value, error: callback(error) if error is not None else None
        )

    def then(self, func: Callable[[T], Any]) -> 'Future':
        """
        Continuation chaining.

        Args:
            func: Continuation function that receives the value

        Returns:
            New future for the result of ``func``; failures propagate

        Example:
            future.then(lambda x: x * 2).then(lambda y: str(y))
        """
        chained: Future = Future(loop=self._loop)

        def _continue(value, error):
            if error is not None:
                chained.fail(error)
                return
            try:
                chained.succeed(func(value))
            except Exception as e:
                chained.fail(e)

        self.on_completion(_continue)
        return chained

    def handle_error(self, func: Callable[[BaseException], T]) -> 'Future[T]':
        """
        Handle errors in the future chain.

        Args:
            func: Error handler that receives the exception

        Returns:
            New future succeeding with the handler's return value
        """
        chained: Future = Future(loop=self._loop)

        def _recover(value, error):
            if error is None:
                chained.succeed(value)
                return
            try:
                chained.succeed(func(error))
            except Exception as e:
                chained.fail(e)

        self.on_completion(_recover)
        return chained

    def is_ready(self) -> bool:
        """Check if the future has settled (either way)."""
        return self._state != _PENDING

    def succeeded(self) -> bool:
        """Check if the future settled with a value."""
        return self._state == _SUCCEEDED

    def failed(self) -> bool:
        """Check if the future settled with an error."""
        return self._state == _FAILED

    def exception(self) -> Optional[BaseException]:
        """The settlement error, if any."""
        return self._exception

    def get(self) -> T:
        """
        Get the settled value without waiting.

        Raises:
            The settlement error if the future failed
            RuntimeError if the future is still pending
        """
        if self._state == _FAILED:
            raise self._exception
        if self._state == _SUCCEEDED:
            return self._value
        raise RuntimeError("Future not ready")

    # -- construction helpers -----------------------------------------------

    @staticmethod
    def make_ready(value: T) -> 'Future[T]':
        """Create a future that's already resolved."""
        f: Future = Future()
        f._settling = True
        f._settle(_SUCCEEDED, value, None)
        return f

    @staticmethod
    def make_exception(exception: BaseException) -> 'Future[T]':
        """Create a future that's already failed."""
        f: Future = Future()
        f._settling = True
        f._settle(_FAILED, None, exception)
        return f

    @staticmethod
    def from_awaitable(awaitable: Any) -> 'Future':
        """
        Wrap a coroutine or asyncio awaitable.

        The awaitable is scheduled as a task on the running loop.
        """
        if isinstance(awaitable, Future):
            return awaitable
        if not inspect.isawaitable(awaitable):
            raise TypeError(f"{awaitable!r} is not awaitable")

        f: Future = Future()
        task = asyncio.ensure_future(awaitable)

        def _done(t: asyncio.Future) -> None:
            if t.cancelled():
                f.fail(asyncio.CancelledError())
            elif t.exception() is not None:
                f.fail(t.exception())
            else:
                f.succeed(t.result())

        task.add_done_callback(_done)
        return f


async def when_all(futures: List[Future[T]]) -> List[T]:
    """
    Wait for all futures to complete.

    Args:
        futures: List of futures to wait for

    Returns:
        List of results in same order

    Example:
        results = await when_all([
            conn_a.exec_async("SELECT ..."),
            conn_b.exec_async("SELECT ..."),
        ])
    """
    return list(await asyncio.gather(*futures))
