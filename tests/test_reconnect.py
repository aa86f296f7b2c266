"""
Automatic Reconnect Tests

A command that fails because the connection died is resubmitted after a
successful reset, unless a transaction was open when it was sent, the hook
says otherwise, or rows were already handed to the caller.
"""

import asyncio

import pytest

from fake_pq import drop, reply, tuples
from pgpump.core import Future
from pgpump.pg import ConnStatus, PgConnection, PgConnectionError, PgTimeout
from pgpump.pg.reconnect import Abort, Deferred, Retry, interpret_hook_result

LOST = "server closed the connection unexpectedly"


class TestInterpretHookResult:
    """The hook's return value maps onto an explicit outcome."""

    def test_false_aborts_with_original_error(self):
        original = PgConnectionError(LOST)
        assert interpret_hook_result(False, original) == Abort(original)

    def test_exception_aborts_with_it(self):
        replacement = RuntimeError("stop")
        assert interpret_hook_result(replacement, PgConnectionError(LOST)) == Abort(replacement)

    def test_future_is_deferred(self):
        f = Future()
        assert interpret_hook_result(f, PgConnectionError(LOST)) == Deferred(f)

    @pytest.mark.parametrize("value", [True, None, 0, "yes"])
    def test_anything_else_retries(self, value):
        assert interpret_hook_result(value, PgConnectionError(LOST)) == Retry()

    @pytest.mark.asyncio
    async def test_coroutine_is_deferred(self):
        async def hook():
            return True

        outcome = interpret_hook_result(hook(), PgConnectionError(LOST))
        assert isinstance(outcome, Deferred)
        assert await outcome.future is True


class TestTransparentRetry:

    @pytest.mark.asyncio
    async def test_dropped_command_is_resubmitted(self, server):
        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True)

        result = await conn.exec("SELECT 1")

        assert result.scalar() == "1"
        assert server.resets == 1
        assert server.executed("SELECT 1") == 2
        assert conn.status is ConnStatus.OK
        conn.finish()

    @pytest.mark.asyncio
    async def test_connection_lost_while_idle(self, server):
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True)
        server.last.kill()
        result = await conn.exec("SELECT 2")
        assert result.scalar() == "2"
        assert server.resets == 1
        assert server.executed("SELECT 2") == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_prepared_statement_is_resubmitted(self, server):
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True)
        await conn.prepare("get_one", "SELECT 1")
        server.script("SELECT 1", drop())
        result = await conn.exec_prepared("get_one")
        assert result.scalar() == "1"
        assert server.resets == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_disabled_autoreconnect_fails(self, server):
        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server)
        assert not conn.async_autoreconnect

        with pytest.raises(PgConnectionError, match=LOST):
            await conn.exec("SELECT 1")
        assert server.resets == 0
        assert conn.status is ConnStatus.BAD

        await conn.reset()
        assert (await conn.exec("SELECT 1")).scalar() == "1"
        conn.finish()

    @pytest.mark.asyncio
    async def test_failed_reset_wins(self, server):
        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True)
        server.fail_resets = 1
        with pytest.raises(PgConnectionError, match="Connection refused"):
            await conn.exec("SELECT 1")
        assert server.executed("SELECT 1") == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_timeout_is_never_retried(self, server):
        server.script("SELECT slow()", reply(tuples(["slow"], [["x"]]), delay=1.0))
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True, query_timeout=0.1)
        with pytest.raises(PgTimeout):
            await conn.exec("SELECT slow()")
        assert server.resets == 0
        assert conn.status is ConnStatus.ABORTED
        conn.finish()


class TestTransactionGuard:

    @pytest.mark.asyncio
    async def test_open_transaction_blocks_resubmission(self, server):
        server.script("UPDATE t SET x = 1", drop())
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True)
        await conn.exec("BEGIN")

        with pytest.raises(PgConnectionError, match=LOST):
            await conn.exec("UPDATE t SET x = 1")

        assert server.executed("UPDATE t SET x = 1") == 1
        assert server.resets == 1
        assert conn.status is ConnStatus.OK
        conn.finish()

    @pytest.mark.asyncio
    async def test_hook_cannot_override_open_transaction(self, server):
        calls = []

        def hook(conn, error):
            calls.append(error)
            return True

        server.script("UPDATE t SET x = 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=hook)
        await conn.exec("BEGIN")
        with pytest.raises(PgConnectionError, match=LOST):
            await conn.exec("UPDATE t SET x = 1")
        assert len(calls) == 1
        assert server.executed("UPDATE t SET x = 1") == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_hook_error_wins_inside_transaction(self, server):
        def hook(conn, error):
            return RuntimeError("hook says no")

        server.script("UPDATE t SET x = 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=hook)
        await conn.exec("BEGIN")
        with pytest.raises(RuntimeError, match="hook says no"):
            await conn.exec("UPDATE t SET x = 1")
        conn.finish()


class TestAutoreconnectHook:

    @pytest.mark.asyncio
    async def test_hook_enables_autoreconnect(self, server):
        calls = []
        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=lambda c, e: calls.append((c, e)))
        assert conn.async_autoreconnect

        assert (await conn.exec("SELECT 1")).scalar() == "1"
        assert len(calls) == 1
        assert calls[0][0] is conn
        assert isinstance(calls[0][1], PgConnectionError)
        conn.finish()

    @pytest.mark.asyncio
    async def test_hook_false_gives_original_error(self, server):
        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=lambda c, e: False)
        with pytest.raises(PgConnectionError, match=LOST):
            await conn.exec("SELECT 1")
        assert server.resets == 1
        assert server.executed("SELECT 1") == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_hook_raising(self, server):
        def hook(conn, error):
            raise LookupError("hook blew up")

        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=hook)
        with pytest.raises(LookupError, match="hook blew up"):
            await conn.exec("SELECT 1")
        conn.finish()

    @pytest.mark.asyncio
    async def test_async_hook_runs_before_resubmission(self, server):
        async def hook(conn, error):
            await conn.exec("SET search_path TO app")

        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=hook)
        assert (await conn.exec("SELECT 1")).scalar() == "1"
        assert server.statements == ["SELECT 1", "SET search_path TO app", "SELECT 1"]
        conn.finish()

    @pytest.mark.asyncio
    async def test_async_hook_failure(self, server):
        async def hook(conn, error):
            await asyncio.sleep(0)
            raise PermissionError("denied")

        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=hook)
        with pytest.raises(PermissionError, match="denied"):
            await conn.exec("SELECT 1")
        assert server.executed("SELECT 1") == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_deferred_future_hook(self, server):
        gate = Future()

        def hook(conn, error):
            asyncio.get_running_loop().call_later(0.01, gate.succeed, None)
            return gate

        server.script("SELECT 1", drop())
        conn = await PgConnection.connect(driver=server, on_autoreconnect=hook)
        assert (await conn.exec("SELECT 1")).scalar() == "1"
        assert gate.succeeded()
        conn.finish()


class TestStreamingRetry:

    @pytest.mark.asyncio
    async def test_stream_retried_before_first_row(self, server):
        server.script("SELECT n FROM generate_series(1, 2) AS n", drop())
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True)
        rows = []

        def on_row(result, control):
            rows.append(result.scalar())
            control.next()

        await conn.stream_async("SELECT n FROM generate_series(1, 2) AS n", on_row=on_row)
        assert rows == ["1", "2"]
        assert server.resets == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_stream_not_retried_after_rows(self, server):
        conn = await PgConnection.connect(driver=server, async_autoreconnect=True)
        rows = []

        def on_row(result, control):
            rows.append(result.scalar())
            server.last.kill()
            control.next()

        with pytest.raises(PgConnectionError, match=LOST):
            await conn.stream_async("SELECT n FROM generate_series(1, 3) AS n", on_row=on_row)
        assert rows == ["1"]
        assert server.resets == 1
        assert server.executed("SELECT n FROM generate_series(1, 3) AS n") == 1
        conn.finish()
