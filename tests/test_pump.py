"""
Result Pump Tests

Aggregate and single-row extraction, per-statement errors, query timeouts
and the aborted state they leave behind.
"""

import asyncio

import pytest

from fake_pq import copy_out, error, reply, tuples
from pgpump.pg import (
    ConnStatus,
    PgConnection,
    PgConnectionError,
    PgIntegrityError,
    PgQueryError,
    PgResetRequired,
    PgTimeout,
)
from pgpump.pg.pump import STOPPED, PumpMode, PumpState, ResultPump


class TestAggregateMode:
    """Multiple results for one command: the last one wins."""

    @pytest.mark.asyncio
    async def test_last_result_wins(self, server):
        conn = await PgConnection.connect(driver=server)
        result = await conn.exec("SELECT 1; SELECT 2; SELECT 3")
        assert result.scalar() == "3"
        assert result.command_status == "SELECT 1"
        conn.finish()

    @pytest.mark.asyncio
    async def test_discarded_results_are_released(self, server):
        first, second, last = tuples(["a"], [[1]]), tuples(["a"], [[2]]), tuples(["a"], [[3]])
        server.script("SELECT a FROM t", reply(first, second, last))
        conn = await PgConnection.connect(driver=server)
        result = await conn.exec("SELECT a FROM t")
        assert first.cleared and second.cleared
        assert not last.cleared
        assert result.pgresult is last
        conn.finish()

    @pytest.mark.asyncio
    async def test_parameters_are_sent_as_text(self, server):
        conn = await PgConnection.connect(driver=server)
        result = await conn.exec("SELECT $1::int AS answer", 42)
        assert result.scalar() == "42"
        assert server.log[-1] == ("query", "SELECT $1::int AS answer", ["42"])

        await conn.exec("SELECT $1, $2, $3", None, True, b"raw")
        assert server.log[-1][2] == [None, "t", "raw"]
        conn.finish()

    @pytest.mark.asyncio
    async def test_results_arriving_later(self, server):
        server.script("SELECT pg_sleep(0.05)", reply(tuples(["pg_sleep"], [[""]]), delay=0.05))
        conn = await PgConnection.connect(driver=server)
        result = await conn.exec("SELECT pg_sleep(0.05)")
        assert result.ntuples == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_pending_flush_waits_for_writability(self, server):
        conn = await PgConnection.connect(driver=server)
        server.flush_pending = 2
        result = await conn.exec("SELECT 5")
        assert result.scalar() == "5"
        assert server.flush_pending == 0
        conn.finish()


class TestQueryErrors:

    @pytest.mark.asyncio
    async def test_server_error_fails_with_sqlstate(self, server):
        server.script("SELEC 1", reply(error("42601", 'syntax error at or near "SELEC"')))
        conn = await PgConnection.connect(driver=server)
        with pytest.raises(PgQueryError, match="syntax error") as exc_info:
            await conn.exec("SELEC 1")
        assert exc_info.value.sqlstate == "42601"
        assert exc_info.value.connection is conn
        # The connection stays usable.
        assert (await conn.exec("SELECT 1")).scalar() == "1"
        conn.finish()

    @pytest.mark.asyncio
    async def test_error_after_earlier_statements(self, server):
        server.script(
            "INSERT INTO t VALUES (1); INSERT INTO t VALUES (1)",
            reply(
                tuples([], [], tag="INSERT 0 1"),
                error("23505", "duplicate key value violates unique constraint", detail="Key (id)=(1) already exists."),
            ),
        )
        conn = await PgConnection.connect(driver=server)
        with pytest.raises(PgIntegrityError) as exc_info:
            await conn.exec("INSERT INTO t VALUES (1); INSERT INTO t VALUES (1)")
        assert exc_info.value.detail == "Key (id)=(1) already exists."
        conn.finish()

    @pytest.mark.asyncio
    async def test_copy_requires_reset(self, server):
        server.script("COPY t TO STDOUT", reply(copy_out()))
        conn = await PgConnection.connect(driver=server)
        with pytest.raises(PgResetRequired):
            await conn.exec("COPY t TO STDOUT")
        assert conn.status is ConnStatus.ABORTED
        conn.finish()


class TestSingleRowMode:
    """Rows are handed out one at a time, each after the consumer asks."""

    @pytest.mark.asyncio
    async def test_three_rows_then_settlement(self, server):
        conn = await PgConnection.connect(driver=server)
        events = []

        def on_row(result, control):
            events.append(result.scalar())
            control.next()

        future = conn.stream_async("SELECT 1; SELECT 2; SELECT 3", on_row=on_row)
        future.on_completion(lambda value, error: events.append("done"))
        status = await future
        assert events == ["1", "2", "3", "done"]
        assert status.ntuples == 0
        assert status.command_status == "SELECT 1"
        conn.finish()

    @pytest.mark.asyncio
    async def test_next_row_only_on_request(self, server):
        conn = await PgConnection.connect(driver=server)
        rows, controls = [], []

        def on_row(result, control):
            rows.append(result.one().n)
            controls.append(control)

        future = conn.stream_async("SELECT n FROM generate_series(1, 3) AS n", on_row=on_row)
        for _ in range(5):
            await asyncio.sleep(0.01)
        assert rows == ["1"]
        assert not future.is_ready()

        controls[-1].next()
        await asyncio.sleep(0.01)
        assert rows == ["1", "2"]

        controls[-1].next()
        await asyncio.sleep(0.01)
        controls[-1].next()
        await future
        assert rows == ["1", "2", "3"]
        conn.finish()

    @pytest.mark.asyncio
    async def test_drain_skips_remaining_rows(self, server):
        conn = await PgConnection.connect(driver=server)
        rows = []

        def on_row(result, control):
            rows.append(result.scalar())
            control.drain()

        await conn.stream_async("SELECT n FROM generate_series(1, 10) AS n", on_row=on_row)
        assert rows == ["1"]
        assert not conn.busy
        conn.finish()

    @pytest.mark.asyncio
    async def test_row_consumer_error_fails_command(self, server):
        conn = await PgConnection.connect(driver=server)

        def on_row(result, control):
            raise ValueError("bad row")

        with pytest.raises(ValueError, match="bad row"):
            await conn.stream_async("SELECT n FROM generate_series(1, 3) AS n", on_row=on_row)
        assert (await conn.exec("SELECT 1")).scalar() == "1"
        conn.finish()

    @pytest.mark.asyncio
    async def test_error_statement_after_rows(self, server):
        server.script(
            "SELECT 1; SELECT 1/0",
            reply(tuples(["?column?"], [["1"]]), error("22012", "division by zero")),
        )
        conn = await PgConnection.connect(driver=server)
        rows = []

        def on_row(result, control):
            rows.append(result.scalar())
            control.next()

        with pytest.raises(PgQueryError, match="division by zero"):
            await conn.stream_async("SELECT 1; SELECT 1/0", on_row=on_row)
        assert rows == ["1"]
        conn.finish()


class TestStop:
    """stop() abandons a single-row command through a reset."""

    @pytest.mark.asyncio
    async def test_stop_resets_instead_of_reading(self, server):
        conn = await PgConnection.connect(driver=server)
        rows = []

        def on_row(result, control):
            rows.append(result.scalar())
            control.stop()

        outcome = await conn.stream_async("SELECT n FROM generate_series(1, 1000) AS n", on_row=on_row)
        assert outcome is STOPPED
        assert rows == ["1"]
        assert server.resets == 1
        assert not conn.busy
        assert conn.status is ConnStatus.OK
        assert (await conn.exec("SELECT 2")).scalar() == "2"
        conn.finish()

    @pytest.mark.asyncio
    async def test_stop_between_rows(self, server):
        conn = await PgConnection.connect(driver=server)
        controls = []

        future = conn.stream_async(
            "SELECT n FROM generate_series(1, 5) AS n",
            on_row=lambda result, control: controls.append(control),
        )
        await asyncio.sleep(0.02)
        assert len(controls) == 1

        assert controls[0].stop() is future
        assert await future is STOPPED
        assert controls[0].state is PumpState.DONE
        assert server.resets == 1
        conn.finish()

    @pytest.mark.asyncio
    async def test_failed_reset_fails_command(self, server):
        conn = await PgConnection.connect(driver=server)
        server.fail_resets = 1

        def on_row(result, control):
            control.stop()

        with pytest.raises(PgConnectionError, match="Connection refused"):
            await conn.stream_async("SELECT n FROM generate_series(1, 3) AS n", on_row=on_row)
        assert conn.status is ConnStatus.BAD
        conn.finish()

    @pytest.mark.asyncio
    async def test_consumer_error_after_stop(self, server):
        conn = await PgConnection.connect(driver=server)

        def on_row(result, control):
            control.stop()
            raise ValueError("ignored after stop")

        assert await conn.stream_async("SELECT n FROM generate_series(1, 3) AS n", on_row=on_row) is STOPPED
        conn.finish()


class TestQueryTimeout:
    """A command that stays quiet past query_timeout aborts the connection."""

    @pytest.mark.asyncio
    async def test_timeout_aborts_until_reset(self, server):
        server.script("SELECT pg_sleep(2)", reply(tuples(["pg_sleep"], [[""]]), delay=2.0))
        conn = await PgConnection.connect(driver=server, query_timeout=1.0)
        loop = asyncio.get_running_loop()

        started = loop.time()
        with pytest.raises(PgTimeout, match="query timeout expired"):
            await conn.exec("SELECT pg_sleep(2)")
        elapsed = loop.time() - started
        assert 0.95 <= elapsed < 1.5
        assert conn.status is ConnStatus.ABORTED

        with pytest.raises(PgResetRequired, match="need connection reset"):
            await conn.exec("SELECT 1")
        assert server.executed("SELECT 1") == 0

        await conn.reset()
        assert conn.status is ConnStatus.OK
        assert (await conn.exec("SELECT 1")).scalar() == "1"
        conn.finish()

    @pytest.mark.asyncio
    async def test_readiness_postpones_timeout(self, server):
        server.script("SELECT slow()", reply(tuples(["slow"], [["ok"]]), delay=0.5))
        conn = await PgConnection.connect(driver=server, query_timeout=0.25)
        loop = asyncio.get_running_loop()
        for at in (0.1, 0.2, 0.3, 0.4):
            loop.call_later(at, server.notify, "tick")

        result = await conn.exec("SELECT slow()")
        assert result.scalar() == "ok"
        assert conn.status is ConnStatus.OK
        conn.finish()

    @pytest.mark.asyncio
    async def test_paused_stream_does_not_time_out(self, server):
        conn = await PgConnection.connect(driver=server, query_timeout=0.1)
        controls = []
        future = conn.stream_async(
            "SELECT n FROM generate_series(1, 2) AS n",
            on_row=lambda result, control: controls.append(control),
        )
        await asyncio.sleep(0.3)
        assert not future.is_ready()
        controls[-1].next()
        await asyncio.sleep(0.01)
        controls[-1].next()
        await future
        assert conn.status is ConnStatus.OK
        conn.finish()


class TestPumpLifecycle:

    @pytest.mark.asyncio
    async def test_pump_unsubscribes_exactly_once(self, server):
        conn = await PgConnection.connect(driver=server)
        future = conn.exec_async("SELECT 1")
        pump = conn._pump
        assert isinstance(pump, ResultPump)
        assert pump.mode is PumpMode.AGGREGATE
        assert pump in conn._readers

        await future
        assert pump.state is PumpState.DONE
        assert conn._pump is None
        assert not conn._readers
        assert conn._reader_fd is None

        pump.abandon(RuntimeError("ignored"))
        assert future.succeeded()
        conn.finish()

    @pytest.mark.asyncio
    async def test_resend_disabled_after_rows_delivered(self, server):
        conn = await PgConnection.connect(driver=server)
        pumps = []

        def on_row(result, control):
            pumps.append(control)
            control.next()

        future = conn.stream_async("SELECT 1", on_row=on_row)
        assert conn._pump.resend is not None
        await future
        assert pumps[0].rows_delivered == 1
        assert pumps[0].resend is None
        conn.finish()
