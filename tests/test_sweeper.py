from datetime import datetime, timezone

import pytest

from apps.api.sweeper import InactiveSessionSweeper, next_run_at_ms

from fakes import wait_until


class _FlushStub:
    def __init__(self, deleted=None, error=None):
        self.calls = []
        self.deleted = deleted or []
        self.error = error

    async def flush(self, only_inactive):
        self.calls.append(only_inactive)
        if self.error is not None:
            raise self.error
        return list(self.deleted)


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def test_next_run_at_ms_follows_cron():
    base = _ms(datetime(2024, 1, 1, 0, 30, tzinfo=timezone.utc))
    assert next_run_at_ms("0 * * * *", base) == _ms(datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc))


@pytest.mark.asyncio
async def test_tick_flushes_inactive_when_due():
    stub = _FlushStub(deleted=["b"])
    sweeper = InactiveSessionSweeper(stub, "* * * * *")
    sweeper.next_run_at_ms = 0

    delay = await sweeper.tick()

    assert stub.calls == [True]
    assert sweeper.last_deleted == ["b"]
    assert sweeper.last_run_at_ms is not None
    assert 0.2 <= delay <= 30.0


@pytest.mark.asyncio
async def test_tick_waits_when_not_due():
    stub = _FlushStub()
    sweeper = InactiveSessionSweeper(stub, "0 0 1 1 *")

    delay = await sweeper.tick()

    assert stub.calls == []
    assert delay == 30.0


@pytest.mark.asyncio
async def test_tick_survives_flush_error():
    stub = _FlushStub(error=RuntimeError("disk gone"))
    sweeper = InactiveSessionSweeper(stub, "* * * * *")
    sweeper.next_run_at_ms = 0

    await sweeper.tick()

    assert stub.calls == [True]
    assert sweeper.next_run_at_ms > 0


@pytest.mark.asyncio
async def test_started_loop_runs_due_sweep_and_stops():
    stub = _FlushStub(deleted=["b"])
    sweeper = InactiveSessionSweeper(stub, "0 0 1 1 *")
    sweeper.next_run_at_ms = 0
    sweeper.start()
    try:
        assert await wait_until(lambda: stub.calls == [True])
    finally:
        await sweeper.stop()
    assert sweeper.last_deleted == ["b"]
    assert stub.calls == [True]
