import asyncio
from types import SimpleNamespace

import pytest

from apps.api import aio
from apps.api.aio import BackgroundTasks, resolve_nested, wait_for_nested_attr


def test_resolve_nested_walks_dicts_and_attributes():
    root = SimpleNamespace(info={"me": SimpleNamespace(user="alice")})
    assert resolve_nested(root, "info.me.user") == "alice"
    assert resolve_nested(root, "info.missing.user") is None
    assert resolve_nested(None, "anything") is None


@pytest.mark.asyncio
async def test_wait_for_nested_attr_returns_once_value_appears():
    holder = SimpleNamespace(page=None)
    asyncio.get_running_loop().call_later(0.1, setattr, holder, "page", "P")
    value = await wait_for_nested_attr(holder, "page", max_wait_s=0.2, interval_s=0.02)
    assert value == "P"


@pytest.mark.asyncio
async def test_wait_for_nested_attr_times_out():
    holder = SimpleNamespace(page=None)
    with pytest.raises(TimeoutError, match="Timeout waiting for nested object"):
        await wait_for_nested_attr(holder, "page", max_wait_s=0.05, interval_s=0.01)


@pytest.mark.asyncio
async def test_wait_for_nested_attr_rejects_at_deadline_without_busy_polling(monkeypatch):
    calls = []

    def counting_resolve(root, path):
        calls.append(path)
        return None

    monkeypatch.setattr(aio, "resolve_nested", counting_resolve)
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(TimeoutError):
        await wait_for_nested_attr(object(), "page", max_wait_s=0.2, interval_s=0.02)
    elapsed = loop.time() - started

    assert 0.2 <= elapsed < 0.35
    assert 2 <= len(calls) <= 13


@pytest.mark.asyncio
async def test_wait_for_nested_attr_accepts_falsy_non_none_values():
    holder = {"count": 0}
    assert await wait_for_nested_attr(holder, "count", max_wait_s=0.05) == 0


@pytest.mark.asyncio
async def test_background_tasks_drain_waits_for_followups():
    tasks = BackgroundTasks()
    seen = []

    async def child():
        await asyncio.sleep(0.01)
        seen.append("child")

    async def parent():
        await asyncio.sleep(0.01)
        seen.append("parent")
        tasks.spawn(child())

    tasks.spawn(parent())
    await tasks.drain(timeout_s=1.0)
    assert seen == ["parent", "child"]
    assert len(tasks) == 0


@pytest.mark.asyncio
async def test_background_tasks_cancel_stops_pending_work():
    tasks = BackgroundTasks()
    task = tasks.spawn(asyncio.sleep(3600))
    await tasks.cancel()
    assert task.cancelled()


def test_spawn_without_running_loop_raises():
    tasks = BackgroundTasks()

    async def work():
        return 1

    with pytest.raises(RuntimeError):
        tasks.spawn(work())
    assert len(tasks) == 0
