import asyncio
import logging
from typing import Any, Awaitable, Optional


log = logging.getLogger("courier_gateway")


def resolve_nested(root: Any, path: str) -> Any:
    cur = root
    for key in path.split("."):
        if cur is None:
            return None
        if isinstance(cur, dict):
            cur = cur.get(key)
        else:
            cur = getattr(cur, key, None)
    return cur


async def wait_for_nested_attr(
    root: Any,
    path: str,
    *,
    max_wait_s: float = 10.0,
    interval_s: float = 0.1,
) -> Any:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_wait_s
    while True:
        value = resolve_nested(root, path)
        if value is not None:
            return value
        if loop.time() >= deadline:
            log.debug("Timed out waiting for nested object %s", path)
            raise TimeoutError("Timeout waiting for nested object")
        await asyncio.sleep(interval_s)


class BackgroundTasks:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task[Any]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            close = getattr(coro, "close", None)
            if callable(close):
                close()
            raise
        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout_s: Optional[float] = None) -> None:
        # Tasks may spawn followups (e.g. media delivery), so loop until quiet.
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout_s)
            if not_done:
                log.warning("%d background task(s) still running after %.1fs", len(not_done), timeout_s or 0.0)
                return

    async def cancel(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception:
                log.exception("Background task failed during shutdown")
