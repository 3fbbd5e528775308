import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from croniter import croniter

from apps.api.sessions import SessionManager


log = logging.getLogger("courier_gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _ms_to_dt_utc(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def _dt_to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def next_run_at_ms(expr: str, base_ms: int) -> int:
    return _dt_to_ms(croniter(expr, _ms_to_dt_utc(base_ms)).get_next(datetime))


class InactiveSessionSweeper:
    def __init__(self, manager: SessionManager, expr: str) -> None:
        self._manager = manager
        self._expr = expr
        self._task: Optional[asyncio.Task[None]] = None
        self.next_run_at_ms: Optional[int] = None
        self.last_run_at_ms: Optional[int] = None
        self.last_deleted: list[str] = []

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(await self.tick())
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Session sweep loop error")
                await asyncio.sleep(2.0)

    async def tick(self) -> float:
        now = _now_ms()
        if self.next_run_at_ms is None:
            self.next_run_at_ms = next_run_at_ms(self._expr, now)
        if self.next_run_at_ms <= now:
            try:
                self.last_deleted = await self._manager.flush(only_inactive=True)
            except Exception:
                log.exception("Inactive session sweep failed")
            self.last_run_at_ms = now
            self.next_run_at_ms = next_run_at_ms(self._expr, _now_ms())
        delay_ms = max(200, min(30_000, self.next_run_at_ms - _now_ms()))
        return delay_ms / 1000.0
