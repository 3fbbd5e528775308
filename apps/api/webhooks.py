import asyncio
import dataclasses
import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Iterable, Mapping, Optional

from apps.api.aio import BackgroundTasks


log = logging.getLogger("courier_gateway")


def to_jsonable(obj: Any) -> Any:
    # json.dumps(default=...) hook for client objects (messages, chats, calls).
    to_json = getattr(obj, "to_json", None)
    if callable(to_json):
        return to_json()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).decode("utf-8", errors="replace")
    attrs = getattr(obj, "__dict__", None)
    if isinstance(attrs, dict):
        return {k: v for k, v in attrs.items() if not k.startswith("_") and not callable(v)}
    return str(obj)


def resolve_webhook_url(session_id: str, base_url: str, environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    override = env.get(f"{session_id.upper()}_WEBHOOK_URL")
    return override or base_url


class EventGate:
    def __init__(self, disabled: Iterable[str] = ()) -> None:
        self._disabled = frozenset(str(x) for x in disabled)

    def is_enabled(self, event: str) -> bool:
        return event not in self._disabled


def _webhook_post_sync(url: str, body: bytes, headers: dict[str, str], timeout_s: float) -> int:
    req = urllib.request.Request(url, data=body, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return int(resp.status)
    except urllib.error.HTTPError as e:
        raise RuntimeError(f"HTTP {e.code} {e.reason}".strip()) from e


class WebhookDispatcher:
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 10.0,
        max_in_flight: int = 4,
        queue_limit: int = 1000,
    ) -> None:
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._tasks = BackgroundTasks()
        # At most max_in_flight deliveries hold a default thread pool worker.
        self._gate = asyncio.Semaphore(max(1, max_in_flight))
        self._queue_limit = max(1, queue_limit)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, url: Optional[str], session_id: str, data_type: str, data: Any = None) -> None:
        if not url:
            log.debug("No webhook URL for session %s; dropping %s", session_id, data_type)
            return
        try:
            body = json.dumps(
                {"dataType": data_type, "data": data, "sessionId": session_id},
                default=to_jsonable,
            ).encode("utf-8")
        except Exception as e:
            log.error("Failed to encode %s webhook for session %s: %s", data_type, session_id, str(e))
            return
        if len(self._tasks) >= self._queue_limit:
            log.warning("Webhook queue full (%d pending); dropping %s for session %s", len(self._tasks), data_type, session_id)
            return
        try:
            self._tasks.spawn(self._deliver(url, session_id, data_type, body))
        except RuntimeError:
            log.warning("No running event loop; dropping %s webhook for session %s", data_type, session_id)

    async def _deliver(self, url: str, session_id: str, data_type: str, body: bytes) -> None:
        headers = {"content-type": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        try:
            async with self._gate:
                await asyncio.to_thread(_webhook_post_sync, url, body, headers, self._timeout_s)
        except Exception as e:
            log.error("Failed to send %s webhook for session %s: %s", data_type, session_id, str(e))

    async def drain(self, timeout_s: Optional[float] = None) -> None:
        await self._tasks.drain(timeout_s)
