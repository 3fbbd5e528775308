import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from apps.api.webhooks import to_jsonable


log = logging.getLogger("courier_gateway")

RECENT_MESSAGES_LIMIT = 100


def field_of(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def message_short_id(message: Any) -> Optional[str]:
    ident = field_of(message, "id")
    if isinstance(ident, str):
        return ident
    value = field_of(ident, "id")
    return str(value) if value is not None else None


def message_serialized_id(message: Any) -> Optional[str]:
    ident = field_of(message, "id")
    if isinstance(ident, str):
        return ident
    for key in ("_serialized", "serialized"):
        value = field_of(ident, key)
        if value:
            return str(value)
    return None


async def resolve_message(client: Any, chat_id: str, message_id: str, *, limit: int = RECENT_MESSAGES_LIMIT) -> Optional[Any]:
    # Only the most recent `limit` messages are searched; older ones resolve to None.
    chat = await client.get_chat_by_id(chat_id)
    messages = await chat.fetch_messages(limit=limit)
    for message in messages or []:
        if message_short_id(message) == message_id:
            return message
    return None


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2, default=to_jsonable) + "\n", encoding="utf-8")
    tmp.replace(path)


def _as_record(obj: Any) -> dict[str, Any]:
    normalized = json.loads(json.dumps(obj, default=to_jsonable))
    if isinstance(normalized, dict):
        return normalized
    return {"value": normalized}


class MessageStore:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, session_id: str) -> Path:
        return self._root / f"{session_id}.json"

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _read_sync(self, session_id: str) -> dict[str, Any]:
        try:
            data = json.loads(self._path(session_id).read_text(encoding="utf-8"))
        except FileNotFoundError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        data.setdefault("messages", {})
        data.setdefault("media", {})
        return data

    async def _update(self, session_id: str, fn: Callable[[dict[str, Any]], None]) -> None:
        async with self._lock(session_id):
            data = await asyncio.to_thread(self._read_sync, session_id)
            fn(data)
            await asyncio.to_thread(_atomic_write_json, self._path(session_id), data)

    async def upsert_message(self, session_id: str, message: Any) -> None:
        message_id = message_serialized_id(message)
        if not message_id:
            log.warning("Skipping message without id for session %s", session_id)
            return
        try:
            record = _as_record(message)
            record["sessionId"] = session_id
            record["messageId"] = message_id

            def _put(data: dict[str, Any]) -> None:
                existing = data["messages"].get(message_id) or {}
                existing.update(record)
                data["messages"][message_id] = existing

            await self._update(session_id, _put)
        except Exception:
            log.exception("Failed to save message %s for session %s", message_id, session_id)

    async def upsert_media(self, session_id: str, message: Any, media: Any) -> None:
        message_id = message_serialized_id(message)
        if not message_id:
            log.warning("Skipping media without message id for session %s", session_id)
            return
        try:
            record = _as_record(media)
            record["sessionId"] = session_id
            record["messageId"] = message_id

            def _put(data: dict[str, Any]) -> None:
                data["media"][message_id] = record

            await self._update(session_id, _put)
        except Exception:
            log.exception("Failed to save media for message %s in session %s", message_id, session_id)
            return
        await self.upsert_message(session_id, message)
        log.info("Media message %s saved for session %s", message_id, session_id)

    async def get_message(self, session_id: str, message_id: str) -> Optional[dict[str, Any]]:
        try:
            data = await asyncio.to_thread(self._read_sync, session_id)
        except Exception:
            log.exception("Failed to read messages for session %s", session_id)
            return None
        return data["messages"].get(message_id)

    async def get_media(self, session_id: str, message_id: str) -> Optional[dict[str, Any]]:
        try:
            data = await asyncio.to_thread(self._read_sync, session_id)
        except Exception:
            log.exception("Failed to read media for session %s", session_id)
            return None
        return data["media"].get(message_id)
