import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionStatus:
    qr: Optional[str] = None
    last_state: Optional[str] = None
    last_error: Optional[str] = None
    updated_at_ms: int = 0

    def to_json(self) -> dict[str, Any]:
        return {
            "qr": self.qr,
            "lastState": self.last_state,
            "lastError": self.last_error,
            "updatedAtMs": self.updated_at_ms,
        }


class SessionRegistry:
    """In-memory map of session id to live client handle.

    Each entry carries a status record written by the event binder and read
    by status queries. Lifecycle operations on one session id serialize on a
    per-id lock that lives only while some operation holds or awaits it.
    """

    def __init__(self) -> None:
        self._clients: dict[str, Any] = {}
        self._status: dict[str, SessionStatus] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    def has(self, session_id: str) -> bool:
        return session_id in self._clients

    def get(self, session_id: str) -> Optional[Any]:
        return self._clients.get(session_id)

    def set(self, session_id: str, client: Any) -> None:
        self._clients[session_id] = client
        self._status[session_id] = SessionStatus(updated_at_ms=_now_ms())

    def delete(self, session_id: str) -> Optional[Any]:
        self._status.pop(session_id, None)
        return self._clients.pop(session_id, None)

    def keys(self) -> list[str]:
        return sorted(self._clients)

    def status(self, session_id: str) -> Optional[SessionStatus]:
        return self._status.get(session_id)

    def update_status(self, session_id: str, **fields: Any) -> Optional[SessionStatus]:
        st = self._status.get(session_id)
        if st is None:
            return None
        for key, value in fields.items():
            if not hasattr(st, key):
                raise AttributeError(f"Unknown status field: {key}")
            setattr(st, key, value)
        st.updated_at_ms = _now_ms()
        return st

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[session_id] - 1
            if users:
                self._lock_users[session_id] = users
            else:
                del self._lock_users[session_id]
                del self._locks[session_id]
