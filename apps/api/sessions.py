import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from apps.api.aio import BackgroundTasks, wait_for_nested_attr
from apps.api.clients import ClientFactory, build_client_options
from apps.api.config import GatewayConfig
from apps.api.events import EventBinder
from apps.api.messages import MessageStore
from apps.api.registry import SessionRegistry
from apps.api.webhooks import EventGate, WebhookDispatcher


log = logging.getLogger("courier_gateway")

SESSION_ID_RE = re.compile(r"^[\w-]+$", re.ASCII)
SESSION_FOLDER_RE = re.compile(r"^session-(.+)$")

SESSION_NOT_FOUND = "session_not_found"
SESSION_NOT_READY = "session_not_ready"
SESSION_NOT_CONNECTED = "session_not_connected"
SESSION_CONNECTED = "session_connected"
BROWSER_TAB_CLOSED = "browser tab closed"
SESSION_CLOSED = "session closed"
CONNECTED_STATE = "CONNECTED"


class PathTraversalError(ValueError):
    pass


@dataclass
class SessionValidation:
    success: bool
    state: Optional[str]
    message: str

    def to_json(self) -> dict[str, Any]:
        return {"success": self.success, "state": self.state, "message": self.message}


@dataclass
class SetupResult:
    success: bool
    message: str
    client: Optional[Any] = None

    def to_json(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message}


def is_valid_session_id(session_id: str) -> bool:
    return isinstance(session_id, str) and bool(SESSION_ID_RE.match(session_id))


class SessionManager:
    probe_timeout_s = 1.0
    probe_retries = 2
    state_timeout_s = 10.0
    teardown_timeout_s = 15.0
    browser_close_timeout_s = 5.0
    disconnect_poll_attempts = 10
    disconnect_poll_interval_s = 1.0

    def __init__(
        self,
        config: GatewayConfig,
        *,
        client_factory: ClientFactory,
        registry: Optional[SessionRegistry] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        message_store: Optional[MessageStore] = None,
        ready_timeout_s: float = 10.0,
    ) -> None:
        self._cfg = config
        self._client_factory = client_factory
        self._registry = registry if registry is not None else SessionRegistry()
        self._dispatcher = dispatcher if dispatcher is not None else WebhookDispatcher(
            api_key=config.api_key,
            timeout_s=config.webhook_timeout_s,
            max_in_flight=config.webhook_max_in_flight,
            queue_limit=config.webhook_queue_limit,
        )
        self.ready_timeout_s = ready_timeout_s
        self._root = Path(config.sessions_path)
        self._tasks = BackgroundTasks()
        self._binder = EventBinder(
            config=config,
            registry=self._registry,
            dispatcher=self._dispatcher,
            recreate=self.create,
            message_store=message_store,
            gate=EventGate(config.disabled_callbacks),
            ready_timeout_s=ready_timeout_s,
        )

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def dispatcher(self) -> WebhookDispatcher:
        return self._dispatcher

    @property
    def binder(self) -> EventBinder:
        return self._binder

    @property
    def sessions_root(self) -> Path:
        return self._root

    def create(self, session_id: str) -> SetupResult:
        if not is_valid_session_id(session_id):
            return SetupResult(success=False, message="Session should be alphanumerical or -")

        existing = self._registry.get(session_id)
        if existing is not None:
            return SetupResult(success=False, message=f"Session already exists for: {session_id}", client=existing)

        try:
            options = build_client_options(self._cfg, session_id)
            client = self._client_factory(options)
        except Exception as e:
            log.exception("Failed to build client for session %s", session_id)
            return SetupResult(success=False, message=str(e) or type(e).__name__)

        self._registry.set(session_id, client)
        self._binder.bind(client, session_id)
        self._tasks.spawn(self._initialize(client, session_id))
        log.info("Session %s initiated", session_id)
        return SetupResult(success=True, message="Session initiated successfully", client=client)

    async def _initialize(self, client: Any, session_id: str) -> None:
        try:
            await client.initialize()
        except Exception as e:
            msg = str(e) or type(e).__name__
            log.warning("Initialize error for session %s: %s", session_id, msg)
            if self._registry.get(session_id) is client:
                self._registry.update_status(session_id, last_error=msg)

    async def validate(self, session_id: str) -> SessionValidation:
        async with self._registry.locked(session_id):
            return await self._validate(session_id)

    async def _validate(self, session_id: str) -> SessionValidation:
        client = self._registry.get(session_id)
        if client is None:
            return SessionValidation(success=False, state=None, message=SESSION_NOT_FOUND)

        try:
            try:
                await wait_for_nested_attr(client, "pup_page", max_wait_s=self.ready_timeout_s)
            except TimeoutError:
                return SessionValidation(success=False, state=None, message=SESSION_NOT_READY)

            failures = 0
            while True:
                page = client.pup_page
                try:
                    if page is None or page.is_closed():
                        return SessionValidation(success=False, state=None, message=BROWSER_TAB_CLOSED)
                    await asyncio.wait_for(page.evaluate("1"), timeout=self.probe_timeout_s)
                    break
                except Exception:
                    if failures >= self.probe_retries:
                        return SessionValidation(success=False, state=None, message=SESSION_CLOSED)
                    failures += 1

            try:
                state = await asyncio.wait_for(client.get_state(), timeout=self.state_timeout_s)
            except asyncio.TimeoutError:
                state = None
            state = str(state) if state is not None else None
            self._registry.update_status(session_id, last_state=state)

            if state != CONNECTED_STATE:
                return SessionValidation(success=False, state=state, message=SESSION_NOT_CONNECTED)
            return SessionValidation(success=True, state=state, message=SESSION_CONNECTED)
        except Exception as e:
            log.exception("Failed to validate session %s", session_id)
            return SessionValidation(success=False, state=None, message=str(e) or type(e).__name__)

    @staticmethod
    def _detach_page_listeners(client: Any) -> None:
        page = getattr(client, "pup_page", None)
        if page is None:
            return
        for event in ("close", "error"):
            page.remove_all_listeners(event)

    async def restart(self, session_id: str) -> Any:
        async with self._registry.locked(session_id):
            validation = await self._validate(session_id)
            if validation.message == SESSION_NOT_FOUND:
                return validation
            client = self._registry.get(session_id)
            if client is not None:
                self._detach_page_listeners(client)
                await self._shutdown_browser(client, session_id)
                self._registry.delete(session_id)
            log.info("Restarting session %s", session_id)
            return self.create(session_id)

    async def _shutdown_browser(self, client: Any, session_id: str) -> None:
        browser = getattr(client, "pup_browser", None)
        if browser is None:
            return

        async def _close() -> None:
            pages = await browser.pages()
            await asyncio.gather(*(p.close() for p in pages or []))
            await browser.close()

        try:
            await asyncio.wait_for(_close(), timeout=self.browser_close_timeout_s)
        except Exception as e:
            log.warning(
                "Browser for session %s did not close cleanly (%s); killing process",
                session_id,
                str(e) or type(e).__name__,
            )
            try:
                proc = browser.process()
                if proc is not None:
                    proc.kill()
            except Exception:
                log.exception("Failed to kill browser process for session %s", session_id)

    async def delete(self, session_id: str, validation: SessionValidation) -> None:
        async with self._registry.locked(session_id):
            await self._delete(session_id, validation)

    async def _delete(self, session_id: str, validation: SessionValidation) -> None:
        try:
            client = self._registry.get(session_id)
            if client is not None:
                self._detach_page_listeners(client)
                if validation.success:
                    log.info("Logging out session %s", session_id)
                    if not await self._teardown(client, session_id, "logout"):
                        await self._teardown(client, session_id, "destroy")
                else:
                    log.info("Destroying session %s (%s)", session_id, validation.message)
                    await self._teardown(client, session_id, "destroy")
                await self._wait_for_browser_disconnect(client)
            await self._delete_session_folder(session_id)
        finally:
            self._registry.delete(session_id)

    async def _teardown(self, client: Any, session_id: str, action: str) -> bool:
        try:
            await asyncio.wait_for(getattr(client, action)(), timeout=self.teardown_timeout_s)
            return True
        except Exception as e:
            log.warning("Client %s failed for session %s: %s", action, session_id, str(e) or type(e).__name__)
            return False

    async def _wait_for_browser_disconnect(self, client: Any) -> None:
        browser = getattr(client, "pup_browser", None)
        attempts = 0
        while browser is not None and attempts < self.disconnect_poll_attempts:
            try:
                connected = bool(browser.is_connected())
            except Exception:
                connected = False
            if not connected:
                return
            await asyncio.sleep(self.disconnect_poll_interval_s)
            attempts += 1

    def _delete_session_folder_sync(self, session_id: str) -> bool:
        target = os.path.join(str(self._root), f"session-{session_id}")
        resolved_target = os.path.realpath(target)
        resolved_root = os.path.realpath(str(self._root))
        if not resolved_target.startswith(resolved_root + os.sep):
            raise PathTraversalError("Invalid path: Directory traversal detected")
        if not os.path.lexists(resolved_target):
            return False
        try:
            shutil.rmtree(resolved_target)
        except FileNotFoundError:
            return False
        return True

    async def _delete_session_folder(self, session_id: str) -> None:
        try:
            removed = await asyncio.to_thread(self._delete_session_folder_sync, session_id)
        except Exception:
            log.exception("Folder deletion error for session %s", session_id)
            raise
        if removed:
            log.info("Deleted session folder for %s", session_id)

    def _scan_session_ids_sync(self) -> list[str]:
        try:
            names = sorted(os.listdir(self._root))
        except FileNotFoundError:
            return []
        out: list[str] = []
        for name in names:
            m = SESSION_FOLDER_RE.match(name)
            if m:
                out.append(m.group(1))
        return out

    async def list_session_ids(self) -> list[str]:
        return await asyncio.to_thread(self._scan_session_ids_sync)

    async def flush(self, only_inactive: bool) -> list[str]:
        deleted: list[str] = []
        for session_id in await self.list_session_ids():
            try:
                validation = await self.validate(session_id)
                if only_inactive and validation.success:
                    continue
                await self.delete(session_id, validation)
                deleted.append(session_id)
            except Exception:
                log.exception("Failed to flush session %s", session_id)
        log.info("Flushed %d session(s) (only_inactive=%s)", len(deleted), only_inactive)
        return deleted

    async def recover(self) -> list[str]:
        await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)
        restored: list[str] = []
        for session_id in await self.list_session_ids():
            log.info("Existing session %s detected", session_id)
            try:
                result = self.create(session_id)
            except Exception:
                log.exception("Failed to restore session %s", session_id)
                continue
            if result.success:
                restored.append(session_id)
            else:
                log.warning("Failed to restore session %s: %s", session_id, result.message)
        return restored

    async def shutdown(self) -> None:
        await self._tasks.cancel()
        await self._binder.tasks.cancel()
        await self._dispatcher.drain(timeout_s=5.0)
