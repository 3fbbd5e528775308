import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from apps.api.aio import BackgroundTasks, wait_for_nested_attr
from apps.api.config import GatewayConfig
from apps.api.messages import MessageStore, field_of, message_serialized_id
from apps.api.registry import SessionRegistry
from apps.api.webhooks import EventGate, WebhookDispatcher, resolve_webhook_url


log = logging.getLogger("courier_gateway")

TEXT_MESSAGE_TYPE = "chat"
MEDIA_EVENT = "media"
SIDE_CALL_TIMEOUT_S = 30.0
MEDIA_DOWNLOAD_TIMEOUT_S = 60.0
WATCHDOG_DESTROY_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class EventRoute:
    event: str
    shape: Callable[..., Optional[dict[str, Any]]]
    data_type: Optional[str] = None

    @property
    def webhook_type(self) -> str:
        return self.data_type or self.event


def _no_payload(*_args: Any) -> None:
    return None


def _single(key: str) -> Callable[..., dict[str, Any]]:
    def shape(value: Any = None, *_rest: Any) -> dict[str, Any]:
        return {key: value}

    return shape


def _named(*keys: str) -> Callable[..., dict[str, Any]]:
    def shape(*args: Any) -> dict[str, Any]:
        padded = list(args) + [None] * max(0, len(keys) - len(args))
        return dict(zip(keys, padded))

    return shape


EVENT_ROUTES: tuple[EventRoute, ...] = (
    EventRoute("auth_failure", _single("msg"), data_type="status"),
    EventRoute("authenticated", _no_payload),
    EventRoute("call", _single("call")),
    EventRoute("change_state", _single("state")),
    EventRoute("disconnected", _single("reason")),
    EventRoute("group_join", _single("notification")),
    EventRoute("group_leave", _single("notification")),
    EventRoute("group_update", _single("notification")),
    EventRoute("loading_screen", _named("percent", "message")),
    EventRoute("media_uploaded", _single("message")),
    EventRoute("message", _single("message")),
    EventRoute("message_ack", _named("message", "ack")),
    EventRoute("message_create", _single("message")),
    EventRoute("message_reaction", _single("reaction")),
    EventRoute("message_edit", _named("message", "newBody", "prevBody")),
    EventRoute("message_ciphertext", _single("message")),
    EventRoute("message_revoke_everyone", _single("message")),
    EventRoute("message_revoke_me", _single("message")),
    EventRoute("qr", _single("qr")),
    EventRoute("ready", _no_payload),
    EventRoute("contact_changed", _named("message", "oldId", "newId", "isContact")),
    EventRoute("chat_removed", _single("chat")),
    EventRoute("chat_archived", _named("chat", "currState", "prevState")),
    EventRoute("unread_count", _single("chat")),
)


@dataclass(frozen=True)
class BindContext:
    session_id: str
    webhook_url: str
    enabled: bool
    client: Any


class EventBinder:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        registry: SessionRegistry,
        dispatcher: WebhookDispatcher,
        recreate: Callable[[str], Any],
        message_store: Optional[MessageStore] = None,
        gate: Optional[EventGate] = None,
        ready_timeout_s: float = 10.0,
    ) -> None:
        self._cfg = config
        self._registry = registry
        self._dispatcher = dispatcher
        self._recreate = recreate
        self._store = message_store
        self._gate = gate or EventGate(config.disabled_callbacks)
        self._ready_timeout_s = ready_timeout_s
        self._tasks = BackgroundTasks()
        self._hooks: dict[str, Callable[..., None]] = {
            "qr": self._on_qr,
            "authenticated": self._on_authenticated,
            "auth_failure": self._on_auth_failure,
            "ready": self._on_ready,
            "change_state": self._on_change_state,
            "disconnected": self._on_disconnected,
            "message": self._on_message,
            "message_create": self._on_message_create,
            "message_ack": self._on_message_ack,
        }

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    def bind(self, client: Any, session_id: str) -> list[str]:
        webhook_url = resolve_webhook_url(session_id, self._cfg.base_webhook_url)
        bound: list[str] = []
        for route in EVENT_ROUTES:
            enabled = self._gate.is_enabled(route.event)
            hook = self._hooks.get(route.event)
            if not enabled and hook is None:
                continue
            ctx = BindContext(session_id=session_id, webhook_url=webhook_url, enabled=enabled, client=client)
            client.on(route.event, self._listener(route, ctx, hook))
            bound.append(route.event)

        if self._cfg.recover_sessions:
            self._tasks.spawn(self._arm_watchdog(client, session_id))
        return bound

    def _listener(self, route: EventRoute, ctx: BindContext, hook: Optional[Callable[..., None]]) -> Callable[..., None]:
        def listener(*args: Any) -> None:
            if self._registry.get(ctx.session_id) is not ctx.client:
                log.debug("Ignoring %s from a replaced client of session %s", route.event, ctx.session_id)
                return
            try:
                if hook is not None:
                    hook(ctx, *args)
                if ctx.enabled:
                    self._dispatcher.dispatch(ctx.webhook_url, ctx.session_id, route.webhook_type, route.shape(*args))
            except Exception:
                log.exception("Event handler failed for %s on session %s", route.event, ctx.session_id)

        return listener

    # Status hooks run whether or not the webhook for the event is enabled.

    def _on_qr(self, ctx: BindContext, qr: Any = None, *_args: Any) -> None:
        self._registry.update_status(ctx.session_id, qr=qr)
        log.info("QR code received for session %s", ctx.session_id)

    def _on_authenticated(self, ctx: BindContext, *_args: Any) -> None:
        self._registry.update_status(ctx.session_id, qr=None, last_error=None)
        log.info("Session %s authenticated", ctx.session_id)

    def _on_auth_failure(self, ctx: BindContext, msg: Any = None, *_args: Any) -> None:
        self._registry.update_status(ctx.session_id, last_error=str(msg) if msg is not None else "auth_failure")
        log.warning("Authentication failed for session %s: %s", ctx.session_id, msg)

    def _on_ready(self, ctx: BindContext, *_args: Any) -> None:
        self._registry.update_status(ctx.session_id, qr=None, last_state="CONNECTED")
        log.info("Session %s ready", ctx.session_id)

    def _on_change_state(self, ctx: BindContext, state: Any = None, *_args: Any) -> None:
        self._registry.update_status(ctx.session_id, last_state=str(state) if state is not None else None)

    def _on_disconnected(self, ctx: BindContext, reason: Any = None, *_args: Any) -> None:
        self._registry.update_status(ctx.session_id, last_error=str(reason) if reason is not None else "disconnected")
        log.warning("Session %s disconnected: %s", ctx.session_id, reason)

    def _on_message(self, ctx: BindContext, message: Any = None, *_args: Any) -> None:
        log.info("Message received for session %s from %s", ctx.session_id, field_of(message, "from"))
        self._handle_message(ctx, message, with_media=True)

    def _on_message_create(self, ctx: BindContext, message: Any = None, *_args: Any) -> None:
        log.info("Message created for session %s from %s", ctx.session_id, field_of(message, "from"))
        self._handle_message(ctx, message, with_media=False)

    def _on_message_ack(self, ctx: BindContext, message: Any = None, *_args: Any) -> None:
        if ctx.enabled and self._cfg.set_messages_as_seen:
            self._tasks.spawn(self._send_seen(ctx.session_id, message))

    def _handle_message(self, ctx: BindContext, message: Any, *, with_media: bool) -> None:
        if message is None:
            return
        if ctx.enabled and self._store is not None:
            if field_of(message, "type") == TEXT_MESSAGE_TYPE:
                self._tasks.spawn(self._store.upsert_message(ctx.session_id, message))
            if with_media and field_of(message, "has_media") and self._gate.is_enabled(MEDIA_EVENT):
                self._tasks.spawn(self._save_media(ctx, message))
        if self._cfg.set_messages_as_seen:
            self._tasks.spawn(self._send_seen(ctx.session_id, message))

    async def _save_media(self, ctx: BindContext, message: Any) -> None:
        try:
            media = await asyncio.wait_for(message.download_media(), timeout=MEDIA_DOWNLOAD_TIMEOUT_S)
        except Exception as e:
            log.warning(
                "Failed to download media for message %s in session %s: %s",
                message_serialized_id(message),
                ctx.session_id,
                str(e) or type(e).__name__,
            )
            return
        if self._store is not None:
            await self._store.upsert_media(ctx.session_id, message, media)
        self._dispatcher.dispatch(ctx.webhook_url, ctx.session_id, MEDIA_EVENT, {"messageMedia": media, "message": message})

    async def _send_seen(self, session_id: str, message: Any) -> None:
        try:
            chat = await asyncio.wait_for(message.get_chat(), timeout=SIDE_CALL_TIMEOUT_S)
            await asyncio.wait_for(chat.send_seen(), timeout=SIDE_CALL_TIMEOUT_S)
        except Exception as e:
            log.warning("Failed to mark chat as seen for session %s: %s", session_id, str(e) or type(e).__name__)

    async def _arm_watchdog(self, client: Any, session_id: str) -> None:
        try:
            page = await wait_for_nested_attr(client, "pup_page", max_wait_s=self._ready_timeout_s)
        except TimeoutError:
            log.warning("Page for session %s never appeared; auto-recovery not armed", session_id)
            return

        fired = False

        def trigger(reason: str) -> None:
            nonlocal fired
            if fired:
                return
            fired = True
            # Detach the sibling listener so a crash burst (error then close) recovers once.
            for event in ("close", "error"):
                try:
                    page.remove_all_listeners(event)
                except Exception:
                    log.debug("Failed to detach %s listener for session %s", event, session_id)
            log.warning("Browser page %s for session %s. Restoring", reason, session_id)
            try:
                self._tasks.spawn(self._restore(client, session_id))
            except RuntimeError:
                log.error("No running event loop; cannot restore session %s", session_id)

        page.once("close", lambda *_: trigger("closed"))
        page.once("error", lambda *_: trigger("crashed"))

    async def _restore(self, client: Any, session_id: str) -> None:
        async with self._registry.locked(session_id):
            if self._registry.get(session_id) is not client:
                log.info("Session %s was replaced before recovery; skipping", session_id)
                return
            self._registry.delete(session_id)
            try:
                await asyncio.wait_for(client.destroy(), timeout=WATCHDOG_DESTROY_TIMEOUT_S)
            except Exception as e:
                log.debug("Destroy of dead client for session %s failed: %s", session_id, str(e) or type(e).__name__)
            result = self._recreate(session_id)
            if not getattr(result, "success", False):
                log.error("Failed to restore session %s: %s", session_id, getattr(result, "message", result))
