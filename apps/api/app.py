import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api.aio import wait_for_nested_attr
from apps.api.clients import load_client_factory
from apps.api.config import GatewayConfig
from apps.api.messages import MessageStore, resolve_message
from apps.api.registry import SessionRegistry
from apps.api.sessions import SESSION_NOT_FOUND, SessionManager, is_valid_session_id
from apps.api.sweeper import InactiveSessionSweeper
from apps.api.webhooks import WebhookDispatcher, to_jsonable


log = logging.getLogger("courier_gateway")


app = FastAPI(title="Courier gateway", version="0.1.0")

origins_raw = os.getenv("COURIER_CORS_ORIGINS") or ""
cors_origins = [o.strip() for o in origins_raw.split(",") if o.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def _startup():
    cfg = GatewayConfig.from_env()
    registry = SessionRegistry()
    dispatcher = WebhookDispatcher(
        api_key=cfg.api_key,
        timeout_s=cfg.webhook_timeout_s,
        max_in_flight=cfg.webhook_max_in_flight,
        queue_limit=cfg.webhook_queue_limit,
    )
    manager = SessionManager(
        cfg,
        client_factory=load_client_factory(cfg.client_factory),
        registry=registry,
        dispatcher=dispatcher,
        message_store=MessageStore(Path(cfg.messages_path)),
    )
    app.state.config = cfg
    app.state.session_manager = manager
    app.state.sweeper = None

    restored = await manager.recover()
    if restored:
        log.info("Restored %d session(s) from %s", len(restored), cfg.sessions_path)

    if cfg.session_sweep_cron:
        sweeper = InactiveSessionSweeper(manager, cfg.session_sweep_cron)
        sweeper.start()
        app.state.sweeper = sweeper


@app.on_event("shutdown")
async def _shutdown():
    sweeper: Optional[InactiveSessionSweeper] = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        await sweeper.stop()
    manager: Optional[SessionManager] = getattr(app.state, "session_manager", None)
    if manager is not None:
        await manager.shutdown()


def _get_config_or_500() -> GatewayConfig:
    cfg: Optional[GatewayConfig] = getattr(app.state, "config", None)
    if cfg is None:
        raise HTTPException(status_code=500, detail="Gateway is not configured")
    return cfg


def _get_manager_or_500() -> SessionManager:
    manager: Optional[SessionManager] = getattr(app.state, "session_manager", None)
    if manager is None:
        raise HTTPException(status_code=500, detail="Session manager is not initialized")
    return manager


def _http_require_api_key(request: Request):
    expected = _get_config_or_500().api_key
    if expected is None:
        return
    provided = request.headers.get("x-api-key")
    if provided != expected:
        raise HTTPException(status_code=403, detail="Invalid API key")


def _require_session_id(session_id: str):
    if not is_valid_session_id(session_id):
        raise HTTPException(status_code=422, detail="Session should be alphanumerical or -")


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


@app.get("/ping")
async def ping():
    return {"success": True, "message": "pong"}


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fp:
        fp.write(line + "\r\n")


@app.post("/localCallbackExample")
async def local_callback_example(request: Request):
    cfg = _get_config_or_500()
    if not cfg.enable_local_callback_example:
        raise HTTPException(status_code=404, detail="Not Found")
    _http_require_api_key(request)
    log_path = Path(cfg.sessions_path) / "message_log.txt"
    try:
        body = await request.json()
    except Exception as e:
        await asyncio.to_thread(_append_line, log_path, f"(ERROR) {e}")
        return _error_response(400, "Invalid JSON body")
    if isinstance(body, dict) and body.get("dataType") == "qr":
        data = body.get("data")
        qr = data.get("qr") if isinstance(data, dict) else None
        log.info("QR for session %s: %s", body.get("sessionId"), qr)
    await asyncio.to_thread(_append_line, log_path, json.dumps(body, ensure_ascii=False))
    return {"success": True}


@app.get("/session/start/{session_id}")
async def start_session(session_id: str, request: Request):
    _http_require_api_key(request)
    _require_session_id(session_id)
    manager = _get_manager_or_500()
    log.info("Starting session %s", session_id)
    result = manager.create(session_id)
    if not result.success:
        return _error_response(422, result.message)
    try:
        await wait_for_nested_attr(result.client, "pup_page", max_wait_s=manager.ready_timeout_s)
    except TimeoutError as e:
        return _error_response(500, str(e))
    return {"success": True, "message": result.message}


@app.get("/session/status/{session_id}")
async def status_session(session_id: str, request: Request):
    _http_require_api_key(request)
    _require_session_id(session_id)
    validation = await _get_manager_or_500().validate(session_id)
    return validation.to_json()


@app.get("/session/qr/{session_id}")
async def session_qr(session_id: str, request: Request):
    _http_require_api_key(request)
    _require_session_id(session_id)
    registry = _get_manager_or_500().registry
    status = registry.status(session_id)
    if not registry.has(session_id) or status is None:
        return {"success": False, "message": SESSION_NOT_FOUND}
    if status.qr:
        return {"success": True, "qr": status.qr}
    return {"success": False, "message": "qr code not ready or already scanned"}


@app.get("/session/restart/{session_id}")
async def restart_session(session_id: str, request: Request):
    _http_require_api_key(request)
    _require_session_id(session_id)
    manager = _get_manager_or_500()
    try:
        result = await manager.restart(session_id)
    except Exception as e:
        log.exception("Failed to restart session %s", session_id)
        return _error_response(500, str(e))
    if result.message == SESSION_NOT_FOUND:
        return result.to_json()
    if not result.success:
        return _error_response(500, result.message)
    return {"success": True, "message": "Restarted successfully"}


@app.get("/session/terminate/{session_id}")
async def terminate_session(session_id: str, request: Request):
    _http_require_api_key(request)
    _require_session_id(session_id)
    manager = _get_manager_or_500()
    validation = await manager.validate(session_id)
    if validation.message == SESSION_NOT_FOUND:
        return validation.to_json()
    try:
        await manager.delete(session_id, validation)
    except Exception as e:
        log.exception("Failed to terminate session %s", session_id)
        return _error_response(500, str(e))
    return {"success": True, "message": "Logged out successfully"}


async def _flush(only_inactive: bool) -> Any:
    try:
        deleted = await _get_manager_or_500().flush(only_inactive)
    except HTTPException:
        raise
    except Exception as e:
        log.exception("Failed to flush sessions")
        return _error_response(500, str(e))
    return {"success": True, "message": "Flush completed successfully", "sessions": deleted}


@app.get("/session/terminateInactive")
async def terminate_inactive_sessions(request: Request):
    _http_require_api_key(request)
    return await _flush(True)


@app.get("/session/terminateAll")
async def terminate_all_sessions(request: Request):
    _http_require_api_key(request)
    return await _flush(False)


@app.post("/message/getClassInfo/{session_id}")
async def message_class_info(session_id: str, request: Request):
    _http_require_api_key(request)
    _require_session_id(session_id)
    manager = _get_manager_or_500()
    validation = await manager.validate(session_id)
    if not validation.success:
        return _error_response(404, validation.message)

    try:
        body = await request.json()
    except Exception as e:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    chat_id = str(body.get("chatId") or "").strip()
    message_id = str(body.get("messageId") or "").strip()
    if not chat_id or not message_id:
        raise HTTPException(status_code=400, detail="Missing 'chatId' or 'messageId'")

    client = manager.registry.get(session_id)
    if client is None:
        return _error_response(404, SESSION_NOT_FOUND)
    try:
        message = await asyncio.wait_for(resolve_message(client, chat_id, message_id), timeout=30.0)
    except Exception as e:
        log.exception("Failed to resolve message %s in chat %s for session %s", message_id, chat_id, session_id)
        return _error_response(500, str(e) or type(e).__name__)
    if message is None:
        return _error_response(404, "Message not Found")
    return JSONResponse({"success": True, "message": json.loads(json.dumps(message, default=to_jsonable))})
