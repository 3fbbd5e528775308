import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from croniter import croniter


def _env_flag(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_str(environ: Mapping[str, str], name: str) -> Optional[str]:
    raw = environ.get(name)
    if raw is None:
        return None
    return raw.strip() or None


@dataclass(frozen=True)
class GatewayConfig:
    base_webhook_url: str
    sessions_path: str = "./sessions"
    messages_path: str = "./messages"
    api_key: Optional[str] = None
    set_messages_as_seen: bool = False
    disabled_callbacks: tuple[str, ...] = ()
    web_version: Optional[str] = None
    web_version_cache_type: Optional[str] = None
    recover_sessions: bool = False
    enable_local_callback_example: bool = False
    chrome_bin: Optional[str] = None
    headless: bool = True
    client_factory: Optional[str] = None
    session_sweep_cron: Optional[str] = None
    webhook_timeout_s: float = 10.0
    webhook_max_in_flight: int = 4
    webhook_queue_limit: int = 1000

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        env = os.environ if environ is None else environ

        base_webhook_url = _env_str(env, "BASE_WEBHOOK_URL")
        if not base_webhook_url:
            raise RuntimeError("BASE_WEBHOOK_URL environment variable is not set")

        disabled_raw = env.get("DISABLED_CALLBACKS") or ""
        disabled = tuple(x.strip() for x in disabled_raw.split("|") if x.strip())

        cache_type = _env_str(env, "WEB_VERSION_CACHE_TYPE")
        if cache_type is not None:
            cache_type = cache_type.lower()
            if cache_type not in ("local", "remote", "none"):
                raise RuntimeError("WEB_VERSION_CACHE_TYPE must be one of: local, remote, none")

        sweep_cron = _env_str(env, "SESSION_SWEEP_CRON")
        if sweep_cron is not None:
            try:
                croniter(sweep_cron, datetime.now(timezone.utc)).get_next(datetime)
            except Exception as e:
                raise RuntimeError(f"Invalid SESSION_SWEEP_CRON: {e}") from e

        try:
            webhook_timeout_s = float(env.get("WEBHOOK_TIMEOUT_S") or "10")
        except ValueError as e:
            raise RuntimeError("WEBHOOK_TIMEOUT_S must be a number of seconds") from e

        try:
            max_in_flight = int(env.get("WEBHOOK_MAX_IN_FLIGHT") or "4")
            queue_limit = int(env.get("WEBHOOK_QUEUE_LIMIT") or "1000")
        except ValueError as e:
            raise RuntimeError("WEBHOOK_MAX_IN_FLIGHT and WEBHOOK_QUEUE_LIMIT must be integers") from e

        return GatewayConfig(
            base_webhook_url=base_webhook_url,
            sessions_path=_env_str(env, "SESSIONS_PATH") or "./sessions",
            messages_path=_env_str(env, "MESSAGES_PATH") or "./messages",
            api_key=_env_str(env, "API_KEY"),
            set_messages_as_seen=_env_flag(env, "SET_MESSAGES_AS_SEEN"),
            disabled_callbacks=disabled,
            web_version=_env_str(env, "WEB_VERSION"),
            web_version_cache_type=cache_type,
            recover_sessions=_env_flag(env, "RECOVER_SESSIONS"),
            enable_local_callback_example=_env_flag(env, "ENABLE_LOCAL_CALLBACK_EXAMPLE"),
            chrome_bin=_env_str(env, "CHROME_BIN"),
            headless=_env_flag(env, "HEADLESS", default=True),
            client_factory=_env_str(env, "CLIENT_FACTORY"),
            session_sweep_cron=sweep_cron,
            webhook_timeout_s=max(1.0, webhook_timeout_s),
            webhook_max_in_flight=max(1, max_in_flight),
            webhook_queue_limit=max(1, queue_limit),
        )
