import importlib
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from apps.api.config import GatewayConfig


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/117.0.0.0 Safari/537.36"
)
DEFAULT_BROWSER_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
)
REMOTE_WEB_VERSION_PREFIX = "https://raw.githubusercontent.com/wppconnect-team/wa-version/main/html/"


@dataclass(frozen=True)
class ClientOptions:
    client_id: str
    data_path: str
    user_agent: str = DEFAULT_USER_AGENT
    headless: bool = True
    executable_path: Optional[str] = None
    browser_args: tuple[str, ...] = DEFAULT_BROWSER_ARGS
    web_version: Optional[str] = None
    web_version_cache: Optional[dict[str, Any]] = field(default=None, hash=False)

    @property
    def auth_folder(self) -> str:
        return os.path.join(self.data_path, f"session-{self.client_id}")


def web_version_cache(web_version: Optional[str], cache_type: Optional[str]) -> Optional[dict[str, Any]]:
    if not web_version:
        return None
    mode = (cache_type or "").strip().lower()
    if mode == "local":
        return {"type": "local"}
    if mode == "remote":
        return {"type": "remote", "remotePath": f"{REMOTE_WEB_VERSION_PREFIX}{web_version}.html"}
    return {"type": "none"}


def build_client_options(cfg: GatewayConfig, session_id: str) -> ClientOptions:
    return ClientOptions(
        client_id=session_id,
        data_path=cfg.sessions_path,
        headless=cfg.headless,
        executable_path=cfg.chrome_bin,
        web_version=cfg.web_version,
        web_version_cache=web_version_cache(cfg.web_version, cfg.web_version_cache_type),
    )


ClientFactory = Callable[[ClientOptions], Any]


def load_client_factory(spec: Optional[str]) -> ClientFactory:
    if not spec:
        raise RuntimeError("CLIENT_FACTORY is not set (expected 'package.module:callable')")
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise RuntimeError(f"Invalid CLIENT_FACTORY '{spec}' (expected 'package.module:callable')")
    try:
        module = importlib.import_module(module_name)
    except Exception as e:
        raise RuntimeError(f"Failed to import client factory module '{module_name}'") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise RuntimeError(f"Client factory '{spec}' is not callable")
    return factory
