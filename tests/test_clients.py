import json
import os

import pytest

from apps.api.clients import (
    REMOTE_WEB_VERSION_PREFIX,
    build_client_options,
    load_client_factory,
    web_version_cache,
)
from apps.api.config import GatewayConfig


def test_web_version_cache_modes():
    assert web_version_cache(None, "remote") is None
    assert web_version_cache("2.1", "local") == {"type": "local"}
    assert web_version_cache("2.1", "remote") == {
        "type": "remote",
        "remotePath": f"{REMOTE_WEB_VERSION_PREFIX}2.1.html",
    }
    assert web_version_cache("2.1", None) == {"type": "none"}
    assert web_version_cache("2.1", "none") == {"type": "none"}


def test_build_client_options_uses_session_folder():
    cfg = GatewayConfig(
        base_webhook_url="http://x",
        sessions_path="/data/sessions",
        chrome_bin="/usr/bin/chromium",
        headless=False,
        web_version="2.1",
        web_version_cache_type="local",
    )
    opts = build_client_options(cfg, "abc")
    assert opts.client_id == "abc"
    assert opts.auth_folder == os.path.join("/data/sessions", "session-abc")
    assert opts.executable_path == "/usr/bin/chromium"
    assert opts.headless is False
    assert opts.web_version_cache == {"type": "local"}
    assert "--no-sandbox" in opts.browser_args


def test_load_client_factory_resolves_callable():
    assert load_client_factory("json:dumps") is json.dumps


@pytest.mark.parametrize(
    "spec,match",
    [
        (None, "not set"),
        ("json", "Invalid"),
        ("json:", "Invalid"),
        ("no_such_module_for_clients:make", "Failed to import"),
        ("json:decoder", "not callable"),
    ],
)
def test_load_client_factory_errors(spec, match):
    with pytest.raises(RuntimeError, match=match):
        load_client_factory(spec)
