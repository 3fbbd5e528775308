import pytest

from apps.api.config import GatewayConfig


def test_from_env_reads_defaults():
    cfg = GatewayConfig.from_env({"BASE_WEBHOOK_URL": "http://hooks.local/cb"})
    assert cfg.base_webhook_url == "http://hooks.local/cb"
    assert cfg.sessions_path == "./sessions"
    assert cfg.api_key is None
    assert cfg.disabled_callbacks == ()
    assert cfg.headless is True
    assert cfg.recover_sessions is False
    assert cfg.session_sweep_cron is None


def test_from_env_parses_all_fields():
    cfg = GatewayConfig.from_env(
        {
            "BASE_WEBHOOK_URL": "http://hooks.local/cb",
            "SESSIONS_PATH": "/data/sessions",
            "API_KEY": "secret",
            "SET_MESSAGES_AS_SEEN": "TRUE",
            "DISABLED_CALLBACKS": "message_ack| unread_count |",
            "WEB_VERSION": "2.2328.5",
            "WEB_VERSION_CACHE_TYPE": "Remote",
            "RECOVER_SESSIONS": "1",
            "HEADLESS": "false",
            "SESSION_SWEEP_CRON": "*/15 * * * *",
            "WEBHOOK_TIMEOUT_S": "3.5",
        }
    )
    assert cfg.sessions_path == "/data/sessions"
    assert cfg.api_key == "secret"
    assert cfg.set_messages_as_seen is True
    assert cfg.disabled_callbacks == ("message_ack", "unread_count")
    assert cfg.web_version_cache_type == "remote"
    assert cfg.recover_sessions is True
    assert cfg.headless is False
    assert cfg.session_sweep_cron == "*/15 * * * *"
    assert cfg.webhook_timeout_s == 3.5


def test_from_env_requires_base_webhook_url():
    with pytest.raises(RuntimeError, match="BASE_WEBHOOK_URL"):
        GatewayConfig.from_env({})


def test_from_env_rejects_unknown_cache_type():
    with pytest.raises(RuntimeError, match="WEB_VERSION_CACHE_TYPE"):
        GatewayConfig.from_env({"BASE_WEBHOOK_URL": "http://x", "WEB_VERSION_CACHE_TYPE": "disk"})


def test_from_env_rejects_invalid_cron():
    with pytest.raises(RuntimeError, match="SESSION_SWEEP_CRON"):
        GatewayConfig.from_env({"BASE_WEBHOOK_URL": "http://x", "SESSION_SWEEP_CRON": "not a cron"})


def test_from_env_rejects_non_numeric_timeout():
    with pytest.raises(RuntimeError, match="WEBHOOK_TIMEOUT_S"):
        GatewayConfig.from_env({"BASE_WEBHOOK_URL": "http://x", "WEBHOOK_TIMEOUT_S": "soon"})


def test_from_env_reads_delivery_limits():
    cfg = GatewayConfig.from_env(
        {"BASE_WEBHOOK_URL": "http://x", "WEBHOOK_MAX_IN_FLIGHT": "2", "WEBHOOK_QUEUE_LIMIT": "0"}
    )
    assert cfg.webhook_max_in_flight == 2
    assert cfg.webhook_queue_limit == 1
    with pytest.raises(RuntimeError, match="WEBHOOK_MAX_IN_FLIGHT"):
        GatewayConfig.from_env({"BASE_WEBHOOK_URL": "http://x", "WEBHOOK_MAX_IN_FLIGHT": "many"})
