import pytest
import pytest_asyncio

from apps.api.config import GatewayConfig
from apps.api.registry import SessionRegistry
from apps.api.sessions import SessionManager

from fakes import FakeClientFactory, RecordingDispatcher


@pytest.fixture
def sessions_root(tmp_path):
    root = tmp_path / "sessions"
    root.mkdir()
    return root


@pytest.fixture
def config(sessions_root, tmp_path):
    return GatewayConfig(
        base_webhook_url="http://hooks.local/callback",
        sessions_path=str(sessions_root),
        messages_path=str(tmp_path / "messages"),
    )


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest_asyncio.fixture
async def build_manager(client_factory, registry, dispatcher):
    built: list[SessionManager] = []

    def _build(cfg: GatewayConfig, **kwargs) -> SessionManager:
        m = SessionManager(
            cfg,
            client_factory=client_factory,
            registry=registry,
            dispatcher=dispatcher,
            ready_timeout_s=kwargs.pop("ready_timeout_s", 0.3),
            **kwargs,
        )
        m.probe_timeout_s = 0.05
        m.state_timeout_s = 0.2
        m.teardown_timeout_s = 0.2
        m.browser_close_timeout_s = 0.05
        m.disconnect_poll_interval_s = 0.01
        built.append(m)
        return m

    yield _build
    for m in built:
        await m.shutdown()


@pytest_asyncio.fixture
async def manager(build_manager, config):
    return build_manager(config)
