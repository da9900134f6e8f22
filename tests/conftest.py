"""
Shared fixtures for the Platform Resilience test suite.

Provides an in-memory option store, a controllable clock, a scripted probe
transport and mock aiohttp objects so that no test touches the network or
the real data directory.
"""

import asyncio
from typing import Dict, List, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from platform_resilience.option_store import MemoryOptionStore
from platform_resilience.platforms import PlatformConfig, PlatformRegistry
from platform_resilience.prober import EndpointProber, ProbeResponse

TWITTER_V2 = "https://api.twitter.com/2"
TWITTER_V1 = "https://api.twitter.com/1.1"

T0 = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_env(tmp_path, monkeypatch):
    """Keep module singletons and env config away from real state."""
    monkeypatch.setenv("PLATFORM_RESILIENCE_DATA_DIR", str(tmp_path / "resilience"))
    monkeypatch.setenv("PLATFORM_RESILIENCE_CONFIG", str(tmp_path / "no-platforms.json"))
    monkeypatch.delenv("PLATFORM_RESILIENCE_KEY_PREFIX", raising=False)

    import platform_resilience.fallback_manager as fm
    import platform_resilience.option_store as os_mod
    import platform_resilience.platforms as pl

    monkeypatch.setattr(os_mod, "_default_store", None)
    monkeypatch.setattr(pl, "_registry", None)
    monkeypatch.setattr(fm, "_managers", {})
    yield


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Store / registry
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_store():
    return MemoryOptionStore()


@pytest.fixture
def registry():
    """Registry with built-in endpoints plus auth config for two platforms."""
    reg = PlatformRegistry()
    reg.register(PlatformConfig(
        slug="facebook",
        auth_url="https://www.facebook.com/v18.0/dialog/oauth",
        client_id="fb-app",
        redirect_uri="https://example.com/cb",
        scopes=["pages_manage_posts", "pages_read_engagement"],
        alternative_auth_methods=["api_key"],
        api_key="fb-key-123",
    ))
    reg.register(PlatformConfig(
        slug="linkedin",
        auth_url="https://www.linkedin.com/oauth/v2/authorization",
        client_id="li-client",
        redirect_uri="https://example.com/li",
        scopes=["w_member_social", "r_liteprofile"],
    ))
    return reg


# ---------------------------------------------------------------------------
# Probe transport
# ---------------------------------------------------------------------------

class ScriptedTransport:
    """Probe transport answering from a url -> status / exception table."""

    def __init__(self, responses: Dict[str, Union[int, BaseException]] = None,
                 default: Union[int, BaseException] = 200, delay: float = 0.0) -> None:
        self.responses = dict(responses or {})
        self.default = default
        self.delay = delay
        self.calls: List[str] = []
        self.closed = 0

    async def get(self, url, timeout):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = self.responses.get(url, self.default)
        if isinstance(answer, BaseException):
            raise answer
        return ProbeResponse(status_code=answer, body="{}")

    async def close(self):
        self.closed += 1


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def prober(transport):
    return EndpointProber(transport=transport, timeout=1.0)


@pytest.fixture
def make_manager(memory_store, registry, prober, clock):
    """Factory for FallbackManager wired to the in-memory fixtures."""
    from platform_resilience.fallback_manager import FallbackManager

    def _make(platform="twitter", **overrides):
        kwargs = dict(store=memory_store, registry=registry, prober=prober, clock=clock)
        kwargs.update(overrides)
        return FallbackManager(platform, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# aiohttp mocks
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response usable as an async context manager."""

    def _make(status=200, text=""):
        resp = AsyncMock()
        resp.status = status
        resp.text = AsyncMock(return_value=text)
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession whose get() returns a 200 response."""
    session = MagicMock()
    session.get = MagicMock(return_value=mock_aiohttp_response(200, "{}"))
    session.close = AsyncMock()
    session.closed = False
    return session
