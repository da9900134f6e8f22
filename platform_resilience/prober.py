"""
Endpoint probing for Platform Resilience.

Two jobs share one lightweight probe (``GET <endpoint><probe_path>`` with a
bounded timeout):

    RecoveryProber.attempt_recovery
        When every candidate of a platform is unhealthy, probe exactly one:
        the candidate with the fewest failures, oldest failure first on ties.
        A 2xx answer reinstates it; anything else returns None without
        trying the next candidate.

    EndpointProber.comprehensive_check
        Diagnostic sweep that probes every candidate and reports status,
        latency and HTTP code or error.  It never touches endpoint health.

Probe failures, including timeouts, are returned as ProbeResult data.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from platform_resilience.endpoint_health import EndpointHealth, HealthMap, HealthStore

logger = logging.getLogger("prober")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_PROBE_TIMEOUT = float(os.getenv("PLATFORM_RESILIENCE_PROBE_TIMEOUT", "10"))
PROBE_USER_AGENT = "Platform-Resilience Health Check/1.0"

PROBE_HEALTHY = "healthy"
PROBE_DEGRADED = "degraded"
PROBE_ERROR = "error"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ProbeResponse:
    """What the transport hands back for a completed request."""
    status_code: int
    body: str = ""


@dataclass
class ProbeResult:
    """Outcome of probing one endpoint."""

    endpoint: str
    status: str
    response_time: float
    http_code: Optional[int] = None
    error: Optional[str] = None
    checked_at: str = field(default_factory=_now_iso)

    @property
    def ok(self) -> bool:
        return self.status == PROBE_HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if self.http_code is None:
            d.pop("http_code")
        if self.error is None:
            d.pop("error")
        return d


# ===================================================================
# TRANSPORT
# ===================================================================

class AiohttpProbeTransport:
    """Minimal GET transport on an aiohttp session.

    The session is created lazily and reused; call :meth:`close` (or use
    ``async with``) when done.
    """

    def __init__(self, user_agent: str = PROBE_USER_AGENT) -> None:
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=10, ttl_dns_cache=300)
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                connector=connector,
            )
        return self._session

    async def get(self, url: str, timeout: float) -> ProbeResponse:
        """GET *url*. Raises aiohttp.ClientError or asyncio.TimeoutError on failure."""
        session = await self._get_session()
        timeout_config = aiohttp.ClientTimeout(total=timeout)
        async with session.get(url, timeout=timeout_config, allow_redirects=True) as resp:
            body = await resp.text()
            return ProbeResponse(status_code=resp.status, body=body)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# ===================================================================
# PROBER
# ===================================================================

class EndpointProber:
    """Runs liveness probes through a transport.

    Parameters
    ----------
    transport:
        Anything with ``async get(url, timeout) -> ProbeResponse``.
        Defaults to :class:`AiohttpProbeTransport`.
    timeout:
        Seconds before a probe counts as failed.
    """

    def __init__(self, transport: Optional[Any] = None,
                 timeout: float = DEFAULT_PROBE_TIMEOUT) -> None:
        self.transport = transport if transport is not None else AiohttpProbeTransport()
        self.timeout = timeout

    @staticmethod
    def probe_url(endpoint: str, probe_path: str) -> str:
        if not probe_path:
            return endpoint
        return endpoint.rstrip("/") + "/" + probe_path.lstrip("/")

    async def probe(self, endpoint: str, probe_path: str = "") -> ProbeResult:
        url = self.probe_url(endpoint, probe_path)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.transport.get(url, self.timeout), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - start
            logger.info("Probe of %s timed out after %.1fs", url, elapsed)
            return ProbeResult(endpoint, PROBE_ERROR, round(elapsed, 4),
                               error=f"Timed out after {self.timeout:g}s")
        except Exception as exc:
            elapsed = time.monotonic() - start
            logger.info("Probe of %s failed: %s", url, exc)
            return ProbeResult(endpoint, PROBE_ERROR, round(elapsed, 4),
                               error=str(exc) or type(exc).__name__)

        elapsed = round(time.monotonic() - start, 4)
        status = PROBE_HEALTHY if 200 <= response.status_code < 300 else PROBE_DEGRADED
        logger.debug("Probe of %s -> HTTP %d in %.3fs", url, response.status_code, elapsed)
        return ProbeResult(endpoint, status, elapsed, http_code=response.status_code)

    async def comprehensive_check(self, platform: str, endpoints: List[str],
                                  probe_path: str = "") -> Dict[str, Any]:
        """Probe every endpoint concurrently and build the diagnostic report."""
        results = await asyncio.gather(*(self.probe(ep, probe_path) for ep in endpoints))
        report = {
            "platform": platform,
            "check_time": _now_iso(),
            "results": {r.endpoint: r.to_dict() for r in results},
        }
        healthy = sum(1 for r in results if r.ok)
        logger.info("Comprehensive check for %s: %d/%d endpoints healthy",
                    platform, healthy, len(results))
        return report

    async def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()


# ===================================================================
# RECOVERY
# ===================================================================

def rank_recovery_candidates(candidates: List[str], health: HealthMap) -> List[str]:
    """Fewest failures first, then oldest last_failure; stable otherwise."""

    def _key(endpoint: str):
        record = health.get(endpoint) or EndpointHealth()
        return (record.failure_count, record.last_failure or 0)

    return sorted(candidates, key=_key)


class RecoveryProber:
    """Reinstates one unhealthy endpoint per selection attempt."""

    def __init__(self, prober: EndpointProber, health_store: HealthStore) -> None:
        self.prober = prober
        self.health_store = health_store

    async def attempt_recovery(self, platform: str, candidates: List[str],
                               health: HealthMap, probe_path: str = "") -> Optional[str]:
        """Probe the best-ranked candidate; on success reset and persist it.

        *health* is the caller's cached map and is refreshed in place with
        the persisted state after a successful recovery.
        """
        if not candidates:
            return None

        endpoint = rank_recovery_candidates(candidates, health)[0]
        result = await self.prober.probe(endpoint, probe_path)

        if not result.ok:
            logger.warning(
                "Recovery probe for %s endpoint %s failed (%s)",
                platform, endpoint, result.error or f"HTTP {result.http_code}",
            )
            return None

        def _reinstate(current: HealthMap) -> None:
            current.setdefault(endpoint, EndpointHealth()).reset_after_probe()

        updated = self.health_store.update(platform, _reinstate)
        health.clear()
        health.update(updated)
        logger.info("Recovered %s endpoint %s after successful probe (%.3fs)",
                    platform, endpoint, result.response_time)
        return endpoint
