"""
Endpoint Health — per-endpoint health records, evaluation and persistence

Each platform keeps a map of endpoint URL -> EndpointHealth.  The map is
loaded once per manager session and written through to the option store on
every mutation (key ``<platform>_endpoint_health``).

Classification rules:
    - No record                    -> healthy (never tested, assume healthy)
    - status == unhealthy          -> healthy again only once RECOVERY_TIME
                                      has passed since unhealthy_since
    - failed within FAILURE_COOLDOWN -> unhealthy (short cooldown, even below
                                      the failure threshold)
    - otherwise                    -> healthy

Scoring (healthy endpoints only):
    100 - failure_count*10 + min(success_count*2, 20)
        - 20 if the last success is older than STALE_SUCCESS_AGE
    clamped at 0.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from platform_resilience.option_store import OptionStore, option_key

logger = logging.getLogger("endpoint_health")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FAILURE_THRESHOLD = 3        # consecutive failures before an endpoint is unhealthy
RECOVERY_TIME = 300          # seconds before an unhealthy endpoint may be retried
FAILURE_COOLDOWN = 60        # seconds an endpoint sits out after any failure
STALE_SUCCESS_AGE = 3600     # seconds after which a last success stops counting

BASE_SCORE = 100
FAILURE_PENALTY = 10
SUCCESS_BONUS = 2
MAX_SUCCESS_BONUS = 20
STALE_PENALTY = 20

HEALTH_OPTION = "endpoint_health"


class HealthStatus(str, Enum):
    """Persisted status of an endpoint."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class HealthClass(str, Enum):
    """Evaluated classification at a point in time."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RECOVERING = "recovering"   # unhealthy, but the recovery window has elapsed


# ===================================================================
# HEALTH RECORD
# ===================================================================

@dataclass
class EndpointHealth:
    """Counters and timestamps for a single endpoint.

    Timestamps are epoch seconds (``time.time()``).
    """

    success_count: int = 0
    failure_count: int = 0
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    last_error: Optional[str] = None
    status: HealthStatus = HealthStatus.HEALTHY
    unhealthy_since: Optional[float] = None

    def record_success(self, now: float) -> None:
        """Count a success and return the endpoint to healthy."""
        self.success_count += 1
        self.last_success = now
        self.failure_count = 0
        self.mark_healthy()

    def record_failure(self, now: float, error_message: Optional[str] = None,
                       threshold: int = FAILURE_THRESHOLD) -> bool:
        """Count a failure. Returns True when this call made the endpoint unhealthy."""
        self.failure_count += 1
        self.success_count = 0
        self.last_failure = now
        self.last_error = error_message
        if self.failure_count >= threshold:
            self.status = HealthStatus.UNHEALTHY
            # Stamped once per episode: past RECOVERY_TIME the endpoint stays
            # eligible on every further failure until a success resets it.
            if self.unhealthy_since is None:
                self.unhealthy_since = now
                return True
        return False

    def mark_healthy(self) -> None:
        self.status = HealthStatus.HEALTHY
        self.unhealthy_since = None

    def reset_after_probe(self) -> None:
        """Reinstate after a successful recovery probe.

        The probe proves the endpoint answers, so the post-failure cooldown
        ends with it; last_error is kept for diagnostics.
        """
        self.failure_count = 0
        self.last_failure = None
        self.mark_healthy()

    @property
    def is_unhealthy(self) -> bool:
        return self.status == HealthStatus.UNHEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> EndpointHealth:
        """Deserialize, tolerating missing keys and unknown status values."""
        try:
            status = HealthStatus(d.get("status", "healthy"))
        except ValueError:
            status = HealthStatus.HEALTHY
        last_error = d.get("last_error")
        return cls(
            success_count=max(0, int(d.get("success_count") or 0)),
            failure_count=max(0, int(d.get("failure_count") or 0)),
            last_success=_timestamp(d.get("last_success")),
            last_failure=_timestamp(d.get("last_failure")),
            last_error=str(last_error) if last_error is not None else None,
            status=status,
            unhealthy_since=_timestamp(d.get("unhealthy_since")),
        )


def _timestamp(value: Any) -> Optional[float]:
    """Epoch seconds, or None for anything that is not a number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


# ===================================================================
# EVALUATOR
# ===================================================================

def is_healthy(record: Optional[EndpointHealth], now: float) -> bool:
    """Return whether an endpoint with *record* may be used at *now*."""
    if record is None:
        return True

    if record.status == HealthStatus.UNHEALTHY:
        if record.unhealthy_since is None:
            return False
        return (now - record.unhealthy_since) > RECOVERY_TIME

    if record.last_failure is not None and (now - record.last_failure) < FAILURE_COOLDOWN:
        return False

    return True


def classify(record: Optional[EndpointHealth], now: float) -> HealthClass:
    """Three-way view of :func:`is_healthy` used for reporting."""
    if record is not None and record.status == HealthStatus.UNHEALTHY:
        return HealthClass.RECOVERING if is_healthy(record, now) else HealthClass.UNHEALTHY
    return HealthClass.HEALTHY if is_healthy(record, now) else HealthClass.UNHEALTHY


def score(record: Optional[EndpointHealth], now: float) -> int:
    """Rank an endpoint already judged healthy. Never negative."""
    if record is None:
        return BASE_SCORE

    value = BASE_SCORE
    value -= record.failure_count * FAILURE_PENALTY
    value += min(record.success_count * SUCCESS_BONUS, MAX_SUCCESS_BONUS)
    if record.last_success is not None and (now - record.last_success) > STALE_SUCCESS_AGE:
        value -= STALE_PENALTY
    return max(value, 0)


# ===================================================================
# HEALTH STORE
# ===================================================================

HealthMap = Dict[str, EndpointHealth]


class HealthStore:
    """Loads and saves a platform's endpoint health map through an OptionStore.

    Pure persistence: a missing, empty or malformed stored value is an empty
    map, never an error.
    """

    def __init__(self, store: OptionStore) -> None:
        self.store = store

    @staticmethod
    def key(platform: str) -> str:
        return option_key(platform, HEALTH_OPTION)

    def load(self, platform: str) -> HealthMap:
        return self._parse(platform, self.store.get(self.key(platform), {}))

    @staticmethod
    def _serialize(health: HealthMap) -> Dict[str, Any]:
        return {endpoint: record.to_dict() for endpoint, record in health.items()}

    @staticmethod
    def _parse(platform: str, raw: Any) -> HealthMap:
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed health data for '%s' (%s)",
                           platform, type(raw).__name__)
            return {}

        health: HealthMap = {}
        for endpoint, data in raw.items():
            if not isinstance(data, dict):
                continue
            try:
                health[endpoint] = EndpointHealth.from_dict(data)
            except (TypeError, ValueError) as exc:
                logger.warning("Failed to load health for %s: %s", endpoint, exc)
        return health

    def save(self, platform: str, health: HealthMap) -> None:
        self.store.set(self.key(platform), self._serialize(health))
        logger.debug("Saved health for '%s' (%d endpoints)", platform, len(health))

    def update(self, platform: str, mutator: Callable[[HealthMap], Any]) -> HealthMap:
        """Load, mutate in place and save as one step under the store lock."""
        updated: HealthMap = {}

        def _apply(raw: Any) -> Dict[str, Any]:
            health = self._parse(platform, raw)
            mutator(health)
            updated.update(health)
            return self._serialize(health)

        self.store.update(self.key(platform), _apply, {})
        return updated

    def clear(self, platform: str) -> None:
        self.store.delete(self.key(platform))
