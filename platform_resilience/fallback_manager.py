"""
Fallback Manager — endpoint routing and recovery for social platforms

Decides *which* endpoint and *which* auth path an outbound API call should
use.  One manager per platform; the platform's health map is loaded once
when the manager is created and written through on every report.

Flow:
    endpoint = await manager.select_endpoint("post")   # before the call
    ... caller performs the request against endpoint ...
    manager.report_success(endpoint)                  # or report_failure()
    manager.handle_auth_failure(exc)                  # on 401/403

or let ``execute`` drive the loop:

    result = await manager.execute(publish, operation_type="post")

Usage:
    from platform_resilience.fallback_manager import get_fallback_manager

    manager = get_fallback_manager("twitter")
    endpoint = manager.select_endpoint_sync()
    health = manager.get_platform_health()

CLI:
    python -m platform_resilience.fallback_manager status --platform twitter
    python -m platform_resilience.fallback_manager select --platform twitter
    python -m platform_resilience.fallback_manager report --platform twitter --endpoint URL --failure "HTTP 503"
    python -m platform_resilience.fallback_manager reset --platform twitter [--endpoint URL]
    python -m platform_resilience.fallback_manager check --platform twitter [--force]
    python -m platform_resilience.fallback_manager auth-fail --platform twitter
    python -m platform_resilience.fallback_manager platforms
"""

from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import inspect
import json
import logging
import sys
import time
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Tuple

from platform_resilience.auth_fallback import AuthFallbackController, AuthFallbackResult
from platform_resilience.endpoint_health import (
    FAILURE_THRESHOLD,
    EndpointHealth,
    HealthMap,
    HealthStatus,
    HealthStore,
    classify,
    is_healthy,
    score,
)
from platform_resilience.errors import (
    AuthenticationFailedError,
    NoEndpointAvailableError,
    PlatformHTTPError,
    classify_error,
    is_auth_error,
)
from platform_resilience.option_store import OptionStore, get_option_store, option_key
from platform_resilience.platforms import PlatformConfig, PlatformRegistry, get_platform_registry
from platform_resilience.prober import EndpointProber, RecoveryProber

logger = logging.getLogger("fallback_manager")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OVERALL_HEALTHY = "healthy"
OVERALL_DEGRADED = "degraded"
OVERALL_UNHEALTHY = "unhealthy"

COMPREHENSIVE_OPTION = "comprehensive_health"

# Seconds before the CLI check re-probes instead of showing the stored sweep
HEALTH_CHECK_INTERVAL = 600

DEFAULT_MAX_ATTEMPTS = 2


# ---------------------------------------------------------------------------
# Async / sync bridge
# ---------------------------------------------------------------------------

def _run_sync(coro):
    """Run an async coroutine in a sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _format_ts(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ===================================================================
# FALLBACK MANAGER
# ===================================================================

class FallbackManager:
    """Endpoint selection, health feedback and auth fallback for one platform.

    Parameters
    ----------
    platform:
        Platform slug (``twitter``, ``facebook`` ...).  Unknown slugs use the
        generic endpoint list.
    store:
        Option store for health, reports and credentials.
    registry:
        Platform configuration source.
    prober:
        Probe runner used for recovery and comprehensive checks.
    auth_controller:
        Auth fallback handler; built on *store* when omitted.
    clock:
        Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        platform: str,
        store: Optional[OptionStore] = None,
        registry: Optional[PlatformRegistry] = None,
        prober: Optional[EndpointProber] = None,
        auth_controller: Optional[AuthFallbackController] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.platform = platform
        self.store = store if store is not None else get_option_store()
        self.registry = registry if registry is not None else get_platform_registry()
        self.config: PlatformConfig = self.registry.get(platform)
        self.prober = prober if prober is not None else EndpointProber()
        self.auth = auth_controller if auth_controller is not None else AuthFallbackController(self.store)
        self.clock = clock

        self.health_store = HealthStore(self.store)
        self.recovery = RecoveryProber(self.prober, self.health_store)
        self._lock = RLock()
        self._health: HealthMap = self.health_store.load(platform)
        logger.debug("FallbackManager for '%s' loaded %d health records",
                     platform, len(self._health))

    # -- health map access -------------------------------------------------

    @property
    def endpoints_health(self) -> HealthMap:
        """Snapshot of the cached health map."""
        with self._lock:
            return dict(self._health)

    def get_health(self, endpoint: str) -> Optional[EndpointHealth]:
        with self._lock:
            return self._health.get(endpoint)

    def reload(self) -> None:
        """Re-read the health map from the store."""
        with self._lock:
            self._health = self.health_store.load(self.platform)

    def _mutate(self, mutator: Callable[[HealthMap], Any]) -> None:
        with self._lock:
            self._health = self.health_store.update(self.platform, mutator)

    # -- selection ----------------------------------------------------------

    def candidate_endpoints(self, operation_type: str = "default") -> List[str]:
        return self.config.candidate_endpoints(operation_type)

    def partition(self, operation_type: str = "default") -> Tuple[List[str], List[str]]:
        """Split candidates into (healthy, unhealthy), preserving list order."""
        now = self.clock()
        healthy: List[str] = []
        unhealthy: List[str] = []
        with self._lock:
            for endpoint in self.candidate_endpoints(operation_type):
                if is_healthy(self._health.get(endpoint), now):
                    healthy.append(endpoint)
                else:
                    unhealthy.append(endpoint)
        return healthy, unhealthy

    def _pick_best(self, endpoints: List[str]) -> str:
        if len(endpoints) == 1:
            return endpoints[0]

        now = self.clock()
        with self._lock:
            scored = [(endpoint, score(self._health.get(endpoint), now)) for endpoint in endpoints]
        # Stable descending sort: equal scores keep candidate list order
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[0][0]

    async def select_endpoint(self, operation_type: str = "default") -> Optional[str]:
        """Best endpoint for *operation_type*, or None when none is available.

        Healthy candidates win by score.  When every candidate is unhealthy,
        exactly one is probed for recovery.
        """
        healthy, unhealthy = self.partition(operation_type)

        if healthy:
            endpoint = self._pick_best(healthy)
            logger.debug("Selected %s for %s/%s (%d healthy)",
                         endpoint, self.platform, operation_type, len(healthy))
            return endpoint

        if unhealthy:
            logger.info("All %d %s endpoints unhealthy, attempting recovery",
                        len(unhealthy), self.platform)
            with self._lock:
                health = dict(self._health)
            endpoint = await self.recovery.attempt_recovery(
                self.platform, unhealthy, health, self.config.probe_path
            )
            if endpoint is not None:
                with self._lock:
                    self._health = health
            return endpoint

        logger.warning("No endpoints configured for %s", self.platform)
        return None

    def select_endpoint_sync(self, operation_type: str = "default") -> Optional[str]:
        """Synchronous wrapper for select_endpoint()."""
        return _run_sync(self._with_prober_closed(self.select_endpoint(operation_type)))

    # -- feedback -----------------------------------------------------------

    def report_success(self, endpoint: str) -> None:
        """Record a successful call against *endpoint*."""
        now = self.clock()
        recovered: List[bool] = []

        def _apply(health: HealthMap) -> None:
            record = health.setdefault(endpoint, EndpointHealth())
            recovered.append(record.is_unhealthy)
            record.record_success(now)

        self._mutate(_apply)
        if recovered and recovered[0]:
            logger.info("Endpoint %s (%s) healthy again after success", endpoint, self.platform)

    def report_failure(self, endpoint: str, error_message: Optional[str] = None) -> None:
        """Record a failed call against *endpoint*."""
        now = self.clock()
        transitions: List[bool] = []

        def _apply(health: HealthMap) -> None:
            record = health.setdefault(endpoint, EndpointHealth())
            transitions.append(record.record_failure(now, error_message, FAILURE_THRESHOLD))

        self._mutate(_apply)
        if transitions and transitions[0]:
            logger.warning("Endpoint %s (%s) marked UNHEALTHY after %d failures: %s",
                           endpoint, self.platform, FAILURE_THRESHOLD, error_message)
        else:
            logger.debug("Failure on %s (%s): %s", endpoint, self.platform, error_message)

    # -- reporting ----------------------------------------------------------

    def get_platform_health(self) -> Dict[str, Any]:
        """Overall status plus per-endpoint detail for every tracked endpoint.

        ``unhealthy`` when every tracked endpoint is unhealthy, ``degraded``
        when at least one is, else ``healthy``.  A platform with no tracked
        endpoints is ``healthy`` (never tested, assume healthy); the legacy
        plugin treated "0 of 0 unhealthy" as ``unhealthy`` instead.
        """
        now = self.clock()
        with self._lock:
            health = dict(self._health)

        endpoints: Dict[str, Dict[str, Any]] = {}
        for endpoint, record in health.items():
            endpoints[endpoint] = {
                "status": record.status.value,
                "classification": classify(record, now).value,
                "score": score(record, now),
                "success_count": record.success_count,
                "failure_count": record.failure_count,
                "last_success": record.last_success,
                "last_failure": record.last_failure,
                "last_error": record.last_error,
                "unhealthy_since": record.unhealthy_since,
            }

        unhealthy_count = sum(1 for r in health.values() if r.status == HealthStatus.UNHEALTHY)
        if health and unhealthy_count == len(health):
            overall = OVERALL_UNHEALTHY
        elif unhealthy_count > 0:
            overall = OVERALL_DEGRADED
        else:
            overall = OVERALL_HEALTHY

        return {
            "platform": self.platform,
            "overall_status": overall,
            "endpoints": endpoints,
            "last_check": _format_ts(now),
        }

    def reset_health(self, endpoint: Optional[str] = None) -> None:
        """Forget one endpoint's history, or every endpoint's when *endpoint* is None."""
        if endpoint:
            self._mutate(lambda health: health.pop(endpoint, None))
        else:
            with self._lock:
                self.health_store.clear(self.platform)
                self._health = {}
        logger.info("Reset endpoint health for %s (%s)", self.platform, endpoint or "all endpoints")

    # -- comprehensive check -----------------------------------------------

    async def run_comprehensive_health_check(self) -> Dict[str, Any]:
        """Probe every candidate and persist the diagnostic report.

        Endpoint health used for selection is left untouched.
        """
        endpoints = self.candidate_endpoints("comprehensive_check")
        report = await self.prober.comprehensive_check(self.platform, endpoints, self.config.probe_path)
        report["check_time"] = _format_ts(self.clock())
        self.store.set(option_key(self.platform, COMPREHENSIVE_OPTION), report)
        return report

    def comprehensive_check_due(self, interval: float = HEALTH_CHECK_INTERVAL) -> bool:
        """True when no sweep is stored or the last one is *interval* seconds old."""
        report = self.get_last_comprehensive_report()
        if not report or not report.get("check_time"):
            return True
        try:
            checked = datetime.fromisoformat(report["check_time"]).timestamp()
        except (TypeError, ValueError):
            return True
        return self.clock() - checked >= interval

    def run_comprehensive_health_check_sync(self) -> Dict[str, Any]:
        """Synchronous wrapper for run_comprehensive_health_check()."""
        return _run_sync(self._with_prober_closed(self.run_comprehensive_health_check()))

    def get_last_comprehensive_report(self) -> Optional[Dict[str, Any]]:
        return self.store.get(option_key(self.platform, COMPREHENSIVE_OPTION))

    # -- auth ---------------------------------------------------------------

    def handle_auth_failure(self, error: Optional[BaseException] = None) -> AuthFallbackResult:
        """Clear credentials and fall back to alternative auth or manual re-auth."""
        return self.auth.handle_auth_failure(self.config, error)

    # -- request loop -------------------------------------------------------

    async def execute(
        self,
        func: Callable[..., Any],
        *args: Any,
        operation_type: str = "default",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        **kwargs: Any,
    ) -> Any:
        """Run ``func(endpoint, *args, **kwargs)`` against the best endpoint.

        Outcomes are reported back automatically.  A failed endpoint sits out
        its cooldown, so the next attempt lands on a different candidate.
        Credential rejections go to :meth:`handle_auth_failure`; the call is
        retried only when an alternative method authenticated.
        Callers wrapping HTTP responses can raise
        :class:`~platform_resilience.errors.PlatformHTTPError` so the status
        code drives classification.

        Raises
        ------
        NoEndpointAvailableError
            When no endpoint can be selected.
        AuthenticationFailedError
            When credentials were rejected and not restored.
        Exception
            The last endpoint error once *max_attempts* is exhausted.
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            endpoint = await self.select_endpoint(operation_type)
            if endpoint is None:
                raise NoEndpointAvailableError(self.platform, operation_type, last_error)

            try:
                result = func(endpoint, *args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                last_error = exc
                if is_auth_error(exc):
                    fallback = self.handle_auth_failure(exc)
                    if not fallback.authenticated:
                        raise AuthenticationFailedError(self.platform, fallback) from exc
                    logger.info("Re-authenticated %s via %s, retrying", self.platform, fallback.method)
                    continue

                ctx = classify_error(exc)
                self.report_failure(endpoint, str(ctx))
                logger.info("Attempt %d/%d on %s failed: %s",
                            attempt, max_attempts, endpoint, ctx)
                continue

            self.report_success(endpoint)
            return result

        if last_error is None:
            raise NoEndpointAvailableError(self.platform, operation_type)
        raise last_error

    def execute_sync(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Synchronous wrapper for execute()."""
        return _run_sync(self._with_prober_closed(self.execute(func, *args, **kwargs)))

    async def _with_prober_closed(self, coro):
        # The probe session is bound to the event loop _run_sync creates.
        try:
            return await coro
        finally:
            await self.prober.close()

    def __repr__(self) -> str:
        return f"FallbackManager({self.platform!r}, {len(self._health)} tracked endpoints)"


# ===================================================================
# REGISTRY
# ===================================================================

_managers: Dict[str, FallbackManager] = {}
_managers_lock = RLock()


def get_fallback_manager(platform: str) -> FallbackManager:
    """Return the process-wide manager for *platform*, creating it on first call."""
    with _managers_lock:
        manager = _managers.get(platform)
        if manager is None:
            manager = FallbackManager(platform)
            _managers[platform] = manager
        return manager


async def select_endpoint(platform: str, operation_type: str = "default") -> Optional[str]:
    return await get_fallback_manager(platform).select_endpoint(operation_type)


def report_success(platform: str, endpoint: str) -> None:
    get_fallback_manager(platform).report_success(endpoint)


def report_failure(platform: str, endpoint: str, message: Optional[str] = None) -> None:
    get_fallback_manager(platform).report_failure(endpoint, message)


def get_platform_health(platform: str) -> Dict[str, Any]:
    return get_fallback_manager(platform).get_platform_health()


def reset_health(platform: str, endpoint: Optional[str] = None) -> None:
    get_fallback_manager(platform).reset_health(endpoint)


def handle_auth_failure(platform: str, error: Optional[BaseException] = None) -> AuthFallbackResult:
    return get_fallback_manager(platform).handle_auth_failure(error)


async def run_comprehensive_health_check(platform: str) -> Dict[str, Any]:
    return await get_fallback_manager(platform).run_comprehensive_health_check()


# ===================================================================
# CLI COMMAND HANDLERS
# ===================================================================

def _cmd_status(args: argparse.Namespace) -> None:
    """Show tracked endpoint health for a platform."""
    manager = get_fallback_manager(args.platform)
    health = manager.get_platform_health()

    if args.json:
        print(json.dumps(health, indent=2, default=str))
        return

    print(f"\n{args.platform}: {health['overall_status'].upper()}\n")
    if not health["endpoints"]:
        print("  No endpoint history recorded (all candidates assumed healthy).")
    else:
        print(f"  {'Endpoint':<40} {'State':<12} {'Score':<6} {'OK':<5} {'Fail':<5} Last error")
        print("  " + "-" * 90)
        for endpoint, detail in health["endpoints"].items():
            error = (detail["last_error"] or "")[:40]
            print(
                f"  {endpoint:<40} {detail['classification']:<12} {detail['score']:<6} "
                f"{detail['success_count']:<5} {detail['failure_count']:<5} {error}"
            )

    print("\n  Candidates:")
    for endpoint in manager.candidate_endpoints():
        print(f"    - {endpoint}")
    print()


def _cmd_select(args: argparse.Namespace) -> None:
    """Print the endpoint that would be used right now."""
    manager = get_fallback_manager(args.platform)
    endpoint = manager.select_endpoint_sync(args.operation)
    if endpoint is None:
        print(f"No endpoint available for {args.platform}.")
        sys.exit(2)
    print(endpoint)


def _cmd_report(args: argparse.Namespace) -> None:
    """Manually record an outcome for an endpoint."""
    manager = get_fallback_manager(args.platform)
    if args.failure is not None:
        manager.report_failure(args.endpoint, args.failure)
        print(f"Recorded failure on {args.endpoint}.")
    else:
        manager.report_success(args.endpoint)
        print(f"Recorded success on {args.endpoint}.")


def _cmd_reset(args: argparse.Namespace) -> None:
    """Reset endpoint health."""
    manager = get_fallback_manager(args.platform)
    manager.reset_health(args.endpoint)
    target = args.endpoint or "all endpoints"
    print(f"Reset health for {args.platform} ({target}).")


def _cmd_check(args: argparse.Namespace) -> None:
    """Probe every candidate endpoint."""
    manager = get_fallback_manager(args.platform)
    if args.force or manager.comprehensive_check_due():
        report = manager.run_comprehensive_health_check_sync()
    else:
        report = manager.get_last_comprehensive_report()
        logger.info("Last check is under %ds old, showing it (use --force to re-probe)",
                    HEALTH_CHECK_INTERVAL)

    if args.json:
        print(json.dumps(report, indent=2, default=str))
        return

    print(f"\nComprehensive check for {report['platform']} at {report['check_time']}\n")
    for endpoint, result in report["results"].items():
        detail = f"HTTP {result['http_code']}" if "http_code" in result else result.get("error", "")
        print(f"  [{result['status'].upper():<8}] {endpoint:<40} {result['response_time']:.3f}s  {detail}")
    print()


def _cmd_auth_fail(args: argparse.Namespace) -> None:
    """Simulate an auth failure: clear credentials and run the fallback."""
    manager = get_fallback_manager(args.platform)
    result = manager.handle_auth_failure(PlatformHTTPError(args.reason, status_code=401))
    print(json.dumps(result.to_dict(), indent=2))


def _cmd_platforms(args: argparse.Namespace) -> None:
    """List known platforms and their candidates."""
    registry = get_platform_registry()
    for slug in registry.slugs():
        config = registry.get(slug)
        alt = ", ".join(config.alternative_auth_methods) or "-"
        print(f"{slug:<12} alt-auth: {alt}")
        for endpoint in config.candidate_endpoints():
            print(f"    {endpoint}")


# ===================================================================
# CLI ENTRY POINT
# ===================================================================

def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for the fallback manager."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    parser = argparse.ArgumentParser(
        prog="platform-resilience",
        description="Endpoint health, selection and auth fallback for social platforms",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sp_status = subparsers.add_parser("status", help="Show endpoint health for a platform")
    sp_status.add_argument("--platform", required=True)
    sp_status.add_argument("--json", action="store_true", help="Raw JSON output")
    sp_status.set_defaults(func=_cmd_status)

    sp_select = subparsers.add_parser("select", help="Print the endpoint that would be used")
    sp_select.add_argument("--platform", required=True)
    sp_select.add_argument("--operation", default="default", help="Operation type (default: default)")
    sp_select.set_defaults(func=_cmd_select)

    sp_report = subparsers.add_parser("report", help="Record a success or failure")
    sp_report.add_argument("--platform", required=True)
    sp_report.add_argument("--endpoint", required=True)
    sp_report.add_argument("--failure", default=None, metavar="MESSAGE",
                           help="Record a failure with this message (default: success)")
    sp_report.set_defaults(func=_cmd_report)

    sp_reset = subparsers.add_parser("reset", help="Reset endpoint health")
    sp_reset.add_argument("--platform", required=True)
    sp_reset.add_argument("--endpoint", default=None, help="Reset one endpoint (default: all)")
    sp_reset.set_defaults(func=_cmd_reset)

    sp_check = subparsers.add_parser("check", help="Probe every candidate endpoint")
    sp_check.add_argument("--platform", required=True)
    sp_check.add_argument("--json", action="store_true", help="Raw JSON output")
    sp_check.add_argument("--force", action="store_true",
                          help=f"Probe even if the last check is under {HEALTH_CHECK_INTERVAL}s old")
    sp_check.set_defaults(func=_cmd_check)

    sp_auth = subparsers.add_parser("auth-fail", help="Run the auth fallback for a platform")
    sp_auth.add_argument("--platform", required=True)
    sp_auth.add_argument("--reason", default="manual auth failure")
    sp_auth.set_defaults(func=_cmd_auth_fail)

    sp_platforms = subparsers.add_parser("platforms", help="List known platforms")
    sp_platforms.set_defaults(func=_cmd_platforms)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
