"""Test fallback_manager — selection, feedback, recovery, reporting and execute."""
from __future__ import annotations

import json
import logging
import threading

import pytest

import platform_resilience.fallback_manager as fm
from conftest import T0, TWITTER_V1, TWITTER_V2, ScriptedTransport
from platform_resilience.endpoint_health import (
    FAILURE_THRESHOLD,
    RECOVERY_TIME,
    EndpointHealth,
    HealthStatus,
    HealthStore,
)
from platform_resilience.errors import (
    AuthenticationFailedError,
    NoEndpointAvailableError,
    PlatformHTTPError,
)
from platform_resilience.prober import EndpointProber

FB_V18 = "https://graph.facebook.com/v18.0"


def _fail(manager, endpoint, times, message="HTTP 503"):
    for _ in range(times):
        manager.report_failure(endpoint, message)


# ===================================================================
# Selection
# ===================================================================

class TestSelectEndpoint:
    """Test healthy-first selection and scoring."""

    @pytest.mark.asyncio
    async def test_fresh_platform_returns_first_candidate(self, make_manager, transport):
        manager = make_manager()
        assert await manager.select_endpoint("post") == TWITTER_V2
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_unhealthy_endpoint_is_skipped(self, make_manager):
        manager = make_manager()
        _fail(manager, TWITTER_V2, FAILURE_THRESHOLD)
        assert manager.get_health(TWITTER_V2).status == HealthStatus.UNHEALTHY
        assert await manager.select_endpoint("post") == TWITTER_V1

    @pytest.mark.asyncio
    async def test_single_failure_sits_out_cooldown(self, make_manager, clock):
        manager = make_manager()
        manager.report_failure(TWITTER_V2, "HTTP 500")
        assert await manager.select_endpoint() == TWITTER_V1
        clock.advance(61)
        # Back in the pool, but still scored below the clean candidate
        assert await manager.select_endpoint() == TWITTER_V1

    @pytest.mark.asyncio
    async def test_best_score_wins(self, make_manager):
        manager = make_manager()
        for _ in range(5):
            manager.report_success(TWITTER_V1)
        assert await manager.select_endpoint() == TWITTER_V1

    @pytest.mark.asyncio
    async def test_recovery_window_returns_endpoint_to_pool(self, make_manager, clock):
        manager = make_manager()
        _fail(manager, TWITTER_V2, FAILURE_THRESHOLD)
        manager.report_success(TWITTER_V1)
        clock.advance(RECOVERY_TIME + 1)

        healthy, unhealthy = manager.partition()

        assert healthy == [TWITTER_V2, TWITTER_V1]
        assert unhealthy == []
        assert await manager.select_endpoint() == TWITTER_V1

    @pytest.mark.asyncio
    async def test_success_resets_unhealthy_endpoint(self, make_manager, clock):
        manager = make_manager()
        _fail(manager, TWITTER_V2, 7)
        manager.report_success(TWITTER_V2)
        record = manager.get_health(TWITTER_V2)
        assert record.failure_count == 0
        assert record.status == HealthStatus.HEALTHY
        # The failure cooldown still applies to the last failure
        assert await manager.select_endpoint() == TWITTER_V1
        clock.advance(60)
        assert await manager.select_endpoint() == TWITTER_V2

    @pytest.mark.asyncio
    async def test_corrupted_timestamps_do_not_break_selection(self, make_manager, memory_store):
        memory_store.set("twitter_endpoint_health", {
            TWITTER_V2: {"failure_count": 1, "last_failure": "2024-01-01T00:00:00"},
            TWITTER_V1: {"status": "unhealthy", "unhealthy_since": "yesterday", "failure_count": 3},
        })
        manager = make_manager()

        assert await manager.select_endpoint() == TWITTER_V2
        assert manager.get_platform_health()["overall_status"] == "degraded"

    @pytest.mark.asyncio
    async def test_unknown_platform_uses_generic_list(self, make_manager):
        manager = make_manager("myspace")
        assert await manager.select_endpoint() == "https://api.twitter.com/2"
        assert len(manager.candidate_endpoints()) == 5

    def test_select_sync_closes_prober(self, make_manager, transport):
        manager = make_manager()
        assert manager.select_endpoint_sync() == TWITTER_V2
        assert transport.closed == 1


class TestRecovery:
    """Test the all-unhealthy recovery path."""

    @pytest.mark.asyncio
    async def test_probes_one_candidate_and_reinstates(self, make_manager, transport, memory_store):
        manager = make_manager()
        _fail(manager, TWITTER_V2, 5)
        _fail(manager, TWITTER_V1, 3)

        assert await manager.select_endpoint() == TWITTER_V1
        assert transport.calls == [f"{TWITTER_V1}/me"]

        # Second selection needs no probe
        assert await manager.select_endpoint() == TWITTER_V1
        assert transport.calls == [f"{TWITTER_V1}/me"]

        persisted = HealthStore(memory_store).load("twitter")
        assert persisted[TWITTER_V1].status == HealthStatus.HEALTHY
        assert persisted[TWITTER_V1].failure_count == 0
        assert persisted[TWITTER_V2].status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_failed_probe_returns_none_without_cascading(self, make_manager):
        transport = ScriptedTransport({f"{TWITTER_V2}/me": 503})
        manager = make_manager(prober=EndpointProber(transport, timeout=1.0))
        _fail(manager, TWITTER_V2, 3)
        _fail(manager, TWITTER_V1, 4)

        assert await manager.select_endpoint() is None
        assert transport.calls == [f"{TWITTER_V2}/me"]
        assert manager.get_health(TWITTER_V2).failure_count == 3
        assert manager.get_health(TWITTER_V2).status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_probe_timeout_returns_none(self, make_manager):
        transport = ScriptedTransport(delay=0.5)
        manager = make_manager(prober=EndpointProber(transport, timeout=0.05))
        _fail(manager, TWITTER_V2, 3)
        _fail(manager, TWITTER_V1, 3)
        assert await manager.select_endpoint() is None

    @pytest.mark.asyncio
    async def test_recently_failed_endpoint_recovered_by_ranking(self, make_manager, clock):
        manager = make_manager()
        _fail(manager, TWITTER_V2, FAILURE_THRESHOLD)
        clock.advance(10)
        manager.report_failure(TWITTER_V1, "HTTP 500")

        # V2 is unhealthy, V1 is in cooldown: V1 has fewer failures and is probed
        assert await manager.select_endpoint() == TWITTER_V1


# ===================================================================
# Feedback and persistence
# ===================================================================

class TestFeedback:

    def test_failure_records_message_and_time(self, make_manager, clock):
        manager = make_manager()
        manager.report_failure(TWITTER_V2, "HTTP 502 bad gateway")
        record = manager.get_health(TWITTER_V2)
        assert record.failure_count == 1
        assert record.last_failure == T0
        assert record.last_error == "HTTP 502 bad gateway"

    def test_unhealthy_transition_logged_once(self, make_manager, caplog):
        manager = make_manager()
        with caplog.at_level(logging.WARNING, logger="fallback_manager"):
            _fail(manager, TWITTER_V2, FAILURE_THRESHOLD + 2)
        marked = [r for r in caplog.records if "marked UNHEALTHY" in r.getMessage()]
        assert len(marked) == 1

    def test_state_survives_new_manager(self, make_manager):
        _fail(make_manager(), TWITTER_V2, 3)
        fresh = make_manager()
        assert fresh.get_health(TWITTER_V2).status == HealthStatus.UNHEALTHY

    def test_health_loaded_once_until_reload(self, make_manager, memory_store):
        manager = make_manager()
        HealthStore(memory_store).save("twitter", {TWITTER_V1: EndpointHealth(failure_count=9)})
        assert manager.get_health(TWITTER_V1) is None
        manager.reload()
        assert manager.get_health(TWITTER_V1).failure_count == 9

    def test_writes_merge_with_other_writers(self, make_manager, memory_store):
        manager = make_manager()
        HealthStore(memory_store).save("twitter", {TWITTER_V1: EndpointHealth(failure_count=2)})
        manager.report_success(TWITTER_V2)
        persisted = HealthStore(memory_store).load("twitter")
        assert set(persisted) == {TWITTER_V1, TWITTER_V2}

    def test_concurrent_reports_lose_nothing(self, make_manager):
        manager = make_manager()

        def _worker():
            for _ in range(50):
                manager.report_failure(TWITTER_V2, "x")

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert manager.get_health(TWITTER_V2).failure_count == 200

    def test_reset_single_endpoint(self, make_manager):
        manager = make_manager()
        _fail(manager, TWITTER_V2, 3)
        _fail(manager, TWITTER_V1, 1)
        manager.reset_health(TWITTER_V2)
        assert manager.get_health(TWITTER_V2) is None
        assert manager.get_health(TWITTER_V1).failure_count == 1

    def test_reset_all(self, make_manager, memory_store):
        manager = make_manager()
        _fail(manager, TWITTER_V2, 3)
        manager.reset_health()
        assert manager.endpoints_health == {}
        assert HealthStore(memory_store).load("twitter") == {}


# ===================================================================
# Reporting
# ===================================================================

class TestPlatformHealth:
    """Test the health rollup."""

    def test_no_history_is_healthy(self, make_manager):
        health = make_manager().get_platform_health()
        assert health["platform"] == "twitter"
        assert health["overall_status"] == "healthy"
        assert health["endpoints"] == {}
        assert health["last_check"].startswith("2023-11-14")

    def test_one_unhealthy_is_degraded(self, make_manager):
        manager = make_manager()
        _fail(manager, TWITTER_V2, 3)
        manager.report_success(TWITTER_V1)
        health = manager.get_platform_health()
        assert health["overall_status"] == "degraded"
        assert health["endpoints"][TWITTER_V2]["status"] == "unhealthy"
        assert health["endpoints"][TWITTER_V2]["failure_count"] == 3
        assert health["endpoints"][TWITTER_V1]["score"] == 102

    def test_all_unhealthy(self, make_manager):
        manager = make_manager()
        _fail(manager, TWITTER_V2, 3)
        _fail(manager, TWITTER_V1, 3)
        assert manager.get_platform_health()["overall_status"] == "unhealthy"

    def test_recovering_classification(self, make_manager, clock):
        manager = make_manager()
        _fail(manager, TWITTER_V2, 3)
        clock.advance(RECOVERY_TIME + 5)
        detail = manager.get_platform_health()["endpoints"][TWITTER_V2]
        assert detail["status"] == "unhealthy"
        assert detail["classification"] == "recovering"


class TestComprehensiveCheck:

    @pytest.mark.asyncio
    async def test_persists_report_without_touching_health(self, memory_store, registry, clock):
        transport = ScriptedTransport({f"{TWITTER_V1}/me": 404})
        manager = fm.FallbackManager("twitter", store=memory_store, registry=registry,
                                     prober=EndpointProber(transport, timeout=1.0), clock=clock)

        report = await manager.run_comprehensive_health_check()

        assert sorted(transport.calls) == sorted([f"{TWITTER_V2}/me", f"{TWITTER_V1}/me"])
        assert report["results"][TWITTER_V2]["status"] == "healthy"
        assert report["results"][TWITTER_V1]["status"] == "degraded"
        assert memory_store.get("twitter_comprehensive_health") == report
        assert manager.get_last_comprehensive_report() == report
        assert manager.endpoints_health == {}

    @pytest.mark.asyncio
    async def test_due_follows_check_interval(self, make_manager, clock):
        manager = make_manager()
        assert manager.comprehensive_check_due() is True

        report = await manager.run_comprehensive_health_check()

        assert report["check_time"] == "2023-11-14T22:13:20+00:00"
        assert manager.comprehensive_check_due() is False
        clock.advance(fm.HEALTH_CHECK_INTERVAL - 1)
        assert manager.comprehensive_check_due() is False
        clock.advance(1)
        assert manager.comprehensive_check_due() is True

    def test_due_when_stored_time_is_unreadable(self, make_manager, memory_store):
        memory_store.set("twitter_comprehensive_health", {"check_time": "not a time"})
        assert make_manager().comprehensive_check_due() is True

    def test_sync_wrapper(self, make_manager, transport):
        report = make_manager().run_comprehensive_health_check_sync()
        assert set(report["results"]) == {TWITTER_V2, TWITTER_V1}
        assert transport.closed == 1


# ===================================================================
# Auth
# ===================================================================

class TestAuthFailure:

    def test_delegates_with_platform_config(self, make_manager, memory_store):
        memory_store.set("facebook_tokens", {"access_token": "stale"})
        result = make_manager("facebook").handle_auth_failure(RuntimeError("HTTP 401"))
        assert result.authenticated
        assert result.method == "api_key"
        assert memory_store.get("facebook_tokens")["access_token"] == "fb-key-123"

    def test_no_alternatives(self, make_manager):
        result = make_manager("linkedin").handle_auth_failure()
        assert result.authenticated is False
        assert result.fallback_available is False
        assert result.retry_url.startswith("https://www.linkedin.com/oauth/v2/authorization?")


# ===================================================================
# execute
# ===================================================================

class TestExecute:
    """Test the select / call / report loop."""

    @pytest.mark.asyncio
    async def test_success_reports_endpoint(self, make_manager):
        manager = make_manager()
        result = await manager.execute(lambda endpoint, text: f"{endpoint}:{text}", "hello")
        assert result == f"{TWITTER_V2}:hello"
        assert manager.get_health(TWITTER_V2).success_count == 1

    @pytest.mark.asyncio
    async def test_awaits_coroutine_functions(self, make_manager):
        async def _publish(endpoint, *, body):
            return {"endpoint": endpoint, "body": body}

        result = await make_manager().execute(_publish, body="hi", operation_type="post")
        assert result == {"endpoint": TWITTER_V2, "body": "hi"}

    @pytest.mark.asyncio
    async def test_fails_over_to_next_endpoint(self, make_manager):
        manager = make_manager()
        seen = []

        def _call(endpoint):
            seen.append(endpoint)
            if endpoint == TWITTER_V2:
                raise RuntimeError("HTTP 503: over capacity")
            return "ok"

        assert await manager.execute(_call) == "ok"
        assert seen == [TWITTER_V2, TWITTER_V1]
        record = manager.get_health(TWITTER_V2)
        assert record.failure_count == 1
        assert "E6004" in record.last_error
        assert manager.get_health(TWITTER_V1).success_count == 1

    @pytest.mark.asyncio
    async def test_raises_last_error_when_attempts_exhausted(self, make_manager):
        manager = make_manager()

        def _call(endpoint):
            raise RuntimeError(f"HTTP 502 from {endpoint}")

        with pytest.raises(RuntimeError, match="api.twitter.com/1.1"):
            await manager.execute(_call)
        assert manager.get_health(TWITTER_V2).failure_count == 1
        assert manager.get_health(TWITTER_V1).failure_count == 1

    @pytest.mark.asyncio
    async def test_auth_fallback_then_retry(self, make_manager, memory_store):
        manager = make_manager("facebook")
        calls = []

        def _call(endpoint):
            calls.append(endpoint)
            if len(calls) == 1:
                raise PlatformHTTPError("token expired", status_code=401)
            return "posted"

        assert await manager.execute(_call) == "posted"
        assert calls == [FB_V18, FB_V18]
        assert manager.get_health(FB_V18).failure_count == 0
        assert memory_store.get("facebook_tokens")["token_type"] == "API_KEY"

    @pytest.mark.asyncio
    async def test_auth_failure_without_fallback_raises(self, make_manager):
        manager = make_manager("linkedin")

        def _call(endpoint):
            raise PlatformHTTPError("unauthorized", status_code=401)

        with pytest.raises(AuthenticationFailedError) as excinfo:
            await manager.execute(_call)
        assert excinfo.value.result.retry_url is not None
        assert excinfo.value.platform == "linkedin"

    @pytest.mark.asyncio
    async def test_no_endpoint_available(self, make_manager):
        transport = ScriptedTransport(default=500)
        manager = make_manager(prober=EndpointProber(transport, timeout=1.0))
        _fail(manager, TWITTER_V2, 3)
        _fail(manager, TWITTER_V1, 3)

        with pytest.raises(NoEndpointAvailableError) as excinfo:
            await manager.execute(lambda endpoint: "never")
        assert excinfo.value.platform == "twitter"

    def test_execute_sync(self, make_manager, transport):
        assert make_manager().execute_sync(lambda endpoint: endpoint) == TWITTER_V2
        assert transport.closed == 1


# ===================================================================
# Module-level API
# ===================================================================

class TestModuleFunctions:
    """Test the per-platform singleton helpers on the default file store."""

    def test_singleton_per_platform(self):
        assert fm.get_fallback_manager("twitter") is fm.get_fallback_manager("twitter")
        assert fm.get_fallback_manager("twitter") is not fm.get_fallback_manager("facebook")

    def test_report_and_health(self, tmp_path):
        for _ in range(3):
            fm.report_failure("twitter", TWITTER_V2, "HTTP 500")
        assert fm.get_platform_health("twitter")["overall_status"] == "unhealthy"
        assert (tmp_path / "resilience" / "twitter_endpoint_health.json").exists()

        fm.report_success("twitter", TWITTER_V2)
        assert fm.get_platform_health("twitter")["overall_status"] == "healthy"

        fm.reset_health("twitter")
        assert fm.get_platform_health("twitter")["endpoints"] == {}

    @pytest.mark.asyncio
    async def test_select_endpoint(self):
        assert await fm.select_endpoint("linkedin") == "https://api.linkedin.com/v2"

    def test_handle_auth_failure_builtin_config(self):
        result = fm.handle_auth_failure("linkedin", RuntimeError("HTTP 401"))
        assert result.status == "auth_failed"
        assert result.retry_url is None

    @pytest.mark.asyncio
    async def test_run_comprehensive_health_check(self, monkeypatch, make_manager, transport):
        monkeypatch.setitem(fm._managers, "twitter", make_manager())
        report = await fm.run_comprehensive_health_check("twitter")
        assert report["platform"] == "twitter"
        assert len(transport.calls) == 2


# ===================================================================
# CLI
# ===================================================================

class TestCLI:

    def test_no_command_exits(self):
        with pytest.raises(SystemExit) as excinfo:
            fm.main([])
        assert excinfo.value.code == 1

    def test_report_then_status_json(self, capsys):
        fm.main(["report", "--platform", "twitter", "--endpoint", TWITTER_V2, "--failure", "HTTP 503"])
        capsys.readouterr()
        fm.main(["status", "--platform", "twitter", "--json"])
        health = json.loads(capsys.readouterr().out)
        assert health["endpoints"][TWITTER_V2]["failure_count"] == 1

    def test_status_table(self, capsys):
        fm.main(["status", "--platform", "twitter"])
        out = capsys.readouterr().out
        assert "twitter: HEALTHY" in out
        assert TWITTER_V1 in out

    def test_select(self, capsys):
        fm.main(["select", "--platform", "twitter"])
        assert capsys.readouterr().out.strip() == TWITTER_V2

    def test_reset(self, capsys):
        fm.main(["report", "--platform", "twitter", "--endpoint", TWITTER_V2, "--failure", "x"])
        fm.main(["reset", "--platform", "twitter"])
        assert "Reset health for twitter (all endpoints)" in capsys.readouterr().out
        assert fm.get_platform_health("twitter")["endpoints"] == {}

    def test_check_uses_manager_prober(self, monkeypatch, make_manager, capsys):
        monkeypatch.setitem(fm._managers, "twitter", make_manager())
        fm.main(["check", "--platform", "twitter", "--json"])
        report = json.loads(capsys.readouterr().out)
        assert set(report["results"]) == {TWITTER_V2, TWITTER_V1}

    def test_check_reuses_recent_report_unless_forced(self, monkeypatch, make_manager, transport, capsys):
        monkeypatch.setitem(fm._managers, "twitter", make_manager())
        fm.main(["check", "--platform", "twitter", "--json"])
        assert len(transport.calls) == 2

        fm.main(["check", "--platform", "twitter", "--json"])
        assert len(transport.calls) == 2

        fm.main(["check", "--platform", "twitter", "--json", "--force"])
        assert len(transport.calls) == 4
        capsys.readouterr()

    def test_auth_fail(self, capsys):
        fm.main(["auth-fail", "--platform", "linkedin"])
        result = json.loads(capsys.readouterr().out)
        assert result["status"] == "auth_failed"
        assert result["fallback_available"] is False

    def test_platforms(self, capsys):
        fm.main(["platforms"])
        out = capsys.readouterr().out
        for slug in ("facebook", "instagram", "linkedin", "twitter"):
            assert slug in out
