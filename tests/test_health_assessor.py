from __future__ import annotations

import threading

import pytest

from roofmon.core.config.models import HealthConfig, HealthThresholds
from roofmon.core.errors import RegistrationError
from roofmon.core.health.assessor import STALE_ISSUE, ComponentTracker, HealthAssessor, derive_status
from roofmon.core.health.scheduler import HealthCheckScheduler
from roofmon.core.telemetry.models import HealthStatus


def make_assessor(store, clock, **cfg):
    a = HealthAssessor(store, cfg=HealthConfig(**cfg), time_fn=clock.time)
    a.attach()
    return a


def derive(tracker, *, critical=False, now=0.0, interval=30.0, **thresholds):
    return derive_status(tracker, HealthThresholds(**thresholds), critical=critical, now=now, interval_seconds=interval)


def test_slow_average_degrades_and_critically_slow_last_render_is_unhealthy(store, clock):
    a = make_assessor(store, clock)
    a.register_component("Grid", schedule=False)

    a.record_render("Grid", 80)
    hc = a.assess("Grid")
    assert hc.status == HealthStatus.degraded
    assert hc.issues == ["Average render time (80.0ms) exceeds threshold (50ms)"]

    a.record_render("Grid", 120)
    hc = a.assess("Grid")
    assert hc.status == HealthStatus.unhealthy
    assert "Last render time (120.0ms) is critically slow" in hc.issues
    assert hc.metrics.render_time == pytest.approx(100.0)


def test_error_rate_worsens_status():
    t = ComponentTracker(render_count=10, error_count=1)
    status, issues = derive(t)
    assert status == HealthStatus.degraded
    assert issues == ["Error rate (10.0%) exceeds threshold (5.0%)"]

    t = ComponentTracker(render_count=10, error_count=1, average_render_time=80, last_render_time=80)
    status, _ = derive(t)
    assert status == HealthStatus.unhealthy


def test_memory_only_counts_for_critical_components():
    t = ComponentTracker(render_count=1, memory_usage=60 * 1024 * 1024)
    assert derive(t)[0] == HealthStatus.healthy
    status, issues = derive(t, critical=True)
    assert status == HealthStatus.degraded
    assert issues == ["Memory usage (60.0MB) exceeds threshold"]


def test_slow_api_and_inactivity_degrade():
    t = ComponentTracker(render_count=1, last_api_time=3000.0, last_update=0.0)
    status, issues = derive(t, now=61.0)
    assert status == HealthStatus.degraded
    assert issues == ["API response time (3000ms) exceeds threshold", "Component inactive for 61s"]


def test_critical_component_without_renders_is_unhealthy():
    status, issues = derive(ComponentTracker(), critical=True)
    assert status == HealthStatus.unhealthy
    assert issues == ["Critical component has not rendered"]


def test_more_than_two_issues_escalate_critical_components_only():
    t = ComponentTracker(render_count=1, average_render_time=60, last_render_time=60, last_api_time=3000.0, last_update=0.0)
    assert derive(t, now=100.0)[0] == HealthStatus.degraded
    status, issues = derive(t, now=100.0, critical=True)
    assert len(issues) == 3
    assert status == HealthStatus.unhealthy


def test_healthy_when_nothing_is_wrong():
    t = ComponentTracker(render_count=3, average_render_time=10, last_render_time=12, last_update=0.0)
    assert derive(t, now=1.0) == (HealthStatus.healthy, [])


def test_store_events_feed_registered_components(store, clock):
    a = make_assessor(store, clock)
    a.register_component("Grid", schedule=False)

    store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 80})
    store.report_metric({"component_name": "Grid", "metric_type": "api", "value": 150})
    store.report_metric({"component_name": "Other", "metric_type": "render", "value": 80})
    assert store.get_health() == []

    # errors trigger an immediate assessment
    store.report_error({"message": "boom", "component_name": "Grid"})
    t = a.get_tracker("Grid")
    assert (t.render_count, t.error_count, t.api_calls, t.last_api_time) == (1, 1, 1, 150.0)
    assert a.get_tracker("Other") is None

    [hc] = store.get_health("Grid")
    assert hc.status == HealthStatus.unhealthy
    assert hc.metrics.error_rate == pytest.approx(1.0)


def test_assess_on_error_can_be_disabled(store, clock):
    a = make_assessor(store, clock, assess_on_error=False)
    a.register_component("Grid", schedule=False)
    store.report_error({"message": "boom", "component_name": "Grid"})
    assert store.get_health() == []
    assert a.get_tracker("Grid").error_count == 1


def test_on_health_change_runs_after_every_assessment(store, clock):
    seen = []
    a = make_assessor(store, clock)
    a.register_component("Grid", schedule=False, on_health_change=seen.append)
    a.assess("Grid")
    a.assess("Grid")
    assert [h.status for h in seen] == [HealthStatus.healthy, HealthStatus.healthy]


def test_failing_health_callback_is_contained(store, clock, caplog):
    def bad(_hc):
        raise RuntimeError("callback broke")

    a = make_assessor(store, clock)
    a.register_component("Grid", schedule=False, on_health_change=bad)
    with caplog.at_level("ERROR"):
        assert a.assess("Grid") is not None
    assert "on_health_change callback failed" in caplog.text


def test_unknown_component_assessment_is_none(store, clock):
    a = make_assessor(store, clock)
    assert a.assess("Nobody") is None
    assert a.record_render("Nobody", 5) is False


def test_stale_records_are_marked_degraded_once(store, clock):
    a = make_assessor(store, clock, interval_seconds=10, stale_multiplier=3)
    a.register_component("Grid", schedule=False)
    a.assess("Grid")

    clock.advance(25)
    assert a.sweep_stale() == []

    clock.advance(10)
    assert a.sweep_stale() == ["Grid"]
    [hc] = store.get_health("Grid")
    assert hc.status == HealthStatus.degraded
    assert hc.issues[-1] == STALE_ISSUE

    assert a.sweep_stale() == []


def test_register_validation_and_scheduling(store, clock):
    sched = HealthCheckScheduler()
    a = HealthAssessor(store, scheduler=sched, time_fn=clock.time)
    with pytest.raises(RegistrationError):
        a.register_component("  ")
    with pytest.raises(RegistrationError):
        a.register_component("Grid", interval_seconds=0)

    a.register_component("Grid")
    assert sched.is_scheduled("health:Grid")
    assert a.registered_components() == ["Grid"]
    assert a.unregister_component("Grid") is True
    assert not sched.is_scheduled("health:Grid")
    assert a.unregister_component("Grid") is False
    a.stop()


def test_scheduler_runs_until_cancelled():
    sched = HealthCheckScheduler()
    calls = []
    ran_twice = threading.Event()

    def tick():
        calls.append(1)
        if len(calls) >= 2:
            ran_twice.set()

    sched.schedule("t", 0.01, tick)
    assert ran_twice.wait(2.0)
    assert sched.cancel("t") is True
    assert sched.cancel("t") is False
    n = len(calls)
    assert not sched.is_scheduled("t")
    assert len(calls) == n


def test_scheduler_task_survives_failures():
    sched = HealthCheckScheduler()
    attempts = []
    again = threading.Event()

    def flaky():
        attempts.append(1)
        if len(attempts) >= 2:
            again.set()
        raise RuntimeError("flaky")

    sched.schedule("flaky", 0.01, flaky)
    try:
        assert again.wait(2.0)
    finally:
        sched.cancel_all()
    assert sched.scheduled_keys() == []


def test_scheduler_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        HealthCheckScheduler().schedule("x", 0, lambda: None)
