from __future__ import annotations

import json
import threading

import pytest

from roofmon.core.config.models import PersistenceConfig, StoreConfig
from roofmon.core.telemetry.events import AlertChange, AlertEvent, DataClearedEvent, ErrorEvent, HealthEvent, MetricEvent
from roofmon.core.telemetry.models import AlertSeverity, HealthStatus
from roofmon.core.telemetry.persistence import JsonSnapshotStore
from roofmon.core.telemetry.store import TelemetryStore, classify_error_severity
from tests.helpers.fakes import EventRecorder, FailingSnapshotStore, FakeClock, MemorySnapshotStore


def test_get_errors_keeps_most_recent_capacity_reports_newest_first():
    clock = FakeClock()
    store = TelemetryStore(cfg=StoreConfig(max_stored_errors=5), time_fn=clock.time)
    for i in range(12):
        store.report_error({"message": f"boom {i}", "component_name": "Grid"})
        clock.advance(1)

    errs = store.get_errors()
    assert [e.message for e in errs] == [f"boom {i}" for i in range(11, 6, -1)]
    assert store.get_stats()["self"]["counters"]["telemetry_evicted_total{buffer=errors}"] == 7


def test_equal_timestamps_keep_newest_inserted_first(store):
    for name in ("a", "b", "c"):
        store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 1.0, "metadata": {"n": name}})
    assert [m.metadata["n"] for m in store.get_metrics()] == ["c", "b", "a"]


def test_query_results_are_copies(store):
    store.report_error({"message": "x", "additional_info": {"k": 1}})
    first = store.get_errors()[0]
    first.additional_info["k"] = 999
    assert store.get_errors()[0].additional_info == {"k": 1}


def test_filters(store, clock):
    store.report_error({"message": "a", "component_name": "PropertyGrid", "level": "page"})
    store.report_error({"message": "b", "component_name": "ContactList", "level": "component"})
    store.report_metric({"component_name": "PropertyGrid", "metric_type": "api", "value": 10})
    store.report_metric({"component_name": "ContactList", "metric_type": "render", "value": 20})

    assert [e.message for e in store.get_errors(component_name="Grid")] == ["a"]
    assert [e.message for e in store.get_errors(level="component")] == ["b"]
    assert [m.value for m in store.get_metrics(metric_type="render")] == [20]
    assert [m.component_name for m in store.get_metrics(component_name="Property")] == ["PropertyGrid"]


def test_invalid_payloads_are_dropped_without_raising(store):
    rec = EventRecorder()
    store.subscribe(rec)
    assert store.report_error({"unexpected": True}) is None
    assert store.report_metric("not a metric") is None
    assert store.upsert_health("Grid", {"status": "on fire"}) is None
    assert store.get_errors() == []
    assert rec.events == []


def test_subscriber_failure_is_isolated(store):
    def bad(_event):
        raise RuntimeError("subscriber broke")

    rec = EventRecorder()
    store.subscribe(bad)
    store.subscribe(rec)

    assert store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 5}) is not None
    assert len(rec.of_kind("metric")) == 1
    assert isinstance(rec.events[0], MetricEvent)
    assert store.stats.counter("subscriber_errors_total") == 1


def test_unsubscribe_stops_delivery_and_is_idempotent(store):
    rec = EventRecorder()
    unsubscribe = store.subscribe(rec)
    store.report_error({"message": "one"})
    unsubscribe()
    unsubscribe()
    store.report_error({"message": "two"})
    assert len(rec.events) == 1


def test_hooks_report_goes_to_its_own_buffer_and_flags_event(store):
    rec = EventRecorder()
    store.subscribe(rec)
    store.report_error({"message": "Invalid hook call", "component_name": "Grid", "hooks_violation_type": "invalid_hook_call"})

    assert store.get_errors() == []
    assert [h.hooks_violation_type for h in store.get_hooks_errors()] == ["invalid_hook_call"]
    ev = rec.events[0]
    assert isinstance(ev, ErrorEvent) and ev.hooks_violation


def test_create_alert_is_rate_limited_per_type_component_severity(store, clock):
    kw = dict(type="error", title="t", message="m", component_name="Grid")
    assert store.create_alert(severity="high", **kw) is not None
    assert store.create_alert(severity="high", **kw) is None
    assert store.create_alert(severity="critical", **kw) is not None
    clock.advance(61)
    assert store.create_alert(severity="high", **kw) is not None
    assert store.get_alert_stats().total == 3
    assert store.stats.counter("alerts_suppressed_total", tags={"type": "error", "severity": "high"}) == 1


def test_alert_subscribers_receive_new_alerts(store):
    seen = []
    store.subscribe_alerts(seen.append)
    a = store.create_alert(type="health", severity="low", title="t", message="m")
    assert [x.id for x in seen] == [a.id]


def test_acknowledge_and_resolve_are_monotonic_and_idempotent(store):
    rec = EventRecorder()
    store.subscribe(rec)
    a = store.create_alert(type="error", severity="high", title="t", message="m", component_name="Foo")

    acked = store.acknowledge_alert(a.id)
    assert acked.acknowledged and not acked.resolved
    again = store.acknowledge_alert(a.id)
    assert again.acknowledged
    resolved = store.resolve_alert(a.id)
    assert resolved.acknowledged and resolved.resolved
    assert store.resolve_alert(a.id).resolved

    changes = [e.change for e in rec.events if isinstance(e, AlertEvent)]
    assert changes == [AlertChange.created, AlertChange.acknowledged, AlertChange.resolved]
    assert store.acknowledge_alert("alert_missing") is None


def test_resolve_implies_acknowledged(store):
    a = store.create_alert(type="warning", severity="low", title="t", message="m")
    out = store.resolve_alert(a.id)
    assert out.acknowledged is True
    st = store.get_alert_stats()
    assert (st.acknowledged, st.resolved, st.low) == (1, 1, 1)


def test_upsert_health_merges_over_existing_record(store, clock):
    rec = EventRecorder()
    store.subscribe(rec)
    h1 = store.upsert_health("Grid", {"status": "degraded", "issues": ["slow"]})
    assert h1.status == HealthStatus.degraded
    assert h1.metrics.render_time == 0.0
    assert h1.last_check == clock.time()

    clock.advance(5)
    h2 = store.upsert_health("Grid", {"metrics": {"render_time": 12.0}})
    assert h2.status == HealthStatus.degraded
    assert h2.issues == ["slow"]
    assert h2.metrics.render_time == 12.0
    assert h2.last_check == h1.last_check

    health_events = [e for e in rec.events if isinstance(e, HealthEvent)]
    assert health_events[0].previous_status is None
    assert health_events[1].previous_status == HealthStatus.degraded
    assert len(store.get_health()) == 1


def test_performance_analytics(store):
    for v in (10, 60, 120, 40):
        store.report_metric({"component_name": "Grid", "metric_type": "render", "value": v})
    store.report_metric({"component_name": "Other", "metric_type": "render", "value": 500})

    pa = store.get_performance_analytics("Grid")
    assert pa.total_renders == 4
    assert pa.avg_render_time == pytest.approx(57.5)
    assert (pa.slow_renders, pa.critical_renders) == (2, 1)
    assert pa.slow_render_rate == pytest.approx(50.0)
    assert pa.p95_render_time == 120
    assert pa.p99_render_time == 120
    assert store.get_performance_analytics("Nobody").total_renders == 0


def test_error_analytics_and_severity_classification(store, clock):
    for _ in range(4):
        store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 1})
    store.report_error({"message": "Invalid hook call", "component_name": "Grid"})
    store.report_error({"message": "page crashed", "component_name": "Shell", "level": "page"})
    clock.advance(100)
    store.report_error({"message": "late", "component_name": "Grid", "retry_count": 3})

    ea = store.get_error_analytics()
    assert ea.total_errors == 3
    assert ea.errors_by_component == {"Grid": 2, "Shell": 1}
    assert ea.errors_by_level == {"component": 2, "page": 1}
    assert ea.critical_errors == 1
    assert ea.error_rate == pytest.approx(0.75)

    early = store.get_error_analytics(end=clock.time() - 50)
    assert early.total_errors == 2

    severities = {e.message: classify_error_severity(e) for e in store.get_errors()}
    assert severities == {"Invalid hook call": AlertSeverity.critical, "page crashed": AlertSeverity.high, "late": AlertSeverity.high}


def test_clear_old_data_drops_records_older_than_cutoff(store, clock):
    rec = EventRecorder()
    store.subscribe(rec)
    store.report_error({"message": "old"})
    store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 1})
    clock.advance(2 * 86400)
    store.report_error({"message": "new"})

    cutoff = store.clear_old_data()
    assert cutoff == clock.time() - 86400
    assert [e.message for e in store.get_errors()] == ["new"]
    assert store.get_metrics() == []
    assert isinstance(rec.events[-1], DataClearedEvent)


def test_snapshot_keeps_most_recent_errors_and_alerts(tmp_path, clock):
    path = str(tmp_path / "monitoring" / "snap.json")
    pcfg = PersistenceConfig(enabled=True, path=path, keep_errors=2, keep_alerts=1)
    store = TelemetryStore(persistence=pcfg, snapshots=JsonSnapshotStore(path), time_fn=clock.time)
    for i in range(3):
        store.report_error({"message": f"e{i}", "url": "https://x.test/?token=abc123"})
        clock.advance(1)
    store.create_alert(type="error", severity="high", title="a1", message="m", component_name="A")
    store.create_alert(type="error", severity="high", title="a2", message="m", component_name="B")

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    assert [e["message"] for e in data["errors"]] == ["e1", "e2"]
    assert [a["title"] for a in data["alerts"]] == ["a2"]
    assert "abc123" not in json.dumps(data)

    fresh = TelemetryStore(persistence=pcfg, snapshots=JsonSnapshotStore(path), time_fn=clock.time)
    rec = EventRecorder()
    fresh.subscribe(rec)
    assert fresh.restore_snapshot() == 3
    assert [e.message for e in fresh.get_errors()] == ["e2", "e1"]
    assert rec.events == []
    # restoring twice does not duplicate
    assert fresh.restore_snapshot() == 0


def test_restore_with_no_snapshot_is_a_noop(clock):
    store = TelemetryStore(snapshots=MemorySnapshotStore(None), time_fn=clock.time)
    assert store.restore_snapshot() == 0


def test_snapshot_write_failure_is_logged_and_ignored(clock, caplog):
    store = TelemetryStore(persistence=PersistenceConfig(enabled=True), snapshots=FailingSnapshotStore(), time_fn=clock.time)
    with caplog.at_level("WARNING"):
        assert store.report_error({"message": "still stored"}) is not None
    assert len(store.get_errors()) == 1
    assert store.stats.counter("persistence_failures_total") == 1
    assert "disk full" in caplog.text


def test_older_snapshot_never_overwrites_a_newer_one(clock):
    snaps = MemorySnapshotStore()
    store = TelemetryStore(persistence=PersistenceConfig(enabled=True), snapshots=snaps, time_fn=clock.time)
    store.report_error({"message": "first"})
    older = store._snapshot()
    store.report_error({"message": "second"})
    saves = snaps.saves

    assert store._write_snapshot(*older) is False
    assert snaps.saves == saves
    assert [e["message"] for e in snaps.data["errors"]] == ["first", "second"]
    assert store.stats.counter("persistence_stale_skips_total") == 1


def test_concurrent_reporters_stay_bounded_and_consistent(clock):
    cap, threads, per_thread = 50, 8, 40
    store = TelemetryStore(cfg=StoreConfig(max_stored_errors=cap, max_stored_metrics=cap), time_fn=clock.time)
    rec = EventRecorder()
    store.subscribe(rec)
    # a subscriber that reads back while others are still writing
    store.subscribe(lambda _e: store.get_errors(component_name="Grid"))
    start = threading.Barrier(threads)
    failures = []

    def reporter(n: int) -> None:
        try:
            start.wait()
            for i in range(per_thread):
                assert store.report_error({"message": f"t{n}-{i}", "component_name": "Grid"}) is not None
                assert store.report_metric({"component_name": "Grid", "metric_type": "render", "value": i}) is not None
                assert store.upsert_health(f"C{n}", {"issues": [str(i)]}) is not None
        except Exception as e:  # noqa: BLE001
            failures.append(e)

    workers = [threading.Thread(target=reporter, args=(n,)) for n in range(threads)]
    for t in workers:
        t.start()
    for t in workers:
        t.join(timeout=30)

    total = threads * per_thread
    assert failures == []
    assert len(store.get_errors()) == cap
    assert len(store.get_metrics()) == cap
    assert store.stats.counter("telemetry_evicted_total", tags={"buffer": "errors"}) == total - cap
    assert store.stats.counter("telemetry_evicted_total", tags={"buffer": "metrics"}) == total - cap
    assert store.stats.counter("subscriber_errors_total") == 0
    assert len(rec.of_kind("error")) == total
    assert {h.component_name: h.issues for h in store.get_health()} == {f"C{n}": [str(per_thread - 1)] for n in range(threads)}


def test_redaction_scrubs_free_form_fields(store):
    from roofmon.core.telemetry.redaction import telemetry_redact

    obj = {
        "apiKey": "k-roof-991",
        "request": {"refresh_token": "r3fr3sh", "headers": "Authorization: Bearer INSPECTIONJWT"},
        "url": "https://crm.test/jobs?access_token=qq77",
    }
    out = str(telemetry_redact(obj))
    for secret in ("k-roof-991", "r3fr3sh", "INSPECTIONJWT", "qq77"):
        assert secret not in out

    rep = store.report_error({"message": "x", "additional_info": {"session": "s3ss"}})
    assert rep.additional_info["session"] == "***REDACTED***"
