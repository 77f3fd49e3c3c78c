from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel, ValidationError

from roofmon.core.config.models import PersistenceConfig, StoreConfig
from roofmon.core.errors import PersistenceError
from roofmon.core.logger import get_logger
from roofmon.core.telemetry.events import AlertChange, AlertEvent, DataClearedEvent, ErrorEvent, HealthEvent, MetricEvent
from roofmon.core.telemetry.metrics import SelfMetrics, nearest_rank
from roofmon.core.telemetry.models import (
    Alert,
    AlertSeverity,
    AlertStats,
    AlertType,
    ErrorAnalytics,
    ErrorLevel,
    ErrorReport,
    HealthCheck,
    HooksErrorReport,
    MetricType,
    PerformanceAnalytics,
    PerformanceMetric,
)
from roofmon.core.telemetry.persistence import NullSnapshotStore, SnapshotStore

T = TypeVar("T", bound=BaseModel)

Subscriber = Callable[[Any], None]
AlertSubscriber = Callable[[Alert], None]


def classify_error_severity(report: ErrorReport) -> AlertSeverity:
    """Built-in severity for a captured error: hook mention > page level / repeated retries > default."""
    if "hook" in report.message.lower() or "hook" in report.stack.lower():
        return AlertSeverity.critical
    if report.level == ErrorLevel.page:
        return AlertSeverity.high
    if report.retry_count >= 3:
        return AlertSeverity.high
    return AlertSeverity.medium


def _newest_first(items: Iterable[T]) -> List[T]:
    # reversed() first so equal timestamps keep newest-inserted first (sort is stable)
    return [x.model_copy(deep=True) for x in sorted(reversed(list(items)), key=lambda x: x.timestamp, reverse=True)]


class TelemetryStore:
    """
    Bounded in-memory telemetry record with synchronous pub/sub fan-out.

    - every mutation happens under one lock; readers only ever see whole records
    - buffers drop oldest-first on overflow (counted, never an error)
    - subscribers run after the mutation, outside the lock, each one isolated
    - the reporting API never raises to callers
    """

    def __init__(
        self,
        *,
        cfg: Optional[StoreConfig] = None,
        persistence: Optional[PersistenceConfig] = None,
        snapshots: Optional[SnapshotStore] = None,
        logger=None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or StoreConfig()
        self.persistence = persistence or PersistenceConfig(enabled=False)
        self.snapshots: SnapshotStore = snapshots or NullSnapshotStore()
        self.logger = get_logger(__name__, logger)
        self._time = time_fn
        self.stats = SelfMetrics()

        self._lock = threading.RLock()
        # guards snapshot writes; never taken while holding _lock
        self._persist_lock = threading.Lock()
        self._snapshot_seq = 0
        self._written_seq = 0
        self._errors: Deque[ErrorReport] = deque(maxlen=int(self.cfg.max_stored_errors))
        self._hooks_errors: Deque[HooksErrorReport] = deque(maxlen=int(self.cfg.max_stored_errors))
        self._metrics: Deque[PerformanceMetric] = deque(maxlen=int(self.cfg.max_stored_metrics))
        self._alerts: Deque[Alert] = deque(maxlen=int(self.cfg.max_stored_alerts))
        self._health: Dict[str, HealthCheck] = {}
        self._last_alert_times: Dict[Tuple[str, str, str], float] = {}
        self._subscribers: List[Subscriber] = []
        self._alert_subscribers: List[AlertSubscriber] = []

    # -------- reporting contract --------
    def report_error(self, report: Union[ErrorReport, Dict[str, Any]]) -> Optional[ErrorReport]:
        if isinstance(report, dict) and "hooks_violation_type" in report:
            return self.report_hooks_error(report)
        rep = self._coerce(ErrorReport, report, "error report")
        if rep is None:
            return None
        if isinstance(rep, HooksErrorReport):
            return self.report_hooks_error(rep)
        with self._lock:
            self._append(self._errors, rep, "errors")
        self._publish(ErrorEvent(report=rep))
        self._persist()
        return rep

    def report_hooks_error(self, report: Union[HooksErrorReport, Dict[str, Any]]) -> Optional[HooksErrorReport]:
        rep = self._coerce(HooksErrorReport, report, "hooks error report")
        if rep is None:
            return None
        with self._lock:
            self._append(self._hooks_errors, rep, "hooks_errors")
        self._publish(ErrorEvent(report=rep, hooks_violation=True))
        self._persist()
        return rep

    def report_metric(self, metric: Union[PerformanceMetric, Dict[str, Any]]) -> Optional[PerformanceMetric]:
        m = self._coerce(PerformanceMetric, metric, "metric")
        if m is None:
            return None
        with self._lock:
            self._append(self._metrics, m, "metrics")
        self._publish(MetricEvent(metric=m))
        return m

    def upsert_health(self, component_name: str, partial: Union[HealthCheck, Dict[str, Any], None] = None) -> Optional[HealthCheck]:
        """
        Merge `partial` over the live record for `component_name`.
        Fields not supplied keep their previous value (last_check included).
        """
        name = str(component_name)
        if isinstance(partial, BaseModel):
            patch = partial.model_dump(exclude_unset=True)
        else:
            patch = dict(partial or {})
        patch.pop("component_name", None)
        with self._lock:
            existing = self._health.get(name)
            if existing is not None:
                base = existing.model_dump()
            else:
                base = {"component_name": name, "last_check": self._time()}
            try:
                updated = HealthCheck.model_validate({**base, **patch, "component_name": name})
            except ValidationError as e:
                self.logger.warning(f"Dropping invalid health update for {name}: {e.errors(include_url=False)}")
                return None
            self._health[name] = updated
        self._publish(HealthEvent(health=updated, previous_status=existing.status if existing else None))
        return updated.model_copy(deep=True)

    # -------- alerts --------
    def create_alert(
        self,
        *,
        type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        component_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Alert]:
        """Create an alert unless one with the same (type, component, severity) key fired within the cooldown."""
        key = (AlertType(type).value, str(component_name or ""), AlertSeverity(severity).value)
        now = self._time()
        with self._lock:
            last = self._last_alert_times.get(key)
            if last is not None and (now - last) < float(self.cfg.alert_cooldown_seconds):
                self.stats.inc("alerts_suppressed_total", tags={"type": key[0], "severity": key[2]})
                return None
            try:
                alert = Alert(type=type, severity=severity, title=title, message=message, component_name=component_name, timestamp=now, metadata=metadata or {})
            except ValidationError as e:
                self.logger.warning(f"Dropping invalid alert {title!r}: {e.errors(include_url=False)}")
                return None
            self._append(self._alerts, alert, "alerts")
            self._last_alert_times[key] = now
        self.stats.inc("alerts_created_total", tags={"type": key[0], "severity": key[2]})
        for cb in list(self._alert_subscribers):
            self._safe_call(cb, alert.model_copy(deep=True))
        self._publish(AlertEvent(alert=alert, change=AlertChange.created))
        self._persist()
        return alert.model_copy(deep=True)

    def acknowledge_alert(self, alert_id: str) -> Optional[Alert]:
        return self._transition_alert(alert_id, AlertChange.acknowledged)

    def resolve_alert(self, alert_id: str) -> Optional[Alert]:
        return self._transition_alert(alert_id, AlertChange.resolved)

    def _transition_alert(self, alert_id: str, change: AlertChange) -> Optional[Alert]:
        with self._lock:
            idx = next((i for i, a in enumerate(self._alerts) if a.id == alert_id), None)
            if idx is None:
                return None
            current = self._alerts[idx]
            if change == AlertChange.acknowledged:
                if current.acknowledged:
                    return current.model_copy(deep=True)
                updated = current.model_copy(update={"acknowledged": True})
            else:
                if current.resolved:
                    return current.model_copy(deep=True)
                # resolving implies acknowledging
                updated = current.model_copy(update={"acknowledged": True, "resolved": True})
            self._alerts[idx] = updated
        self._publish(AlertEvent(alert=updated, change=change))
        self._persist()
        return updated.model_copy(deep=True)

    # -------- query contract --------
    def get_errors(self, *, component_name: Optional[str] = None, level: Optional[str] = None) -> List[ErrorReport]:
        with self._lock:
            items = list(self._errors)
        if component_name:
            items = [e for e in items if component_name in e.component_name]
        if level:
            items = [e for e in items if e.level.value == str(level)]
        return _newest_first(items)

    def get_hooks_errors(self) -> List[HooksErrorReport]:
        with self._lock:
            items = list(self._hooks_errors)
        return _newest_first(items)

    def get_metrics(self, *, component_name: Optional[str] = None, metric_type: Optional[str] = None) -> List[PerformanceMetric]:
        with self._lock:
            items = list(self._metrics)
        if component_name:
            items = [m for m in items if component_name in m.component_name]
        if metric_type:
            items = [m for m in items if m.metric_type.value == str(metric_type)]
        return _newest_first(items)

    def get_alerts(
        self,
        *,
        type: Optional[str] = None,
        severity: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        resolved: Optional[bool] = None,
        component_name: Optional[str] = None,
    ) -> List[Alert]:
        with self._lock:
            items = list(self._alerts)
        if type:
            items = [a for a in items if a.type.value == str(type)]
        if severity:
            items = [a for a in items if a.severity.value == str(severity)]
        if acknowledged is not None:
            items = [a for a in items if a.acknowledged == bool(acknowledged)]
        if resolved is not None:
            items = [a for a in items if a.resolved == bool(resolved)]
        if component_name:
            items = [a for a in items if a.component_name == component_name]
        return _newest_first(items)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            for a in self._alerts:
                if a.id == alert_id:
                    return a.model_copy(deep=True)
        return None

    def get_health(self, component_name: Optional[str] = None) -> List[HealthCheck]:
        with self._lock:
            items = list(self._health.values())
        if component_name:
            items = [h for h in items if h.component_name == component_name]
        items.sort(key=lambda h: h.last_check, reverse=True)
        return [h.model_copy(deep=True) for h in items]

    def get_alert_stats(self) -> AlertStats:
        with self._lock:
            alerts = list(self._alerts)
        st = AlertStats()
        for a in alerts:
            st.total += 1
            setattr(st, a.severity.value, getattr(st, a.severity.value) + 1)
            if a.acknowledged:
                st.acknowledged += 1
            if a.resolved:
                st.resolved += 1
        return st

    # -------- analytics --------
    def get_error_analytics(self, *, start: Optional[float] = None, end: Optional[float] = None) -> ErrorAnalytics:
        def in_range(ts: float) -> bool:
            if start is not None and ts < start:
                return False
            if end is not None and ts > end:
                return False
            return True

        with self._lock:
            errors = [e for e in self._errors if in_range(e.timestamp)]
            hooks = [e for e in self._hooks_errors if in_range(e.timestamp)]
            total_renders = sum(1 for m in self._metrics if m.metric_type == MetricType.render)

        out = ErrorAnalytics(total_errors=len(errors), hooks_errors=len(hooks))
        for e in errors:
            out.errors_by_component[e.component_name] = out.errors_by_component.get(e.component_name, 0) + 1
            out.errors_by_level[e.level.value] = out.errors_by_level.get(e.level.value, 0) + 1
            if classify_error_severity(e) == AlertSeverity.critical:
                out.critical_errors += 1
        out.error_rate = len(errors) / max(1, total_renders)
        return out

    def get_performance_analytics(self, component_name: Optional[str] = None) -> PerformanceAnalytics:
        with self._lock:
            renders = [m.value for m in self._metrics if m.metric_type == MetricType.render and (component_name is None or m.component_name == component_name)]
        if not renders:
            return PerformanceAnalytics()
        slow = [v for v in renders if v > float(self.cfg.slow_render_ms)]
        critical = [v for v in renders if v > float(self.cfg.critical_render_ms)]
        return PerformanceAnalytics(
            total_renders=len(renders),
            avg_render_time=sum(renders) / len(renders),
            slow_renders=len(slow),
            critical_renders=len(critical),
            slow_render_rate=(len(slow) / len(renders)) * 100.0,
            p95_render_time=nearest_rank(renders, 95),
            p99_render_time=nearest_rank(renders, 99),
        )

    # -------- maintenance --------
    def clear_old_data(self, older_than_seconds: float = 24 * 60 * 60) -> float:
        cutoff = self._time() - float(older_than_seconds)
        with self._lock:
            self._errors = deque((e for e in self._errors if e.timestamp > cutoff), maxlen=self._errors.maxlen)
            self._hooks_errors = deque((e for e in self._hooks_errors if e.timestamp > cutoff), maxlen=self._hooks_errors.maxlen)
            self._metrics = deque((m for m in self._metrics if m.timestamp > cutoff), maxlen=self._metrics.maxlen)
            self._alerts = deque((a for a in self._alerts if a.timestamp > cutoff), maxlen=self._alerts.maxlen)
        self._publish(DataClearedEvent(cutoff=cutoff, ts=self._time()))
        return cutoff

    def restore_snapshot(self) -> int:
        """Opportunistic read-back of the local snapshot. Silent, never authoritative."""
        data = self.snapshots.load()
        if not data:
            return 0
        restored = 0
        with self._lock:
            known_errors = {e.id for e in self._errors}
            for raw in data.get("errors") or []:
                try:
                    rep = ErrorReport.model_validate(raw)
                except ValidationError:
                    continue
                if rep.id not in known_errors:
                    self._append(self._errors, rep, "errors")
                    restored += 1
            known_alerts = {a.id for a in self._alerts}
            for raw in data.get("alerts") or []:
                try:
                    alert = Alert.model_validate(raw)
                except ValidationError:
                    continue
                if alert.id not in known_alerts:
                    self._append(self._alerts, alert, "alerts")
                    restored += 1
        self.logger.info(f"Restored {restored} monitoring records from snapshot.")
        return restored

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            sizes = {
                "errors": len(self._errors),
                "hooks_errors": len(self._hooks_errors),
                "metrics": len(self._metrics),
                "alerts": len(self._alerts),
                "health": len(self._health),
                "subscribers": len(self._subscribers),
                "alert_subscribers": len(self._alert_subscribers),
            }
        return {**sizes, "self": self.stats.snapshot()}

    # -------- subscriptions --------
    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            self._subscribers = [*self._subscribers, callback]

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers = [s for s in self._subscribers if s is not callback]

        return unsubscribe

    def subscribe_alerts(self, callback: AlertSubscriber) -> Callable[[], None]:
        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            self._alert_subscribers = [*self._alert_subscribers, callback]

        def unsubscribe() -> None:
            with self._lock:
                self._alert_subscribers = [s for s in self._alert_subscribers if s is not callback]

        return unsubscribe

    # -------- internals --------
    def _coerce(self, model: type, payload: Any, what: str):  # noqa: ANN202
        if isinstance(payload, model):
            return payload
        try:
            data = payload.model_dump() if isinstance(payload, BaseModel) else payload
            if isinstance(data, dict) and "timestamp" not in data and "timestamp" in model.model_fields:
                data = {**data, "timestamp": self._time()}
            return model.model_validate(data)
        except ValidationError as e:
            self.logger.warning(f"Dropping invalid {what}: {e.errors(include_url=False)}")
            self.stats.inc("reports_rejected_total", tags={"kind": what})
            return None

    def _append(self, buf: Deque[Any], item: Any, name: str) -> None:
        if buf.maxlen is not None and len(buf) >= buf.maxlen:
            self.stats.inc("telemetry_evicted_total", tags={"buffer": name})
        buf.append(item)

    def _publish(self, event: Any) -> None:
        with self._lock:
            subs = list(self._subscribers)
        for cb in subs:
            self._safe_call(cb, event)

    def _safe_call(self, cb: Callable[[Any], None], payload: Any) -> None:
        try:
            cb(payload)
        except Exception:  # noqa: BLE001
            # never re-reported through the store
            self.stats.inc("subscriber_errors_total")
            self.logger.exception(f"Telemetry subscriber {getattr(cb, '__qualname__', repr(cb))} failed")

    def _persist(self) -> None:
        if not self.persistence.enabled or isinstance(self.snapshots, NullSnapshotStore):
            return
        self._write_snapshot(*self._snapshot())

    def _snapshot(self) -> Tuple[int, List[Dict[str, Any]], List[Dict[str, Any]]]:
        keep_e = int(self.persistence.keep_errors)
        keep_a = int(self.persistence.keep_alerts)
        with self._lock:
            self._snapshot_seq += 1
            errors = [e.model_dump(mode="json") for e in list(self._errors)[-keep_e:]] if keep_e else []
            alerts = [a.model_dump(mode="json") for a in list(self._alerts)[-keep_a:]] if keep_a else []
            return self._snapshot_seq, errors, alerts

    def _write_snapshot(self, seq: int, errors: List[Dict[str, Any]], alerts: List[Dict[str, Any]]) -> bool:
        # a snapshot older than the last one written is dropped
        with self._persist_lock:
            if seq <= self._written_seq:
                self.stats.inc("persistence_stale_skips_total")
                return False
            self._written_seq = seq
            try:
                self.snapshots.save(errors=errors, alerts=alerts)
            except PersistenceError as e:
                self.stats.inc("persistence_failures_total")
                self.logger.warning(f"Monitoring snapshot not persisted: {e.context.get('error')}")
                return False
        return True
