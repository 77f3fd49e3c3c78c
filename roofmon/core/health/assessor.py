from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from roofmon.core.config.models import HealthConfig, HealthThresholds
from roofmon.core.errors import RegistrationError
from roofmon.core.health.scheduler import HealthCheckScheduler
from roofmon.core.logger import get_logger
from roofmon.core.telemetry.events import ErrorEvent, MetricEvent
from roofmon.core.telemetry.models import HealthCheck, HealthMetrics, HealthStatus, MetricType, escalate

STALE_ISSUE = "No recent activity detected"


@dataclass
class ComponentTracker:
    render_count: int = 0
    error_count: int = 0
    average_render_time: float = 0.0
    last_render_time: float = 0.0
    memory_usage: Optional[float] = None
    api_calls: int = 0
    last_api_time: Optional[float] = None
    mount_time: float = 0.0
    last_update: float = 0.0

    @property
    def error_rate(self) -> float:
        return (self.error_count / self.render_count) if self.render_count > 0 else 0.0


@dataclass
class ComponentRegistration:
    name: str
    thresholds: HealthThresholds
    critical: bool = False
    interval_seconds: float = 30.0
    on_health_change: Optional[Callable[[HealthCheck], None]] = None
    tracker: ComponentTracker = field(default_factory=ComponentTracker)


def _worsen(status: HealthStatus) -> HealthStatus:
    """degraded from healthy, unhealthy from anything already degraded."""
    return escalate(status, HealthStatus.degraded if status == HealthStatus.healthy else HealthStatus.unhealthy)


def derive_status(
    tracker: ComponentTracker,
    thresholds: HealthThresholds,
    *,
    critical: bool,
    now: float,
    interval_seconds: float,
) -> Tuple[HealthStatus, List[str]]:
    """Pure status derivation. Each step can only make the status worse."""
    t = tracker
    status = HealthStatus.healthy
    issues: List[str] = []
    max_render = float(thresholds.max_render_time_ms)

    if t.average_render_time > max_render:
        issues.append(f"Average render time ({t.average_render_time:.1f}ms) exceeds threshold ({max_render:g}ms)")
        status = escalate(status, HealthStatus.degraded)

    if t.last_render_time > max_render * 2:
        issues.append(f"Last render time ({t.last_render_time:.1f}ms) is critically slow")
        status = escalate(status, HealthStatus.unhealthy)

    rate = t.error_rate
    if rate > float(thresholds.max_error_rate):
        issues.append(f"Error rate ({rate * 100:.1f}%) exceeds threshold ({float(thresholds.max_error_rate) * 100:.1f}%)")
        status = _worsen(status)

    if critical and t.memory_usage is not None and thresholds.max_memory_bytes is not None:
        if t.memory_usage > float(thresholds.max_memory_bytes):
            issues.append(f"Memory usage ({t.memory_usage / 1024 / 1024:.1f}MB) exceeds threshold")
            status = _worsen(status)

    if t.last_api_time is not None and thresholds.max_api_time_ms is not None:
        if t.last_api_time > float(thresholds.max_api_time_ms):
            issues.append(f"API response time ({t.last_api_time:.0f}ms) exceeds threshold")
            status = escalate(status, HealthStatus.degraded)

    idle = now - t.last_update
    if idle > interval_seconds * 2:
        issues.append(f"Component inactive for {round(idle)}s")
        status = escalate(status, HealthStatus.degraded)

    if critical:
        if t.render_count == 0:
            issues.append("Critical component has not rendered")
            status = escalate(status, HealthStatus.unhealthy)
        if len(issues) > 2:
            status = escalate(status, HealthStatus.unhealthy)

    return status, issues


class HealthAssessor:
    """
    Tracks render/error/api/memory measurements per registered component and turns
    them into HealthCheck records in the store, on a per-component timer or on demand.
    """

    def __init__(
        self,
        store: Any,
        *,
        cfg: Optional[HealthConfig] = None,
        scheduler: Optional[HealthCheckScheduler] = None,
        logger=None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cfg = cfg or HealthConfig()
        self.logger = get_logger(__name__, logger)
        self.scheduler = scheduler or HealthCheckScheduler(logger=self.logger)
        self._time = time_fn
        self._lock = threading.RLock()
        self._components: Dict[str, ComponentRegistration] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None

    # -------- lifecycle --------
    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self.handle_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def start_stale_sweep(self) -> None:
        if self.cfg.sweep_stale:
            self.scheduler.schedule("sweep:stale", float(self.cfg.interval_seconds), self.sweep_stale)

    def stop(self) -> None:
        self.detach()
        self.scheduler.cancel_all()

    # -------- registry --------
    def register_component(
        self,
        name: str,
        *,
        thresholds: Optional[HealthThresholds] = None,
        critical: bool = False,
        interval_seconds: Optional[float] = None,
        on_health_change: Optional[Callable[[HealthCheck], None]] = None,
        schedule: bool = True,
    ) -> ComponentRegistration:
        """Register (or re-register, resetting its measurements) a component for assessment."""
        if not name or not str(name).strip():
            raise RegistrationError("Component name is required.")
        if on_health_change is not None and not callable(on_health_change):
            raise RegistrationError("on_health_change must be callable.", component_name=name)
        interval = float(interval_seconds if interval_seconds is not None else self.cfg.interval_seconds)
        if interval <= 0:
            raise RegistrationError("Health check interval must be > 0.", component_name=name)
        now = self._time()
        reg = ComponentRegistration(
            name=str(name),
            thresholds=thresholds or self.cfg.thresholds,
            critical=bool(critical),
            interval_seconds=interval,
            on_health_change=on_health_change,
            tracker=ComponentTracker(mount_time=now, last_update=now),
        )
        with self._lock:
            self._components[reg.name] = reg
        if schedule:
            self.scheduler.schedule(self._task_key(reg.name), interval, lambda: self.assess(reg.name))
        return reg

    def unregister_component(self, name: str) -> bool:
        self.scheduler.cancel(self._task_key(name))
        with self._lock:
            return self._components.pop(name, None) is not None

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._components

    def registered_components(self) -> List[str]:
        with self._lock:
            return sorted(self._components.keys())

    def get_tracker(self, name: str) -> Optional[ComponentTracker]:
        with self._lock:
            reg = self._components.get(name)
            return replace(reg.tracker) if reg else None

    # -------- measurements --------
    def record_render(self, name: str, render_time_ms: float) -> bool:
        with self._lock:
            reg = self._components.get(name)
            if reg is None:
                return False
            t = reg.tracker
            t.render_count += 1
            v = float(render_time_ms)
            t.average_render_time = ((t.average_render_time * (t.render_count - 1)) + v) / t.render_count
            t.last_render_time = v
            t.last_update = self._time()
        return True

    def record_error(self, name: str) -> bool:
        with self._lock:
            reg = self._components.get(name)
            if reg is None:
                return False
            reg.tracker.error_count += 1
            reg.tracker.last_update = self._time()
        return True

    def record_api_call(self, name: str, response_time_ms: float) -> bool:
        with self._lock:
            reg = self._components.get(name)
            if reg is None:
                return False
            reg.tracker.api_calls += 1
            reg.tracker.last_api_time = float(response_time_ms)
            reg.tracker.last_update = self._time()
        return True

    def record_memory(self, name: str, usage_bytes: float) -> bool:
        with self._lock:
            reg = self._components.get(name)
            if reg is None:
                return False
            reg.tracker.memory_usage = float(usage_bytes)
        return True

    def handle_event(self, event: Any) -> None:
        """Store subscriber: feeds measurements for registered components."""
        if isinstance(event, MetricEvent):
            m = event.metric
            if m.metric_type == MetricType.render:
                self.record_render(m.component_name, m.value)
            elif m.metric_type == MetricType.api:
                self.record_api_call(m.component_name, m.value)
            elif m.metric_type == MetricType.memory:
                self.record_memory(m.component_name, m.value)
        elif isinstance(event, ErrorEvent):
            name = event.report.component_name
            if self.record_error(name) and self.cfg.assess_on_error:
                self.assess(name)

    # -------- assessment --------
    def assess(self, name: str) -> Optional[HealthCheck]:
        with self._lock:
            reg = self._components.get(name)
            if reg is None:
                return None
            tracker = replace(reg.tracker)
            thresholds = reg.thresholds
            critical = reg.critical
            interval = reg.interval_seconds
            callback = reg.on_health_change
        now = self._time()
        status, issues = derive_status(tracker, thresholds, critical=critical, now=now, interval_seconds=interval)
        metrics = HealthMetrics(
            render_time=tracker.average_render_time,
            error_rate=tracker.error_rate,
            memory_usage=tracker.memory_usage,
            api_response_time=tracker.last_api_time,
        )
        hc = self.store.upsert_health(name, {"status": status, "last_check": now, "metrics": metrics, "issues": issues})
        if hc is not None and callback is not None:
            try:
                callback(hc)
            except Exception:  # noqa: BLE001
                self.logger.exception(f"on_health_change callback failed for {name}")
        return hc

    def assess_all(self) -> List[HealthCheck]:
        out: List[HealthCheck] = []
        for name in self.registered_components():
            hc = self.assess(name)
            if hc is not None:
                out.append(hc)
        return out

    def sweep_stale(self) -> List[str]:
        """Mark health records with no check in stale_multiplier x interval as degraded."""
        now = self._time()
        limit = float(self.cfg.interval_seconds) * float(self.cfg.stale_multiplier)
        swept: List[str] = []
        for hc in self.store.get_health():
            if now - hc.last_check <= limit:
                continue
            if hc.status == HealthStatus.degraded and STALE_ISSUE in hc.issues:
                continue
            issues = [i for i in hc.issues if "No recent activity" not in i] + [STALE_ISSUE]
            self.store.upsert_health(hc.component_name, {"status": HealthStatus.degraded, "issues": issues})
            swept.append(hc.component_name)
        if swept:
            self.logger.info(f"Marked {len(swept)} stale component(s) degraded: {', '.join(swept)}")
        return swept

    @staticmethod
    def _task_key(name: str) -> str:
        return f"health:{name}"
