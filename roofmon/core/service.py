from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from roofmon.core.alerts.engine import AlertEngine
from roofmon.core.alerts.notifiers import AlertNotifier, EmailTransport, WebhookTransport
from roofmon.core.config.models import HealthThresholds, MonitoringConfig
from roofmon.core.error_reporter import ErrorReporter
from roofmon.core.errors import RegistrationError
from roofmon.core.health.assessor import HealthAssessor
from roofmon.core.health.scheduler import HealthCheckScheduler
from roofmon.core.logger import get_logger
from roofmon.core.recovery.controller import RecoveryController
from roofmon.core.recovery.dispatch import RecoveryDispatcher
from roofmon.core.recovery.models import RecoveryAction
from roofmon.core.telemetry.models import HealthCheck, MetricType, PerformanceMetric
from roofmon.core.telemetry.persistence import JsonSnapshotStore, NullSnapshotStore, SnapshotStore
from roofmon.core.telemetry.resources import MemoryProbe, NullMemoryProbe, make_memory_probe
from roofmon.core.telemetry.store import TelemetryStore

MEMORY_TASK = "memory:global"


class MonitoringService:
    """
    The monitoring core, constructed once per process and injected where needed.

    Owns the telemetry store and the three consumers that subscribe to it
    (health assessor, alert engine, recovery controller). Lifecycle: init() once,
    teardown() once; also usable as a context manager.
    """

    def __init__(
        self,
        cfg: Optional[MonitoringConfig] = None,
        *,
        logger=None,
        notifier: Optional[AlertNotifier] = None,
        email: Optional[EmailTransport] = None,
        webhook: Optional[WebhookTransport] = None,
        memory_probe: Optional[MemoryProbe] = None,
        snapshots: Optional[SnapshotStore] = None,
        time_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg or MonitoringConfig()
        self.logger = get_logger(__name__, logger)
        self._time = time_fn
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False

        if snapshots is None:
            snapshots = JsonSnapshotStore(self.cfg.persistence.path) if self.cfg.persistence.enabled else NullSnapshotStore()
        self.store = TelemetryStore(cfg=self.cfg.store, persistence=self.cfg.persistence, snapshots=snapshots, logger=logger, time_fn=time_fn)
        self.scheduler = HealthCheckScheduler(logger=logger)
        self.assessor = HealthAssessor(self.store, cfg=self.cfg.health, scheduler=self.scheduler, logger=logger, time_fn=time_fn)
        self.engine = AlertEngine(
            self.store,
            rules=self.cfg.alerting.rules,
            notifier=notifier,
            email=email,
            webhook=webhook,
            sound_enabled=self.cfg.alerting.sound_enabled,
            enabled=self.cfg.alerting.enabled,
            error_alerts=self.cfg.alerting.error_alerts,
            logger=logger,
            time_fn=time_fn,
        )
        self.dispatcher = RecoveryDispatcher(logger=logger)
        self.recovery = RecoveryController(self.store, cfg=self.cfg.recovery, dispatcher=self.dispatcher, logger=logger, time_fn=time_fn, sleep_fn=sleep_fn)
        self.reporter = ErrorReporter(self.store, logger=logger, time_fn=time_fn)
        self.memory_probe = memory_probe or make_memory_probe(self.cfg.memory.probe)

    # -------- lifecycle --------
    def init(self) -> "MonitoringService":
        with self._lock:
            if self._started:
                return self
            if self._stopped:
                raise RuntimeError("MonitoringService cannot be restarted after teardown()")
            self._started = True
        if self.cfg.persistence.restore_on_start:
            self.store.restore_snapshot()
        # subscription order is delivery order
        self.assessor.attach()
        self.engine.attach()
        self.recovery.attach()
        self.assessor.start_stale_sweep()
        if not isinstance(self.memory_probe, NullMemoryProbe):
            self.scheduler.schedule(MEMORY_TASK, float(self.cfg.memory.interval_seconds), self.sample_memory)
        self.logger.info(f"Monitoring service initialized (memory probe: {self.memory_probe.name})")
        return self

    def teardown(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self.assessor.stop()
        self.engine.detach()
        self.recovery.shutdown()
        self.scheduler.cancel_all()
        self.logger.info("Monitoring service stopped")

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    def __enter__(self) -> "MonitoringService":
        return self.init()

    def __exit__(self, *exc: Any) -> None:
        self.teardown()

    # -------- components --------
    def register_component(
        self,
        name: str,
        *,
        thresholds: Union[HealthThresholds, Dict[str, Any], None] = None,
        critical: bool = False,
        actions: Optional[Iterable[Union[RecoveryAction, Dict[str, Any]]]] = None,
        interval_seconds: Optional[float] = None,
        on_health_change: Optional[Callable[[HealthCheck], None]] = None,
        auto_recovery: bool = True,
    ) -> None:
        """Register with the health assessor and (unless auto_recovery=False) the recovery controller."""
        if isinstance(thresholds, dict):
            try:
                thresholds = HealthThresholds.model_validate({**self.cfg.health.thresholds.model_dump(), **thresholds})
            except ValidationError as e:
                raise RegistrationError("Invalid health thresholds.", component_name=name, errors=[str(x.get("msg")) for x in e.errors()]) from e
        if auto_recovery:
            self.recovery.register_component(name, actions)
        try:
            self.assessor.register_component(name, thresholds=thresholds, critical=critical, interval_seconds=interval_seconds, on_health_change=on_health_change)
        except RegistrationError:
            self.recovery.unregister_component(name)
            raise

    def unregister_component(self, name: str) -> bool:
        a = self.assessor.unregister_component(name)
        r = self.recovery.unregister_component(name)
        return a or r

    # -------- memory --------
    def sample_memory(self) -> Optional[PerformanceMetric]:
        value = self.memory_probe.sample()
        if value is None:
            return None
        return self.store.report_metric(
            PerformanceMetric(
                component_name=self.cfg.memory.component_name,
                metric_type=MetricType.memory,
                value=value,
                timestamp=self._time(),
                metadata={"probe": self.memory_probe.name, **self.memory_probe.details()},
            )
        )

    # -------- introspection --------
    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "store": self.store.get_stats(),
            "alerting": {"enabled": self.engine.enabled, "rules": len(self.engine.list_rules()), "self": self.engine.stats.snapshot()},
            "recovery": {"components": self.recovery.get_registered_components(), "self": self.recovery.stats.snapshot()},
            "health": {"components": self.assessor.registered_components()},
            "scheduled": self.scheduler.scheduled_keys(),
        }

    def components(self) -> List[str]:
        return self.assessor.registered_components()
