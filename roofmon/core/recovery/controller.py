from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from roofmon.core.config.models import RecoveryConfig
from roofmon.core.errors import RecoveryExecutionError, RegistrationError
from roofmon.core.logger import get_logger
from roofmon.core.recovery.counters import ConsecutiveCounter, CooldownTracker
from roofmon.core.recovery.defaults import default_recovery_actions
from roofmon.core.recovery.dispatch import RecoveryDispatcher
from roofmon.core.recovery.models import AttemptMetrics, RecoveryAction, RecoveryAttempt, RecoveryKind, RecoveryNotice
from roofmon.core.telemetry.events import ErrorEvent, HealthEvent, MetricEvent
from roofmon.core.telemetry.metrics import SelfMetrics
from roofmon.core.telemetry.models import MetricType, PerformanceMetric

RECOVERY_ORIGIN = "recovery"


async def _await(aw: Any) -> Any:
    return await aw


def _predicate_for(event: Any) -> Optional[Tuple[str, str, Callable[[RecoveryAction], bool]]]:
    """(component, trigger type, action predicate) for events recovery reacts to."""
    if isinstance(event, ErrorEvent):
        rep = event.report

        def on_error(a: RecoveryAction) -> bool:
            p = a.trigger.error_pattern
            return p is not None and (p.search(rep.message or "") is not None or p.search(rep.stack or "") is not None)

        return rep.component_name, "error", on_error
    if isinstance(event, MetricEvent):
        m = event.metric
        if m.metadata.get("origin") == RECOVERY_ORIGIN:
            return None

        def on_metric(a: RecoveryAction) -> bool:
            t = a.trigger.performance_threshold
            return t is not None and m.value > t

        return m.component_name, "performance", on_metric
    if isinstance(event, HealthEvent):
        h = event.health

        def on_health(a: RecoveryAction) -> bool:
            return a.trigger.health_status is not None and h.status == a.trigger.health_status

        return h.component_name, "health", on_health
    return None


class RecoveryController:
    """
    Per-component remediation registry and arbiter.

    Matching, consecutive counting and cooldown arbitration run synchronously on the
    publish path under one lock; the chosen action executes on a worker pool. At most
    one action is dispatched per triggering event, and its cooldown starts at dispatch.
    """

    def __init__(
        self,
        store: Any,
        *,
        cfg: Optional[RecoveryConfig] = None,
        dispatcher: Optional[RecoveryDispatcher] = None,
        logger=None,
        time_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cfg = cfg or RecoveryConfig()
        self.logger = get_logger(__name__, logger)
        self.dispatcher = dispatcher or RecoveryDispatcher(logger=self.logger)
        self._time = time_fn
        self._sleep = sleep_fn
        self.stats = SelfMetrics()

        self._lock = threading.RLock()
        self._actions: Dict[str, List[RecoveryAction]] = {}
        self._generation: Dict[str, int] = {}
        self._generations = itertools.count(1)
        self._counters = ConsecutiveCounter()
        self._cooldowns = CooldownTracker()
        self._history: Deque[RecoveryAttempt] = deque(maxlen=int(self.cfg.max_history))
        self._pending: Set[Future] = set()
        self._executor = ThreadPoolExecutor(max_workers=int(self.cfg.max_workers), thread_name_prefix="recovery")
        self._closed = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    # -------- lifecycle --------
    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self.handle_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait for in-flight executions (including ones they cause). False on timeout."""
        deadline = time.monotonic() + float(timeout)
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait(pending, timeout=remaining)

    def shutdown(self, *, wait_for_pending: bool = True) -> None:
        self.detach()
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_pending, cancel_futures=not wait_for_pending)

    # -------- registry --------
    def register_component(self, name: str, actions: Optional[Iterable[Union[RecoveryAction, Dict[str, Any]]]] = None) -> List[RecoveryAction]:
        if not name or not str(name).strip():
            raise RegistrationError("Component name is required.")
        raw = default_recovery_actions() if actions is None else list(actions)
        parsed: List[RecoveryAction] = []
        seen: Set[str] = set()
        for a in raw:
            if not isinstance(a, RecoveryAction):
                try:
                    a = RecoveryAction.model_validate(a)
                except ValidationError as e:
                    raise RegistrationError("Invalid recovery action.", component_name=name, errors=[str(x.get("msg")) for x in e.errors()]) from e
            if a.id in seen:
                raise RegistrationError("Duplicate recovery action id.", component_name=name, action_id=a.id)
            seen.add(a.id)
            parsed.append(a)
        with self._lock:
            self._actions[name] = parsed
            self._generation[name] = next(self._generations)
            self._counters.clear_component(name)
            self._cooldowns.clear_component(name)
        self.logger.info(f"Auto-recovery registered for {name} with {len(parsed)} actions")
        return list(parsed)

    def unregister_component(self, name: str) -> bool:
        with self._lock:
            existed = self._actions.pop(name, None) is not None
            self._generation.pop(name, None)
            self._counters.clear_component(name)
            self._cooldowns.clear_component(name)
        if existed:
            self.logger.info(f"Auto-recovery unregistered for {name}")
        return existed

    def get_registered_components(self) -> List[str]:
        with self._lock:
            return list(self._actions.keys())

    def get_component_actions(self, name: str) -> List[RecoveryAction]:
        with self._lock:
            return list(self._actions.get(name, []))

    def get_recovery_history(self, component_name: Optional[str] = None) -> List[RecoveryAttempt]:
        with self._lock:
            items = list(self._history)
        if component_name:
            items = [a for a in items if a.component_name == component_name]
        return items

    def consecutive_count(self, component_name: str, action_id: str) -> int:
        with self._lock:
            return self._counters.get((component_name, action_id))

    # -------- matching --------
    def handle_event(self, event: Any) -> Optional[Future]:
        """Store subscriber: pick at most one action for this event and hand it to the pool."""
        if not self.cfg.enabled:
            return None
        found = _predicate_for(event)
        if found is None:
            return None
        component, trigger_type, predicate = found
        with self._lock:
            if self._closed:
                return None
            actions = self._actions.get(component)
            if not actions:
                return None
            matching = [a for a in actions if a.enabled and predicate(a)]
            if not matching:
                return None
            chosen = self._arbitrate(component, matching)
            if chosen is None:
                return None
            return self._dispatch(component, chosen, trigger_type)

    def _arbitrate(self, component: str, candidates: List[RecoveryAction]) -> Optional[RecoveryAction]:
        now = self._time()
        for a in sorted(candidates, key=lambda x: x.priority, reverse=True):
            key = (component, a.id)
            if self._cooldowns.active(key, now, a.cooldown_minutes * 60.0):
                continue
            if self._counters.increment(key) < a.trigger.required_count:
                continue
            return a
        return None

    def trigger_recovery(self, component_name: str, action_id: Optional[str] = None) -> Optional[Future]:
        """Manual override. Still cooldown-gated; returns None when nothing is eligible."""
        with self._lock:
            if self._closed:
                return None
            actions = self._actions.get(component_name)
            if not actions:
                self.logger.warning(f"No recovery actions registered for {component_name}")
                return None
            if action_id:
                target = next((a for a in actions if a.id == action_id), None)
            else:
                enabled = sorted((a for a in actions if a.enabled), key=lambda x: x.priority, reverse=True)
                target = enabled[0] if enabled else None
            if target is None:
                self.logger.warning(f"No eligible recovery action for {component_name} ({action_id or 'highest priority'})")
                return None
            if self._cooldowns.active((component_name, target.id), self._time(), target.cooldown_minutes * 60.0):
                self.logger.info(f"Recovery action {target.id} for {component_name} is cooling down")
                return None
            return self._dispatch(component_name, target, "manual")

    # -------- execution --------
    def _dispatch(self, component: str, action: RecoveryAction, trigger_type: str) -> Optional[Future]:
        # caller holds self._lock
        self._cooldowns.record((component, action.id), self._time())
        generation = self._generation.get(component, 0)
        try:
            fut = self._executor.submit(self._execute, component, action, trigger_type, generation)
        except RuntimeError:
            self.logger.warning(f"Recovery pool is shut down; dropping {action.id} for {component}")
            return None
        self._pending.add(fut)
        fut.add_done_callback(self._forget)
        self.stats.inc("recovery_dispatched_total", tags={"kind": action.kind.value, "trigger": trigger_type})
        return fut

    def _forget(self, fut: Future) -> None:
        with self._lock:
            self._pending.discard(fut)

    def _execute(self, component: str, action: RecoveryAction, trigger_type: str, generation: int) -> RecoveryAttempt:
        self.logger.info(f"Executing recovery action {action.name!r} for {component} (trigger: {trigger_type})")
        t0 = time.perf_counter()
        error: Optional[str] = None
        try:
            if action.kind == RecoveryKind.custom:
                success = self._run_custom(action)
                if success:
                    self._notify(component, action, generation)
            else:
                self._notify(component, action, generation)
                settle = float(self.cfg.settle_seconds.get(action.kind.value, 0.0))
                if settle > 0:
                    self._sleep(settle)
                success = True
        except Exception as e:  # noqa: BLE001
            err = RecoveryExecutionError(component_name=component, action_id=action.id, error=str(e))
            self.logger.error(f"{err.user_message} {err.context}")
            success = False
            error = str(e) or e.__class__.__name__
        elapsed_ms = (time.perf_counter() - t0) * 1000.0

        attempt = RecoveryAttempt(
            component_name=component,
            action_id=action.id,
            action_name=action.name,
            timestamp=self._time(),
            success=success,
            error=error,
            metrics=AttemptMetrics(trigger_type=trigger_type, execution_time_ms=elapsed_ms),
        )
        with self._lock:
            self._history.append(attempt)
            still_registered = self._generation.get(component) == generation
            if success and still_registered:
                self._counters.reset((component, action.id))
        self.stats.observe("recovery_execution_ms", elapsed_ms, tags={"kind": action.kind.value})
        self.stats.inc("recovery_attempts_total", tags={"success": success})

        if success and still_registered:
            self.store.report_metric(
                PerformanceMetric(
                    component_name=component,
                    metric_type=MetricType.operation,
                    value=elapsed_ms,
                    timestamp=self._time(),
                    metadata={"origin": RECOVERY_ORIGIN, "action_name": action.name, "trigger_type": trigger_type, "success": True},
                )
            )
        return attempt

    def _run_custom(self, action: RecoveryAction) -> bool:
        result = action.custom_action()  # type: ignore[misc]
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
        # returning nothing counts as success; an explicit False is a failed attempt
        return True if result is None else bool(result)

    def _notify(self, component: str, action: RecoveryAction, generation: int) -> None:
        with self._lock:
            current = self._generation.get(component)
        if current != generation:
            self.logger.info(f"Discarding recovery notice for {component}; component was unregistered")
            return
        self.dispatcher.dispatch(RecoveryNotice(component_name=component, kind=action.kind, action_id=action.id, timestamp=self._time()))
