from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from roofmon.core.alerts.notifiers import AlertNotifier, EmailTransport, NullNotifier, WebhookTransport
from roofmon.core.alerts.rules import AlertRule, RuleActions, alert_message, default_rules, event_category, rule_matches
from roofmon.core.errors import RegistrationError, RuleEvaluationError
from roofmon.core.logger import get_logger
from roofmon.core.telemetry.events import ErrorEvent
from roofmon.core.telemetry.metrics import SelfMetrics
from roofmon.core.telemetry.models import Alert, AlertSeverity, AlertType
from roofmon.core.telemetry.store import classify_error_severity


class OccurrenceWindow:
    """Sliding-window hit counter keyed by (rule id, component name)."""

    def __init__(self) -> None:
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}

    def record(self, key: Tuple[str, str], ts: float, window_seconds: float) -> int:
        hits = self._hits.setdefault(key, deque())
        hits.append(float(ts))
        floor = float(ts) - max(0.0, float(window_seconds))
        while hits and hits[0] < floor:
            hits.popleft()
        return len(hits)

    def count(self, key: Tuple[str, str]) -> int:
        return len(self._hits.get(key, ()))

    def clear(self, key: Tuple[str, str]) -> None:
        self._hits.pop(key, None)

    def clear_rule(self, rule_id: str) -> None:
        for k in [k for k in self._hits if k[0] == rule_id]:
            self._hits.pop(k, None)

    def reset(self) -> None:
        self._hits.clear()


class AlertEngine:
    """
    Evaluates telemetry events against the rule registry.

    A rule fires when min_occurrences qualifying events land inside its time window
    and its own cooldown (per rule id) has elapsed. Alert creation then goes through
    the store, which applies the independent per-(type, component, severity) limit;
    actions run only for alerts the store actually created.

    Every reported error also yields a built-in error alert (severity from
    classify_error_severity) after the rules ran. A rule alert with the same
    store key wins, so a page error or hooks violation is not alerted twice.
    """

    def __init__(
        self,
        store: Any,
        *,
        rules: Optional[Iterable[Union[AlertRule, Dict[str, Any]]]] = None,
        notifier: Optional[AlertNotifier] = None,
        email: Optional[EmailTransport] = None,
        webhook: Optional[WebhookTransport] = None,
        sound_enabled: bool = True,
        enabled: bool = True,
        error_alerts: bool = True,
        logger=None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.notifier = notifier or NullNotifier()
        self.logger = get_logger(__name__, logger)
        self.email = email or EmailTransport(self.logger)
        self.webhook = webhook or WebhookTransport(self.logger)
        self.sound_enabled = bool(sound_enabled)
        self._enabled = bool(enabled)
        self.error_alerts = bool(error_alerts)
        self._time = time_fn
        self.stats = SelfMetrics()

        self._lock = threading.RLock()
        self._rules: Dict[str, AlertRule] = {}
        self._window = OccurrenceWindow()
        self._last_trigger: Dict[str, float] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None

        for r in default_rules() if rules is None else rules:
            self.add_rule(r)

    # -------- lifecycle --------
    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self.handle_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -------- registry --------
    def add_rule(self, rule: Union[AlertRule, Dict[str, Any]]) -> AlertRule:
        if not isinstance(rule, AlertRule):
            try:
                rule = AlertRule.model_validate(rule)
            except ValidationError as e:
                raise RegistrationError("Invalid alert rule.", errors=[str(x.get("msg")) for x in e.errors()]) from e
        with self._lock:
            if rule.id in self._rules:
                raise RegistrationError("Duplicate alert rule id.", rule_id=rule.id)
            self._rules[rule.id] = rule
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
            self._window.clear_rule(rule_id)
            self._last_trigger.pop(rule_id, None)
        return removed

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            self._rules[rule_id] = rule.model_copy(update={"enabled": bool(enabled)})
            if not enabled:
                self._window.clear_rule(rule_id)
        return True

    def list_rules(self) -> List[AlertRule]:
        with self._lock:
            return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)

    @property
    def enabled(self) -> bool:
        return self._enabled

    # -------- evaluation --------
    def handle_event(self, event: Any) -> List[Alert]:
        """Store subscriber entry point. Returns the alerts created for this event."""
        if not self._enabled:
            return []
        category = event_category(event)
        if category is None:
            return []
        with self._lock:
            candidates = [r for r in self._rules.values() if r.enabled and r.condition.type == category]
        created: List[Alert] = []
        for rule in candidates:
            alert = self._evaluate(rule, event)
            if alert is not None:
                created.append(alert)
        if self.error_alerts and isinstance(event, ErrorEvent):
            alert = self._error_alert(event)
            if alert is not None:
                created.append(alert)
        return created

    def _error_alert(self, event: ErrorEvent) -> Optional[Alert]:
        rep = event.report
        component = rep.component_name or "System"
        if event.hooks_violation:
            severity = AlertSeverity.critical
            title = f"React Hooks Violation in {component}"
            message = f"{getattr(rep, 'hooks_violation_type', '')}: {getattr(rep, 'possible_cause', '')}"
        else:
            severity = classify_error_severity(rep)
            title = f"Error in {component}"
            message = rep.message
        alert = self.store.create_alert(
            type=AlertType.error,
            severity=severity,
            title=title,
            message=message,
            component_name=component,
            metadata={"source": "reported_error", "error_id": rep.id, "level": rep.level.value},
        )
        if alert is None:
            return None
        self.stats.inc("error_alerts_total", tags={"severity": severity.value})
        self._run_actions(RuleActions(), alert)
        return alert

    def _evaluate(self, rule: AlertRule, event: Any) -> Optional[Alert]:
        try:
            if not rule_matches(rule, event):
                return None
        except RuleEvaluationError as e:
            self.stats.inc("rule_evaluation_errors_total", tags={"rule": rule.id})
            self.logger.debug(f"Rule {rule.id} not evaluated: {e.context}")
            return None

        component = event.component_name or "System"
        key = (rule.id, component)
        now = self._time()
        with self._lock:
            hits = self._window.record(key, now, rule.condition.time_window_minutes * 60.0)
            if hits < rule.condition.min_occurrences:
                return None
            last = self._last_trigger.get(rule.id)
            if last is not None and (now - last) < rule.cooldown_minutes * 60.0:
                self.stats.inc("rule_cooldown_skips_total", tags={"rule": rule.id})
                return None
            self._last_trigger[rule.id] = now
            self._window.clear(key)

        alert = self.store.create_alert(
            type=rule.alert_type,
            severity=rule.severity,
            title=rule.name,
            message=alert_message(rule, event),
            component_name=component,
            metadata={"rule": rule.id, "data": event.model_dump(mode="json")},
        )
        if alert is None:
            return None
        self.stats.inc("rule_triggers_total", tags={"rule": rule.id})
        self._run_actions(rule.actions, alert)
        return alert

    def _run_actions(self, actions: RuleActions, alert: Alert) -> None:
        steps: List[Tuple[str, Callable[[], None]]] = []
        if actions.toast:
            steps.append(("toast", lambda: self.notifier.toast(alert)))
        if actions.console:
            steps.append(("console", lambda: self.logger.warning(f"Alert: {alert.title} ({alert.severity.value}) {alert.message}")))
        if actions.email:
            steps.append(("email", lambda: self.email.send(alert)))
        if actions.webhook:
            steps.append(("webhook", lambda: self.webhook.send(alert)))
        if self.sound_enabled and alert.severity in (AlertSeverity.high, AlertSeverity.critical):
            steps.append(("sound", lambda: self.notifier.play_sound(alert)))
        for name, fn in steps:
            try:
                fn()
            except Exception as e:  # noqa: BLE001
                self.stats.inc("alert_action_failures_total", tags={"action": name})
                self.logger.warning(f"Alert action {name} failed for {alert.id}: {e}")
