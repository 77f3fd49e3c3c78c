from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from roofmon.core.errors import RuleEvaluationError
from roofmon.core.telemetry.events import ErrorEvent, HealthEvent, MetricEvent
from roofmon.core.telemetry.models import AlertSeverity, AlertType, MetricType


class ConditionType(str, Enum):
    performance = "performance"
    error = "error"
    hooks = "hooks"
    health = "health"


class Operator(str, Enum):
    gt = "gt"
    lt = "lt"
    eq = "eq"
    contains = "contains"


# Rule metric names accepted per metric type (camelCase kept for dashboard-authored rules).
METRIC_ALIASES: Dict[MetricType, FrozenSet[str]] = {
    MetricType.render: frozenset({"render", "renderTime", "render_time"}),
    MetricType.operation: frozenset({"operation", "operationTime", "operation_time"}),
    MetricType.api: frozenset({"api", "apiResponseTime", "api_response_time"}),
    MetricType.memory: frozenset({"memory", "memoryUsage", "memory_usage"}),
}

ERROR_METRICS: FrozenSet[str] = frozenset({"message", "error", "stack", "level", "retry_count", "retryCount", "component_name", "componentName"})
HEALTH_METRICS: FrozenSet[str] = frozenset(
    {"status", "render_time", "renderTime", "error_rate", "errorRate", "memory_usage", "memoryUsage", "api_response_time", "apiResponseTime", "issue_count", "issueCount"}
)

_ALERT_TYPE_FOR: Dict[ConditionType, AlertType] = {
    ConditionType.performance: AlertType.performance,
    ConditionType.error: AlertType.error,
    ConditionType.hooks: AlertType.error,
    ConditionType.health: AlertType.health,
}


def known_metrics(ctype: ConditionType) -> FrozenSet[str]:
    if ctype == ConditionType.performance:
        out: FrozenSet[str] = frozenset()
        for names in METRIC_ALIASES.values():
            out = out | names
        return out
    if ctype == ConditionType.health:
        return HEALTH_METRICS
    # hooks rules share the error field names
    return ERROR_METRICS


class RuleCondition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: ConditionType
    metric: str = Field(min_length=1)
    operator: Operator
    threshold: Union[bool, int, float, str]
    time_window_minutes: float = Field(default=5.0, ge=0)
    min_occurrences: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _known_metric(self) -> "RuleCondition":
        if self.metric not in known_metrics(self.type):
            raise ValueError(f"unknown metric {self.metric!r} for {self.type.value} conditions")
        return self


class RuleActions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    toast: bool = True
    console: bool = True
    email: bool = False
    webhook: bool = False


class AlertRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    enabled: bool = True
    condition: RuleCondition
    severity: AlertSeverity
    actions: RuleActions = Field(default_factory=RuleActions)
    cooldown_minutes: float = Field(default=5.0, ge=0)

    @property
    def alert_type(self) -> AlertType:
        return _ALERT_TYPE_FOR[self.condition.type]


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def evaluate_condition(value: Any, operator: Operator, threshold: Any) -> bool:
    """Apply one operator. Type mismatches are a plain False, never an exception."""
    op = Operator(operator)
    if op in (Operator.gt, Operator.lt):
        if not _is_number(value) or not _is_number(threshold):
            return False
        return value > threshold if op == Operator.gt else value < threshold
    if op == Operator.eq:
        if _is_number(value) and _is_number(threshold):
            return float(value) == float(threshold)
        return type(value) is type(threshold) and value == threshold
    if isinstance(value, str) and isinstance(threshold, str):
        return threshold.lower() in value.lower()
    return False


def event_category(event: Any) -> Optional[ConditionType]:
    if isinstance(event, MetricEvent):
        return ConditionType.performance
    if isinstance(event, ErrorEvent):
        return ConditionType.hooks if event.hooks_violation else ConditionType.error
    if isinstance(event, HealthEvent):
        return ConditionType.health
    return None


def _error_value(metric: str, event: ErrorEvent) -> Any:
    rep = event.report
    if metric in ("message", "error"):
        return rep.message
    if metric == "stack":
        return rep.stack
    if metric == "level":
        return rep.level.value
    if metric in ("retry_count", "retryCount"):
        return rep.retry_count
    if metric in ("component_name", "componentName"):
        return rep.component_name
    raise RuleEvaluationError(metric=metric, category="error")


def _health_value(metric: str, event: HealthEvent) -> Any:
    h = event.health
    if metric == "status":
        return h.status.value
    if metric in ("render_time", "renderTime"):
        return h.metrics.render_time
    if metric in ("error_rate", "errorRate"):
        return h.metrics.error_rate
    if metric in ("memory_usage", "memoryUsage"):
        return h.metrics.memory_usage
    if metric in ("api_response_time", "apiResponseTime"):
        return h.metrics.api_response_time
    if metric in ("issue_count", "issueCount"):
        return len(h.issues)
    raise RuleEvaluationError(metric=metric, category="health")


def rule_matches(rule: AlertRule, event: Any) -> bool:
    """
    True when `event` is in the rule's category, carries the rule's metric and satisfies the operator.
    Raises RuleEvaluationError for a metric name the category does not know.
    """
    cond = rule.condition
    if event_category(event) != cond.type:
        return False
    if cond.type == ConditionType.hooks:
        return True
    if cond.type == ConditionType.performance:
        names = METRIC_ALIASES.get(event.metric.metric_type, frozenset())
        if cond.metric not in names:
            if cond.metric not in known_metrics(ConditionType.performance):
                raise RuleEvaluationError(metric=cond.metric, category="performance")
            return False
        return evaluate_condition(event.metric.value, cond.operator, cond.threshold)
    if cond.type == ConditionType.error:
        return evaluate_condition(_error_value(cond.metric, event), cond.operator, cond.threshold)
    return evaluate_condition(_health_value(cond.metric, event), cond.operator, cond.threshold)


def alert_message(rule: AlertRule, event: Any) -> str:
    cond = rule.condition
    if cond.type == ConditionType.performance and isinstance(event, MetricEvent):
        m = event.metric
        if m.metric_type == MetricType.render:
            return f"Render time of {m.value:.1f}ms exceeds threshold of {cond.threshold}ms"
        if m.metric_type == MetricType.memory:
            return f"Memory usage of {m.value / 1024 / 1024:.1f}MB exceeds threshold"
        if m.metric_type == MetricType.api:
            return f"API response time of {m.value:.0f}ms exceeds threshold of {cond.threshold}ms"
        return f"Performance metric {cond.metric} triggered alert"
    if cond.type == ConditionType.hooks and isinstance(event, ErrorEvent):
        violation = getattr(event.report, "hooks_violation_type", "") or "Unknown violation"
        return f"React Hooks violation detected: {violation}"
    if cond.type == ConditionType.error and isinstance(event, ErrorEvent):
        return f"Error in {event.report.component_name}: {event.report.message}"
    if cond.type == ConditionType.health and isinstance(event, HealthEvent):
        issues = ", ".join(event.health.issues) or "None"
        return f"Component health status changed to {event.health.status.value}. Issues: {issues}"
    return f"Alert condition met for {rule.name}"


def _rule(id: str, name: str, ctype: str, metric: str, op: str, threshold: Any, window: float, occurrences: int, severity: str, cooldown: float, **actions: bool) -> AlertRule:
    return AlertRule(
        id=id,
        name=name,
        condition=RuleCondition(type=ctype, metric=metric, operator=op, threshold=threshold, time_window_minutes=window, min_occurrences=occurrences),
        severity=severity,
        actions=RuleActions(**actions),
        cooldown_minutes=cooldown,
    )


def default_rules() -> List[AlertRule]:
    return [
        _rule("slow-render", "Slow Render Time", "performance", "renderTime", "gt", 50, 5, 3, "medium", 5),
        _rule("critical-render", "Critical Render Time", "performance", "renderTime", "gt", 100, 1, 1, "critical", 2, email=True),
        _rule("hooks-error", "React Hooks Error", "hooks", "error", "contains", "hook", 1, 1, "critical", 0, email=True, webhook=True),
        _rule("component-unhealthy", "Component Unhealthy", "health", "status", "eq", "unhealthy", 1, 1, "high", 10),
        _rule("high-memory", "High Memory Usage", "performance", "memory", "gt", 100 * 1024 * 1024, 5, 2, "medium", 15),
        _rule("page-error", "Page Level Error", "error", "level", "eq", "page", 1, 1, "high", 5),
        _rule("slow-api", "Slow API Response", "performance", "api", "gt", 2000, 5, 3, "medium", 10, toast=False),
    ]
