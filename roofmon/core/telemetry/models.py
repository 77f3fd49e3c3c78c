from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from roofmon.core.telemetry.redaction import telemetry_redact


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class ErrorLevel(str, Enum):
    page = "page"
    component = "component"
    section = "section"


class MetricType(str, Enum):
    render = "render"
    operation = "operation"
    api = "api"
    memory = "memory"


class HealthStatus(str, Enum):
    healthy = "healthy"
    degraded = "degraded"
    unhealthy = "unhealthy"


_STATUS_RANK = {HealthStatus.healthy: 0, HealthStatus.degraded: 1, HealthStatus.unhealthy: 2}


def escalate(current: HealthStatus, target: HealthStatus) -> HealthStatus:
    """Return the worse of the two statuses; a status never improves within one pass."""
    return target if _STATUS_RANK[target] > _STATUS_RANK[current] else current


class AlertType(str, Enum):
    error = "error"
    performance = "performance"
    health = "health"
    warning = "warning"


class AlertSeverity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class ErrorReport(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: new_id("err"))
    message: str
    stack: str = ""
    component_stack: str = ""
    component_name: str = "Unknown"
    level: ErrorLevel = ErrorLevel.component
    timestamp: float = Field(default_factory=lambda: time.time())
    retry_count: int = Field(default=0, ge=0)
    url: str = ""
    user_agent: str = ""
    additional_info: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _scrub_url(cls, v: str) -> str:
        return telemetry_redact(str(v or ""))

    @field_validator("additional_info")
    @classmethod
    def _scrub_info(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return telemetry_redact(v or {})


class HooksErrorReport(ErrorReport):
    hooks_violation_type: str
    possible_cause: str = ""


class PerformanceMetric(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: new_id("perf"))
    component_name: str
    metric_type: MetricType
    value: float
    threshold: Optional[float] = None
    timestamp: float = Field(default_factory=lambda: time.time())
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata")
    @classmethod
    def _scrub_metadata(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return telemetry_redact(v or {})


class HealthMetrics(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    render_time: float = 0.0
    error_rate: float = 0.0
    memory_usage: Optional[float] = None
    api_response_time: Optional[float] = None


class HealthCheck(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    component_name: str
    status: HealthStatus = HealthStatus.healthy
    last_check: float = Field(default_factory=lambda: time.time())
    metrics: HealthMetrics = Field(default_factory=HealthMetrics)
    issues: List[str] = Field(default_factory=list)


class Alert(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: new_id("alert"))
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    component_name: Optional[str] = None
    timestamp: float = Field(default_factory=lambda: time.time())
    acknowledged: bool = False
    resolved: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AlertStats(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    acknowledged: int = 0
    resolved: int = 0


class ErrorAnalytics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_errors: int = 0
    hooks_errors: int = 0
    errors_by_component: Dict[str, int] = Field(default_factory=dict)
    errors_by_level: Dict[str, int] = Field(default_factory=dict)
    error_rate: float = 0.0
    critical_errors: int = 0


class PerformanceAnalytics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_renders: int = 0
    avg_render_time: float = 0.0
    slow_renders: int = 0
    critical_renders: int = 0
    slow_render_rate: float = 0.0
    p95_render_time: float = 0.0
    p99_render_time: float = 0.0
