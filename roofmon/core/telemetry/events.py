"""
Tagged telemetry events fanned out by the store.

Every subscriber receives one of the variants below; consumers match on the
concrete class (or the `kind` tag when working with serialized payloads).
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from roofmon.core.telemetry.models import Alert, ErrorReport, HealthCheck, HealthStatus, HooksErrorReport, PerformanceMetric


class ErrorEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["error"] = "error"
    report: Union[HooksErrorReport, ErrorReport]
    hooks_violation: bool = False

    @property
    def component_name(self) -> str:
        return self.report.component_name


class MetricEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["metric"] = "metric"
    metric: PerformanceMetric

    @property
    def component_name(self) -> str:
        return self.metric.component_name


class HealthEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["health"] = "health"
    health: HealthCheck
    previous_status: Optional[HealthStatus] = None

    @property
    def component_name(self) -> str:
        return self.health.component_name


class AlertChange(str, Enum):
    created = "created"
    acknowledged = "acknowledged"
    resolved = "resolved"


class AlertEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["alert"] = "alert"
    alert: Alert
    change: AlertChange = AlertChange.created

    @property
    def component_name(self) -> Optional[str]:
        return self.alert.component_name


class DataClearedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["data_cleared"] = "data_cleared"
    cutoff: float
    ts: float = Field(default_factory=lambda: time.time())

    @property
    def component_name(self) -> Optional[str]:
        return None


TelemetryEvent = Annotated[
    Union[ErrorEvent, MetricEvent, HealthEvent, AlertEvent, DataClearedEvent],
    Field(discriminator="kind"),
]
