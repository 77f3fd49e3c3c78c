from __future__ import annotations

import re
import time
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from roofmon.core.telemetry.models import HealthStatus, new_id


class RecoveryKind(str, Enum):
    reload = "reload"
    remount = "remount"
    reset = "reset"
    custom = "custom"


class RecoveryTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # str patterns compile case-insensitive; pass a compiled re.Pattern for other flags
    error_pattern: Optional[re.Pattern] = None
    performance_threshold: Optional[float] = None
    health_status: Optional[HealthStatus] = None
    consecutive: Optional[int] = Field(default=None, ge=1)

    @field_validator("error_pattern", mode="before")
    @classmethod
    def _compile(cls, v: Any) -> Any:
        if v is None or isinstance(v, re.Pattern):
            return v
        if not isinstance(v, str) or not v:
            raise ValueError("error_pattern must be a non-empty string or compiled pattern")
        try:
            return re.compile(v, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"invalid error_pattern: {e}") from e

    @model_validator(mode="after")
    def _has_predicate(self) -> "RecoveryTrigger":
        if self.error_pattern is None and self.performance_threshold is None and self.health_status is None:
            raise ValueError("trigger needs error_pattern, performance_threshold or health_status")
        return self

    @property
    def required_count(self) -> int:
        return int(self.consecutive or 1)


class RecoveryAction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    trigger: RecoveryTrigger
    kind: RecoveryKind
    custom_action: Optional[Callable[[], Any]] = Field(default=None, exclude=True)
    cooldown_minutes: float = Field(default=5.0, ge=0)
    enabled: bool = True
    priority: int = 0

    @model_validator(mode="after")
    def _custom_needs_callable(self) -> "RecoveryAction":
        if self.kind == RecoveryKind.custom and self.custom_action is None:
            raise ValueError("custom recovery actions need a custom_action callable")
        return self


class AttemptMetrics(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    trigger_type: str
    execution_time_ms: float


class RecoveryAttempt(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: new_id("recovery"))
    component_name: str
    action_id: str
    action_name: str
    timestamp: float = Field(default_factory=lambda: time.time())
    success: bool
    error: Optional[str] = None
    metrics: Optional[AttemptMetrics] = None


class RecoveryNotice(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    component_name: str
    kind: RecoveryKind
    action_id: str
    timestamp: float = Field(default_factory=lambda: time.time())
