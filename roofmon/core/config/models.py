from __future__ import annotations

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from roofmon.core.alerts.rules import AlertRule


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_stored_errors: int = Field(default=1000, ge=1, le=1_000_000)
    max_stored_metrics: int = Field(default=5000, ge=1, le=1_000_000)
    max_stored_alerts: int = Field(default=500, ge=1, le=1_000_000)
    alert_cooldown_seconds: float = Field(default=60.0, ge=0.0)
    slow_render_ms: float = 50.0
    critical_render_ms: float = 100.0


class PersistenceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    enabled: bool = True
    path: str = os.path.join("logs", "monitoring", "monitoring_data.json")
    keep_errors: int = Field(default=100, ge=0)
    keep_alerts: int = Field(default=50, ge=0)
    restore_on_start: bool = False


class AlertingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    enabled: bool = True
    sound_enabled: bool = True
    # one alert per reported error, on top of the rule set
    error_alerts: bool = True
    # None -> built-in default rule set
    rules: Optional[List[AlertRule]] = None


class HealthThresholds(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)
    max_render_time_ms: float = Field(default=50.0, gt=0)
    max_error_rate: float = Field(default=0.05, ge=0)
    max_memory_bytes: Optional[float] = 50 * 1024 * 1024
    max_api_time_ms: Optional[float] = 2000.0


class HealthConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    interval_seconds: float = Field(default=30.0, gt=0)
    stale_multiplier: float = Field(default=3.0, gt=1.0)
    sweep_stale: bool = True
    assess_on_error: bool = True
    thresholds: HealthThresholds = Field(default_factory=HealthThresholds)


class RecoveryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    enabled: bool = True
    max_workers: int = Field(default=4, ge=1, le=64)
    max_history: int = Field(default=1000, ge=1)
    # how long a built-in action waits for the owning component to re-key itself
    settle_seconds: Dict[str, float] = Field(default_factory=lambda: {"remount": 0.1, "reset": 0.05, "reload": 0.2})

    @field_validator("settle_seconds")
    @classmethod
    def _known_kinds(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = set(v) - {"remount", "reset", "reload"}
        if unknown:
            raise ValueError(f"unknown recovery kinds: {sorted(unknown)}")
        if any(float(x) < 0 for x in v.values()):
            raise ValueError("settle_seconds must be >= 0")
        return v


class MemoryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    probe: str = Field(default="none", pattern="^(none|process)$")
    interval_seconds: float = Field(default=60.0, gt=0)
    component_name: str = "Global"


class MonitoringConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    schema_version: int = Field(default=1, ge=1, le=10)
    store: StoreConfig = Field(default_factory=StoreConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
