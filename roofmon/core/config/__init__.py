from __future__ import annotations

from typing import Optional

from pydantic import ValidationError

from roofmon.core.config.io import read_json_file
from roofmon.core.config.models import (
    AlertingConfig,
    HealthConfig,
    HealthThresholds,
    MemoryConfig,
    MonitoringConfig,
    PersistenceConfig,
    RecoveryConfig,
    StoreConfig,
)
from roofmon.core.errors import ConfigError


def load_config(path: Optional[str] = None) -> MonitoringConfig:
    """
    Load monitoring config from a JSON file.
    Missing file (or no path) -> defaults. Corrupt or invalid file -> ConfigError.
    """
    if not path:
        return MonitoringConfig()
    rr = read_json_file(path)
    if not rr.ok:
        if rr.error == "missing":
            return MonitoringConfig()
        raise ConfigError("Monitoring config could not be read.", path=path, error=rr.error)
    try:
        return MonitoringConfig.model_validate(rr.data)
    except ValidationError as e:
        raise ConfigError("Monitoring config is invalid.", path=path, errors=[f"{'.'.join(str(p) for p in x.get('loc', ()))}: {x.get('msg')}" for x in e.errors()]) from e


__all__ = [
    "AlertingConfig",
    "HealthConfig",
    "HealthThresholds",
    "MemoryConfig",
    "MonitoringConfig",
    "PersistenceConfig",
    "RecoveryConfig",
    "StoreConfig",
    "load_config",
]
