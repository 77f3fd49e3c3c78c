from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from roofmon.core.telemetry.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class MonitoringError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Core types ----
class ReportedError(MonitoringError):
    """An application error captured by a reporter. Stored, never re-thrown."""

    def __init__(self, user_message: str = "Application error.", **ctx: Any):
        super().__init__("reported_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class RuleEvaluationError(MonitoringError):
    def __init__(self, user_message: str = "Alert rule could not be evaluated.", **ctx: Any):
        super().__init__("rule_evaluation_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class RecoveryExecutionError(MonitoringError):
    def __init__(self, user_message: str = "Recovery action failed.", **ctx: Any):
        super().__init__("recovery_execution_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class PersistenceError(MonitoringError):
    def __init__(self, user_message: str = "Could not persist monitoring snapshot.", **ctx: Any):
        super().__init__("persistence_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class RegistrationError(MonitoringError):
    def __init__(self, user_message: str = "Invalid registration.", **ctx: Any):
        super().__init__("registration_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


class ConfigError(MonitoringError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class NotFoundError(MonitoringError):
    def __init__(self, user_message: str = "Not found.", **ctx: Any):
        super().__init__("not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
