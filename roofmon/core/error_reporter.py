from __future__ import annotations

import re
import time
import traceback
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from roofmon.core.errors import MonitoringError, ReportedError
from roofmon.core.logger import get_logger
from roofmon.core.telemetry.models import ErrorLevel, ErrorReport

# (signature, violation type, likely cause); first match wins
HOOKS_SIGNATURES = [
    (re.compile(r"invalid hook call", re.IGNORECASE), "invalid_hook_call", "Hook called outside the body of a function component"),
    (re.compile(r"rendered (more|fewer) hooks", re.IGNORECASE), "hook_count_mismatch", "Hook order changed between renders (conditional hook call)"),
    (re.compile(r"hooks?.*call", re.IGNORECASE), "hook_call", "Hook called conditionally or inside a loop"),
]


def detect_hooks_violation(message: str, stack: str = "") -> Optional[Tuple[str, str]]:
    for text in (message or "", stack or ""):
        for rx, kind, cause in HOOKS_SIGNATURES:
            if rx.search(text):
                return kind, cause
    return None


def normalize_exception(exc: BaseException, *, context: Dict[str, Any]) -> MonitoringError:
    # Passthrough
    if isinstance(exc, MonitoringError):
        return exc
    return ReportedError(str(exc) or exc.__class__.__name__, exception_type=exc.__class__.__name__, **dict(context or {}))


class ErrorReporter:
    """Turns caught exceptions into ErrorReports in the store. Never raises."""

    def __init__(self, store: Any, *, include_tracebacks: bool = True, logger=None, time_fn: Callable[[], float] = time.time):
        self.store = store
        self.include_tracebacks = bool(include_tracebacks)
        self.logger = get_logger(__name__, logger)
        self._time = time_fn

    def report_exception(
        self,
        exc: BaseException,
        *,
        component_name: str = "Unknown",
        level: str = ErrorLevel.component.value,
        retry_count: int = 0,
        component_stack: str = "",
        url: str = "",
        user_agent: str = "",
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ErrorReport]:
        try:
            err = normalize_exception(exc, context=context or {})
            message = err.user_message
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)) if self.include_tracebacks else ""
            payload: Dict[str, Any] = {
                "message": message,
                "stack": stack,
                "component_stack": component_stack,
                "component_name": component_name or "Unknown",
                "level": level,
                "timestamp": self._time(),
                "retry_count": int(retry_count),
                "url": url,
                "user_agent": user_agent,
                "additional_info": {"error_code": err.code, **err.to_dict()["context"]},
            }
            hooks = detect_hooks_violation(message, stack)
            if hooks is not None:
                payload["hooks_violation_type"], payload["possible_cause"] = hooks
                return self.store.report_hooks_error(payload)
            return self.store.report_error(payload)
        except Exception:  # noqa: BLE001
            self.logger.exception(f"Error reporter failed for {component_name}")
            return None

    @contextmanager
    def capture(self, component_name: str, *, level: str = ErrorLevel.component.value, reraise: bool = False, **kwargs: Any) -> Iterator[None]:
        """Report any exception raised inside the block; swallow it unless reraise=True."""
        try:
            yield
        except Exception as e:  # noqa: BLE001
            self.report_exception(e, component_name=component_name, level=level, **kwargs)
            if reraise:
                raise
