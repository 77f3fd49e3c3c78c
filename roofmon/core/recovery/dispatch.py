from __future__ import annotations

import threading
from typing import Callable, Dict, List

from roofmon.core.logger import get_logger
from roofmon.core.recovery.models import RecoveryKind, RecoveryNotice

NoticeCallback = Callable[[RecoveryNotice], None]


class RecoveryDispatcher:
    """Component-keyed delivery of recovery notices to whoever owns the component."""

    def __init__(self, *, logger=None):
        self.logger = get_logger(__name__, logger)
        self._lock = threading.Lock()
        self._subs: Dict[str, List[NoticeCallback]] = {}

    def subscribe(self, component_name: str, callback: NoticeCallback) -> Callable[[], None]:
        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            self._subs.setdefault(component_name, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subs.get(component_name, [])
                self._subs[component_name] = [s for s in subs if s is not callback]
                if not self._subs[component_name]:
                    self._subs.pop(component_name, None)

        return unsubscribe

    def dispatch(self, notice: RecoveryNotice) -> int:
        """Deliver to the component's subscribers. Returns how many accepted it."""
        with self._lock:
            subs = list(self._subs.get(notice.component_name, []))
        if not subs:
            self.logger.debug(f"No recovery subscriber for {notice.component_name} ({notice.kind.value})")
        delivered = 0
        for cb in subs:
            try:
                cb(notice)
                delivered += 1
            except Exception:  # noqa: BLE001
                self.logger.exception(f"Recovery subscriber failed for {notice.component_name}")
        return delivered


class RecoveryKeys:
    """
    Re-key counters for an owning component. A remount bumps remount_key,
    a reset bumps reset_key, a reload bumps both.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.remount_key = 0
        self.reset_key = 0

    def apply(self, notice: RecoveryNotice) -> None:
        with self._lock:
            if notice.kind in (RecoveryKind.remount, RecoveryKind.reload):
                self.remount_key += 1
            if notice.kind in (RecoveryKind.reset, RecoveryKind.reload):
                self.reset_key += 1

    def attach(self, dispatcher: RecoveryDispatcher, component_name: str) -> Callable[[], None]:
        return dispatcher.subscribe(component_name, self.apply)
