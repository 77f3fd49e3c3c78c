from __future__ import annotations

from typing import Dict, Optional, Tuple

Key = Tuple[str, str]


class ConsecutiveCounter:
    """Match counts per (component, action id). Not thread-safe; callers hold their own lock."""

    def __init__(self) -> None:
        self._counts: Dict[Key, int] = {}

    def increment(self, key: Key) -> int:
        n = self._counts.get(key, 0) + 1
        self._counts[key] = n
        return n

    def get(self, key: Key) -> int:
        return self._counts.get(key, 0)

    def reset(self, key: Key) -> None:
        self._counts[key] = 0

    def clear_component(self, component_name: str) -> None:
        for k in [k for k in self._counts if k[0] == component_name]:
            del self._counts[k]


class CooldownTracker:
    """Last execution time per (component, action id)."""

    def __init__(self) -> None:
        self._last: Dict[Key, float] = {}

    def record(self, key: Key, ts: float) -> None:
        self._last[key] = float(ts)

    def last(self, key: Key) -> Optional[float]:
        return self._last.get(key)

    def active(self, key: Key, now: float, cooldown_seconds: float) -> bool:
        last = self._last.get(key)
        return last is not None and (now - last) < float(cooldown_seconds)

    def clear_component(self, component_name: str) -> None:
        for k in [k for k in self._last if k[0] == component_name]:
            del self._last[k]
