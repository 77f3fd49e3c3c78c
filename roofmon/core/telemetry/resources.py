from __future__ import annotations

import os
from typing import Any, Dict, Optional


class MemoryProbe:
    """Capability: current memory usage in bytes, or None when it cannot be measured."""

    name = "none"

    def sample(self) -> Optional[float]:
        return None

    def details(self) -> Dict[str, Any]:
        return {}


class NullMemoryProbe(MemoryProbe):
    pass


class ProcessMemoryProbe(MemoryProbe):
    """Resident set size of this process (psutil, best effort)."""

    name = "process"

    def __init__(self) -> None:
        self._proc = None
        try:
            import psutil  # type: ignore

            self._proc = psutil.Process(os.getpid())
        except Exception:
            self._proc = None

    def available(self) -> bool:
        return self._proc is not None

    def sample(self) -> Optional[float]:
        if self._proc is None:
            return None
        try:
            return float(self._proc.memory_info().rss)
        except Exception:
            return None

    def details(self) -> Dict[str, Any]:
        if self._proc is None:
            return {}
        try:
            mi = self._proc.memory_info()
            return {"rss_bytes": int(mi.rss), "vms_bytes": int(mi.vms), "pid": int(self._proc.pid)}
        except Exception:
            return {}


def make_memory_probe(kind: str) -> MemoryProbe:
    if kind == "process":
        return ProcessMemoryProbe()
    return NullMemoryProbe()
