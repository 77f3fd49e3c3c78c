from __future__ import annotations

from typing import List

from roofmon.core.recovery.models import RecoveryAction


def default_recovery_actions() -> List[RecoveryAction]:
    """Baseline remediation set for a component registered without its own actions."""
    return [
        RecoveryAction(
            id="hooks-violation-remount",
            name="Remount Component",
            description="Remount component to reset hook state",
            trigger={"error_pattern": r"hooks?.*call|invalid hook call|rendered (more|fewer) hooks", "consecutive": 1},
            kind="remount",
            cooldown_minutes=1,
            priority=10,
        ),
        RecoveryAction(
            id="slow-render-reset",
            name="Reset Component State",
            description="Reset component state to improve performance",
            trigger={"performance_threshold": 100, "consecutive": 3},
            kind="reset",
            cooldown_minutes=5,
            priority=5,
        ),
        RecoveryAction(
            id="memory-leak-reload",
            name="Reload Component",
            description="Reload component to free memory",
            trigger={"performance_threshold": 200 * 1024 * 1024, "consecutive": 2},
            kind="reload",
            cooldown_minutes=10,
            priority=8,
        ),
        RecoveryAction(
            id="unhealthy-component-reset",
            name="Health Recovery Reset",
            description="Reset component when health status is unhealthy",
            trigger={"health_status": "unhealthy", "consecutive": 2},
            kind="reset",
            cooldown_minutes=5,
            priority=7,
        ),
    ]
