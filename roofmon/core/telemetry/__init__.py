"""
Telemetry record: error reports, performance metrics, health snapshots and alerts.

Import concrete modules directly (`roofmon.core.telemetry.store` etc.); this package
stays import-free so config models can depend on alert rules without a cycle.
"""
