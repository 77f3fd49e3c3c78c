"""Rule-based alerting over telemetry events."""
