from __future__ import annotations

import logging
from typing import Any, Dict

from roofmon.core.logger import get_logger
from roofmon.core.telemetry.models import Alert, AlertSeverity
from roofmon.core.telemetry.redaction import telemetry_redact


class AlertNotifier:
    """User-facing alert channel. Chosen once at construction; the base class does nothing."""

    def toast(self, alert: Alert) -> None:
        return None

    def play_sound(self, alert: Alert) -> None:
        return None


class NullNotifier(AlertNotifier):
    pass


_TOAST_LEVEL = {
    AlertSeverity.critical: logging.ERROR,
    AlertSeverity.high: logging.ERROR,
    AlertSeverity.medium: logging.WARNING,
    AlertSeverity.low: logging.INFO,
}


class LoggingNotifier(AlertNotifier):
    """Headless notifier: toasts become log lines at a severity-mapped level."""

    def __init__(self, logger=None, *, tone_hz: int = 800):
        self.logger = get_logger(__name__, logger)
        self.tone_hz = int(tone_hz)

    def toast(self, alert: Alert) -> None:
        self.logger.log(_TOAST_LEVEL.get(alert.severity, logging.INFO), f"[toast] {alert.title}: {alert.message}")

    def play_sound(self, alert: Alert) -> None:
        self.logger.info(f"[sound] {self.tone_hz} Hz cue for {alert.severity.value} alert {alert.id}")


def _envelope(alert: Alert) -> Dict[str, Any]:
    return telemetry_redact(alert.model_dump(mode="json"))


class EmailTransport:
    """Stub: the mail transport is external. Logs what would be sent."""

    def __init__(self, logger=None, *, recipients: tuple = ()):
        self.logger = get_logger(__name__, logger)
        self.recipients = tuple(recipients)

    def send(self, alert: Alert) -> None:
        self.logger.info(f"Email alert would be sent to {list(self.recipients) or ['<unset>']}: {_envelope(alert)}")


class WebhookTransport:
    """Stub: the HTTP transport is external. Logs the payload that would be posted."""

    def __init__(self, logger=None, *, url: str = ""):
        self.logger = get_logger(__name__, logger)
        self.url = str(url)

    def send(self, alert: Alert) -> None:
        self.logger.info(f"Webhook alert would be sent to {self.url or '<unset>'}: {_envelope(alert)}")
