from __future__ import annotations

import pytest

from roofmon.core.config.models import MonitoringConfig, PersistenceConfig
from roofmon.core.service import MonitoringService
from roofmon.core.telemetry.store import TelemetryStore
from tests.helpers.fakes import FakeClock, RecordingNotifier, no_settle


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return TelemetryStore(time_fn=clock.time)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(clock, notifier):
    cfg = MonitoringConfig(persistence=PersistenceConfig(enabled=False), recovery=no_settle())
    svc = MonitoringService(cfg, notifier=notifier, time_fn=clock.time)
    svc.init()
    try:
        yield svc
    finally:
        svc.teardown()
