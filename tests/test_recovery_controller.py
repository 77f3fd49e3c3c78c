from __future__ import annotations

import threading

import pytest

from roofmon.core.config.models import RecoveryConfig
from roofmon.core.errors import RegistrationError
from roofmon.core.recovery.controller import RECOVERY_ORIGIN, RecoveryController
from roofmon.core.recovery.dispatch import RecoveryDispatcher, RecoveryKeys
from roofmon.core.recovery.models import RecoveryKind, RecoveryNotice


@pytest.fixture
def controller(store, clock):
    c = RecoveryController(
        store,
        cfg=RecoveryConfig(settle_seconds={"remount": 0.0, "reset": 0.0, "reload": 0.0}),
        time_fn=clock.time,
    )
    c.attach()
    try:
        yield c
    finally:
        c.shutdown()


def action(id, *, kind="remount", priority=0, cooldown=5, enabled=True, **trigger):
    return {"id": id, "name": id.title(), "trigger": trigger, "kind": kind, "priority": priority, "cooldown_minutes": cooldown, "enabled": enabled}


def custom(id, fn, **trigger):
    return {"id": id, "name": id.title(), "trigger": trigger, "kind": "custom", "custom_action": fn, "cooldown_minutes": 5}


def fail(store, message, component="Grid"):
    store.report_error({"message": message, "component_name": component})


def test_consecutive_threshold_fires_on_third_event_then_resets(store, controller):
    controller.register_component("Grid", [action("slow", kind="reset", performance_threshold=100, consecutive=3)])

    for _ in range(2):
        store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 150})
    assert controller.drain()
    assert controller.get_recovery_history() == []
    assert controller.consecutive_count("Grid", "slow") == 2

    store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 150})
    assert controller.drain()
    [attempt] = controller.get_recovery_history()
    assert attempt.success and attempt.action_id == "slow"
    assert attempt.metrics.trigger_type == "performance"
    assert controller.consecutive_count("Grid", "slow") == 0


def test_successful_attempt_reports_operation_metric_that_is_not_rematched(store, controller):
    controller.register_component("Grid", [action("any-metric", performance_threshold=-1)])
    store.report_metric({"component_name": "Grid", "metric_type": "render", "value": 1})
    assert controller.drain()

    ops = store.get_metrics(metric_type="operation")
    assert len(ops) == 1
    assert ops[0].metadata["origin"] == RECOVERY_ORIGIN
    assert len(controller.get_recovery_history()) == 1


def test_highest_priority_wins_and_cooldown_falls_through(store, controller):
    controller.register_component(
        "Grid",
        [action("low", priority=5, error_pattern="timeout"), action("high", priority=10, error_pattern="timeout")],
    )
    fail(store, "request timeout")
    assert controller.drain()
    assert [a.action_id for a in controller.get_recovery_history()] == ["high"]

    fail(store, "request timeout")
    assert controller.drain()
    assert [a.action_id for a in controller.get_recovery_history()] == ["high", "low"]


def test_cooldown_blocks_until_elapsed(store, controller, clock):
    controller.register_component("Grid", [action("remount", cooldown=1, error_pattern="timeout")])
    fail(store, "timeout")
    fail(store, "timeout")
    assert controller.drain()
    assert len(controller.get_recovery_history()) == 1

    clock.advance(61)
    fail(store, "timeout")
    assert controller.drain()
    assert len(controller.get_recovery_history()) == 2


def test_string_patterns_match_case_insensitively_on_message_or_stack(store, controller):
    controller.register_component("Grid", [action("remount", cooldown=0, error_pattern="TIMEOUT")])
    fail(store, "Request timeout")
    store.report_error({"message": "other", "stack": "at fetch (timeout.js:1)", "component_name": "Grid"})
    fail(store, "unrelated")
    assert controller.drain()
    assert len(controller.get_recovery_history()) == 2


def test_events_for_unregistered_components_are_ignored(store, controller):
    controller.register_component("Grid", [action("remount", error_pattern="timeout")])
    fail(store, "timeout", component="Other")
    assert controller.drain()
    assert controller.get_recovery_history() == []


def test_throwing_custom_action_is_recorded_as_failure(store, controller):
    delivered = []
    controller.dispatcher.subscribe("Grid", delivered.append)

    def broken():
        raise RuntimeError("kaput")

    controller.register_component("Grid", [custom("fix", broken, error_pattern="timeout")])
    fail(store, "timeout")
    assert controller.drain()

    [attempt] = controller.get_recovery_history("Grid")
    assert attempt.success is False
    assert attempt.error == "kaput"
    assert delivered == []
    assert controller.consecutive_count("Grid", "fix") == 1
    assert store.get_metrics(metric_type="operation") == []


def test_custom_action_returning_false_fails_and_none_succeeds(store, controller, clock):
    controller.register_component("A", [custom("no", lambda: False, error_pattern="x")])
    controller.register_component("B", [custom("yes", lambda: None, error_pattern="x")])
    fail(store, "x", component="A")
    fail(store, "x", component="B")
    assert controller.drain()
    outcome = {a.component_name: a.success for a in controller.get_recovery_history()}
    assert outcome == {"A": False, "B": True}


def test_coroutine_custom_action_is_awaited_and_notifies(store, controller):
    delivered = []
    controller.dispatcher.subscribe("Grid", delivered.append)

    async def fix():
        return True

    controller.register_component("Grid", [custom("async-fix", fix, error_pattern="timeout")])
    fail(store, "timeout")
    assert controller.drain()

    assert controller.get_recovery_history()[0].success is True
    assert [(n.kind, n.action_id) for n in delivered] == [(RecoveryKind.custom, "async-fix")]


def test_built_in_action_notifies_owner(store, controller):
    keys = RecoveryKeys()
    keys.attach(controller.dispatcher, "Grid")
    controller.register_component("Grid", [action("remount", error_pattern="hook")])
    fail(store, "Invalid hook call")
    assert controller.drain()
    assert (keys.remount_key, keys.reset_key) == (1, 0)


def test_health_trigger(store, controller):
    controller.register_component("Grid", [action("heal", kind="reset", health_status="unhealthy")])
    store.upsert_health("Grid", {"status": "degraded"})
    store.upsert_health("Grid", {"status": "unhealthy"})
    assert controller.drain()
    [attempt] = controller.get_recovery_history()
    assert attempt.metrics.trigger_type == "health"


def test_unregister_during_execution_discards_notice_but_keeps_attempt(store, controller):
    started = threading.Event()
    release = threading.Event()
    delivered = []
    controller.dispatcher.subscribe("Grid", delivered.append)

    def slow_fix():
        started.set()
        release.wait(2.0)
        return True

    controller.register_component("Grid", [custom("slow-fix", slow_fix, error_pattern="timeout")])
    fail(store, "timeout")
    assert started.wait(2.0)
    controller.unregister_component("Grid")
    release.set()
    assert controller.drain()

    [attempt] = controller.get_recovery_history()
    assert attempt.success is True
    assert delivered == []
    assert store.get_metrics(metric_type="operation") == []


def test_manual_trigger(store, controller, clock):
    controller.register_component(
        "Grid",
        [action("a", priority=1, cooldown=1, error_pattern="x"), action("b", priority=9, cooldown=1, error_pattern="x"), action("off", enabled=False, error_pattern="x")],
    )
    assert controller.trigger_recovery("Grid") is not None
    assert controller.trigger_recovery("Grid") is None
    assert controller.trigger_recovery("Grid", "off") is not None
    assert controller.trigger_recovery("Grid", "missing") is None
    assert controller.trigger_recovery("Nobody") is None
    assert controller.drain()

    history = controller.get_recovery_history()
    assert sorted(a.action_id for a in history) == ["b", "off"]
    assert {a.metrics.trigger_type for a in history} == {"manual"}

    clock.advance(61)
    assert controller.trigger_recovery("Grid") is not None
    assert controller.drain()


def test_registration_validation(controller):
    with pytest.raises(RegistrationError):
        controller.register_component("")
    with pytest.raises(RegistrationError):
        controller.register_component("Grid", [action("dup", error_pattern="x"), action("dup", error_pattern="y")])
    with pytest.raises(RegistrationError):
        controller.register_component("Grid", [action("bad", error_pattern="(unclosed")])
    with pytest.raises(RegistrationError):
        controller.register_component("Grid", [action("no-trigger")])
    with pytest.raises(RegistrationError):
        controller.register_component("Grid", [{"id": "c", "name": "C", "trigger": {"error_pattern": "x"}, "kind": "custom"}])
    assert controller.get_registered_components() == []


def test_default_actions_when_none_given(controller):
    actions = controller.register_component("Grid")
    assert [a.id for a in actions] == ["hooks-violation-remount", "slow-render-reset", "memory-leak-reload", "unhealthy-component-reset"]
    assert [a.id for a in controller.get_component_actions("Grid")] == [a.id for a in actions]
    assert controller.unregister_component("Grid") is True
    assert controller.unregister_component("Grid") is False


def test_disabled_controller_ignores_events(store, clock):
    c = RecoveryController(store, cfg=RecoveryConfig(enabled=False), time_fn=clock.time)
    c.attach()
    try:
        c.register_component("Grid", [action("remount", error_pattern="x")])
        fail(store, "x")
        assert c.drain()
        assert c.get_recovery_history() == []
    finally:
        c.shutdown()


def test_recovery_keys_re_key_by_kind():
    dispatcher = RecoveryDispatcher()
    keys = RecoveryKeys()
    unsubscribe = keys.attach(dispatcher, "Grid")

    assert dispatcher.dispatch(RecoveryNotice(component_name="Grid", kind="reload", action_id="r")) == 1
    assert (keys.remount_key, keys.reset_key) == (1, 1)
    dispatcher.dispatch(RecoveryNotice(component_name="Grid", kind="reset", action_id="r"))
    assert (keys.remount_key, keys.reset_key) == (1, 2)
    dispatcher.dispatch(RecoveryNotice(component_name="Other", kind="remount", action_id="r"))
    assert keys.remount_key == 1

    unsubscribe()
    assert dispatcher.dispatch(RecoveryNotice(component_name="Grid", kind="remount", action_id="r")) == 0
