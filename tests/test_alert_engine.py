from __future__ import annotations

import pytest

from debug_monitor.alerts import AlertAction, AlertEngine, AlertRule, ThresholdCondition
from debug_monitor.events import EventBus, EventType
from debug_monitor.handlers import HandlerRegistry
from debug_monitor.history import MetricHistory
from debug_monitor.models import MetricSnapshot, Severity
from debug_monitor.notifications import NotificationDispatcher


def _rule(rule_id: str = "latency", cooldown_ms: int = 1_000, actions=None) -> AlertRule:
    return AlertRule(
        id=rule_id,
        name="Latency",
        category="performance",
        severity=Severity.HIGH,
        condition=ThresholdCondition(metric="connection.latency", operator=">", value=100),
        cooldown_period_ms=cooldown_ms,
        actions=actions if actions is not None else [
            AlertAction(type="notification", config={"channels": ["console"]}),
        ],
    )


def _engine(clock, sink, **kwargs) -> AlertEngine:
    dispatcher = NotificationDispatcher()
    engine = AlertEngine(MetricHistory(50), dispatcher, clock=clock, **kwargs)
    dispatcher.register("console", sink)
    return engine


SLOW = MetricSnapshot({"connection": {"latency": 500}})


@pytest.mark.asyncio
async def test_memory_usage_scenario(clock, make_sink) -> None:
    sink = make_sink()
    bus = EventBus()
    generated = []
    bus.subscribe(EventType.ALERT_GENERATED, lambda e: generated.append(dict(e.data)))
    engine = _engine(clock, sink, bus=bus, include_defaults=True)

    alerts = await engine.process_snapshot(MetricSnapshot({"performance": {"memoryUsage": 175}}))
    await engine.flush_actions()

    assert [a.rule_id for a in alerts] == ["critical-memory-usage"]
    alert = alerts[0]
    assert alert.severity == Severity.CRITICAL
    assert alert.context == "performance"
    assert alert.details["value"] == 175
    assert generated[0]["rule_id"] == "critical-memory-usage"
    assert [n.message for n in sink.received] == [
        "Memory usage has reached 175MB in performance. Immediate attention required."
    ]


@pytest.mark.asyncio
async def test_cooldown_suppresses_repeat_alerts(clock, make_sink) -> None:
    engine = _engine(clock, make_sink(), include_defaults=False, rules=[_rule(cooldown_ms=1_000)])

    assert len(await engine.process_snapshot(SLOW)) == 1
    assert await engine.process_snapshot(SLOW) == []
    clock.advance(999)
    assert await engine.process_snapshot(SLOW) == []
    clock.advance(2)
    assert len(await engine.process_snapshot(SLOW)) == 1
    assert engine.get_statistics()["total_alerts"] == 2


@pytest.mark.asyncio
async def test_cooldown_ends_exactly_at_the_period(clock, make_sink) -> None:
    engine = _engine(clock, make_sink(), include_defaults=False, rules=[_rule(cooldown_ms=1_000)])

    assert len(await engine.process_snapshot(SLOW)) == 1
    clock.advance(1_000)
    assert len(await engine.process_snapshot(SLOW)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(("memory", "fires"), [(200, True), (150, False), (100, False)])
async def test_memory_threshold_rule(clock, make_sink, memory: int, fires: bool) -> None:
    rule = AlertRule(
        id="memory",
        name="Memory",
        category="performance",
        severity=Severity.CRITICAL,
        condition=ThresholdCondition(metric="performance.memoryUsage", operator=">", value=150),
    )
    engine = _engine(clock, make_sink(), include_defaults=False, rules=[rule])

    alerts = await engine.process_snapshot(MetricSnapshot({"performance": {"memoryUsage": memory}}))

    assert [a.rule_id for a in alerts] == (["memory"] if fires else [])


@pytest.mark.asyncio
async def test_disabled_rule_is_skipped(clock, make_sink) -> None:
    engine = _engine(clock, make_sink(), include_defaults=False, rules=[_rule()])
    engine.update_rule("latency", enabled=False)

    assert await engine.process_snapshot(SLOW) == []
    assert engine.update_rule("missing", enabled=True) is None


@pytest.mark.asyncio
async def test_failing_action_does_not_stop_the_others(clock, make_sink) -> None:
    sink = make_sink()
    actions = [
        AlertAction(type="custom", config={"handler": "not-registered"}),
        AlertAction(type="notification", config={"channels": ["console"]}),
    ]
    engine = _engine(clock, sink, include_defaults=False, rules=[_rule(actions=actions)])

    await engine.process_snapshot(SLOW)
    await engine.flush_actions()

    stats = engine.get_statistics()
    assert stats["action_failures"] == 1
    assert stats["actions_executed"] == 1
    assert len(sink.received) == 1


@pytest.mark.asyncio
async def test_recovery_and_workflow_actions(clock, make_sink) -> None:
    handlers = HandlerRegistry()
    handlers.register("restart", lambda alert: False)
    queued = []
    actions = [
        AlertAction(type="recovery", config={"script": "restart"}),
        AlertAction(type="workflow", config={"workflow_id": "critical-alert-response"}),
    ]
    engine = _engine(
        clock, make_sink(),
        include_defaults=False,
        rules=[_rule(actions=actions)],
        handlers=handlers,
        workflow_enqueuer=lambda wid, trigger, data: queued.append((wid, trigger, data["alert"]["rule_id"])),
    )

    await engine.process_snapshot(SLOW)
    await engine.flush_actions()

    recovery = engine.get_statistics()["recovery_success"]
    assert recovery == {"attempted": 1, "successful": 0, "rate": 0.0}
    assert queued == [("critical-alert-response", "alert", "latency")]


@pytest.mark.asyncio
async def test_evaluation_error_is_counted_not_raised(clock, make_sink) -> None:
    rule = AlertRule(
        id="bad-regex",
        name="Bad regex",
        condition={"type": "threshold", "metric": "name", "operator": "matches", "value": "(["},
    )
    engine = _engine(clock, make_sink(), include_defaults=False, rules=[rule, _rule()])

    alerts = await engine.process_snapshot(MetricSnapshot({"name": "x", "connection": {"latency": 500}}))
    assert [a.rule_id for a in alerts] == ["latency"]
    assert engine.get_statistics()["evaluation_errors"] == 1


@pytest.mark.asyncio
async def test_severity_routes_limit_external_channels(clock, make_sink) -> None:
    console = make_sink()
    webhook = make_sink()
    engine = _engine(clock, console, include_defaults=False)
    engine.dispatcher.register("webhook", webhook)
    engine.route_severity("webhook", Severity.HIGH)

    await engine.add_alert(Severity.LOW, "minor thing")
    await engine.add_alert(Severity.CRITICAL, "major thing", category="error")

    assert [n.message for n in console.received] == ["minor thing", "major thing"]
    assert [n.message for n in webhook.received] == ["major thing"]


@pytest.mark.asyncio
async def test_clear_old_alerts(clock, make_sink) -> None:
    engine = _engine(clock, make_sink(), include_defaults=False)
    await engine.add_alert(Severity.MEDIUM, "old")
    clock.advance(2 * 3600 * 1000)
    await engine.add_alert(Severity.MEDIUM, "new")

    assert engine.clear_old_alerts(3600 * 1000) == 1
    assert [a.message for a in engine.get_alert_history()] == ["new"]
    assert [a.message for a in engine.get_active_alerts()] == ["new"]


@pytest.mark.asyncio
async def test_queries_and_statistics(clock, make_sink) -> None:
    engine = _engine(clock, make_sink(), include_defaults=False)
    first = await engine.add_alert(Severity.HIGH, "first", category="error", rule_id="a")
    await engine.add_alert(Severity.LOW, "second", category="health", rule_id="b")
    await engine.add_alert(Severity.HIGH, "third", category="error", rule_id="a")

    assert [a.message for a in engine.get_recent_alerts(2)] == ["third", "second"]
    assert [a.message for a in engine.get_alerts_by_severity("high")] == ["first", "third"]
    assert len(engine.get_alerts_by_category("health")) == 1
    assert engine.resolve_alert(first.id)
    assert not engine.resolve_alert(first.id)

    stats = engine.get_statistics()
    assert stats["total_alerts"] == 3
    assert stats["active_alerts"] == 2
    assert stats["by_severity"] == {"high": 2, "low": 1}
    assert stats["top_alert_rules"][0] == {"rule_id": "a", "count": 2}
    assert stats["last_hour"] == 3


def test_export_import_roundtrip(clock, make_sink) -> None:
    source = _engine(clock, make_sink(), include_defaults=True, rules=[_rule()])
    exported = source.export_configuration()

    target = _engine(clock, make_sink(), include_defaults=False)
    target.import_configuration(exported)

    assert sorted(r.id for r in target.get_rules()) == sorted(r.id for r in source.get_rules())
    assert {c.id for c in target.get_channels()} == {"console", "dashboard"}
    assert target.get_rule("connection-instability").condition.logical_operator == "OR"


def test_import_rejects_invalid_rules_without_changes(clock, make_sink) -> None:
    engine = _engine(clock, make_sink(), include_defaults=False, rules=[_rule()])
    with pytest.raises(ValueError):
        engine.import_configuration({"rules": [{"id": "broken"}]})
    assert [r.id for r in engine.get_rules()] == ["latency"]
