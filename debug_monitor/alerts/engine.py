"""Rule evaluation, cooldowns, alert history and alert actions."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog

from ..dashboard import Dashboard
from ..errors import ActionExecutionError
from ..events import EventBus, EventType
from ..handlers import HandlerRegistry
from ..history import BoundedHistory, MetricHistory
from ..models import Alert, MetricSnapshot, Severity, utcnow
from ..notifications.dispatcher import NotificationDispatcher, build_sink
from ..notifications.sinks import EmailSink, WebhookSink
from .conditions import ConditionEvaluator, describe
from .rules import AlertAction, AlertChannel, AlertRule, default_channels, default_rules


logger = structlog.get_logger(__name__)

WorkflowEnqueuer = Callable[[str, str, dict[str, Any]], Any]

MESSAGE_TEMPLATES = {
    "critical-memory": "Memory usage has reached {value}MB in {context}. Immediate attention required.",
    "context-failure": "Extension context '{context}' is unhealthy and may need a restart.",
    "high-error-rate": "Error count reached {value} within the monitoring window in {context}.",
    "slow-response": "Response times are elevated ({value}ms) in {context}.",
    "connection-instability": "Connection to {context} is unstable (latency or error count above limits).",
    "health-degradation": "Overall health score dropped to {value}.",
    "high-failure-rate": "Scenario failure rate is {value} in the latest cycle.",
    "scenario-failure": "Scenario '{context}' failed.",
}


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _format_value(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, 3)
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def render_template(name: str | None, alert: Alert) -> str:
    template = MESSAGE_TEMPLATES.get(name or "")
    if template is None:
        return alert.message
    values = _TemplateValues(
        value=_format_value(alert.details.get("value")),
        context=alert.context,
        rule=alert.rule_name or alert.rule_id,
        severity=alert.severity.value,
    )
    return template.format_map(values)


def determine_context(path: str | None) -> str:
    """Name of the component an alert is about, derived from the metric path."""
    if not path:
        return "general"
    parts = path.split(".")
    for marker in ("contexts", "scenarios"):
        if marker in parts:
            idx = parts.index(marker)
            if idx + 1 < len(parts) and parts[idx + 1] != "*":
                return parts[idx + 1]
    if parts[0] in ("performance", "health", "connection", "checks"):
        return parts[0]
    return "general"


class AlertEngine:
    """
    Evaluates rules against snapshots and runs the resulting actions.

    For every enabled rule outside its cooldown window the condition is
    evaluated. When it holds, an alert is recorded, the cooldown starts, and
    the rule's actions are scheduled in the background so a slow action never
    holds up evaluation of the next snapshot.
    """

    def __init__(
        self,
        history: MetricHistory,
        dispatcher: NotificationDispatcher,
        bus: EventBus | None = None,
        handlers: HandlerRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        alert_history_size: int = 1000,
        rules: Iterable[AlertRule] | None = None,
        channels: Iterable[AlertChannel] | None = None,
        include_defaults: bool = True,
        thresholds: dict[str, float] | None = None,
        dashboard: Dashboard | None = None,
        http_client: httpx.AsyncClient | None = None,
        workflow_enqueuer: WorkflowEnqueuer | None = None,
    ):
        self.history = history
        self.dispatcher = dispatcher
        self.bus = bus
        self.handlers = handlers or HandlerRegistry()
        self.clock = clock
        self.evaluator = ConditionEvaluator(history, clock)
        self.dashboard = dashboard
        self.http_client = http_client
        self.workflow_enqueuer = workflow_enqueuer

        self.rules: dict[str, AlertRule] = {}
        self.channels: dict[str, AlertChannel] = {}
        self.cooldowns: dict[str, datetime] = {}
        self.severity_routes: dict[str, Severity] = {}
        self.alert_history: BoundedHistory[Alert] = BoundedHistory(alert_history_size)
        self.active_alerts: dict[str, Alert] = {}
        self.trends: BoundedHistory[dict[str, Any]] = BoundedHistory(100)
        self._action_tasks: set[asyncio.Task] = set()
        self._reset_statistics()

        if include_defaults:
            for rule in default_rules(**(thresholds or {})):
                self.add_rule(rule)
            for channel in default_channels():
                self.add_channel(channel)
        for rule in rules or ():
            self.add_rule(rule)
        for channel in channels or ():
            self.add_channel(channel)

    def _reset_statistics(self) -> None:
        self.by_severity: Counter[str] = Counter()
        self.by_category: Counter[str] = Counter()
        self.by_context: Counter[str] = Counter()
        self.by_rule: Counter[str] = Counter()
        self.total_alerts = 0
        self.evaluation_errors = 0
        self.actions_executed = 0
        self.action_failures = 0
        self.recovery_attempted = 0
        self.recovery_successful = 0

    # Rule and channel management

    def add_rule(self, rule: AlertRule | dict[str, Any]) -> AlertRule:
        if isinstance(rule, dict):
            rule = AlertRule.model_validate(rule)
        if rule.id in self.rules:
            logger.info("Replacing alert rule", rule_id=rule.id)
        self.rules[rule.id] = rule
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        if self.rules.pop(rule_id, None) is None:
            logger.warning("Alert rule not found", rule_id=rule_id)
            return False
        self.cooldowns.pop(rule_id, None)
        logger.info("Removed alert rule", rule_id=rule_id)
        return True

    def update_rule(self, rule_id: str, **updates: Any) -> AlertRule | None:
        rule = self.rules.get(rule_id)
        if rule is None:
            logger.warning("Alert rule not found", rule_id=rule_id)
            return None
        updates.pop("id", None)
        data = rule.model_dump()
        data.update(updates)
        updated = AlertRule.model_validate(data)
        self.rules[rule_id] = updated
        logger.info("Updated alert rule", rule_id=rule_id, fields=sorted(updates))
        return updated

    def get_rule(self, rule_id: str) -> AlertRule | None:
        return self.rules.get(rule_id)

    def get_rules(self) -> list[AlertRule]:
        return list(self.rules.values())

    def add_channel(self, channel: AlertChannel | dict[str, Any]) -> AlertChannel:
        if isinstance(channel, dict):
            channel = AlertChannel.model_validate(channel)
        self.channels[channel.id] = channel
        sink = build_sink(channel, self.dashboard, self.http_client)
        if sink is None:
            logger.warning("Alert channel has no usable sink", channel=channel.id, type=channel.type)
        else:
            self.dispatcher.register(channel.id, sink)
        return channel

    def remove_channel(self, channel_id: str) -> bool:
        if self.channels.pop(channel_id, None) is None:
            return False
        self.severity_routes.pop(channel_id, None)
        self.dispatcher.unregister(channel_id)
        return True

    def get_channels(self) -> list[AlertChannel]:
        return list(self.channels.values())

    def set_channel_enabled(self, channel_id: str, enabled: bool) -> bool:
        channel = self.channels.get(channel_id)
        if channel is None:
            return False
        self.channels[channel_id] = channel.model_copy(update={"enabled": enabled})
        return True

    def route_severity(self, channel_id: str, min_severity: Severity | str) -> None:
        """Send every alert of at least ``min_severity`` to ``channel_id`` as well."""
        self.severity_routes[channel_id] = Severity(min_severity)

    def _usable_channels(
        self,
        requested: Iterable[str] | None = None,
        severity: Severity | None = None,
    ) -> list[str]:
        if requested is not None:
            ids = list(requested)
            if severity is not None:
                ids += [
                    cid for cid, minimum in self.severity_routes.items()
                    if cid not in ids and severity.at_least(minimum)
                ]
        else:
            ids = [
                cid for cid in self.dispatcher.channel_ids()
                if cid not in self.severity_routes or (severity is not None and severity.at_least(self.severity_routes[cid]))
            ]
        usable = []
        for channel_id in ids:
            channel = self.channels.get(channel_id)
            if channel is not None and not channel.enabled:
                continue
            usable.append(channel_id)
        return usable

    def reset_cooldown(self, rule_id: str | None = None) -> None:
        if rule_id is None:
            self.cooldowns.clear()
        else:
            self.cooldowns.pop(rule_id, None)

    # Evaluation

    def _in_cooldown(self, rule: AlertRule, now: datetime) -> bool:
        last = self.cooldowns.get(rule.id)
        if last is None:
            return False
        return now - last < timedelta(milliseconds=rule.cooldown_period_ms)

    async def process_snapshot(self, snapshot: MetricSnapshot) -> list[Alert]:
        fired: list[Alert] = []
        now = self.clock()
        for rule in list(self.rules.values()):
            if not rule.enabled or self._in_cooldown(rule, now):
                continue
            try:
                if not self.evaluator.evaluate(rule.condition, snapshot):
                    continue
                alert = self._build_alert(rule, snapshot, now)
            except Exception as e:
                self.evaluation_errors += 1
                logger.error("Rule evaluation failed", rule_id=rule.id, error=str(e))
                continue

            self.cooldowns[rule.id] = now
            await self._record(alert)
            logger.info("Alert fired",
                        rule_id=rule.id,
                        severity=alert.severity.value,
                        context=alert.context)
            self._schedule_actions(rule, alert)
            fired.append(alert)
        return fired

    def _build_alert(self, rule: AlertRule, snapshot: MetricSnapshot, now: datetime) -> Alert:
        path = self.evaluator.matched_path(rule.condition, snapshot)
        value = self.evaluator.triggered_value(rule.condition, snapshot)
        return Alert(
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            category=rule.category,
            message=rule.description or f"{rule.name}: {describe(rule.condition)}",
            details={
                "condition": describe(rule.condition),
                "value": value,
                "metric_path": path,
                "snapshot_timestamp": snapshot.timestamp.isoformat(),
            },
            context=determine_context(path),
            recovery_actions=tuple(rule.recovery_actions),
            auto_recovery=rule.auto_recovery,
            timestamp=now,
        )

    async def _record(self, alert: Alert) -> None:
        self.alert_history.append(alert)
        self.active_alerts[alert.id] = alert
        self.total_alerts += 1
        self.by_severity[alert.severity.value] += 1
        self.by_category[alert.category] += 1
        self.by_context[alert.context] += 1
        if alert.rule_id:
            self.by_rule[alert.rule_id] += 1
        self.trends.append({
            "timestamp": alert.timestamp.isoformat(),
            "alerts_last_hour": self._count_since(alert.timestamp - timedelta(hours=1)),
        })
        if self.bus is not None:
            await self.bus.emit(EventType.ALERT_GENERATED, alert.to_dict(), source="alert_engine")

    async def add_alert(
        self,
        severity: Severity | str,
        message: str,
        *,
        category: str = "custom",
        rule_id: str | None = None,
        rule_name: str | None = None,
        details: dict[str, Any] | None = None,
        context: str = "general",
        recovery_actions: Iterable[str] = (),
    ) -> Alert:
        """Raise an alert outside rule evaluation and send it to every enabled channel."""
        alert = Alert(
            rule_id=rule_id,
            rule_name=rule_name,
            severity=Severity(severity),
            category=category,
            message=message,
            details=details or {},
            context=context,
            recovery_actions=tuple(recovery_actions),
            timestamp=self.clock(),
        )
        await self._record(alert)
        logger.warning("Manual alert raised", severity=alert.severity.value, message=message)
        await self.dispatcher.dispatch(alert.to_notification(), self._usable_channels(severity=alert.severity))
        return alert

    # Actions

    def _schedule_actions(self, rule: AlertRule, alert: Alert) -> None:
        actions = [a for a in rule.actions if a.enabled]
        if not actions:
            return
        task = asyncio.get_running_loop().create_task(self._run_actions(rule, actions, alert))
        self._action_tasks.add(task)
        task.add_done_callback(self._action_tasks.discard)

    async def _run_actions(self, rule: AlertRule, actions: list[AlertAction], alert: Alert) -> None:
        for action in actions:
            if action.delay_ms and not action.config.get("immediate"):
                await asyncio.sleep(action.delay_ms / 1000)
            try:
                await self.execute_action(action, alert)
                self.actions_executed += 1
            except Exception as e:
                self.action_failures += 1
                logger.error("Alert action failed",
                             rule_id=rule.id,
                             action=action.type,
                             error=str(e))

    async def execute_action(self, action: AlertAction, alert: Alert) -> None:
        cfg = action.config
        if action.type == "notification":
            message = render_template(cfg.get("template"), alert)
            await self.dispatcher.dispatch(
                alert.to_notification(message), self._usable_channels(cfg.get("channels"), alert.severity)
            )
        elif action.type == "escalation":
            await self._escalate(cfg, alert)
        elif action.type == "recovery":
            await self._recover(cfg, alert)
        elif action.type == "custom":
            handler = cfg.get("handler")
            if not handler:
                raise ActionExecutionError("Custom action has no handler configured")
            await self.handlers.call(handler, alert, cfg)
        elif action.type == "workflow":
            workflow_id = cfg.get("workflow_id")
            if not workflow_id or self.workflow_enqueuer is None:
                raise ActionExecutionError("Workflow action cannot be dispatched")
            self.workflow_enqueuer(workflow_id, "alert", {"alert": alert.to_dict()})
        else:
            raise ActionExecutionError(f"Unknown action type: {action.type}")

    async def _escalate(self, cfg: dict[str, Any], alert: Alert) -> None:
        notification = alert.to_notification(render_template(cfg.get("template"), alert), prefix="[ESCALATED] ")
        await self.dispatcher.dispatch(notification, self._usable_channels(cfg.get("channels", ["console"]), alert.severity))
        if cfg.get("webhook"):
            await WebhookSink(cfg["webhook"], client=self.http_client).send(notification)
        if cfg.get("email"):
            recipients = cfg["email"] if isinstance(cfg["email"], list) else [cfg["email"]]
            await EmailSink(recipients).send(notification)

    async def _recover(self, cfg: dict[str, Any], alert: Alert) -> None:
        script = cfg.get("script")
        if not script:
            raise ActionExecutionError("Recovery action has no script configured")
        self.recovery_attempted += 1
        result = await self.handlers.call(script, alert)
        if result is False:
            raise ActionExecutionError(f"Recovery script '{script}' reported failure")
        self.recovery_successful += 1
        logger.info("Recovery action succeeded", script=script, alert_id=alert.id)

    async def flush_actions(self) -> None:
        """Wait for every scheduled action to finish."""
        while self._action_tasks:
            await asyncio.gather(*list(self._action_tasks), return_exceptions=True)

    async def cancel_actions(self) -> None:
        tasks = list(self._action_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Queries

    def get_alert_history(self, limit: int | None = None) -> list[Alert]:
        return self.alert_history.recent(limit)

    def get_recent_alerts(self, limit: int = 10) -> list[Alert]:
        return list(reversed(self.alert_history.recent(limit)))

    def get_alerts_by_severity(self, severity: Severity | str) -> list[Alert]:
        sev = Severity(severity)
        return [a for a in self.alert_history if a.severity == sev]

    def get_alerts_by_category(self, category: str) -> list[Alert]:
        return [a for a in self.alert_history if a.category == category]

    def get_active_alerts(self) -> list[Alert]:
        return list(self.active_alerts.values())

    def resolve_alert(self, alert_id: str) -> bool:
        return self.active_alerts.pop(alert_id, None) is not None

    def recent_alert_since(
        self,
        since: datetime,
        min_severity: Severity | str = Severity.LOW,
        rule_id: str | None = None,
    ) -> Alert | None:
        for alert in reversed(self.alert_history.recent()):
            if alert.timestamp < since:
                break
            if alert.severity.at_least(min_severity) and (rule_id is None or alert.rule_id == rule_id):
                return alert
        return None

    def clear_active_alerts(self) -> int:
        count = len(self.active_alerts)
        self.active_alerts.clear()
        return count

    def clear_alert_history(self) -> None:
        self.alert_history.clear()
        self.active_alerts.clear()
        self.trends.clear()
        self._reset_statistics()

    def clear_old_alerts(self, older_than_ms: int) -> int:
        cutoff = self.clock() - timedelta(milliseconds=older_than_ms)
        removed = self.alert_history.drop_before(cutoff, key=lambda a: a.timestamp)
        for alert_id, alert in list(self.active_alerts.items()):
            if alert.timestamp < cutoff:
                del self.active_alerts[alert_id]
        if removed:
            logger.info("Cleared old alerts", removed=removed)
        return removed

    def _count_since(self, since: datetime) -> int:
        return sum(1 for a in self.alert_history if a.timestamp >= since)

    def get_statistics(self) -> dict[str, Any]:
        now = self.clock()
        attempted = self.recovery_attempted
        return {
            "total_alerts": self.total_alerts,
            "active_alerts": len(self.active_alerts),
            "by_severity": dict(self.by_severity),
            "by_category": dict(self.by_category),
            "by_context": dict(self.by_context),
            "last_hour": self._count_since(now - timedelta(hours=1)),
            "last_day": self._count_since(now - timedelta(days=1)),
            "top_alert_rules": [
                {"rule_id": rule_id, "count": count} for rule_id, count in self.by_rule.most_common(10)
            ],
            "trends": self.trends.recent(),
            "evaluation_errors": self.evaluation_errors,
            "actions_executed": self.actions_executed,
            "action_failures": self.action_failures,
            "recovery_success": {
                "attempted": attempted,
                "successful": self.recovery_successful,
                "rate": self.recovery_successful / attempted if attempted else 0.0,
            },
            "rules": {
                "total": len(self.rules),
                "enabled": sum(1 for r in self.rules.values() if r.enabled),
            },
        }

    # Import / export

    def export_configuration(self) -> dict[str, Any]:
        return {
            "rules": [r.model_dump(mode="json") for r in self.rules.values()],
            "channels": [c.model_dump(mode="json") for c in self.channels.values()],
            "statistics": self.get_statistics(),
        }

    def import_configuration(self, data: dict[str, Any]) -> None:
        """Replace the rule and/or channel sets. All entries validate before anything changes."""
        rules = [AlertRule.model_validate(r) for r in data.get("rules", [])] if "rules" in data else None
        channels = (
            [AlertChannel.model_validate(c) for c in data.get("channels", [])] if "channels" in data else None
        )

        if rules is not None:
            self.rules = {}
            for rule in rules:
                self.rules[rule.id] = rule
            self.cooldowns = {k: v for k, v in self.cooldowns.items() if k in self.rules}
        if channels is not None:
            for channel_id in list(self.channels):
                self.remove_channel(channel_id)
            for channel in channels:
                self.add_channel(channel)
        logger.info("Imported alert configuration",
                    rules=len(self.rules),
                    channels=len(self.channels))
