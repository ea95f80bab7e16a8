"""Workflow registry, trigger handling, FIFO queue and step execution."""

from __future__ import annotations

import asyncio
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from ..alerts.conditions import ConditionEvaluator
from ..errors import (
    StepTimeoutError,
    WorkflowAbort,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from ..events import EventBus, EventType
from ..handlers import HandlerRegistry
from ..history import BoundedHistory, MetricHistory
from ..models import Event, MetricSnapshot, Notification, Severity, utcnow
from ..notifications.dispatcher import NotificationDispatcher
from .models import (
    AlertGate,
    ConditionTrigger,
    CustomGate,
    EventTrigger,
    ExecutionStatus,
    MetricGate,
    StepExecution,
    StepStatus,
    TimeGate,
    Workflow,
    WorkflowExecution,
    WorkflowSchedule,
    WorkflowStep,
    validate_steps,
)
from .steps import StepRunner

if TYPE_CHECKING:
    from ..alerts.engine import AlertEngine
    from ..scheduler.job_scheduler import JobScheduler


logger = structlog.get_logger(__name__)

QUEUE_JOB_ID = "workflow-queue"


@dataclass
class QueuedWorkflow:
    workflow_id: str
    trigger: str
    data: dict[str, Any] = field(default_factory=dict)
    queued_at: datetime = field(default_factory=utcnow)


class WorkflowOrchestrator:
    """
    Runs workflows one at a time from a FIFO queue.

    Triggers (alerts, metric conditions, schedules, manual calls) only
    enqueue; ``drain_queue`` is the single consumer and finishes one
    execution before starting the next.
    """

    def __init__(
        self,
        step_runner: StepRunner,
        dispatcher: NotificationDispatcher | None = None,
        bus: EventBus | None = None,
        history: MetricHistory | None = None,
        alert_engine: AlertEngine | None = None,
        handlers: HandlerRegistry | None = None,
        job_scheduler: JobScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
        execution_history_size: int = 100,
        queue_poll_interval_ms: int = 5_000,
        workflows: list[Workflow | dict[str, Any]] | None = None,
        include_defaults: bool = False,
    ):
        self.step_runner = step_runner
        self.dispatcher = dispatcher or step_runner.dispatcher
        self.bus = bus
        self.history = history
        self.alert_engine = alert_engine
        self.handlers = handlers or step_runner.handlers
        self.job_scheduler = job_scheduler
        self.clock = clock
        self.queue_poll_interval_ms = queue_poll_interval_ms

        self.workflows: dict[str, Workflow] = {}
        self.queue: deque[QueuedWorkflow] = deque()
        self.running: dict[str, WorkflowExecution] = {}
        self.executions: BoundedHistory[WorkflowExecution] = BoundedHistory(execution_history_size)
        self.total_executions = 0
        self.active = False
        self._draining = False
        self._stopping = False
        self._step_tasks: dict[str, asyncio.Task] = {}
        self._condition_fired: dict[str, datetime] = {}
        self._jobs: set[str] = set()

        if include_defaults:
            from .defaults import default_workflows

            for workflow in default_workflows():
                self.add_workflow(workflow)
        for workflow in workflows or ():
            self.add_workflow(workflow)

        if bus is not None:
            bus.subscribe(EventType.ALERT_GENERATED, self.handle_alert_event)

    # Registry

    def add_workflow(self, workflow: Workflow | dict[str, Any]) -> Workflow:
        try:
            if isinstance(workflow, Workflow):
                validate_steps(workflow.steps)
            else:
                workflow = Workflow.model_validate(workflow)
        except ValidationError as e:
            raise WorkflowValidationError(str(e)) from e

        if workflow.id in self.workflows:
            logger.info("Replacing workflow", workflow_id=workflow.id)
            self._unschedule(workflow.id)
        self.workflows[workflow.id] = workflow
        if self.active and workflow.enabled:
            self._schedule(workflow)
        logger.info("Registered workflow", workflow_id=workflow.id, steps=len(workflow.steps))
        return workflow

    def remove_workflow(self, workflow_id: str) -> bool:
        if self.workflows.pop(workflow_id, None) is None:
            logger.warning("Workflow not found", workflow_id=workflow_id)
            return False
        self._unschedule(workflow_id)
        self._condition_fired.pop(workflow_id, None)
        return True

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        return self.workflows.get(workflow_id)

    def get_workflows(self) -> list[Workflow]:
        return list(self.workflows.values())

    def _set_enabled(self, workflow_id: str, enabled: bool) -> bool:
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            return False
        self.workflows[workflow_id] = workflow.model_copy(update={"enabled": enabled})
        if self.active:
            self._unschedule(workflow_id)
            if enabled:
                self._schedule(self.workflows[workflow_id])
        return True

    def enable_workflow(self, workflow_id: str) -> bool:
        return self._set_enabled(workflow_id, True)

    def disable_workflow(self, workflow_id: str) -> bool:
        return self._set_enabled(workflow_id, False)

    # Lifecycle

    async def start(self) -> None:
        if self.active:
            logger.warning("Workflow orchestrator already running")
            return
        self.active = True
        self._stopping = False
        if self.job_scheduler is not None:
            for workflow in self.workflows.values():
                if workflow.enabled:
                    self._schedule(workflow)
            self.job_scheduler.add_interval_job(
                QUEUE_JOB_ID,
                self.drain_queue,
                interval_ms=self.queue_poll_interval_ms,
                description="Drain workflow queue",
            )
            self._jobs.add(QUEUE_JOB_ID)
        logger.info("Workflow orchestrator started", workflows=len(self.workflows))

    async def stop(self) -> None:
        """Cancel running executions. Completed steps keep their status and results."""
        if not self.active and not self.running:
            return
        self.active = False
        self._stopping = True
        if self.job_scheduler is not None:
            for job_id in list(self._jobs):
                self.job_scheduler.remove_job(job_id)
        self._jobs.clear()

        now = self.clock()
        tasks = []
        for execution in list(self.running.values()):
            execution.status = ExecutionStatus.CANCELLED
            execution.end_time = now
            for step in execution.steps:
                if step.status == StepStatus.RUNNING:
                    step.status = StepStatus.FAILED
                    step.error = "Cancelled"
                    step.end_time = now
            execution.log("warning", "Execution cancelled by stop")
            task = self._step_tasks.get(execution.id)
            if task is not None and not task.done():
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Workflow orchestrator stopped", cancelled=len(tasks))

    def _job_id(self, workflow_id: str, index: int) -> str:
        return f"workflow:{workflow_id}:{index}"

    def _schedule(self, workflow: Workflow) -> None:
        if self.job_scheduler is None:
            return
        for index, schedule in enumerate(workflow.schedules()):
            job_id = self._job_id(workflow.id, index)
            self._register_schedule(job_id, workflow.id, schedule)
            self._jobs.add(job_id)

    def _register_schedule(self, job_id: str, workflow_id: str, schedule: WorkflowSchedule) -> None:
        description = f"Run workflow {workflow_id}"
        if schedule.type == "cron":
            self.job_scheduler.add_cron_job(
                job_id, self._scheduled_enqueue, schedule.expression,
                args=(workflow_id,), description=description, timezone=schedule.timezone,
            )
        elif schedule.type == "interval":
            self.job_scheduler.add_interval_job(
                job_id, self._scheduled_enqueue, interval_ms=schedule.milliseconds,
                args=(workflow_id,), description=description,
            )
        else:
            self.job_scheduler.add_date_job(
                job_id, self._scheduled_enqueue,
                run_at=self.clock() + timedelta(milliseconds=schedule.milliseconds),
                args=(workflow_id,), description=description,
            )

    def _unschedule(self, workflow_id: str) -> None:
        prefix = f"workflow:{workflow_id}:"
        for job_id in [j for j in self._jobs if j.startswith(prefix)]:
            if self.job_scheduler is not None:
                self.job_scheduler.remove_job(job_id)
            self._jobs.discard(job_id)

    async def _scheduled_enqueue(self, workflow_id: str) -> None:
        self.enqueue(workflow_id, "schedule")

    # Triggers and queue

    def enqueue(self, workflow_id: str, trigger: str = "manual", data: dict[str, Any] | None = None) -> bool:
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            logger.warning("Cannot queue unknown workflow", workflow_id=workflow_id)
            return False
        if not workflow.enabled:
            logger.info("Workflow disabled, not queued", workflow_id=workflow_id)
            return False
        self.queue.append(QueuedWorkflow(workflow_id, trigger, dict(data or {}), self.clock()))
        logger.info("Queued workflow", workflow_id=workflow_id, trigger=trigger, queue_length=len(self.queue))
        if self.bus is not None:
            self.bus.publish_nowait(Event(
                type=EventType.WORKFLOW_QUEUED.value,
                data={"workflow_id": workflow_id, "trigger": trigger},
                source="workflow_orchestrator",
            ))
        return True

    async def handle_alert_event(self, event: Event) -> None:
        alert = dict(event.data)
        for workflow in self.workflows.values():
            if not (workflow.enabled and workflow.auto_execution):
                continue
            for trigger in workflow.triggers:
                if isinstance(trigger, EventTrigger) and trigger.matches(alert):
                    self.enqueue(workflow.id, "alert", {"alert": alert})
                    break

    async def evaluate_condition_triggers(self, snapshot: MetricSnapshot) -> list[str]:
        """Queue workflows whose condition trigger holds for ``snapshot``."""
        if self.history is None:
            return []
        evaluator = ConditionEvaluator(self.history, self.clock)
        now = self.clock()
        queued = []
        for workflow in self.workflows.values():
            if not (workflow.enabled and workflow.auto_execution):
                continue
            for trigger in workflow.triggers:
                if not isinstance(trigger, ConditionTrigger):
                    continue
                last = self._condition_fired.get(workflow.id)
                if last is not None and now - last < timedelta(milliseconds=trigger.cooldown_ms):
                    continue
                try:
                    holds = evaluator.evaluate(trigger.condition, snapshot)
                except Exception as e:
                    logger.error("Workflow condition evaluation failed", workflow_id=workflow.id, error=str(e))
                    continue
                if holds and self.enqueue(workflow.id, "condition", {"snapshot_timestamp": snapshot.timestamp.isoformat()}):
                    self._condition_fired[workflow.id] = now
                    queued.append(workflow.id)
                    break
        return queued

    async def drain_queue(self) -> int:
        """Process queued entries in order. Re-entrant calls return immediately."""
        if self._draining:
            return 0
        self._draining = True
        processed = 0
        try:
            while self.queue and not self._stopping:
                item = self.queue.popleft()
                try:
                    await self.execute_workflow(item.workflow_id, item.trigger, item.data)
                except WorkflowNotFoundError:
                    logger.warning("Queued workflow no longer registered", workflow_id=item.workflow_id)
                except Exception as e:
                    logger.error("Workflow execution crashed", workflow_id=item.workflow_id, error=str(e))
                processed += 1
        finally:
            self._draining = False
        return processed

    # Execution

    async def execute_workflow_manually(
        self, workflow_id: str, data: dict[str, Any] | None = None
    ) -> WorkflowExecution | None:
        return await self.execute_workflow(workflow_id, "manual", data)

    async def execute_workflow(
        self,
        workflow_id: str,
        trigger: str = "manual",
        data: dict[str, Any] | None = None,
    ) -> WorkflowExecution | None:
        """
        Run a workflow now. Returns None when a required gate is not met,
        in which case nothing is recorded.
        """
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' is not registered")
        data = dict(data or {})

        try:
            await self._check_gates(workflow, data)
        except WorkflowAbort as e:
            logger.info("Workflow gates not met, skipping", workflow_id=workflow_id, reason=str(e))
            await self._emit(EventType.WORKFLOW_SKIPPED, {"workflow_id": workflow_id, "reason": str(e)})
            return None

        execution = WorkflowExecution(
            workflow_id=workflow_id,
            trigger=trigger,
            steps=[StepExecution(step_id=s.id, name=s.name or s.id) for s in workflow.steps],
            data=data,
            start_time=self.clock(),
            clock=self.clock,
        )
        execution.status = ExecutionStatus.RUNNING
        execution.log("info", f"Execution started by {trigger}")
        self.running[execution.id] = execution
        self.executions.append(execution)
        self.total_executions += 1

        logger.info("Workflow started", workflow_id=workflow_id, execution_id=execution.id, trigger=trigger)
        await self._emit(EventType.WORKFLOW_STARTED, {"workflow_id": workflow_id, "execution_id": execution.id})
        await self._notify(workflow, "start", execution)

        try:
            await self._run_steps(workflow, execution, data)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if execution.status == ExecutionStatus.RUNNING:
                execution.status = ExecutionStatus.CANCELLED
                execution.end_time = self.clock()
            if current is not None and current.cancelling():
                self.running.pop(execution.id, None)
                raise
        finally:
            self._step_tasks.pop(execution.id, None)
        self.running.pop(execution.id, None)

        if execution.end_time is None:
            execution.end_time = self.clock()
        await self._finish(workflow, execution)
        return execution

    async def _finish(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        metrics = execution.metrics
        payload = {
            "workflow_id": workflow.id,
            "execution_id": execution.id,
            "status": execution.status.value,
            **metrics,
        }
        if execution.status == ExecutionStatus.COMPLETED:
            logger.info("Workflow completed", **payload)
            await self._emit(EventType.WORKFLOW_COMPLETED, payload)
            await self._notify(workflow, "complete", execution)
        elif execution.status == ExecutionStatus.CANCELLED:
            logger.warning("Workflow cancelled", **payload)
            await self._emit(EventType.WORKFLOW_CANCELLED, payload)
        else:
            failed = [s.step_id for s in execution.steps if s.status == StepStatus.FAILED]
            logger.error("Workflow failed", failed_steps=failed, **payload)
            await self._emit(EventType.WORKFLOW_FAILED, {**payload, "failed_steps": failed})
            await self._notify(workflow, "error", execution)

    async def _run_steps(self, workflow: Workflow, execution: WorkflowExecution, data: dict[str, Any]) -> None:
        completed: set[str] = set()
        for index, step in enumerate(workflow.steps):
            if execution.status != ExecutionStatus.RUNNING:
                return
            state = execution.step(step.id)

            unmet = [dep for dep in step.dependencies if dep not in completed]
            if unmet:
                state.status = StepStatus.SKIPPED
                execution.log("info", f"Skipped: unmet dependencies {unmet}", step.id)
                continue

            ok = await self._run_step(workflow, step, state, execution, data)
            if execution.status != ExecutionStatus.RUNNING:
                return
            if ok:
                completed.add(step.id)
                continue
            if step.continue_on_failure:
                execution.log("warning", "Step failed, continuing", step.id)
                continue

            # Abort: steps that can no longer have their dependencies met are skipped,
            # the rest stay pending.
            for later in workflow.steps[index + 1:]:
                if any(dep not in completed for dep in later.dependencies):
                    execution.step(later.id).status = StepStatus.SKIPPED
            if execution.status == ExecutionStatus.RUNNING:
                execution.status = ExecutionStatus.FAILED
                execution.end_time = self.clock()
            execution.log("error", "Execution aborted", step.id)
            return

        if execution.status == ExecutionStatus.RUNNING:
            execution.status = ExecutionStatus.COMPLETED
            execution.end_time = self.clock()

    async def _run_step(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        state: StepExecution,
        execution: WorkflowExecution,
        data: dict[str, Any],
    ) -> bool:
        state.status = StepStatus.RUNNING
        state.start_time = self.clock()
        attempts = step.retries + 1
        error = None

        for attempt in range(attempts):
            if attempt > 0:
                state.retry_count += 1
                logger.info("Retrying workflow step",
                            workflow_id=workflow.id,
                            step_id=step.id,
                            attempt=attempt + 1,
                            attempts=attempts)
                execution.log("warning", f"Retry {state.retry_count}/{step.retries}", step.id, error=error)
                if step.retry_delay_ms:
                    await self._track(execution, asyncio.sleep(step.retry_delay_ms / 1000))
            # stop() has already settled this step and its execution
            if execution.status != ExecutionStatus.RUNNING:
                return False
            try:
                result = await self._invoke(step, execution, data)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.warning("Workflow step attempt failed",
                               workflow_id=workflow.id,
                               step_id=step.id,
                               attempt=attempt + 1,
                               error=error)
                continue
            if execution.status != ExecutionStatus.RUNNING:
                return False

            state.status = StepStatus.COMPLETED
            state.result = result
            state.end_time = self.clock()
            execution.results[step.id] = result
            execution.log("info", "Step completed", step.id)
            await self._emit(EventType.WORKFLOW_STEP_COMPLETED, {
                "workflow_id": workflow.id,
                "execution_id": execution.id,
                "step_id": step.id,
            })
            await self._notify(workflow, "step_complete", execution, step_id=step.id)
            return True

        state.status = StepStatus.FAILED
        state.error = error
        state.end_time = self.clock()
        execution.log("error", f"Step failed: {error}", step.id)
        return False

    async def _track(self, execution: WorkflowExecution, awaitable: Any) -> Any:
        """Await in a task that stop() can cancel."""
        task = asyncio.get_running_loop().create_task(awaitable)
        self._step_tasks[execution.id] = task
        try:
            return await task
        finally:
            self._step_tasks.pop(execution.id, None)

    async def _invoke(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        try:
            return await self._track(
                execution,
                asyncio.wait_for(self.step_runner.run(step, execution, data), timeout=step.timeout_ms / 1000),
            )
        except asyncio.TimeoutError:
            raise StepTimeoutError(f"Step '{step.id}' timed out after {step.timeout_ms}ms") from None

    # Gates

    async def _check_gates(self, workflow: Workflow, data: dict[str, Any]) -> None:
        for gate in workflow.conditions:
            try:
                ok = await self._evaluate_gate(gate, data)
            except Exception as e:
                logger.error("Workflow gate evaluation failed", workflow_id=workflow.id, gate=gate.type, error=str(e))
                ok = False
            if ok:
                continue
            if gate.required:
                raise WorkflowAbort(f"Required {gate.type} gate not satisfied")
            logger.info("Optional workflow gate not satisfied", workflow_id=workflow.id, gate=gate.type)

    async def _evaluate_gate(self, gate: Any, data: dict[str, Any]) -> bool:
        if isinstance(gate, MetricGate):
            if self.history is None:
                return False
            snapshot = self.history.latest()
            if snapshot is None:
                return False
            return ConditionEvaluator(self.history, self.clock).evaluate(gate.condition, snapshot)

        if isinstance(gate, AlertGate):
            since = self.clock() - timedelta(milliseconds=gate.within_ms)
            if self.alert_engine is not None:
                return self.alert_engine.recent_alert_since(since, gate.min_severity, gate.rule_id) is not None
            alert = data.get("alert") or {}
            return bool(alert) and Severity(alert.get("severity", "low")).at_least(gate.min_severity)

        if isinstance(gate, TimeGate):
            return gate.allows(self.clock())

        if isinstance(gate, CustomGate):
            return bool(await self.handlers.call(gate.handler, gate.config, data))

        return False

    # Notifications and events

    async def _notify(self, workflow: Workflow, event: str, execution: WorkflowExecution, step_id: str | None = None) -> None:
        targets = [n for n in workflow.notifications if event in n.events]
        if not targets:
            return
        label = {"start": "started", "complete": "completed", "error": "failed", "step_complete": "step completed"}[event]
        message = f"Workflow '{workflow.name}' {label}"
        if step_id:
            message += f": {step_id}"
        notification = Notification(
            severity=Severity.HIGH if event == "error" else Severity.LOW,
            title=f"Workflow {workflow.id}",
            message=message,
            context=workflow.id,
            details={"execution_id": execution.id, "status": execution.status.value, **execution.metrics},
            source="workflow",
        )
        for target in targets:
            await self.dispatcher.dispatch(notification, [target.channel])

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.emit(event_type, data, source="workflow_orchestrator")

    # Queries

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        if execution_id in self.running:
            return self.running[execution_id]
        for execution in self.executions:
            if execution.id == execution_id:
                return execution
        return None

    def get_executions(self, workflow_id: str | None = None) -> list[WorkflowExecution]:
        return [e for e in self.executions if workflow_id is None or e.workflow_id == workflow_id]

    def get_execution_history(self, limit: int | None = None) -> list[WorkflowExecution]:
        return self.executions.recent(limit)

    def get_statistics(self) -> dict[str, Any]:
        history = list(self.executions)
        finished = [e for e in history if e.end_time is not None]
        durations = [e.metrics["duration_ms"] for e in finished]
        return {
            "total_workflows": len(self.workflows),
            "enabled_workflows": sum(1 for w in self.workflows.values() if w.enabled),
            "total_executions": self.total_executions,
            "executions_by_status": dict(Counter(e.status.value for e in history)),
            "executions_by_workflow": dict(Counter(e.workflow_id for e in history)),
            "average_execution_time_ms": sum(durations) / len(durations) if durations else 0.0,
            "queued": len(self.queue),
            "running": len(self.running),
        }

    def get_status(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "queued": [q.workflow_id for q in self.queue],
            "running": [e.id for e in self.running.values()],
            "scheduled_jobs": sorted(self._jobs),
            "workflows": len(self.workflows),
        }

    def export_configuration(self) -> dict[str, Any]:
        return {
            "workflows": [w.model_dump(mode="json") for w in self.workflows.values()],
            "statistics": self.get_statistics(),
        }
