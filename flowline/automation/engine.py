"""
Flowline Workflow Engine

Main execution engine for workflows.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from flowline.automation.actions.executor import StepExecutor
from flowline.automation.capabilities import Capabilities, SubWorkflowRunner
from flowline.automation.errors import (
    ExternalCallFailedError,
    OrchestrationError,
    TriggerEvaluationError,
    WorkflowError,
    WorkflowNotFoundError,
)
from flowline.automation.execution.context import ExecutionContext
from flowline.automation.execution.history import ExecutionHistory
from flowline.automation.execution.queue import ExecutionQueue
from flowline.automation.human_tasks.manager import HumanTaskManager
from flowline.automation.orchestrator import StepGraph, StepOrchestrator
from flowline.automation.registry import WorkflowRegistry
from flowline.automation.triggers.manager import Stimulus, TriggerManager
from flowline.automation.triggers.manual import validate_inputs
from flowline.automation.types import (
    Execution,
    ExecutionError,
    ExecutionStatus,
    ExhaustedRetryPolicy,
    StepStatus,
    TimeoutAction,
    TriggeredBy,
    TriggeredByType,
    TriggerType,
    WorkflowDefinition,
    WorkflowStatus,
    utcnow,
)
from flowline.core.config import EngineConfig, get_config

logger = structlog.get_logger(__name__)

PERIOD_DAYS = {"week": 7, "month": 30, "quarter": 90}


class WorkflowEngine(SubWorkflowRunner):
    """
    Main workflow execution engine.

    Features:
    - Workflow lifecycle (draft, active, paused, deprecated, archived)
    - Versioning on structural change
    - Trigger management
    - Per-workflow concurrency limits with FIFO/LIFO/priority queueing
    - Cancellation, pause/resume and re-run from a failed step
    - Execution history with retention, and aggregate analytics
    - Sub-workflow support

    Graph and trigger definition errors are reported to the owner-error
    callbacks before they are raised.
    """

    def __init__(
        self,
        registry: Optional[WorkflowRegistry] = None,
        trigger_manager: Optional[TriggerManager] = None,
        capabilities: Optional[Capabilities] = None,
        human_tasks: Optional[HumanTaskManager] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or get_config().engine
        self.registry = registry or WorkflowRegistry(persistence_path=self.config.persistence_path)

        self.capabilities = capabilities or Capabilities()
        if self.capabilities.sub_workflows is None:
            self.capabilities.sub_workflows = self
        self.clock = self.capabilities.clock

        self.human_tasks = human_tasks or HumanTaskManager(
            self.clock,
            self.capabilities.notifier,
            retention_seconds=self.config.human_task_retention_days * 86400,
        )
        self.executor = StepExecutor(
            capabilities=self.capabilities,
            human_tasks=self.human_tasks,
            default_timeout_ms=self.config.default_step_timeout_ms,
            wait_poll_interval_ms=self.config.wait_poll_interval_ms,
        )

        self.triggers = trigger_manager or TriggerManager(
            self,
            clock=self.clock,
            scheduler_interval_seconds=self.config.scheduler_interval_seconds,
        )
        if trigger_manager:
            trigger_manager.set_engine(self)
        self.triggers.on_error(self._report_trigger_error)

        self.history = ExecutionHistory(
            max_history_count=self.config.history_limit,
            retention_days=self.config.history_retention_days,
        )

        # Running and queued executions
        self._orchestrators: Dict[str, StepOrchestrator] = {}
        self._execution_tasks: Dict[str, asyncio.Task] = {}
        self._running: Dict[str, Set[str]] = {}
        self._queues: Dict[str, ExecutionQueue] = {}
        self._preloaded: Dict[str, Dict[str, Any]] = {}
        self._completion: Dict[str, asyncio.Future] = {}

        # Analytics counters are shared by concurrently finishing executions
        self._analytics_locks: Dict[str, asyncio.Lock] = {}

        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_executions)

        # Event callbacks
        self._on_execution_started: List[Callable] = []
        self._on_execution_completed: List[Callable] = []
        self._on_step_started: List[Callable] = []
        self._on_step_completed: List[Callable] = []
        self._on_owner_error: List[Callable] = []

        self._initialized = False
        self._shutting_down = False

    async def initialize(self, start_scheduler: bool = True) -> None:
        """Initialize the workflow engine."""
        if self._initialized:
            return

        logger.info("workflow_engine_initializing")

        await self.registry.initialize()
        self.executor.initialize()
        await self.triggers.initialize(start_scheduler=start_scheduler)

        for workflow in self.registry.list(status=WorkflowStatus.ACTIVE, limit=self.registry.count()):
            await self._register_triggers(workflow)

        self._initialized = True
        logger.info("workflow_engine_initialized")

    async def shutdown(self) -> None:
        """Shutdown the workflow engine."""
        logger.info("workflow_engine_shutting_down")

        self._shutting_down = True
        await self.triggers.shutdown()

        tasks = list(self._execution_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.registry.shutdown()

        self._initialized = False
        self._shutting_down = False
        logger.info("workflow_engine_shutdown_complete")

    # === Workflow Management ===

    async def register_workflow(self, workflow: WorkflowDefinition) -> str:
        """Store a workflow. Workflows registered as active are activated."""
        wants_active = workflow.status == WorkflowStatus.ACTIVE
        if wants_active:
            workflow.status = WorkflowStatus.DRAFT
        await self.registry.save(workflow)

        if wants_active:
            await self.activate_workflow(workflow.id)

        logger.info(
            "workflow_registered",
            workflow_id=workflow.id,
            name=workflow.name,
            triggers=len(workflow.triggers),
            steps=len(workflow.steps),
        )
        return workflow.id

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self.registry.get(workflow_id)

    def _require(self, workflow_id: str) -> WorkflowDefinition:
        workflow = self.registry.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def update_workflow(
        self,
        workflow: WorkflowDefinition,
        changed_by: Optional[str] = None,
        changes: str = "",
    ) -> str:
        """
        Replace a stored definition.

        A change to the steps or triggers bumps the patch version and keeps
        the previous structure in the version history. Execution history
        and analytics carry over.
        """
        existing = self._require(workflow.id)

        workflow.executions = existing.executions
        workflow.analytics = existing.analytics
        workflow.version = existing.version
        workflow.version_history = existing.version_history
        workflow.created_at = existing.created_at

        if workflow.structure() != existing.structure():
            workflow.bump_version(changes, changed_by, snapshot=existing.structure())

        if workflow.status == WorkflowStatus.ACTIVE:
            self._check_definition(workflow)
            await self.triggers.unregister_all(workflow.id)
            await self._register_triggers(workflow)
        else:
            await self.triggers.unregister_all(workflow.id)

        await self.registry.save(workflow)
        logger.info("workflow_updated", workflow_id=workflow.id, version=workflow.version)
        return workflow.id

    async def activate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """
        Validate the workflow and start listening to its triggers.

        Raises:
            OrchestrationError: the definition or its step graph is invalid.
            TriggerEvaluationError: a trigger definition is malformed.
        """
        workflow = self._require(workflow_id)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise WorkflowError(f"Workflow {workflow_id} is archived")

        self._check_definition(workflow)
        await self.triggers.unregister_all(workflow_id)
        await self._register_triggers(workflow)

        workflow.status = WorkflowStatus.ACTIVE
        await self.registry.save(workflow)
        logger.info("workflow_activated", workflow_id=workflow_id)
        return workflow

    async def pause_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Stop firing triggers. Running executions continue."""
        return await self._set_inactive(workflow_id, WorkflowStatus.PAUSED)

    async def deprecate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self._set_inactive(workflow_id, WorkflowStatus.DEPRECATED)

    async def archive_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self._set_inactive(workflow_id, WorkflowStatus.ARCHIVED)

    async def _set_inactive(self, workflow_id: str, status: WorkflowStatus) -> WorkflowDefinition:
        workflow = self._require(workflow_id)
        await self.triggers.unregister_all(workflow_id)
        workflow.status = status
        await self.registry.save(workflow)
        logger.info("workflow_status_changed", workflow_id=workflow_id, status=status.value)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow that has never been executed.

        Raises:
            WorkflowError: executions still reference the workflow; archive
                it instead.
        """
        workflow = self.registry.get(workflow_id)
        if workflow is None:
            return False
        if workflow.executions or self._running.get(workflow_id) or self._queues.get(workflow_id):
            raise WorkflowError(
                f"Workflow {workflow_id} has executions and cannot be deleted; archive it instead"
            )

        await self.triggers.unregister_all(workflow_id)
        return await self.registry.delete(workflow_id)

    def find_by_trigger(self, trigger_type: TriggerType) -> List[WorkflowDefinition]:
        return self.registry.find_by_trigger(trigger_type)

    def _check_definition(self, workflow: WorkflowDefinition) -> StepGraph:
        errors = workflow.validate()
        if errors:
            error = OrchestrationError(f"Invalid workflow {workflow.id}", errors)
            self._report_owner_error_nowait(workflow, error)
            raise error
        try:
            return StepGraph(workflow)
        except OrchestrationError as e:
            self._report_owner_error_nowait(workflow, e)
            raise

    async def _register_triggers(self, workflow: WorkflowDefinition) -> None:
        for trigger in workflow.triggers:
            try:
                await self.triggers.register(workflow.id, trigger)
            except TriggerEvaluationError as e:
                await self.triggers.unregister_all(workflow.id)
                await self._fire_callbacks(self._on_owner_error, workflow, e)
                raise

    # === Execution ===

    async def execute(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[TriggeredBy] = None,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        wait: bool = False,
    ) -> Execution:
        """
        Start (or queue) an execution of a workflow.

        Args:
            workflow_id: Workflow to execute
            inputs: Input data, checked against the workflow input schema
            triggered_by: Provenance; defaults to a manual start
            priority: Queue priority under the ``priority`` discipline
            metadata: Free-form execution metadata
            wait: Return only once the execution is terminal

        Raises:
            WorkflowNotFoundError: unknown workflow.
            WorkflowError: the workflow cannot run or the inputs are invalid.
            OrchestrationError: the step graph is invalid.
        """
        workflow = self._require(workflow_id)
        if workflow.status not in (WorkflowStatus.ACTIVE, WorkflowStatus.DRAFT):
            raise WorkflowError(f"Workflow {workflow_id} is {workflow.status.value}")

        inputs = dict(inputs or {})
        errors = validate_inputs(workflow.config.input_schema, inputs)
        if errors:
            raise WorkflowError(f"Invalid inputs for workflow {workflow_id}: {'; '.join(errors)}")

        self._check_definition(workflow)

        execution = Execution(
            workflow_id=workflow_id,
            workflow_version=workflow.version,
            triggered_by=triggered_by or TriggeredBy(),
            input=inputs,
            priority=priority,
            metadata=dict(metadata or {}),
        )
        self._submit(workflow, execution)

        if wait:
            return await self.wait_for_execution(execution.id)
        return execution

    async def start_manual(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> List[Execution]:
        """Fire the workflow's manual triggers on behalf of ``user_id``."""
        return await self.triggers.fire(Stimulus(
            kind=TriggerType.MANUAL,
            payload=dict(inputs or {}),
            workflow_id=workflow_id,
            user_id=user_id,
        ))

    def _submit(
        self,
        workflow: WorkflowDefinition,
        execution: Execution,
        completed_outputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.history.record(workflow, execution)
        self._completion[execution.id] = asyncio.get_running_loop().create_future()
        if completed_outputs:
            self._preloaded[execution.id] = completed_outputs

        running = self._running.setdefault(workflow.id, set())
        if len(running) < max(1, workflow.config.concurrency.max_concurrent):
            self._start(workflow, execution)
            return

        queue = self._queues.get(workflow.id)
        if queue is None or queue.discipline != workflow.config.concurrency.queueing:
            pending = queue.pending() if queue else []
            queue = ExecutionQueue(workflow.config.concurrency.queueing)
            for queued in pending:
                queue.push(queued)
            self._queues[workflow.id] = queue
        queue.push(execution)
        logger.info(
            "execution_queued",
            execution_id=execution.id,
            workflow_id=workflow.id,
            queued=len(queue),
        )

    def _start(self, workflow: WorkflowDefinition, execution: Execution) -> None:
        self._running.setdefault(workflow.id, set()).add(execution.id)

        context = ExecutionContext(
            execution=execution,
            variables=execution.input,
            environment=self.config.default_environment,
            priority=execution.priority,
            metadata=execution.metadata,
            env=workflow.config.public_environment(),
        )
        try:
            orchestrator = StepOrchestrator(
                workflow,
                execution,
                self.executor,
                context=context,
                clock=self.clock,
                max_parallel_steps=self.config.max_parallel_steps,
                exhausted_retry_policy=ExhaustedRetryPolicy(self.config.exhausted_retry_policy),
                completed_outputs=self._preloaded.pop(execution.id, None),
                on_step_started=self._on_step_started,
                on_step_completed=self._on_step_completed,
            )
        except OrchestrationError as e:
            # The definition changed while the execution was queued
            execution.fail(ExecutionError(message=str(e), error_type="orchestration_error"))
            self._execution_tasks[execution.id] = asyncio.create_task(
                self._reject_execution(workflow, execution, e)
            )
            return

        self._orchestrators[execution.id] = orchestrator
        self._execution_tasks[execution.id] = asyncio.create_task(
            self._run_execution(workflow, execution, orchestrator)
        )

    async def _reject_execution(
        self,
        workflow: WorkflowDefinition,
        execution: Execution,
        error: OrchestrationError,
    ) -> None:
        await self._fire_callbacks(self._on_owner_error, workflow, error)
        await self._finish_execution(workflow, execution)

    async def _run_execution(
        self,
        workflow: WorkflowDefinition,
        execution: Execution,
        orchestrator: StepOrchestrator,
    ) -> None:
        """Run one execution under the global concurrency ceiling."""
        try:
            async with self._semaphore:
                logger.info(
                    "execution_started",
                    execution_id=execution.id,
                    workflow_id=workflow.id,
                    triggered_by=execution.triggered_by.trigger_type.value,
                )
                await self._fire_callbacks(self._on_execution_started, execution)
                await orchestrator.run()

        except OrchestrationError as e:
            logger.error("execution_orchestration_failed", execution_id=execution.id, error=str(e))
            if not execution.is_terminal():
                execution.fail(ExecutionError(message=str(e), error_type="orchestration_error"))
            await self._fire_callbacks(self._on_owner_error, workflow, e)

        except asyncio.CancelledError:
            if not execution.is_terminal():
                execution.cancel()
            raise

        finally:
            await self._finish_execution(workflow, execution)

    async def _finish_execution(self, workflow: WorkflowDefinition, execution: Execution) -> None:
        self._running.get(workflow.id, set()).discard(execution.id)
        self._orchestrators.pop(execution.id, None)
        self._execution_tasks.pop(execution.id, None)

        lock = self._analytics_locks.setdefault(workflow.id, asyncio.Lock())
        async with lock:
            workflow.analytics.record(execution)
            trigger_id = execution.triggered_by.trigger_id
            trigger = workflow.get_trigger(trigger_id) if trigger_id else None
            if trigger is not None:
                trigger.stats.record_execution(
                    execution.status == ExecutionStatus.COMPLETED,
                    execution.duration_ms,
                )
            self.history.prune(workflow, self.clock.now())

        if self.registry.persistence_path and self.registry.auto_persist:
            await self.registry.persist()

        logger.info(
            "execution_completed",
            execution_id=execution.id,
            workflow_id=workflow.id,
            status=execution.status.value,
            duration_ms=execution.duration_ms,
        )
        await self._fire_callbacks(self._on_execution_completed, execution)

        future = self._completion.pop(execution.id, None)
        if future is not None and not future.done():
            future.set_result(execution)

        if not self._shutting_down:
            self._maybe_retry_timed_out(workflow, execution)
            self._drain_queue(workflow)

    def _drain_queue(self, workflow: WorkflowDefinition) -> None:
        queue = self._queues.get(workflow.id)
        running = self._running.setdefault(workflow.id, set())
        while queue and len(running) < max(1, workflow.config.concurrency.max_concurrent):
            execution = queue.pop()
            if execution is None:
                break
            self._start(workflow, execution)

    def _maybe_retry_timed_out(self, workflow: WorkflowDefinition, execution: Execution) -> None:
        """Start a fresh attempt of an execution that hit a retrying workflow timeout."""
        timeout = workflow.config.timeout
        error = execution.error
        if (
            error is None
            or error.error_type != "workflow_timeout"
            or timeout.action != TimeoutAction.RETRY
            or execution.attempt > workflow.config.retry.max_attempts
        ):
            return

        retry = Execution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            triggered_by=execution.triggered_by,
            input=dict(execution.input),
            priority=execution.priority,
            attempt=execution.attempt + 1,
            metadata={**execution.metadata, "retry_of": execution.id},
        )
        logger.info(
            "execution_timeout_retry",
            execution_id=execution.id,
            retry_execution_id=retry.id,
            attempt=retry.attempt,
        )
        self._submit(workflow, retry)

    async def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Wait until an execution is terminal and return it."""
        future = self._completion.get(execution_id)
        if future is None:
            execution = self.get_execution(execution_id)
            if execution is None:
                raise WorkflowError(f"Execution not found: {execution_id}")
            return execution
        if timeout is None:
            return await asyncio.shield(future)
        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        return self.registry.find_execution(execution_id)

    def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> List[Execution]:
        """List executions with filters, newest first."""
        workflows = [self._require(workflow_id)] if workflow_id else self.registry.list(limit=self.registry.count())
        executions: List[Execution] = []
        for workflow in workflows:
            executions.extend(self.history.list(workflow, status=status, limit=limit))
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return executions[:limit]

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel an execution.

        Queued executions are cancelled at once; running ones stop
        scheduling and end cancelled when their in-flight attempts finish.
        """
        orchestrator = self._orchestrators.get(execution_id)
        if orchestrator is not None:
            orchestrator.cancel()
            return True

        execution = self.get_execution(execution_id)
        if execution is None or execution.is_terminal():
            return False

        workflow = self._require(execution.workflow_id)
        queue = self._queues.get(workflow.id)
        if queue is not None and queue.remove(execution_id) is not None:
            self._preloaded.pop(execution_id, None)
            execution.cancel()
            await self._finish_execution(workflow, execution)
            return True
        return False

    def pause_execution(self, execution_id: str) -> bool:
        orchestrator = self._orchestrators.get(execution_id)
        if orchestrator is None or orchestrator.execution.status != ExecutionStatus.RUNNING:
            return False
        orchestrator.pause()
        return True

    def resume_execution(self, execution_id: str) -> bool:
        orchestrator = self._orchestrators.get(execution_id)
        if orchestrator is None or not orchestrator.paused:
            return False
        orchestrator.resume()
        return True

    async def rerun_from_failure(self, execution_id: str, wait: bool = False) -> Execution:
        """
        Re-run a failed execution from the step that failed.

        Only executions whose terminal error is recoverable qualify. Steps
        that completed keep their outputs and are not run again.
        """
        previous = self.get_execution(execution_id)
        if previous is None:
            raise WorkflowError(f"Execution not found: {execution_id}")
        if previous.status != ExecutionStatus.FAILED or previous.error is None:
            raise WorkflowError(f"Execution {execution_id} has not failed")
        if not previous.error.recoverable:
            raise WorkflowError(f"Execution {execution_id} failed with an unrecoverable error")

        workflow = self._require(previous.workflow_id)
        self._check_definition(workflow)

        completed: Dict[str, Any] = {}
        for record in previous.step_executions:
            if record.status == StepStatus.COMPLETED:
                completed[record.step_id] = record.output
        completed.pop(previous.error.step_id, None)

        execution = Execution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            triggered_by=TriggeredBy(
                trigger_type=TriggeredByType.USER,
                user_id=previous.triggered_by.user_id,
            ),
            input=dict(previous.input),
            priority=previous.priority,
            attempt=previous.attempt + 1,
            resume_from=previous.error.step_id,
            metadata={**previous.metadata, "rerun_of": previous.id},
        )
        logger.info(
            "execution_rerun",
            execution_id=execution.id,
            rerun_of=previous.id,
            resume_from=execution.resume_from,
            reused_steps=len(completed),
        )
        self._submit(workflow, execution, completed_outputs=completed)

        if wait:
            return await self.wait_for_execution(execution.id)
        return execution

    # === Sub-workflows ===

    async def run_sub_workflow(
        self,
        workflow_id: str,
        inputs: Dict[str, Any],
        wait: bool = True,
        parent_execution_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        execution = await self.execute(
            workflow_id,
            inputs=inputs,
            triggered_by=TriggeredBy(trigger_type=TriggeredByType.API),
            metadata={"parent_execution_id": parent_execution_id} if parent_execution_id else None,
        )
        execution.parent_execution_id = parent_execution_id
        if not wait:
            return {"execution_id": execution.id, "status": execution.status.value}

        execution = await self.wait_for_execution(execution.id)
        if execution.status != ExecutionStatus.COMPLETED:
            message = execution.error.message if execution.error else execution.status.value
            raise ExternalCallFailedError(f"Sub-workflow {workflow_id} {execution.status.value}: {message}")
        return {
            "execution_id": execution.id,
            "status": execution.status.value,
            "output": execution.output,
        }

    # === Analytics ===

    def get_analytics(self, workflow_id: str) -> Dict[str, Any]:
        workflow = self._require(workflow_id)
        return {
            **workflow.analytics.to_dict(),
            "errors_in_history": self.history.error_analysis(workflow),
        }

    def get_aggregate_analytics(self, period: str = "month", team_id: Optional[str] = None) -> Dict[str, Any]:
        """Execution totals across workflows over the last week, month or quarter."""
        if period not in PERIOD_DAYS:
            raise ValueError(f"Unknown period: {period}")
        since = self.clock.now() - timedelta(days=PERIOD_DAYS[period])

        workflows = self.registry.list(team_id=team_id, limit=self.registry.count())
        by_status = {s.value: 0 for s in ExecutionStatus}
        by_workflow = []
        durations = []
        errors: Dict[str, int] = {}

        for workflow in workflows:
            executions = [
                e for e in workflow.executions
                if e.is_terminal() and (e.completed_at or e.created_at) >= since
            ]
            for execution in executions:
                by_status[execution.status.value] += 1
                durations.append(execution.duration_ms)
                if execution.error is not None:
                    errors[execution.error.message] = errors.get(execution.error.message, 0) + 1
            if executions:
                succeeded = len([e for e in executions if e.status == ExecutionStatus.COMPLETED])
                by_workflow.append({
                    "workflow_id": workflow.id,
                    "name": workflow.name,
                    "executions": len(executions),
                    "success_rate": succeeded / len(executions) * 100,
                })

        total = len(durations)
        by_workflow.sort(key=lambda w: w["executions"], reverse=True)
        return {
            "period": period,
            "team_id": team_id,
            "since": since.isoformat(),
            "workflows": len(workflows),
            "total_executions": total,
            "successful_executions": by_status[ExecutionStatus.COMPLETED.value],
            "failed_executions": by_status[ExecutionStatus.FAILED.value],
            "cancelled_executions": by_status[ExecutionStatus.CANCELLED.value],
            "success_rate": by_status[ExecutionStatus.COMPLETED.value] / total * 100 if total else 0.0,
            "average_execution_time": sum(durations) / total if total else 0.0,
            "by_workflow": by_workflow,
            "top_errors": [
                {"error": e, "count": c}
                for e, c in sorted(errors.items(), key=lambda x: x[1], reverse=True)[:10]
            ],
        }

    # === Event Callbacks ===

    def on_execution_started(self, callback: Callable) -> None:
        self._on_execution_started.append(callback)

    def on_execution_completed(self, callback: Callable) -> None:
        self._on_execution_completed.append(callback)

    def on_step_started(self, callback: Callable) -> None:
        """Register callback(execution, step, step_execution) for each attempt start."""
        self._on_step_started.append(callback)

    def on_step_completed(self, callback: Callable) -> None:
        """Register callback(execution, step, step_execution) for each finished step."""
        self._on_step_completed.append(callback)

    def on_owner_error(self, callback: Callable) -> None:
        """Register callback(workflow, error) for definition errors the owner must fix."""
        self._on_owner_error.append(callback)

    async def _report_trigger_error(self, workflow_id: str, error: Exception) -> None:
        workflow = self.registry.get(workflow_id)
        if workflow is not None:
            await self._fire_callbacks(self._on_owner_error, workflow, error)

    def _report_owner_error_nowait(self, workflow: WorkflowDefinition, error: Exception) -> None:
        logger.error("workflow_definition_invalid", workflow_id=workflow.id, error=str(error))
        for callback in self._on_owner_error:
            try:
                result = callback(workflow, error)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error("callback_error", error=str(e))

    async def _fire_callbacks(self, callbacks: List[Callable], *args) -> None:
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("callback_error", error=str(e))

    # === Statistics ===

    def get_stats(self) -> Dict[str, Any]:
        return {
            "workflows": self.registry.count(),
            "active_workflows": self.registry.count(WorkflowStatus.ACTIVE),
            "running_executions": len(self._execution_tasks),
            "queued_executions": sum(len(q) for q in self._queues.values()),
            "max_concurrent": self.config.max_concurrent_executions,
            "triggers": self.triggers.get_stats(),
            "human_tasks": self.human_tasks.get_stats(),
            "checked_at": utcnow().isoformat(),
        }
