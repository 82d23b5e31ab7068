"""
Flowline Step Orchestrator

Owns the step graph of one execution: decides which steps may run,
drives the step executor, records one StepExecution per attempt and
applies retry and error-handling policy until the execution reaches a
terminal status.
"""

from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from flowline.automation.actions.executor import SUSPENDING_STEP_TYPES, StepExecutor
from flowline.automation.capabilities import Clock, SystemClock
from flowline.automation.conditions.expressions import ExpressionParser
from flowline.automation.errors import (
    ExpressionError,
    OrchestrationError,
    RetryExhaustedError,
    StepExecutionError,
    StepTimeoutError,
)
from flowline.automation.execution.context import ExecutionContext
from flowline.automation.retry import RetryPolicy
from flowline.automation.types import (
    ConditionStepConfig,
    Execution,
    ExecutionError,
    ExecutionStatus,
    ExhaustedRetryPolicy,
    OnError,
    ParallelStepConfig,
    Step,
    StepExecution,
    TimeoutAction,
    WorkflowDefinition,
    WorkflowType,
)

logger = structlog.get_logger(__name__)


class NodeState(str, Enum):
    """Where a step stands within one execution."""
    PENDING = "pending"
    RUNNING = "running"
    JOINING = "joining"            # parallel step waiting on its branches
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    NOT_SELECTED = "not_selected"  # gated step nobody routed to
    FAILED = "failed"
    BLOCKED = "blocked"            # a prerequisite failed


SATISFIED_STATES = frozenset({NodeState.SUCCEEDED, NodeState.SKIPPED, NodeState.NOT_SELECTED})
BLOCKING_STATES = frozenset({NodeState.FAILED, NodeState.BLOCKED})
DONE_STATES = SATISFIED_STATES | BLOCKING_STATES

# Activation kinds: how a source step routes to a gated step.
BRANCH = "branch"
NEXT = "next"
CONDITION = "condition"
ERROR = "error"


class StepGraph:
    """
    Static step graph of a workflow.

    Three kinds of edges:
    - barriers: the step may not start before these steps finished
      successfully (explicit ``dependencies``, the previous step of a
      parallel branch)
    - sequence: the implicit ``order`` chain of sequential workflows; the
      step waits for its predecessor to finish, whatever the outcome
    - activations: gated steps (condition targets, ``next_steps`` targets,
      parallel branch members, error steps) run only when a source step
      routes to them

    Disabled steps are left out; dependencies on them count as met.
    """

    def __init__(self, workflow: WorkflowDefinition):
        self.workflow = workflow
        self.steps: Dict[str, Step] = {s.id: s for s in workflow.enabled_steps()}
        self.barriers: Dict[str, Set[str]] = {sid: set() for sid in self.steps}
        self.sequence: Dict[str, Set[str]] = {sid: set() for sid in self.steps}
        self.activators: Dict[str, List[Tuple[str, str]]] = {}
        self.branch_parent: Dict[str, str] = {}
        self.order: List[str] = []

        errors = self._build()
        if errors:
            raise OrchestrationError(f"Invalid step graph for workflow {workflow.id}", errors)
        self.order = self._topological_order()
        self.position = {sid: i for i, sid in enumerate(self.order)}

    def _build(self) -> List[str]:
        errors = []
        known = {s.id for s in self.workflow.steps}

        for step in self.steps.values():
            for dep in step.dependencies:
                if dep not in known:
                    errors.append(f"Step {step.id} depends on unknown step: {dep}")
                elif dep in self.steps:
                    self.barriers[step.id].add(dep)

            routes: List[Tuple[str, str]] = [(n.step_id, NEXT) for n in step.next_steps]
            if isinstance(step.config, ConditionStepConfig):
                if not step.config.true_step or not step.config.false_step:
                    errors.append(f"Condition step {step.id} must define true and false targets")
                routes.extend(
                    (t, CONDITION) for t in (step.config.true_step, step.config.false_step) if t
                )
            if isinstance(step.config, ParallelStepConfig):
                if not step.config.branches:
                    errors.append(f"Parallel step {step.id} must define at least one branch")
                for branch in step.config.branches:
                    previous = None
                    for member in branch.steps:
                        routes.append((member, BRANCH))
                        if member in self.steps:
                            self.branch_parent[member] = step.id
                            if previous is not None:
                                self.barriers[member].add(previous)
                            previous = member
            if step.error_handling.error_step:
                routes.append((step.error_handling.error_step, ERROR))

            for target, kind in routes:
                if target not in known:
                    errors.append(f"Step {step.id} routes to unknown step: {target}")
                elif target in self.steps:
                    self.activators.setdefault(target, []).append((step.id, kind))

        if self.workflow.config.workflow_type == WorkflowType.SEQUENTIAL:
            error_targets = {
                t for t, sources in self.activators.items()
                if all(kind == ERROR for _, kind in sources)
            }
            chain = sorted(
                (s for s in self.steps.values()
                 if s.id not in self.branch_parent and s.id not in error_targets),
                key=lambda s: s.order,
            )
            for previous, step in zip(chain, chain[1:]):
                if not step.dependencies:
                    self.sequence[step.id].add(previous.id)

        return errors

    def _topological_order(self) -> List[str]:
        """Kahn's algorithm over all edges, ``order`` breaking ties."""
        edges: Dict[str, Set[str]] = {
            sid: deps | self.sequence[sid] for sid, deps in self.barriers.items()
        }
        for target, sources in self.activators.items():
            edges[target].update(source for source, _ in sources)

        dependents: Dict[str, Set[str]] = {sid: set() for sid in self.steps}
        for sid, deps in edges.items():
            for dep in deps:
                dependents[dep].add(sid)

        def rank(sid: str) -> Tuple[int, int]:
            return (self.steps[sid].order, self.workflow.steps.index(self.steps[sid]))

        in_degree = {sid: len(deps) for sid, deps in edges.items()}
        ready = sorted((sid for sid, deg in in_degree.items() if deg == 0), key=rank)
        queue = deque(ready)
        order: List[str] = []

        while queue:
            sid = queue.popleft()
            order.append(sid)
            released = []
            for dependent in dependents[sid]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            queue.extend(sorted(released, key=rank))
            queue = deque(sorted(queue, key=rank))

        if len(order) != len(self.steps):
            remaining = sorted(set(self.steps) - set(order))
            raise OrchestrationError(
                f"Invalid step graph for workflow {self.workflow.id}",
                [f"Dependency cycle among steps: {', '.join(remaining)}"],
            )
        return order

    def is_gated(self, step_id: str) -> bool:
        return step_id in self.activators


class StepOrchestrator:
    """
    Drives one execution to a terminal status.

    Semantics:
    - A step starts once every barrier finished successfully (completed,
      skipped or not selected) and, if it is gated, once a source routed
      to it. A failed prerequisite blocks the step and, in turn, its own
      dependents.
    - A parallel step releases its branches together; steps within a
      branch run one after the other. With ``wait_for_all`` the parallel
      step completes when every branch is done; otherwise the first
      branch to complete does, and the other branches keep running with
      their failures recorded but ignored.
    - Each attempt is one StepExecution. Failures follow the step's
      ``on_error`` policy; exhausted retries follow
      ``exhausted_retry_policy``.
    - Cancellation and stop are cooperative: attempts in flight finish,
      suspended waits and pending retries are abandoned, and nothing new
      starts. Once the execution is terminal no StepExecution is created.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        execution: Execution,
        executor: StepExecutor,
        context: Optional[ExecutionContext] = None,
        clock: Optional[Clock] = None,
        max_parallel_steps: int = 10,
        exhausted_retry_policy: ExhaustedRetryPolicy = ExhaustedRetryPolicy.STOP,
        completed_outputs: Optional[Dict[str, Any]] = None,
        on_step_started: Optional[List[Callable]] = None,
        on_step_completed: Optional[List[Callable]] = None,
    ):
        self.workflow = workflow
        self.execution = execution
        self.executor = executor
        self.clock = clock or SystemClock()
        self.exhausted_retry_policy = ExhaustedRetryPolicy(exhausted_retry_policy)
        self.context = context or ExecutionContext(
            execution=execution,
            variables=execution.input,
            priority=execution.priority,
            env=workflow.config.public_environment(),
        )

        self.graph = StepGraph(workflow)
        self.states: Dict[str, NodeState] = {sid: NodeState.PENDING for sid in self.graph.order}
        self.activated: Set[str] = set()
        self.completed_outputs = dict(completed_outputs or {})

        self._slots = asyncio.Semaphore(max(1, max_parallel_steps))
        self._tasks: Dict[asyncio.Task, str] = {}
        self._records: Dict[str, StepExecution] = {}
        self._race_won: Set[str] = set()

        self._error: Optional[ExecutionError] = None
        self._halted = False
        self._cancelled = False
        self._timed_out = False
        self._paused = False
        self._wake = asyncio.Event()
        self._halt = asyncio.Event()

        self._on_step_started = on_step_started or []
        self._on_step_completed = on_step_completed or []

    # === Control ===

    def cancel(self) -> None:
        """Stop scheduling; the execution ends cancelled once in-flight attempts finish."""
        if self.execution.is_terminal():
            return
        self._cancelled = True
        self._halt_execution()
        logger.info("execution_cancel_requested", execution_id=self.execution.id)

    def pause(self) -> None:
        """Stop scheduling new steps until ``resume``. Running steps continue."""
        if self._paused or self._halted:
            return
        self.execution.pause()
        self._paused = True
        self._wake.set()
        logger.info("execution_paused", execution_id=self.execution.id)

    def resume(self) -> None:
        if not self._paused:
            return
        self.execution.resume()
        self._paused = False
        self._wake.set()
        logger.info("execution_resumed", execution_id=self.execution.id)

    @property
    def paused(self) -> bool:
        return self._paused

    def _halt_execution(self) -> None:
        self._halted = True
        self._halt.set()
        self._wake.set()
        for task, step_id in self._tasks.items():
            if step_id in self.execution.suspensions:
                task.cancel()

    def _stop(self, step: Step, error: StepExecutionError) -> None:
        if self._halted:
            return
        self._error = ExecutionError(
            message=error.message,
            step_id=step.id,
            recoverable=error.recoverable,
            error_type=error.error_type,
        )
        logger.warning(
            "execution_stopping",
            execution_id=self.execution.id,
            step_id=step.id,
            error_type=error.error_type,
            error=error.message,
        )
        self._halt_execution()

    # === Run ===

    async def run(self) -> Execution:
        """Run the execution to a terminal status and return it."""
        execution = self.execution
        if execution.status == ExecutionStatus.PENDING:
            execution.start()
        self._preload()

        timeout = self.workflow.config.timeout
        timer = None
        if timeout.enabled and timeout.duration:
            timer = asyncio.ensure_future(self._timeout_after(timeout.duration / 1000, timeout.action))

        logger.info(
            "execution_running",
            execution_id=execution.id,
            workflow_id=self.workflow.id,
            steps=len(self.graph.order),
        )

        try:
            await self._drive()
        finally:
            if timer is not None:
                timer.cancel()
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)

        self._finish()
        return execution

    async def _drive(self) -> None:
        while True:
            if not self._halted and not self._paused:
                self._settle()
                for step_id in self._ready():
                    self._dispatch(step_id)

            if not self._tasks:
                if self._halted or (self._all_done() and not self._paused):
                    return
                if not self._paused:
                    stuck = [sid for sid, st in self.states.items() if st not in DONE_STATES]
                    raise OrchestrationError(
                        f"Execution {self.execution.id} cannot make progress",
                        [f"Unreachable steps: {', '.join(stuck)}"],
                    )

            self._wake.clear()
            waker = asyncio.ensure_future(self._wake.wait())
            try:
                done, _ = await asyncio.wait(
                    set(self._tasks) | {waker},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                waker.cancel()

            for task in done:
                if task is waker:
                    continue
                step_id = self._tasks.pop(task)
                await self._collect(step_id, task)

    def _all_done(self) -> bool:
        return all(state in DONE_STATES for state in self.states.values())

    def _preload(self) -> None:
        """Mark steps already completed by an earlier run as succeeded."""
        for step_id in self.graph.order:
            if step_id not in self.completed_outputs:
                continue
            output = self.completed_outputs[step_id]
            self.states[step_id] = NodeState.SUCCEEDED
            self.context.apply_step_output(step_id, output)
            step = self.graph.steps[step_id]
            self._activate_branches(step)
            self._activate_successors(step, output)

    # === Scheduling ===

    def _settle(self) -> None:
        """Resolve blocked, unselected and joined steps until nothing changes."""
        changed = True
        while changed:
            changed = False
            for step_id in self.graph.order:
                state = self.states[step_id]
                if state == NodeState.JOINING:
                    changed |= self._try_join(self.graph.steps[step_id])
                    continue
                if state != NodeState.PENDING:
                    continue

                barriers = [self.states[b] for b in self.graph.barriers[step_id]]
                if any(b in BLOCKING_STATES for b in barriers):
                    self.states[step_id] = NodeState.BLOCKED
                    logger.debug("step_blocked", execution_id=self.execution.id, step_id=step_id)
                    changed = True
                elif all(b in SATISFIED_STATES for b in barriers) and self._sequenced(step_id):
                    if self.graph.is_gated(step_id) and step_id not in self.activated:
                        if self._activation_decided(step_id):
                            self.states[step_id] = NodeState.NOT_SELECTED
                            changed = True

    def _activation_decided(self, step_id: str) -> bool:
        for source, kind in self.graph.activators[step_id]:
            state = self.states[source]
            if kind == BRANCH and state == NodeState.JOINING:
                continue
            if state not in DONE_STATES:
                return False
        return True

    def _ready(self) -> List[str]:
        ready = []
        for step_id in self.graph.order:
            if self.states[step_id] != NodeState.PENDING:
                continue
            if self.graph.is_gated(step_id) and step_id not in self.activated:
                continue
            if not self._sequenced(step_id):
                continue
            if all(self.states[b] in SATISFIED_STATES for b in self.graph.barriers[step_id]):
                ready.append(step_id)
        return ready

    def _sequenced(self, step_id: str) -> bool:
        return all(self.states[p] in DONE_STATES for p in self.graph.sequence[step_id])

    def _dispatch(self, step_id: str) -> None:
        if self.execution.is_terminal():
            return
        step = self.graph.steps[step_id]
        self.states[step_id] = NodeState.RUNNING
        task = asyncio.ensure_future(self._run_attempts(step))
        self._tasks[task] = step_id

    # === Attempts ===

    async def _run_attempts(self, step: Step) -> Tuple[StepExecution, Any, Optional[StepExecutionError]]:
        """
        Run attempts of ``step`` until one succeeds or retries run out.

        Returns the last attempt's record with either its output or the
        error that ends the step.
        """
        policy = RetryPolicy.for_step(step, self.workflow.config.retry)
        retry = 0

        while True:
            record = StepExecution(step_id=step.id, step_name=step.name, retry_count=retry)
            self.execution.step_executions.append(record)
            self._records[step.id] = record
            record.input = self.context.step_input()
            record.start()
            record.log(f"attempt {retry + 1} started")
            await self._fire_callbacks(self._on_step_started, self.execution, step, record)

            try:
                output = await self._execute(step, record)
                return record, output, None

            except StepExecutionError as e:
                record.fail(e.message, e.error_type)
                step.stats.record(False, record.duration_ms)
                error = e

            except asyncio.CancelledError:
                if not record.is_terminal():
                    if self._timed_out:
                        record.fail("Workflow timed out", StepTimeoutError.error_type)
                    else:
                        record.skip("cancelled")
                raise

            delay = policy.delay_for(retry + 1)
            if delay is None or self._halted:
                if policy.max_retries > 0 and retry >= policy.max_retries:
                    error = RetryExhaustedError(step.id, retry + 1, error)
                return record, None, error

            record.log(f"retry {retry + 1}/{policy.max_retries} scheduled in {delay}ms")
            logger.info(
                "step_retry_scheduled",
                execution_id=self.execution.id,
                step_id=step.id,
                attempt=retry + 1,
                delay_ms=delay,
            )
            if not await self._backoff(delay / 1000):
                record.log("retry abandoned")
                return record, None, error
            retry += 1

    async def _execute(self, step: Step, record: StepExecution) -> Any:
        if step.step_type in SUSPENDING_STEP_TYPES:
            return await self.executor.execute(step, record.input, self.context)
        async with self._slots:
            return await self.executor.execute(step, record.input, self.context)

    async def _backoff(self, seconds: float) -> bool:
        """Sleep between attempts. Returns False when the execution halted meanwhile."""
        if self._halted:
            return False
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        halted = asyncio.ensure_future(self._halt.wait())
        try:
            await asyncio.wait({sleeper, halted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            halted.cancel()
        return not self._halted

    # === Outcomes ===

    async def _collect(self, step_id: str, task: asyncio.Task) -> None:
        step = self.graph.steps[step_id]
        if task.cancelled():
            self.states[step_id] = NodeState.SKIPPED if self._cancelled else NodeState.FAILED
            return

        record, output, error = task.result()
        if error is None:
            error = self._succeed(step, record, output)
        if error is not None:
            self._fail(step, record, error)

        await self._fire_callbacks(self._on_step_completed, self.execution, step, record)

    def _succeed(self, step: Step, record: StepExecution, output: Any) -> Optional[StepExecutionError]:
        try:
            targets = self._guarded_targets(step, output)
        except ExpressionError as e:
            e.step_id = step.id
            record.fail(e.message, e.error_type)
            step.stats.record(False, record.duration_ms)
            return e

        if isinstance(step.config, ParallelStepConfig):
            self.states[step.id] = NodeState.JOINING
            record.log("branches released")
            self._activate_branches(step)
            return None

        record.complete(output)
        step.stats.record(True, record.duration_ms)
        self.states[step.id] = NodeState.SUCCEEDED
        self.context.apply_step_output(step.id, output)
        self.activated.update(targets)
        logger.debug("step_completed", execution_id=self.execution.id, step_id=step.id)
        return None

    def _fail(self, step: Step, record: StepExecution, error: StepExecutionError) -> None:
        if error.step_id is None:
            error.step_id = step.id
        policy = step.error_handling.on_error

        logger.warning(
            "step_failed",
            execution_id=self.execution.id,
            step_id=step.id,
            on_error=policy.value,
            error_type=error.error_type,
            error=error.message,
        )

        parent = self.graph.branch_parent.get(step.id)
        if self._halted or (parent is not None and parent in self._race_won):
            record.log("failure ignored")
            self.states[step.id] = NodeState.FAILED
            return

        if policy == OnError.SKIP:
            self._skip(step, record, error)
        elif policy == OnError.CONTINUE:
            self.states[step.id] = NodeState.FAILED
        elif policy == OnError.ESCALATE and step.error_handling.error_step in self.graph.steps:
            self.states[step.id] = NodeState.FAILED
            self.activated.add(step.error_handling.error_step)
            record.log(f"escalated to {step.error_handling.error_step}")
        elif (
            policy == OnError.RETRY
            and isinstance(error, RetryExhaustedError)
            and self.exhausted_retry_policy == ExhaustedRetryPolicy.SKIP
        ):
            self._skip(step, record, error)
        elif self._in_open_race(parent):
            self.states[step.id] = NodeState.FAILED
            record.log("failure left to the race")
        else:
            self.states[step.id] = NodeState.FAILED
            self._stop(step, error)

    def _in_open_race(self, parent: Optional[str]) -> bool:
        """Whether ``parent`` is a race whose outcome is not decided yet."""
        if parent is None or self.states[parent] != NodeState.JOINING:
            return False
        return not self.graph.steps[parent].config.wait_for_all

    def _skip(self, step: Step, record: StepExecution, error: StepExecutionError) -> None:
        record.skip(error.message)
        self.states[step.id] = NodeState.SKIPPED
        self.activated.update(self._guarded_targets(step, None, strict=False))

    # === Routing ===

    def _guarded_targets(self, step: Step, output: Any, strict: bool = True) -> List[str]:
        """Gated steps that ``step`` routes to, given its output."""
        targets = []
        if isinstance(step.config, ConditionStepConfig) and isinstance(output, dict):
            if output.get("next_step"):
                targets.append(output["next_step"])

        if step.next_steps:
            names = self.context.scoped({step.id: output}).namespace()
            for nxt in step.next_steps:
                if not nxt.condition:
                    targets.append(nxt.step_id)
                    continue
                try:
                    if ExpressionParser(names).evaluate_bool(nxt.condition):
                        targets.append(nxt.step_id)
                except ExpressionError:
                    if strict:
                        raise
                    logger.warning("next_step_guard_failed", step_id=step.id, target=nxt.step_id)
        return [t for t in targets if t in self.graph.steps]

    def _activate_successors(self, step: Step, output: Any) -> None:
        self.activated.update(self._guarded_targets(step, output, strict=False))

    def _activate_branches(self, step: Step) -> None:
        if isinstance(step.config, ParallelStepConfig):
            for branch in step.config.branches:
                self.activated.update(m for m in branch.steps if m in self.graph.steps)

    def _branch_status(self, members: List[str]) -> str:
        states = [self.states[m] for m in members if m in self.states]
        if all(s in SATISFIED_STATES for s in states):
            return "completed"
        if all(s in DONE_STATES for s in states):
            return "failed"
        return "running"

    def _try_join(self, step: Step) -> bool:
        config: ParallelStepConfig = step.config
        statuses = {b.name: self._branch_status(b.steps) for b in config.branches}
        record = self._records[step.id]

        if config.wait_for_all:
            if any(s == "running" for s in statuses.values()):
                return False
            winner = None
        else:
            winner = next((name for name, s in statuses.items() if s == "completed"), None)
            if winner is None:
                if any(s == "running" for s in statuses.values()):
                    return False
                error = StepExecutionError(f"No branch of parallel step {step.id} completed", step_id=step.id)
                record.fail(error.message, error.error_type)
                step.stats.record(False, record.duration_ms)
                self._fail(step, record, error)
                return True
            self._race_won.add(step.id)

        output = {"branches": statuses, "winner": winner}
        record.complete(output)
        step.stats.record(True, record.duration_ms)
        self.states[step.id] = NodeState.SUCCEEDED
        self.context.apply_step_output(step.id, output)
        self._activate_successors(step, output)
        logger.debug("parallel_step_joined", execution_id=self.execution.id, step_id=step.id, winner=winner)
        return True

    # === Timeout ===

    async def _timeout_after(self, seconds: float, action: TimeoutAction) -> None:
        await self.clock.sleep(seconds)
        if self.execution.is_terminal():
            return

        if action == TimeoutAction.CONTINUE:
            self.execution.metadata["timed_out"] = True
            logger.warning("execution_timeout_exceeded", execution_id=self.execution.id, action=action.value)
            return

        logger.warning("execution_timed_out", execution_id=self.execution.id, action=action.value)
        self._timed_out = True
        if self._error is None:
            self._error = ExecutionError(
                message=f"Workflow timed out after {seconds}s",
                recoverable=True,
                error_type="workflow_timeout",
            )
        self._halt_execution()
        for task in self._tasks:
            task.cancel()

    # === Completion ===

    def _finish(self) -> None:
        execution = self.execution
        execution.context = self.context.snapshot()
        if execution.is_terminal():
            return

        if self._cancelled:
            execution.cancel()
        elif self._error is not None:
            execution.fail(self._error)
        else:
            execution.complete({
                sid: self.context.variables.get(sid)
                for sid in self.graph.order
                if self.states[sid] == NodeState.SUCCEEDED
            })

        logger.info(
            "execution_finished",
            execution_id=execution.id,
            workflow_id=self.workflow.id,
            status=execution.status.value,
            duration_ms=execution.duration_ms,
        )

    async def _fire_callbacks(self, callbacks: List[Callable], *args) -> None:
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("step_callback_error", error=str(e))
