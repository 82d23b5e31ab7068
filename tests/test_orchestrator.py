"""
Tests for Flowline step orchestration.
"""

import asyncio

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from flowline.automation.actions.executor import StepExecutor
from flowline.automation.capabilities import Capabilities, SystemClock
from flowline.automation.engine import WorkflowEngine
from flowline.automation.errors import OrchestrationError
from flowline.automation.orchestrator import NodeState, StepGraph, StepOrchestrator
from flowline.automation.types import (
    BackoffStrategy,
    ConditionStepConfig,
    Execution,
    ExecutionStatus,
    NextStep,
    OnError,
    ParallelBranch,
    ParallelStepConfig,
    RetryConfig,
    Step,
    StepStatus,
    StepType,
    WaitStepConfig,
    WorkflowType,
)
from flowline.core.config import EngineConfig

from conftest import ActionRecorder, FakeClock, action_step, make_workflow


class TestStepGraph:
    """Tests for the static step graph."""

    def test_sequential_chain_follows_order(self):
        workflow = make_workflow(
            [action_step("c", order=3), action_step("a", order=1), action_step("b", order=2)],
            workflow_type=WorkflowType.SEQUENTIAL,
        )
        graph = StepGraph(workflow)

        assert graph.order == ["a", "b", "c"]
        assert graph.sequence["b"] == {"a"}
        assert graph.sequence["c"] == {"b"}
        assert graph.barriers["c"] == set()

    def test_dependencies_replace_the_implicit_chain(self):
        workflow = make_workflow(
            [action_step("a", order=1), action_step("b", order=2), action_step("c", order=3, dependencies=["a"])],
            workflow_type=WorkflowType.SEQUENTIAL,
        )
        graph = StepGraph(workflow)

        assert graph.barriers["c"] == {"a"}
        assert graph.sequence["c"] == set()

    def test_disabled_dependencies_count_as_met(self):
        disabled = action_step("a")
        disabled.enabled = False
        workflow = make_workflow([disabled, action_step("b", dependencies=["a"])])
        graph = StepGraph(workflow)

        assert graph.order == ["b"]
        assert graph.barriers["b"] == set()

    def test_cycle_is_an_orchestration_error(self):
        workflow = make_workflow([
            action_step("a", dependencies=["b"]),
            action_step("b", dependencies=["a"]),
        ])
        with pytest.raises(OrchestrationError) as exc:
            StepGraph(workflow)
        assert "cycle" in str(exc.value)

    def test_unknown_dependency(self):
        workflow = make_workflow([action_step("a", dependencies=["ghost"])])
        with pytest.raises(OrchestrationError):
            StepGraph(workflow)

    def test_gated_steps(self):
        workflow = make_workflow([
            Step(id="p", config=ParallelStepConfig(branches=[ParallelBranch("left", ["x", "y"])])),
            action_step("x"),
            action_step("y"),
        ])
        graph = StepGraph(workflow)

        assert graph.is_gated("x") and graph.is_gated("y")
        assert not graph.is_gated("p")
        assert graph.barriers["y"] == {"x"}
        assert graph.branch_parent == {"x": "p", "y": "p"}


class TestStepOrchestrator:
    """Tests for running step graphs through the engine."""

    @pytest.mark.asyncio
    async def test_stop_on_failure(self, make_engine, recorder, clock):
        """A fails with stop: the execution fails at A and B never runs."""
        engine = make_engine(clock=clock)
        workflow = make_workflow([
            action_step("A", action="fail", on_error=OnError.STOP),
            action_step("B", dependencies=["A"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.step_id == "A"
        assert execution.error.error_type == "external_call_failed"
        assert execution.attempts_for("B") == []
        assert recorder.calls == ["A"]

    @pytest.mark.asyncio
    async def test_race_releases_downstream_on_first_branch(self, make_engine):
        """The fast branch unblocks downstream while the slow one is still waiting."""
        engine = make_engine(clock=SystemClock())
        seen = {}

        async def inspect(params, capabilities):
            seen["slow_done"] = "X" in params
            return {"inspected": True}

        engine.executor.get_handler(StepType.ACTION).register_action("inspect", inspect)
        workflow = make_workflow([
            Step(
                id="P",
                config=ParallelStepConfig(
                    branches=[ParallelBranch("slow", ["X"]), ParallelBranch("fast", ["Y"])],
                    wait_for_all=False,
                ),
            ),
            Step(id="X", config=WaitStepConfig(duration=300)),
            Step(id="Y", config=WaitStepConfig(duration=5)),
            action_step("after", action="inspect", dependencies=["P"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert seen["slow_done"] is False
        assert execution.output["P"]["winner"] == "fast"

        after = execution.attempts_for("after")[0]
        slow = execution.attempts_for("X")[0]
        assert after.started_at < slow.completed_at
        assert slow.status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_race_ignores_early_branch_failure(self, make_engine, recorder):
        """A branch failing before the race is decided leaves it to the other branches."""
        engine = make_engine(clock=SystemClock())
        workflow = make_workflow([
            Step(
                id="P",
                config=ParallelStepConfig(
                    branches=[ParallelBranch("broken", ["X"]), ParallelBranch("fast", ["Y"])],
                    wait_for_all=False,
                ),
            ),
            action_step("X", action="fail", on_error=OnError.STOP),
            Step(id="Y", config=WaitStepConfig(duration=20)),
            action_step("after", dependencies=["P"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.error is None
        assert execution.output["P"] == {
            "branches": {"broken": "failed", "fast": "completed"},
            "winner": "fast",
        }
        failed = execution.attempts_for("X")[0]
        assert failed.status == StepStatus.FAILED
        assert failed.logs[-1].endswith("failure left to the race")
        assert recorder.calls == ["X", "after"]

    @pytest.mark.asyncio
    async def test_race_fails_when_every_branch_fails(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow([
            Step(
                id="P",
                config=ParallelStepConfig(
                    branches=[ParallelBranch("one", ["X"]), ParallelBranch("two", ["Y"])],
                    wait_for_all=False,
                ),
            ),
            action_step("X", action="fail"),
            action_step("Y", action="fail"),
            action_step("after", dependencies=["P"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.step_id == "P"
        assert execution.attempts_for("after") == []

    @pytest.mark.asyncio
    async def test_wait_for_all_branches(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow([
            Step(
                id="P",
                config=ParallelStepConfig(
                    branches=[ParallelBranch("one", ["a1", "a2"]), ParallelBranch("two", ["b1"])],
                    wait_for_all=True,
                ),
            ),
            action_step("a1"),
            action_step("a2"),
            action_step("b1"),
            action_step("join", dependencies=["P"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert recorder.calls[-1] == "join"
        assert recorder.calls.index("a1") < recorder.calls.index("a2")
        assert execution.output["P"]["branches"] == {"one": "completed", "two": "completed"}

    @pytest.mark.asyncio
    async def test_retry_backoff_then_stop(self, make_engine, recorder, clock):
        """Exponential retries wait 1000ms then 2000ms, and a third failure stops."""
        engine = make_engine(clock=clock)
        recorder.failures["D"] = 10
        workflow = make_workflow(
            [action_step("D", action="flaky", on_error=OnError.RETRY)],
            retry=RetryConfig(
                max_attempts=2,
                backoff_strategy=BackoffStrategy.EXPONENTIAL,
                initial_delay=1000,
                max_delay=5000,
            ),
        )
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert clock.sleeps == [1.0, 2.0]
        attempts = execution.attempts_for("D")
        assert [a.retry_count for a in attempts] == [0, 1, 2]
        assert all(a.status == StepStatus.FAILED for a in attempts)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.step_id == "D"
        assert execution.error.error_type == "retry_exhausted"
        assert execution.error.recoverable is True

    @pytest.mark.asyncio
    async def test_retry_recovers(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        recorder.failures["D"] = 1
        workflow = make_workflow(
            [action_step("D", action="flaky", on_error=OnError.RETRY, max_retries=3, retry_delay=50)],
            retry=RetryConfig(backoff_strategy=BackoffStrategy.FIXED),
        )
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert clock.sleeps == [0.05]
        assert [a.status for a in execution.attempts_for("D")] == [StepStatus.FAILED, StepStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_exhausted_retries_can_skip(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock, exhausted_retry_policy="skip")
        recorder.failures["D"] = 10
        workflow = make_workflow([
            action_step("D", action="flaky", on_error=OnError.RETRY, max_retries=1, retry_delay=10),
            action_step("E", dependencies=["D"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.attempts_for("D")[-1].status == StepStatus.SKIPPED
        assert recorder.calls == ["D", "D", "E"]

    @pytest.mark.asyncio
    async def test_continue_blocks_only_dependents(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow([
            action_step("A", action="fail", on_error=OnError.CONTINUE),
            action_step("B", dependencies=["A"]),
            action_step("C"),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.attempts_for("A")[0].status == StepStatus.FAILED
        assert execution.attempts_for("B") == []
        assert "C" in recorder.calls
        assert "C" in execution.output and "B" not in execution.output

    @pytest.mark.asyncio
    async def test_continue_moves_on_in_sequential_workflows(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow(
            [
                action_step("A", action="fail", order=1, on_error=OnError.CONTINUE),
                action_step("B", order=2),
                action_step("C", order=3),
            ],
            workflow_type=WorkflowType.SEQUENTIAL,
        )
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert recorder.calls == ["A", "B", "C"]
        assert execution.attempts_for("A")[0].status == StepStatus.FAILED
        assert set(execution.output) == {"B", "C"}

    @pytest.mark.asyncio
    async def test_escalate_moves_on_in_sequential_workflows(self, make_engine, recorder, clock):
        """The error step runs and the chain carries on after the failed step."""
        engine = make_engine(clock=clock)
        workflow = make_workflow(
            [
                action_step("A", action="fail", order=1, on_error=OnError.ESCALATE, error_step="cleanup"),
                action_step("B", order=2),
                action_step("cleanup", order=3),
            ],
            workflow_type=WorkflowType.SEQUENTIAL,
        )
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert recorder.calls[0] == "A"
        assert sorted(recorder.calls[1:]) == ["B", "cleanup"]

    @pytest.mark.asyncio
    async def test_no_attempt_starts_after_stop(self, make_engine, recorder, clock):
        """A sibling in flight finishes its attempt, but nothing new starts once stopped."""
        engine = make_engine(clock=clock)

        async def slow(params, capabilities):
            recorder.calls.append(params["label"])
            await asyncio.sleep(0.02)
            return {"label": params["label"]}

        engine.executor.get_handler(StepType.ACTION).register_action("slow", slow)
        workflow = make_workflow([
            action_step("A", action="fail", on_error=OnError.STOP),
            action_step("B", action="slow"),
            action_step("C", dependencies=["B"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.step_id == "A"
        assert execution.attempts_for("B")[0].status == StepStatus.COMPLETED
        assert execution.attempts_for("C") == []
        assert "C" not in recorder.calls
        for attempt in execution.step_executions:
            assert attempt.started_at <= execution.completed_at
            assert attempt.completed_at <= execution.completed_at

    @pytest.mark.asyncio
    async def test_skip_proceeds(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow([
            action_step("A", action="fail", on_error=OnError.SKIP),
            action_step("B", dependencies=["A"]),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.attempts_for("A")[0].status == StepStatus.SKIPPED
        assert recorder.calls == ["A", "B"]

    @pytest.mark.asyncio
    async def test_escalate_routes_to_error_step(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow([
            action_step("A", action="fail", on_error=OnError.ESCALATE, error_step="cleanup"),
            action_step("cleanup"),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert recorder.calls == ["A", "cleanup"]

    @pytest.mark.asyncio
    async def test_escalate_without_error_step_stops(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow([action_step("A", action="fail", on_error=OnError.ESCALATE)])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.step_id == "A"

    @pytest.mark.asyncio
    async def test_condition_selects_one_branch(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        workflow = make_workflow(
            [
                Step(
                    id="check",
                    order=1,
                    config=ConditionStepConfig(expression="amount > 100", true_step="big", false_step="small"),
                ),
                action_step("big", order=2),
                action_step("small", order=3),
                action_step("done", order=4),
            ],
            workflow_type=WorkflowType.SEQUENTIAL,
        )
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, inputs={"amount": 150}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert recorder.calls == ["big", "done"]
        assert execution.output["check"] == {"result": True, "next_step": "big"}
        assert execution.attempts_for("small") == []

    @pytest.mark.asyncio
    async def test_next_step_guards(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        first = action_step("a")
        first.next_steps = [NextStep("b", "a.label == 'a'"), NextStep("c", "a.label == 'z'")]
        workflow = make_workflow([first, action_step("b"), action_step("c")])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        assert recorder.calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_bad_guard_fails_the_step(self, make_engine, recorder, clock):
        engine = make_engine(clock=clock)
        first = action_step("a")
        first.next_steps = [NextStep("b", "a.label >")]
        workflow = make_workflow([first, action_step("b")])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.error_type == "expression_error"
        assert execution.error.recoverable is False

    @pytest.mark.asyncio
    async def test_step_timeout(self, make_engine, clock):
        """A step that outlives its timeout fails with a recoverable timeout."""
        engine = make_engine(clock=clock, default_step_timeout_ms=20)

        async def hang(params, capabilities):
            await asyncio.sleep(5)

        engine.executor.get_handler(StepType.ACTION).register_action("hang", hang)
        workflow = make_workflow([action_step("slow", action="hang")])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.error_type == "timeout"
        assert execution.error.recoverable is True

    @pytest.mark.asyncio
    async def test_outputs_flow_to_later_steps(self, make_engine, clock):
        engine = make_engine(clock=clock)

        async def double(params, capabilities):
            return {"value": params["seed"]["value"] * 2}

        async def seed(params, capabilities):
            return {"value": 21}

        actions = engine.executor.get_handler(StepType.ACTION)
        actions.register_action("double", double)
        actions.register_action("seed", seed)
        workflow = make_workflow(
            [action_step("seed", action="seed", order=1), action_step("double", action="double", order=2)],
            workflow_type=WorkflowType.SEQUENTIAL,
        )
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, wait=True)

        assert execution.output["double"] == {"value": 42}
        assert execution.context["variables"]["seed"] == {"value": 21}

    @pytest.mark.asyncio
    async def test_cancel_before_run(self, clock):
        """A cancelled orchestrator starts no steps."""
        recorder = ActionRecorder()

        executor = StepExecutor(Capabilities(clock=clock))
        executor.initialize()
        executor.get_handler(StepType.ACTION).register_action("record", recorder.record)
        workflow = make_workflow([action_step("a")])
        execution = Execution(workflow_id=workflow.id)
        orchestrator = StepOrchestrator(workflow, execution, executor, clock=clock)

        orchestrator.cancel()
        await orchestrator.run()

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.step_executions == []
        assert recorder.calls == []
        assert orchestrator.states["a"] == NodeState.PENDING


@st.composite
def random_dags(draw):
    size = draw(st.integers(min_value=2, max_value=7))
    deps = []
    for i in range(size):
        earlier = [f"s{j}" for j in range(i)]
        deps.append(draw(st.lists(st.sampled_from(earlier), unique=True)) if earlier else [])
    return deps


class TestOrchestratorProperties:
    """Property tests over randomly generated step graphs."""

    @settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    @given(dag=random_dags(), failing=st.integers(min_value=-1, max_value=6))
    def test_dependencies_respected(self, dag, failing):
        """No step starts before its dependencies, and failures block only dependents."""
        async def scenario():
            recorder = ActionRecorder()
            engine = WorkflowEngine(capabilities=Capabilities(clock=FakeClock()), config=EngineConfig())
            recorder.install(engine)

            steps = [
                action_step(
                    f"s{i}",
                    action="fail" if i == failing else "record",
                    dependencies=deps,
                    on_error=OnError.CONTINUE,
                )
                for i, deps in enumerate(dag)
            ]
            workflow = make_workflow(steps)
            await engine.register_workflow(workflow)
            return recorder, await engine.execute(workflow.id, wait=True)

        recorder, execution = asyncio.run(scenario())

        assert execution.is_terminal()
        position = {label: i for i, label in enumerate(recorder.calls)}
        failed = {f"s{failing}"} if 0 <= failing < len(dag) else set()
        blocked = set()
        for i, deps in enumerate(dag):
            sid = f"s{i}"
            if any(d in failed or d in blocked for d in deps):
                blocked.add(sid)
                assert sid not in position
                continue
            assert sid in position
            for dep in deps:
                assert position[dep] < position[sid]

        for attempt in execution.step_executions:
            assert attempt.retry_count == 0
            assert attempt.is_terminal()

    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    @given(max_retries=st.integers(min_value=0, max_value=4), failures=st.integers(min_value=0, max_value=6))
    def test_retry_bound(self, max_retries, failures):
        """max_retries = k yields at most k + 1 attempts of a step."""
        async def scenario():
            recorder = ActionRecorder()
            recorder.failures["D"] = failures
            engine = WorkflowEngine(capabilities=Capabilities(clock=FakeClock()), config=EngineConfig())
            recorder.install(engine)

            workflow = make_workflow([
                action_step("D", action="flaky", on_error=OnError.RETRY, max_retries=max_retries, retry_delay=10),
            ])
            await engine.register_workflow(workflow)
            return await engine.execute(workflow.id, wait=True)

        execution = asyncio.run(scenario())
        attempts = execution.attempts_for("D")

        assert len(attempts) <= max_retries + 1
        assert all(a.retry_count <= max_retries for a in attempts)
        if failures <= max_retries:
            assert execution.status == ExecutionStatus.COMPLETED
            assert len(attempts) == failures + 1
        else:
            assert execution.status == ExecutionStatus.FAILED
            assert len(attempts) == max_retries + 1
