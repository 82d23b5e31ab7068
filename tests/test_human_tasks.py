"""
Tests for Flowline human tasks.
"""

import asyncio
from datetime import timedelta

import pytest

from flowline.automation.capabilities import (
    Capabilities,
    LogNotificationDispatcher,
    StaticStakeholderResolver,
)
from flowline.automation.engine import WorkflowEngine
from flowline.automation.human_tasks.manager import HumanTaskManager
from flowline.automation.types import (
    EscalationConfig,
    ExecutionStatus,
    HumanTaskStatus,
    HumanTaskStepConfig,
    Step,
)
from flowline.core.config import EngineConfig

from conftest import make_workflow


@pytest.fixture
def notifier():
    return LogNotificationDispatcher()


@pytest.fixture
def manager(clock, notifier):
    return HumanTaskManager(clock, notifier)


class TestHumanTaskManager:
    """Tests for task assignment and responses."""

    @pytest.mark.asyncio
    async def test_create_notifies_assignees(self, manager, notifier):
        task = await manager.create_task("exec-1", "review", ["alice", "bob"], title="Review")

        assert task.status == HumanTaskStatus.PENDING
        assert [n["recipient"] for n in notifier.sent] == ["alice", "bob"]
        assert notifier.sent[0]["metadata"]["task_id"] == task.id
        assert manager.get_task(task.id) is task

    @pytest.mark.asyncio
    async def test_only_assignees_claim_and_respond(self, manager):
        task = await manager.create_task("exec-1", "review", ["alice"])

        assert not await manager.claim(task.id, "mallory")
        assert await manager.claim(task.id, "alice")
        assert task.status == HumanTaskStatus.IN_PROGRESS
        assert not await manager.claim(task.id, "alice")

        assert not await manager.respond(task.id, "mallory", "ok")
        assert await manager.respond(task.id, "alice", {"decision": "approve"})
        assert task.status == HumanTaskStatus.COMPLETED
        assert task.completed_by == "alice"
        assert not await manager.respond(task.id, "alice", "again")
        assert not await manager.respond("missing", "alice")

    @pytest.mark.asyncio
    async def test_unassigned_task_accepts_anyone(self, manager):
        task = await manager.create_task("exec-1", "review", [])

        assert await manager.respond(task.id, "anyone", True)

    @pytest.mark.asyncio
    async def test_wait_times_out_on_clock(self, manager, clock):
        """Test a timed-out wait leaves the task open for the next wait."""
        task = await manager.create_task("exec-1", "review", ["alice"])

        assert await manager.wait_for_response(task.id, 120) is None
        assert clock.sleeps == [120]
        assert task.is_open()

        waiter = asyncio.ensure_future(manager.wait_for_response(task.id))
        await asyncio.sleep(0)
        await manager.respond(task.id, "alice", "done")

        assert (await waiter) is task

    @pytest.mark.asyncio
    async def test_cancel_releases_waiter(self, manager):
        task = await manager.create_task("exec-1", "review", ["alice"])
        waiter = asyncio.ensure_future(manager.wait_for_response(task.id))
        await asyncio.sleep(0)

        assert await manager.cancel(task.id)
        closed = await waiter

        assert closed.status == HumanTaskStatus.CANCELLED
        assert not await manager.cancel(task.id)

    @pytest.mark.asyncio
    async def test_reassign(self, manager, notifier):
        escalated = []
        manager.on_task_escalated(escalated.append)
        task = await manager.create_task("exec-1", "review", ["alice"])
        await manager.claim(task.id, "alice")

        assert await manager.reassign(task.id, ["boss"])

        assert task.assignees == ["boss"]
        assert task.status == HumanTaskStatus.PENDING
        assert task.claimed_by is None
        assert task.escalations == 1
        assert escalated == [task]
        assert notifier.sent[-1]["metadata"]["reason"] == "escalated"

    @pytest.mark.asyncio
    async def test_list_and_stats(self, manager):
        first = await manager.create_task("exec-1", "a", ["alice"])
        await manager.create_task("exec-2", "b", ["bob"])
        await manager.respond(first.id, "alice")

        assert len(manager.list_tasks(assignee="bob")) == 1
        assert manager.list_tasks(execution_id="exec-1") == [first]
        assert len(manager.list_tasks(status=HumanTaskStatus.PENDING)) == 1
        assert manager.get_stats() == {"total_tasks": 2, "by_status": {"completed": 1, "pending": 1}}

    @pytest.mark.asyncio
    async def test_closed_tasks_are_dropped_after_retention(self, clock, notifier):
        manager = HumanTaskManager(clock, notifier, retention_seconds=3600)
        old = await manager.create_task("exec-1", "a", ["alice"])
        recent = await manager.create_task("exec-2", "b", ["alice"])
        still_open = await manager.create_task("exec-3", "c", ["bob"])
        await manager.respond(old.id, "alice")
        await manager.respond(recent.id, "alice")
        old.completed_at -= timedelta(hours=2)
        still_open.created_at -= timedelta(days=30)

        assert manager.prune_closed() == 1
        assert manager.get_task(old.id) is None
        assert manager.get_task(recent.id) is recent
        assert manager.get_task(still_open.id) is still_open

        recent.completed_at -= timedelta(hours=2)
        await manager.create_task("exec-4", "d", ["carol"])

        assert manager.get_task(recent.id) is None
        assert manager.get_stats()["total_tasks"] == 2


class TestHumanTaskSteps:
    """Tests for human task steps inside executions."""

    @pytest.mark.asyncio
    async def test_team_assignees_and_escalation(self, clock, recorder):
        """Test team members are assigned and an unanswered task escalates."""
        notifier = LogNotificationDispatcher()
        engine = WorkflowEngine(
            capabilities=Capabilities(
                clock=clock,
                notifier=notifier,
                stakeholders=StaticStakeholderResolver(teams={"ops": ["carol", "dan"]}),
            ),
            config=EngineConfig(),
        )
        recorder.install(engine)

        async def answer(task):
            await engine.human_tasks.respond(task.id, "boss", {"approved": True})

        engine.human_tasks.on_task_escalated(answer)
        workflow = make_workflow([
            Step(
                id="approve",
                config=HumanTaskStepConfig(
                    title="Approve {{ item }}",
                    assignees=["team:ops"],
                    escalation=EscalationConfig(enabled=True, delay=1, escalate_to=["boss"]),
                ),
            ),
        ])
        await engine.register_workflow(workflow)

        execution = await engine.execute(workflow.id, inputs={"item": "PO-7"}, wait=True)

        assert execution.status == ExecutionStatus.COMPLETED
        output = execution.output["approve"]
        assert output["completed_by"] == "boss"
        assert output["escalations"] == 1
        assert 60 in clock.sleeps

        record = execution.human_tasks[0]
        assert record.assignees == ["boss"]
        assert record.status == HumanTaskStatus.COMPLETED
        assert record.response == {"approved": True}

        task = engine.human_tasks.get_task(output["task_id"])
        assert task.title == "Approve PO-7"
        assert [n["recipient"] for n in notifier.sent] == ["carol", "dan", "boss"]
