"""
Flowline Human Task Step Handler

Parks a step on a human task until someone responds, escalating to new
assignees each time the escalation delay passes.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, TYPE_CHECKING

import structlog

from flowline.automation.actions.executor import BaseStepHandler
from flowline.automation.errors import StepExecutionError
from flowline.automation.types import (
    HumanTaskRecord,
    HumanTaskStatus,
    HumanTaskStepConfig,
    RecipientType,
    Step,
    utcnow,
)

if TYPE_CHECKING:
    from flowline.automation.execution.context import ExecutionContext

logger = structlog.get_logger(__name__)


class HumanTaskStepHandler(BaseStepHandler):
    """
    Handler for ``human_task`` steps.

    Assignees may be plain user ids or ``team:<id>`` / ``role:<id>``
    references, which are expanded by the stakeholder resolver.
    """

    async def resolve_assignees(self, assignees: List[str], context: "ExecutionContext") -> List[str]:
        resolved: List[str] = []
        for raw in assignees:
            value = context.render(raw)
            kind, _, name = value.partition(":")
            if name and kind in (RecipientType.TEAM.value, RecipientType.ROLE.value):
                members = await self.capabilities.stakeholders.resolve(RecipientType(kind), name)
            else:
                members = await self.capabilities.stakeholders.resolve(RecipientType.USER, value)
            for member in members:
                if member not in resolved:
                    resolved.append(member)
        return resolved

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        manager = self.executor.human_tasks
        if manager is None:
            raise StepExecutionError("No human task manager configured", step_id=step.id)

        config: HumanTaskStepConfig = step.config
        execution = context.execution
        assignees = await self.resolve_assignees(config.assignees, context)

        task = await manager.create_task(
            execution_id=execution.id if execution else "",
            workflow_id=execution.workflow_id if execution else "",
            step_id=step.id,
            assignees=assignees,
            title=context.render(config.title),
            instructions=context.render(config.instructions),
            form_schema=config.form_schema,
            due_date=config.due_date,
        )
        record = HumanTaskRecord(task_id=task.id, step_id=step.id, assignees=list(assignees))
        if execution is not None:
            execution.human_tasks.append(record)

        escalation = config.escalation
        delay_seconds = escalation.delay * 60 if escalation.enabled else None

        try:
            while True:
                if delay_seconds is not None:
                    deadline = self.capabilities.clock.now() + timedelta(seconds=delay_seconds)
                else:
                    deadline = config.due_date
                context.suspend(step.id, f"awaiting human task {task.id}", deadline)

                closed = await manager.wait_for_response(task.id, delay_seconds)
                if closed is not None:
                    break

                targets = await self.resolve_assignees(escalation.escalate_to, context) or assignees
                await manager.reassign(task.id, targets)
                record.assignees = list(targets)
                logger.info(
                    "human_task_step_escalated",
                    step_id=step.id,
                    task_id=task.id,
                    assignees=targets,
                )
        except asyncio.CancelledError:
            await manager.cancel(task.id)
            record.status = HumanTaskStatus.CANCELLED
            record.completed_at = utcnow()
            raise
        finally:
            context.resume(step.id)

        record.status = closed.status
        record.completed_at = closed.completed_at
        record.response = closed.response

        if closed.status == HumanTaskStatus.CANCELLED:
            raise StepExecutionError(f"Human task {task.id} was cancelled", step_id=step.id)

        return {
            "task_id": task.id,
            "completed_by": closed.completed_by,
            "response": closed.response,
            "escalations": closed.escalations,
        }
