"""
Flowline Control Step Handlers

Condition, parallel and wait steps. These shape the flow of an execution
rather than calling out to external capabilities.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, TYPE_CHECKING

import structlog

from flowline.automation.actions.executor import BaseStepHandler
from flowline.automation.conditions.expressions import ExpressionParser
from flowline.automation.types import (
    ConditionStepConfig,
    ParallelStepConfig,
    Step,
    WaitStepConfig,
)

if TYPE_CHECKING:
    from flowline.automation.execution.context import ExecutionContext

logger = structlog.get_logger(__name__)


class ConditionStepHandler(BaseStepHandler):
    """Evaluates the step expression and names the branch to follow."""

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: ConditionStepConfig = step.config
        result = ExpressionParser(context.namespace()).evaluate_bool(config.expression)
        next_step = config.true_step if result else config.false_step
        logger.debug("condition_branch_selected", step_id=step.id, result=result, next_step=next_step)
        return {"result": result, "next_step": next_step}


class ParallelStepHandler(BaseStepHandler):
    """
    A parallel step does no work itself. The orchestrator releases its
    branches when it completes and joins them afterwards.
    """

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: ParallelStepConfig = step.config
        return {
            "branches": [branch.name for branch in config.branches],
            "wait_for_all": config.wait_for_all,
        }


class WaitStepHandler(BaseStepHandler):
    """
    Parks the step until ``duration`` has elapsed or ``until`` holds,
    whichever comes first. ``until`` is polled; other steps keep running
    while it waits. The step's ``timeout`` is enforced by the executor.
    """

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: WaitStepConfig = step.config
        clock = self.capabilities.clock
        duration = config.duration / 1000 if config.duration is not None else None

        bound_ms = config.timeout if config.timeout is not None else config.duration
        deadline = clock.now() + timedelta(milliseconds=bound_ms) if bound_ms is not None else None
        reason = f"waiting until {config.until}" if config.until else f"waiting {config.duration}ms"
        context.suspend(step.id, reason, deadline)

        try:
            if not config.until:
                await clock.sleep(duration or 0)
                return {"waited_ms": config.duration or 0, "condition_met": None}

            poll = self.executor.wait_poll_interval_ms / 1000
            waited = 0.0
            while True:
                if ExpressionParser(context.namespace()).evaluate_bool(config.until):
                    return {"waited_ms": round(waited * 1000), "condition_met": True}
                if duration is not None and waited >= duration:
                    return {"waited_ms": round(waited * 1000), "condition_met": False}
                interval = poll if duration is None else min(poll, duration - waited)
                await clock.sleep(interval)
                waited += interval
        finally:
            context.resume(step.id)
