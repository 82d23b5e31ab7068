"""
Flowline Action Step Handlers

Named actions backed by the entity store and notification dispatch, and
loops that run an action body per iteration.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, TYPE_CHECKING

import structlog

from flowline.automation.actions.executor import BaseStepHandler, StepExecutor
from flowline.automation.capabilities import Capabilities
from flowline.automation.conditions.expressions import ExpressionParser
from flowline.automation.errors import ExpressionError, UnsupportedActionError
from flowline.automation.types import ActionStepConfig, LoopStepConfig, LoopType, Step

if TYPE_CHECKING:
    from flowline.automation.execution.context import ExecutionContext

logger = structlog.get_logger(__name__)

# (merged parameters, capabilities) -> output
ActionFunction = Callable[[Dict[str, Any], Capabilities], Awaitable[Any]]


async def create_task(params: Dict[str, Any], capabilities: Capabilities) -> Dict[str, Any]:
    task_id = await capabilities.entity_store.create_entity("task", params)
    return {"entity_type": "task", "id": task_id}


async def create_entity(params: Dict[str, Any], capabilities: Capabilities) -> Dict[str, Any]:
    payload = dict(params)
    entity_type = payload.pop("entity_type", None)
    if not entity_type:
        raise UnsupportedActionError("create_entity requires an entity_type parameter")
    entity_id = await capabilities.entity_store.create_entity(entity_type, payload)
    return {"entity_type": entity_type, "id": entity_id}


async def send_email(params: Dict[str, Any], capabilities: Capabilities) -> Dict[str, Any]:
    recipient = params.get("to")
    if not recipient:
        raise UnsupportedActionError("send_email requires a 'to' parameter")
    delivery_id = await capabilities.notifier.schedule_notification(
        recipient,
        str(params.get("body", "")),
        {"channel": "email", "subject": params.get("subject", "")},
    )
    return {"sent": True, "delivery_id": delivery_id}


class ActionStepHandler(BaseStepHandler):
    """
    Handler for ``action`` steps.

    Looks the action type up in a registry and calls it with the step's
    resolved ``parameters`` merged with the step input (input wins).
    """

    def __init__(self, executor: StepExecutor):
        super().__init__(executor)
        self._actions: Dict[str, ActionFunction] = {
            "create_task": create_task,
            "create_entity": create_entity,
            "send_email": send_email,
        }

    def register_action(self, action_type: str, func: ActionFunction) -> None:
        """Register a custom action."""
        self._actions[action_type] = func
        logger.info("action_registered", action_type=action_type)

    def has_action(self, action_type: str) -> bool:
        return action_type in self._actions

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        return await self.run_action(step.config, step_input, context)

    async def run_action(
        self,
        config: ActionStepConfig,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        func = self._actions.get(config.action_type)
        if func is None:
            raise UnsupportedActionError(f"Unknown action type: {config.action_type}")

        params = {**self.resolve_params(config.parameters, context), **step_input}
        logger.debug("running_action", action_type=config.action_type)
        return await func(params, self.capabilities)


class LoopStepHandler(BaseStepHandler):
    """
    Handler for ``loop`` steps.

    Runs the body action once per iteration with the loop variables
    layered over the context:
    - ``for``: ``count`` iterations
    - ``while``: until ``condition`` is false
    - ``for_each``: once per element of the ``collection`` variable

    Every loop is bounded by ``max_iterations``.
    """

    def __init__(self, executor: StepExecutor, actions: ActionStepHandler):
        super().__init__(executor)
        self.actions = actions

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: LoopStepConfig = step.config
        results: List[Any] = []

        if config.loop_type == LoopType.FOR:
            count = min(config.count, config.max_iterations)
            for index in range(count):
                results.append(await self._iterate(config, context, index, index))

        elif config.loop_type == LoopType.FOR_EACH:
            items = context.get(config.collection) if config.collection else None
            if items is None:
                items = []
            if not isinstance(items, (list, tuple)):
                raise ExpressionError(f"Loop collection {config.collection} is not a list")
            for index, item in enumerate(items[:config.max_iterations]):
                results.append(await self._iterate(config, context, index, item))

        else:
            if not config.condition:
                raise ExpressionError("while loop requires a condition")
            index = 0
            while index < config.max_iterations:
                scope = context.scoped({config.index_variable: index})
                if not ExpressionParser(scope.namespace()).evaluate_bool(config.condition):
                    break
                results.append(await self._iterate(config, context, index, index))
                index += 1

        logger.debug("loop_completed", step_id=step.id, iterations=len(results))
        return {"iterations": len(results), "results": results}

    async def _iterate(
        self,
        config: LoopStepConfig,
        context: "ExecutionContext",
        index: int,
        item: Any,
    ) -> Any:
        scope = context.scoped({config.item_variable: item, config.index_variable: index})
        return await self.actions.run_action(config.body, {}, scope)
