"""
Flowline Delegating Step Handlers

Integration, sub-workflow and data transform steps: each resolves its
parameters from the context and delegates to an external capability.
"""

from __future__ import annotations

from typing import Any, Dict, TYPE_CHECKING

import structlog

from flowline.automation.actions.executor import BaseStepHandler
from flowline.automation.conditions.evaluator import lookup_field
from flowline.automation.errors import UnsupportedActionError
from flowline.automation.types import (
    DataTransformStepConfig,
    IntegrationStepConfig,
    Step,
    SubWorkflowStepConfig,
)

if TYPE_CHECKING:
    from flowline.automation.execution.context import ExecutionContext

logger = structlog.get_logger(__name__)


class IntegrationStepHandler(BaseStepHandler):
    """
    Calls ``service.operation`` on the integration gateway.

    ``input_mapping`` maps parameter names to context paths;
    ``output_mapping`` maps output names to paths in the raw result.
    Without an output mapping the raw result is the step output.
    """

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: IntegrationStepConfig = step.config

        params = self.resolve_params(config.parameters, context)
        for name, path in config.input_mapping.items():
            params[name] = context.get(path)

        logger.info("integration_call", step_id=step.id, service=config.service, operation=config.operation)
        result = await self.capabilities.integrations.call(config.service, config.operation, params)

        if not config.output_mapping:
            return result
        return {name: lookup_field(result, path)[1] for name, path in config.output_mapping.items()}


class SubWorkflowStepHandler(BaseStepHandler):
    """Starts another workflow through the sub-workflow runner."""

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: SubWorkflowStepConfig = step.config
        runner = self.capabilities.sub_workflows
        if runner is None:
            raise UnsupportedActionError("No sub-workflow runner configured", step_id=step.id)

        inputs = self.resolve_params(config.inputs, context)
        parent_id = context.execution.id if context.execution else None
        logger.info("sub_workflow_call", step_id=step.id, workflow_id=config.workflow_id)
        return await runner.run_sub_workflow(
            config.workflow_id,
            inputs,
            wait=config.wait_for_completion,
            parent_execution_id=parent_id,
        )


class DataTransformStepHandler(BaseStepHandler):
    """Resolves ``mapping`` from the context and passes it to a named transform."""

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: DataTransformStepConfig = step.config
        data = self.resolve_params(config.mapping, context)
        return await self.capabilities.transforms.transform(config.transform, data, config.parameters)
