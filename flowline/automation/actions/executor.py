"""
Flowline Step Executor

Executes a single workflow step by dispatching on its kind.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, TYPE_CHECKING

import structlog

from flowline.automation.capabilities import Capabilities
from flowline.automation.errors import (
    ExternalCallFailedError,
    StepExecutionError,
    StepTimeoutError,
    UnsupportedActionError,
)
from flowline.automation.types import Step, StepType

if TYPE_CHECKING:
    from flowline.automation.execution.context import ExecutionContext
    from flowline.automation.human_tasks.manager import HumanTaskManager

logger = structlog.get_logger(__name__)

# Steps that park on something external are only bounded by an explicit timeout.
SUSPENDING_STEP_TYPES = frozenset({StepType.WAIT, StepType.HUMAN_TASK})


class StepExecutor:
    """
    Executes one step given its config, its input and the execution context.

    The executor knows nothing about other steps. Every failure leaves it
    as a StepExecutionError: handler errors pass through, deadline
    overruns become StepTimeoutError and any other exception raised by a
    capability becomes ExternalCallFailedError.
    """

    def __init__(
        self,
        capabilities: Optional[Capabilities] = None,
        human_tasks: Optional["HumanTaskManager"] = None,
        default_timeout_ms: Optional[int] = None,
        wait_poll_interval_ms: int = 1000,
    ):
        self.capabilities = capabilities or Capabilities()
        self.human_tasks = human_tasks
        self.default_timeout_ms = default_timeout_ms
        self.wait_poll_interval_ms = wait_poll_interval_ms
        self._handlers: Dict[StepType, "BaseStepHandler"] = {}
        self._initialized = False

    def initialize(self) -> None:
        """Install the built-in handler for every step kind."""
        if self._initialized:
            return

        from flowline.automation.actions.action import ActionStepHandler, LoopStepHandler
        from flowline.automation.actions.control import (
            ConditionStepHandler,
            ParallelStepHandler,
            WaitStepHandler,
        )
        from flowline.automation.actions.notification import NotificationStepHandler
        from flowline.automation.actions.human_task import HumanTaskStepHandler
        from flowline.automation.actions.integration import (
            DataTransformStepHandler,
            IntegrationStepHandler,
            SubWorkflowStepHandler,
        )

        action_handler = ActionStepHandler(self)
        defaults = {
            StepType.ACTION: action_handler,
            StepType.CONDITION: ConditionStepHandler(self),
            StepType.LOOP: LoopStepHandler(self, action_handler),
            StepType.PARALLEL: ParallelStepHandler(self),
            StepType.WAIT: WaitStepHandler(self),
            StepType.HUMAN_TASK: HumanTaskStepHandler(self),
            StepType.SUB_WORKFLOW: SubWorkflowStepHandler(self),
            StepType.INTEGRATION: IntegrationStepHandler(self),
            StepType.NOTIFICATION: NotificationStepHandler(self),
            StepType.DATA_TRANSFORM: DataTransformStepHandler(self),
        }
        for step_type, handler in defaults.items():
            self._handlers.setdefault(step_type, handler)

        missing = [t.value for t in StepType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No step handler for: {', '.join(missing)}")

        self._initialized = True
        logger.info("step_executor_initialized", handlers=len(self._handlers))

    def register_handler(self, step_type: StepType, handler: "BaseStepHandler") -> None:
        """Register a custom step handler."""
        self._handlers[step_type] = handler
        logger.info("step_handler_registered", step_type=step_type.value)

    def get_handler(self, step_type: StepType) -> Optional["BaseStepHandler"]:
        return self._handlers.get(step_type)

    def timeout_for(self, step: Step) -> Optional[float]:
        """Deadline of one attempt of ``step``, in seconds."""
        timeout_ms = getattr(step.config, "timeout", None)
        if timeout_ms is None and step.step_type not in SUSPENDING_STEP_TYPES:
            timeout_ms = self.default_timeout_ms
        return timeout_ms / 1000 if timeout_ms else None

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        """
        Execute one attempt of ``step``.

        Returns:
            The step output.

        Raises:
            StepExecutionError: the attempt failed.
        """
        if not self._initialized:
            self.initialize()

        handler = self._handlers.get(step.step_type)
        if handler is None:
            raise UnsupportedActionError(
                f"Unsupported step type: {step.step_type.value}", step_id=step.id
            )

        timeout = self.timeout_for(step)
        try:
            if timeout:
                result = await asyncio.wait_for(
                    handler.execute(step, step_input, context),
                    timeout=timeout,
                )
            else:
                result = await handler.execute(step, step_input, context)

            logger.debug("step_executed", step_id=step.id, step_type=step.step_type.value)
            return result

        except StepExecutionError as e:
            if e.step_id is None:
                e.step_id = step.id
            logger.warning(
                "step_error",
                step_id=step.id,
                step_type=step.step_type.value,
                error_type=e.error_type,
                error=e.message,
            )
            raise

        except asyncio.TimeoutError:
            logger.warning("step_timeout", step_id=step.id, timeout=timeout)
            raise StepTimeoutError(
                f"Step {step.id} timed out after {timeout}s", step_id=step.id
            ) from None

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.warning(
                "step_external_call_failed",
                step_id=step.id,
                step_type=step.step_type.value,
                error=str(e),
            )
            raise ExternalCallFailedError(str(e) or type(e).__name__, step_id=step.id) from e


class BaseStepHandler:
    """Base class for step handlers."""

    def __init__(self, executor: StepExecutor):
        self.executor = executor

    @property
    def capabilities(self) -> Capabilities:
        return self.executor.capabilities

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        """Execute the step."""
        raise NotImplementedError

    def resolve_params(
        self,
        params: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Dict[str, Any]:
        """Resolve ``{{ }}`` tokens in parameter values."""
        if not params:
            return {}

        resolved = {}
        for key, value in params.items():
            resolved[key] = context.resolve(value)
        return resolved
