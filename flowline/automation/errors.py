"""
Flowline Workflow Errors

Error taxonomy shared by the trigger evaluator, the step executor and
the step orchestrator.
"""

from __future__ import annotations

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""


class WorkflowNotFoundError(WorkflowError):
    """Raised when a workflow id does not resolve to a definition."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class InvalidTransitionError(WorkflowError):
    """Raised when an execution is asked to leave a terminal state."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot transition execution from {current} to {requested}")
        self.current = current
        self.requested = requested


class TriggerEvaluationError(WorkflowError):
    """A trigger definition could not be evaluated (bad operator, malformed condition)."""

    def __init__(self, message: str, trigger_id: Optional[str] = None):
        super().__init__(message)
        self.trigger_id = trigger_id


class OrchestrationError(WorkflowError):
    """The step graph of a workflow is invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class StepExecutionError(WorkflowError):
    """
    Typed failure of a single step attempt.

    ``recoverable`` marks failures that may succeed on a later manual
    re-run (timeouts, failing external calls) as opposed to failures
    that will recur until the definition changes.
    """

    error_type = "step_execution_error"
    default_recoverable = False

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.recoverable = self.default_recoverable if recoverable is None else recoverable


class UnsupportedActionError(StepExecutionError):
    """No handler is registered for the requested action or service."""

    error_type = "unsupported_action"


class StepTimeoutError(StepExecutionError):
    """The step did not finish within its deadline."""

    error_type = "timeout"
    default_recoverable = True


class ExternalCallFailedError(StepExecutionError):
    """An external capability raised while serving the step."""

    error_type = "external_call_failed"
    default_recoverable = True


class ExpressionError(StepExecutionError):
    """A condition or guard expression could not be parsed or evaluated."""

    error_type = "expression_error"


class RetryExhaustedError(StepExecutionError):
    """The step failed on every attempt its retry policy allowed."""

    error_type = "retry_exhausted"
    default_recoverable = True

    def __init__(
        self,
        step_id: str,
        attempts: int,
        last_error: Optional[StepExecutionError] = None,
    ):
        detail = f": {last_error.message}" if last_error is not None else ""
        super().__init__(
            f"Step {step_id} failed after {attempts} attempts{detail}",
            step_id=step_id,
        )
        self.attempts = attempts
        self.last_error = last_error
