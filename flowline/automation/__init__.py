"""
Flowline Workflow Automation

Workflow engine that starts executions from triggers and runs their
steps as a dependency graph.

Core Features:
- Scheduled, event, webhook and manual triggers
- Conditional branching with a safe expression language
- Parallel branches, loops, waits and human tasks
- Per-step retry with fixed, linear or exponential backoff
- Per-workflow concurrency limits and execution queueing
- Execution history and analytics
"""

from flowline.automation.types import (
    # Enums
    WorkflowStatus,
    WorkflowType,
    WorkflowCategory,
    ExecutionStatus,
    StepStatus,
    StepType,
    TriggerType,
    TriggeredByType,
    OnError,
    BackoffStrategy,
    TimeoutAction,
    QueueDiscipline,
    ExhaustedRetryPolicy,
    # Configuration
    RetryConfig,
    TimeoutConfig,
    ConcurrencyConfig,
    WorkflowConfig,
    # Triggers
    Trigger,
    TriggerCondition,
    ScheduleConfig,
    EventConfig,
    WebhookConfig,
    # Steps
    Step,
    NextStep,
    ErrorHandling,
    ActionStepConfig,
    ConditionStepConfig,
    LoopStepConfig,
    ParallelStepConfig,
    ParallelBranch,
    WaitStepConfig,
    HumanTaskStepConfig,
    IntegrationStepConfig,
    SubWorkflowStepConfig,
    DataTransformStepConfig,
    NotificationStepConfig,
    # Workflow
    WorkflowDefinition,
    # Execution
    Execution,
    ExecutionError,
    StepExecution,
    TriggeredBy,
    WorkflowAnalytics,
)
from flowline.automation.errors import (
    WorkflowError,
    WorkflowNotFoundError,
    TriggerEvaluationError,
    OrchestrationError,
    StepExecutionError,
    UnsupportedActionError,
    StepTimeoutError,
    ExternalCallFailedError,
    ExpressionError,
    RetryExhaustedError,
)
from flowline.automation.capabilities import Capabilities, Clock, SystemClock
from flowline.automation.engine import WorkflowEngine
from flowline.automation.registry import WorkflowRegistry
from flowline.automation.orchestrator import StepGraph, StepOrchestrator
from flowline.automation.triggers.manager import Stimulus, TriggerManager
from flowline.automation.actions.executor import StepExecutor
from flowline.automation.conditions.evaluator import ConditionEvaluator
from flowline.automation.human_tasks.manager import HumanTaskManager
from flowline.automation.execution.context import ExecutionContext
from flowline.automation.retry import RetryPolicy

__all__ = [
    # Enums
    "WorkflowStatus",
    "WorkflowType",
    "WorkflowCategory",
    "ExecutionStatus",
    "StepStatus",
    "StepType",
    "TriggerType",
    "TriggeredByType",
    "OnError",
    "BackoffStrategy",
    "TimeoutAction",
    "QueueDiscipline",
    "ExhaustedRetryPolicy",
    # Core types
    "RetryConfig",
    "TimeoutConfig",
    "ConcurrencyConfig",
    "WorkflowConfig",
    "Trigger",
    "TriggerCondition",
    "ScheduleConfig",
    "EventConfig",
    "WebhookConfig",
    "Step",
    "NextStep",
    "ErrorHandling",
    "ActionStepConfig",
    "ConditionStepConfig",
    "LoopStepConfig",
    "ParallelStepConfig",
    "ParallelBranch",
    "WaitStepConfig",
    "HumanTaskStepConfig",
    "IntegrationStepConfig",
    "SubWorkflowStepConfig",
    "DataTransformStepConfig",
    "NotificationStepConfig",
    "WorkflowDefinition",
    "Execution",
    "ExecutionError",
    "StepExecution",
    "TriggeredBy",
    "WorkflowAnalytics",
    # Errors
    "WorkflowError",
    "WorkflowNotFoundError",
    "TriggerEvaluationError",
    "OrchestrationError",
    "StepExecutionError",
    "UnsupportedActionError",
    "StepTimeoutError",
    "ExternalCallFailedError",
    "ExpressionError",
    "RetryExhaustedError",
    # Components
    "Capabilities",
    "Clock",
    "SystemClock",
    "WorkflowEngine",
    "WorkflowRegistry",
    "StepGraph",
    "StepOrchestrator",
    "Stimulus",
    "TriggerManager",
    "StepExecutor",
    "ConditionEvaluator",
    "HumanTaskManager",
    "ExecutionContext",
    "RetryPolicy",
]
