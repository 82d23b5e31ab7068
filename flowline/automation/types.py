"""
Flowline Workflow Types

Core dataclasses for workflow definitions, triggers, steps and executions.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type, Union
import uuid

from flowline.automation.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# === Enums ===


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class WorkflowType(str, Enum):
    """Default ordering model of a workflow."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    STATE_MACHINE = "state_machine"


class WorkflowCategory(str, Enum):
    TASK_AUTOMATION = "task_automation"
    PROJECT_MANAGEMENT = "project_management"
    APPROVAL_PROCESS = "approval_process"
    NOTIFICATION_SYSTEM = "notification_system"
    DATA_SYNC = "data_sync"
    REPORT_GENERATION = "report_generation"
    USER_ONBOARDING = "user_onboarding"
    COMPLIANCE = "compliance"
    QUALITY_ASSURANCE = "quality_assurance"
    CUSTOM = "custom"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class TimeoutAction(str, Enum):
    """What happens when an execution exceeds its workflow-level timeout."""
    FAIL = "fail"
    CONTINUE = "continue"
    RETRY = "retry"


class QueueDiscipline(str, Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    PRIORITY = "priority"


class TriggerType(str, Enum):
    """Types of workflow triggers."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"
    WEBHOOK = "webhook"
    ENTITY_CHANGE = "entity_change"
    EMAIL = "email"
    API_CALL = "api_call"
    FILE_UPLOAD = "file_upload"
    INTEGRATION = "integration"


class TriggerOperator(str, Enum):
    """Operators allowed in trigger conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"


class WebhookAuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"
    SIGNATURE = "signature"


class StepType(str, Enum):
    """Kinds of workflow steps."""
    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    PARALLEL = "parallel"
    WAIT = "wait"
    HUMAN_TASK = "human_task"
    SUB_WORKFLOW = "sub_workflow"
    INTEGRATION = "integration"
    NOTIFICATION = "notification"
    DATA_TRANSFORM = "data_transform"


class OnError(str, Enum):
    """Per-step failure policy."""
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"
    SKIP = "skip"
    ESCALATE = "escalate"


class ExhaustedRetryPolicy(str, Enum):
    """Fallback applied once a retrying step has used all of its attempts."""
    STOP = "stop"
    SKIP = "skip"


class LoopType(str, Enum):
    FOR = "for"
    WHILE = "while"
    FOR_EACH = "for_each"


class RecipientType(str, Enum):
    USER = "user"
    TEAM = "team"
    ROLE = "role"
    EMAIL = "email"


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class StepStatus(str, Enum):
    """Status of a single step attempt."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class HumanTaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TriggeredByType(str, Enum):
    USER = "user"
    SCHEDULE = "schedule"
    EVENT = "event"
    WEBHOOK = "webhook"
    API = "api"


TERMINAL_EXECUTION_STATES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

TERMINAL_STEP_STATES = frozenset({
    StepStatus.COMPLETED,
    StepStatus.FAILED,
    StepStatus.SKIPPED,
})

_EXECUTION_TRANSITIONS = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.PAUSED,
    },
    ExecutionStatus.PAUSED: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
}


# === Workflow Configuration ===


@dataclass
class RetryConfig:
    """Workflow-wide retry defaults. Delays are in milliseconds."""
    enabled: bool = True
    max_attempts: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: int = 1000
    max_delay: int = 300000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "max_attempts": self.max_attempts,
            "backoff_strategy": self.backoff_strategy.value,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            enabled=data.get("enabled", True),
            max_attempts=data.get("max_attempts", 3),
            backoff_strategy=BackoffStrategy(data.get("backoff_strategy", "exponential")),
            initial_delay=data.get("initial_delay", 1000),
            max_delay=data.get("max_delay", 300000),
        )


@dataclass
class TimeoutConfig:
    """Execution-level deadline. Duration is in milliseconds."""
    enabled: bool = False
    duration: int = 3600000
    action: TimeoutAction = TimeoutAction.FAIL

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "duration": self.duration, "action": self.action.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeoutConfig":
        return cls(
            enabled=data.get("enabled", False),
            duration=data.get("duration", 3600000),
            action=TimeoutAction(data.get("action", "fail")),
        )


@dataclass
class ConcurrencyConfig:
    max_concurrent: int = 1
    queueing: QueueDiscipline = QueueDiscipline.FIFO

    def to_dict(self) -> Dict[str, Any]:
        return {"max_concurrent": self.max_concurrent, "queueing": self.queueing.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConcurrencyConfig":
        return cls(
            max_concurrent=data.get("max_concurrent", 1),
            queueing=QueueDiscipline(data.get("queueing", "fifo")),
        )


@dataclass
class EnvironmentVariable:
    """A configured environment entry. Encrypted values never leave the definition."""
    key: str
    value: str = ""
    encrypted: bool = False
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "encrypted": self.encrypted,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentVariable":
        return cls(
            key=data["key"],
            value=data.get("value", ""),
            encrypted=data.get("encrypted", False),
            description=data.get("description", ""),
        )


@dataclass
class WorkflowConfig:
    """Execution defaults of a workflow."""
    workflow_type: WorkflowType = WorkflowType.SEQUENTIAL
    auto_start: bool = False
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    input_schema: Dict[str, Any] = field(default_factory=dict)
    output_schema: Dict[str, Any] = field(default_factory=dict)
    environment: List[EnvironmentVariable] = field(default_factory=list)

    def public_environment(self) -> Dict[str, str]:
        """Unencrypted environment entries as a plain mapping."""
        return {v.key: v.value for v in self.environment if not v.encrypted}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.workflow_type.value,
            "auto_start": self.auto_start,
            "retry": self.retry.to_dict(),
            "timeout": self.timeout.to_dict(),
            "concurrency": self.concurrency.to_dict(),
            "input_schema": self.input_schema,
            "output_schema": self.output_schema,
            "environment": [v.to_dict() for v in self.environment],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowConfig":
        return cls(
            workflow_type=WorkflowType(data.get("type", "sequential")),
            auto_start=data.get("auto_start", False),
            retry=RetryConfig.from_dict(data.get("retry", {})),
            timeout=TimeoutConfig.from_dict(data.get("timeout", {})),
            concurrency=ConcurrencyConfig.from_dict(data.get("concurrency", {})),
            input_schema=data.get("input_schema", {}),
            output_schema=data.get("output_schema", {}),
            environment=[EnvironmentVariable.from_dict(v) for v in data.get("environment", [])],
        )


# === Triggers ===


@dataclass
class TriggerCondition:
    """
    A (field, operator, value) check against a stimulus payload.

    The operator is kept as a raw string so that definitions carrying an
    unknown operator can still be stored; it is validated on evaluation.
    """
    field: str
    operator: str = TriggerOperator.EQUALS.value
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerCondition":
        operator = data.get("operator", TriggerOperator.EQUALS.value)
        if isinstance(operator, TriggerOperator):
            operator = operator.value
        return cls(field=data.get("field", ""), operator=operator, value=data.get("value"))


@dataclass
class ScheduleConfig:
    cron: str = ""
    timezone: str = "UTC"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_runs: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cron": self.cron,
            "timezone": self.timezone,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "max_runs": self.max_runs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleConfig":
        return cls(
            cron=data.get("cron", ""),
            timezone=data.get("timezone", "UTC"),
            start_date=_parse_dt(data.get("start_date")),
            end_date=_parse_dt(data.get("end_date")),
            max_runs=data.get("max_runs"),
        )


@dataclass
class EventConfig:
    """Configuration shared by event, entity-change and other push triggers."""
    event_type: Optional[str] = None
    entity_type: Optional[str] = None
    operations: List[str] = field(default_factory=list)
    conditions: List[TriggerCondition] = field(default_factory=list)
    debounce: int = 0  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "operations": list(self.operations),
            "conditions": [c.to_dict() for c in self.conditions],
            "debounce": self.debounce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventConfig":
        return cls(
            event_type=data.get("event_type"),
            entity_type=data.get("entity_type"),
            operations=list(data.get("operations", [])),
            conditions=[TriggerCondition.from_dict(c) for c in data.get("conditions", [])],
            debounce=data.get("debounce", 0),
        )


@dataclass
class WebhookConfig:
    path: str = ""
    method: str = "POST"
    authentication: WebhookAuthType = WebhookAuthType.NONE
    credentials: Dict[str, str] = field(default_factory=dict)
    required_headers: Dict[str, Optional[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "method": self.method,
            "authentication": self.authentication.value,
            "required_headers": dict(self.required_headers),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookConfig":
        return cls(
            path=data.get("path", ""),
            method=data.get("method", "POST"),
            authentication=WebhookAuthType(data.get("authentication", "none")),
            credentials=dict(data.get("credentials", {})),
            required_headers=dict(data.get("required_headers", {})),
        )


@dataclass
class TriggerStats:
    total_triggers: int = 0
    successful_triggers: int = 0
    failed_triggers: int = 0
    last_triggered: Optional[datetime] = None
    average_execution_time: float = 0.0  # milliseconds

    def record_execution(self, succeeded: bool, duration_ms: float) -> None:
        finished = self.successful_triggers + self.failed_triggers
        if succeeded:
            self.successful_triggers += 1
        else:
            self.failed_triggers += 1
        self.average_execution_time = (
            (self.average_execution_time * finished) + duration_ms
        ) / (finished + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_triggers": self.total_triggers,
            "successful_triggers": self.successful_triggers,
            "failed_triggers": self.failed_triggers,
            "last_triggered": _iso(self.last_triggered),
            "average_execution_time": self.average_execution_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerStats":
        return cls(
            total_triggers=data.get("total_triggers", 0),
            successful_triggers=data.get("successful_triggers", 0),
            failed_triggers=data.get("failed_triggers", 0),
            last_triggered=_parse_dt(data.get("last_triggered")),
            average_execution_time=data.get("average_execution_time", 0.0),
        )


@dataclass
class Trigger:
    """A workflow trigger with its type-specific configuration."""
    id: str = field(default_factory=_new_id)
    trigger_type: TriggerType = TriggerType.MANUAL
    name: str = ""
    description: str = ""
    enabled: bool = True

    schedule: Optional[ScheduleConfig] = None
    event: Optional[EventConfig] = None
    webhook: Optional[WebhookConfig] = None

    stats: TriggerStats = field(default_factory=TriggerStats)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "type": self.trigger_type.value,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "stats": self.stats.to_dict(),
        }
        if self.schedule:
            result["schedule"] = self.schedule.to_dict()
        if self.event:
            result["event"] = self.event.to_dict()
        if self.webhook:
            result["webhook"] = self.webhook.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trigger":
        return cls(
            id=data.get("id", _new_id()),
            trigger_type=TriggerType(data.get("type", "manual")),
            name=data.get("name", ""),
            description=data.get("description", ""),
            enabled=data.get("enabled", True),
            schedule=ScheduleConfig.from_dict(data["schedule"]) if data.get("schedule") else None,
            event=EventConfig.from_dict(data["event"]) if data.get("event") else None,
            webhook=WebhookConfig.from_dict(data["webhook"]) if data.get("webhook") else None,
            stats=TriggerStats.from_dict(data.get("stats", {})),
        )


# === Step Configuration (one variant per step kind) ===


@dataclass
class ActionStepConfig:
    step_type: ClassVar[StepType] = StepType.ACTION
    action_type: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[int] = None  # milliseconds


@dataclass
class ConditionStepConfig:
    step_type: ClassVar[StepType] = StepType.CONDITION
    expression: str = ""
    true_step: Optional[str] = None
    false_step: Optional[str] = None


@dataclass
class LoopStepConfig:
    step_type: ClassVar[StepType] = StepType.LOOP
    loop_type: LoopType = LoopType.FOR_EACH
    count: int = 0
    condition: Optional[str] = None
    collection: Optional[str] = None
    item_variable: str = "item"
    index_variable: str = "index"
    max_iterations: int = 100
    body: ActionStepConfig = field(default_factory=ActionStepConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loop_type": self.loop_type.value,
            "count": self.count,
            "condition": self.condition,
            "collection": self.collection,
            "item_variable": self.item_variable,
            "index_variable": self.index_variable,
            "max_iterations": self.max_iterations,
            "body": _plain_config_dict(self.body),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoopStepConfig":
        return cls(
            loop_type=LoopType(data.get("loop_type", "for_each")),
            count=data.get("count", 0),
            condition=data.get("condition"),
            collection=data.get("collection"),
            item_variable=data.get("item_variable", "item"),
            index_variable=data.get("index_variable", "index"),
            max_iterations=data.get("max_iterations", 100),
            body=ActionStepConfig(**data.get("body", {})),
        )


@dataclass
class ParallelBranch:
    name: str = ""
    steps: List[str] = field(default_factory=list)


@dataclass
class ParallelStepConfig:
    step_type: ClassVar[StepType] = StepType.PARALLEL
    branches: List[ParallelBranch] = field(default_factory=list)
    wait_for_all: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branches": [{"name": b.name, "steps": list(b.steps)} for b in self.branches],
            "wait_for_all": self.wait_for_all,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParallelStepConfig":
        return cls(
            branches=[ParallelBranch(name=b.get("name", ""), steps=list(b.get("steps", [])))
                      for b in data.get("branches", [])],
            wait_for_all=data.get("wait_for_all", True),
        )


@dataclass
class WaitStepConfig:
    step_type: ClassVar[StepType] = StepType.WAIT
    duration: Optional[int] = None  # milliseconds
    until: Optional[str] = None
    timeout: Optional[int] = None  # milliseconds


@dataclass
class EscalationConfig:
    enabled: bool = False
    delay: float = 60.0  # minutes
    escalate_to: List[str] = field(default_factory=list)


@dataclass
class HumanTaskStepConfig:
    step_type: ClassVar[StepType] = StepType.HUMAN_TASK
    title: str = ""
    instructions: str = ""
    assignees: List[str] = field(default_factory=list)
    form_schema: Dict[str, Any] = field(default_factory=dict)
    due_date: Optional[datetime] = None
    escalation: EscalationConfig = field(default_factory=EscalationConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "instructions": self.instructions,
            "assignees": list(self.assignees),
            "form_schema": self.form_schema,
            "due_date": _iso(self.due_date),
            "escalation": {
                "enabled": self.escalation.enabled,
                "delay": self.escalation.delay,
                "escalate_to": list(self.escalation.escalate_to),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HumanTaskStepConfig":
        return cls(
            title=data.get("title", ""),
            instructions=data.get("instructions", ""),
            assignees=list(data.get("assignees", [])),
            form_schema=data.get("form_schema", {}),
            due_date=_parse_dt(data.get("due_date")),
            escalation=EscalationConfig(**data.get("escalation", {})),
        )


@dataclass
class IntegrationStepConfig:
    step_type: ClassVar[StepType] = StepType.INTEGRATION
    service: str = ""
    operation: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    input_mapping: Dict[str, str] = field(default_factory=dict)
    output_mapping: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[int] = None


@dataclass
class SubWorkflowStepConfig:
    step_type: ClassVar[StepType] = StepType.SUB_WORKFLOW
    workflow_id: str = ""
    inputs: Dict[str, Any] = field(default_factory=dict)
    wait_for_completion: bool = True
    timeout: Optional[int] = None


@dataclass
class DataTransformStepConfig:
    step_type: ClassVar[StepType] = StepType.DATA_TRANSFORM
    transform: str = "map"
    mapping: Dict[str, Any] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[int] = None


@dataclass
class Recipient:
    recipient_type: RecipientType = RecipientType.USER
    value: str = ""


@dataclass
class NotificationStepConfig:
    step_type: ClassVar[StepType] = StepType.NOTIFICATION
    channel: str = "email"
    recipients: List[Recipient] = field(default_factory=list)
    template: str = ""
    variables: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "recipients": [{"type": r.recipient_type.value, "value": r.value} for r in self.recipients],
            "template": self.template,
            "variables": self.variables,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationStepConfig":
        return cls(
            channel=data.get("channel", "email"),
            recipients=[Recipient(RecipientType(r.get("type", "user")), r.get("value", ""))
                        for r in data.get("recipients", [])],
            template=data.get("template", ""),
            variables=data.get("variables", {}),
        )


StepConfig = Union[
    ActionStepConfig,
    ConditionStepConfig,
    LoopStepConfig,
    ParallelStepConfig,
    WaitStepConfig,
    HumanTaskStepConfig,
    IntegrationStepConfig,
    SubWorkflowStepConfig,
    DataTransformStepConfig,
    NotificationStepConfig,
]

STEP_CONFIG_TYPES: Dict[StepType, Type] = {
    cls.step_type: cls
    for cls in (
        ActionStepConfig,
        ConditionStepConfig,
        LoopStepConfig,
        ParallelStepConfig,
        WaitStepConfig,
        HumanTaskStepConfig,
        IntegrationStepConfig,
        SubWorkflowStepConfig,
        DataTransformStepConfig,
        NotificationStepConfig,
    )
}


def _plain_config_dict(config: Any) -> Dict[str, Any]:
    return {k: copy.deepcopy(v) for k, v in config.__dict__.items()}


def step_config_to_dict(config: StepConfig) -> Dict[str, Any]:
    """Serialize a step config variant."""
    if hasattr(config, "to_dict"):
        return config.to_dict()
    return _plain_config_dict(config)


def step_config_from_dict(step_type: StepType, data: Dict[str, Any]) -> StepConfig:
    """Build the config variant matching ``step_type``."""
    config_cls = STEP_CONFIG_TYPES[step_type]
    if hasattr(config_cls, "from_dict"):
        return config_cls.from_dict(data)
    return config_cls(**data)


# === Steps ===


@dataclass
class NextStep:
    """Conditional successor: ``step_id`` is activated when ``condition`` holds."""
    step_id: str
    condition: Optional[str] = None


@dataclass
class ErrorHandling:
    on_error: OnError = OnError.STOP
    error_step: Optional[str] = None
    max_retries: Optional[int] = None  # None: workflow retry default
    retry_delay: Optional[int] = None  # milliseconds, overrides initial delay

    def to_dict(self) -> Dict[str, Any]:
        return {
            "on_error": self.on_error.value,
            "error_step": self.error_step,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorHandling":
        return cls(
            on_error=OnError(data.get("on_error", "stop")),
            error_step=data.get("error_step"),
            max_retries=data.get("max_retries"),
            retry_delay=data.get("retry_delay"),
        )


@dataclass
class StepStats:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time: float = 0.0

    def record(self, succeeded: bool, duration_ms: float) -> None:
        self.average_execution_time = (
            (self.average_execution_time * self.total_executions) + duration_ms
        ) / (self.total_executions + 1)
        self.total_executions += 1
        if succeeded:
            self.successful_executions += 1
        else:
            self.failed_executions += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "average_execution_time": self.average_execution_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepStats":
        return cls(
            total_executions=data.get("total_executions", 0),
            successful_executions=data.get("successful_executions", 0),
            failed_executions=data.get("failed_executions", 0),
            average_execution_time=data.get("average_execution_time", 0.0),
        )


@dataclass
class Step:
    """
    One unit of work in a workflow.

    The kind of step is carried by ``config``; each config variant holds
    only the settings relevant to its kind.
    """
    id: str = field(default_factory=_new_id)
    name: str = ""
    config: StepConfig = field(default_factory=ActionStepConfig)
    order: int = 0
    dependencies: List[str] = field(default_factory=list)
    next_steps: List[NextStep] = field(default_factory=list)
    error_handling: ErrorHandling = field(default_factory=ErrorHandling)
    enabled: bool = True
    stats: StepStats = field(default_factory=StepStats)

    @property
    def step_type(self) -> StepType:
        return self.config.step_type

    def routing_targets(self) -> List[str]:
        """Step ids that this step may activate after it finishes."""
        targets = [n.step_id for n in self.next_steps]
        if isinstance(self.config, ConditionStepConfig):
            targets.extend(t for t in (self.config.true_step, self.config.false_step) if t)
        if isinstance(self.config, ParallelStepConfig):
            for branch in self.config.branches:
                targets.extend(branch.steps)
        if self.error_handling.error_step:
            targets.append(self.error_handling.error_step)
        return targets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.step_type.value,
            "config": step_config_to_dict(self.config),
            "order": self.order,
            "dependencies": list(self.dependencies),
            "next_steps": [{"step_id": n.step_id, "condition": n.condition} for n in self.next_steps],
            "error_handling": self.error_handling.to_dict(),
            "enabled": self.enabled,
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        step_type = StepType(data.get("type", "action"))
        return cls(
            id=data.get("id", _new_id()),
            name=data.get("name", ""),
            config=step_config_from_dict(step_type, data.get("config", {})),
            order=data.get("order", 0),
            dependencies=list(data.get("dependencies", [])),
            next_steps=[NextStep(n["step_id"], n.get("condition")) for n in data.get("next_steps", [])],
            error_handling=ErrorHandling.from_dict(data.get("error_handling", {})),
            enabled=data.get("enabled", True),
            stats=StepStats.from_dict(data.get("stats", {})),
        )


# === Executions ===


@dataclass
class TriggeredBy:
    trigger_type: TriggeredByType = TriggeredByType.USER
    user_id: Optional[str] = None
    trigger_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.trigger_type.value,
            "user_id": self.user_id,
            "trigger_id": self.trigger_id,
        }


@dataclass
class ExecutionError:
    """Terminal error of an execution."""
    message: str
    step_id: Optional[str] = None
    recoverable: bool = False
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "step_id": self.step_id,
            "recoverable": self.recoverable,
            "error_type": self.error_type,
        }


@dataclass
class Suspension:
    """Why a step is parked and, when configured, until when."""
    step_id: str
    reason: str
    since: datetime = field(default_factory=utcnow)
    deadline: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "reason": self.reason,
            "since": _iso(self.since),
            "deadline": _iso(self.deadline),
        }


@dataclass
class StepExecution:
    """One attempt of one step."""
    step_id: str
    step_name: str = ""
    id: str = field(default_factory=_new_id)
    status: StepStatus = StepStatus.PENDING
    input: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    logs: List[str] = field(default_factory=list)

    def log(self, message: str) -> None:
        self.logs.append(f"{utcnow().isoformat()} {message}")

    def start(self) -> None:
        self.status = StepStatus.RUNNING
        self.started_at = utcnow()

    def _finish(self, status: StepStatus) -> None:
        self.status = status
        self.completed_at = utcnow()
        if self.started_at:
            self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000

    def complete(self, output: Any = None) -> None:
        self.output = output
        self._finish(StepStatus.COMPLETED)

    def fail(self, error: str, error_type: Optional[str] = None) -> None:
        self.error = error
        self.error_type = error_type
        self._finish(StepStatus.FAILED)

    def skip(self, reason: str = "") -> None:
        if reason:
            self.log(f"skipped: {reason}")
        self._finish(StepStatus.SKIPPED)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "retry_count": self.retry_count,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "logs": list(self.logs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepExecution":
        return cls(
            step_id=data["step_id"],
            step_name=data.get("step_name", ""),
            id=data.get("id", _new_id()),
            status=StepStatus(data.get("status", "pending")),
            input=data.get("input", {}),
            output=data.get("output"),
            error=data.get("error"),
            error_type=data.get("error_type"),
            retry_count=data.get("retry_count", 0),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            duration_ms=data.get("duration_ms", 0.0),
            logs=list(data.get("logs", [])),
        )


@dataclass
class HumanTaskRecord:
    task_id: str
    step_id: str
    assignees: List[str] = field(default_factory=list)
    status: HumanTaskStatus = HumanTaskStatus.PENDING
    assigned_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    response: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "step_id": self.step_id,
            "assignees": list(self.assignees),
            "status": self.status.value,
            "assigned_at": _iso(self.assigned_at),
            "completed_at": _iso(self.completed_at),
            "response": self.response,
        }


@dataclass
class Execution:
    """
    One run of a workflow.

    Status changes go through the transition methods, which refuse to
    leave a terminal state.
    """
    id: str = field(default_factory=_new_id)
    workflow_id: str = ""
    workflow_version: str = "1.0.0"
    triggered_by: TriggeredBy = field(default_factory=TriggeredBy)
    status: ExecutionStatus = ExecutionStatus.PENDING

    input: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    step_executions: List[StepExecution] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ExecutionError] = None

    suspensions: Dict[str, Suspension] = field(default_factory=dict)
    human_tasks: List[HumanTaskRecord] = field(default_factory=list)

    priority: int = 0
    attempt: int = 1
    resume_from: Optional[str] = None
    parent_execution_id: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATES

    def _transition(self, status: ExecutionStatus) -> None:
        if status not in _EXECUTION_TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(self.status.value, status.value)
        self.status = status
        if status in TERMINAL_EXECUTION_STATES:
            self.completed_at = utcnow()
            if self.started_at:
                self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
            self.suspensions.clear()

    def start(self) -> None:
        self._transition(ExecutionStatus.RUNNING)
        if self.started_at is None:
            self.started_at = utcnow()

    def pause(self) -> None:
        self._transition(ExecutionStatus.PAUSED)

    def resume(self) -> None:
        self._transition(ExecutionStatus.RUNNING)

    def complete(self, output: Optional[Dict[str, Any]] = None) -> None:
        self._transition(ExecutionStatus.COMPLETED)
        self.output = output or {}

    def fail(self, error: ExecutionError) -> None:
        self._transition(ExecutionStatus.FAILED)
        self.error = error

    def cancel(self) -> None:
        self._transition(ExecutionStatus.CANCELLED)

    def attempts_for(self, step_id: str) -> List[StepExecution]:
        return [s for s in self.step_executions if s.step_id == step_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "triggered_by": self.triggered_by.to_dict(),
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "step_executions": [s.to_dict() for s in self.step_executions],
            "context": self.context,
            "error": self.error.to_dict() if self.error else None,
            "suspensions": [s.to_dict() for s in self.suspensions.values()],
            "human_tasks": [h.to_dict() for h in self.human_tasks],
            "priority": self.priority,
            "attempt": self.attempt,
            "resume_from": self.resume_from,
            "parent_execution_id": self.parent_execution_id,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        triggered_by = data.get("triggered_by") or {}
        error = data.get("error")
        execution = cls(
            id=data.get("id", _new_id()),
            workflow_id=data.get("workflow_id", ""),
            workflow_version=data.get("workflow_version", "1.0.0"),
            triggered_by=TriggeredBy(
                trigger_type=TriggeredByType(triggered_by.get("type", "user")),
                user_id=triggered_by.get("user_id"),
                trigger_id=triggered_by.get("trigger_id"),
            ),
            status=ExecutionStatus(data.get("status", "pending")),
            input=data.get("input", {}),
            output=data.get("output", {}),
            step_executions=[StepExecution.from_dict(s) for s in data.get("step_executions", [])],
            context=data.get("context", {}),
            error=ExecutionError(**error) if error else None,
            priority=data.get("priority", 0),
            attempt=data.get("attempt", 1),
            resume_from=data.get("resume_from"),
            parent_execution_id=data.get("parent_execution_id"),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            duration_ms=data.get("duration_ms", 0.0),
            metadata=data.get("metadata", {}),
        )
        if data.get("created_at"):
            execution.created_at = _parse_dt(data["created_at"])
        for task in data.get("human_tasks", []):
            execution.human_tasks.append(HumanTaskRecord(
                task_id=task["task_id"],
                step_id=task["step_id"],
                assignees=list(task.get("assignees", [])),
                status=HumanTaskStatus(task.get("status", "pending")),
                assigned_at=_parse_dt(task.get("assigned_at")) or utcnow(),
                completed_at=_parse_dt(task.get("completed_at")),
                response=task.get("response"),
            ))
        for suspension in data.get("suspensions", []):
            execution.suspensions[suspension["step_id"]] = Suspension(
                step_id=suspension["step_id"],
                reason=suspension.get("reason", ""),
                since=_parse_dt(suspension.get("since")) or utcnow(),
                deadline=_parse_dt(suspension.get("deadline")),
            )
        return execution


# === Analytics ===


@dataclass
class DailyExecutions:
    date: str
    count: int = 0
    successful: int = 0
    failed: int = 0


@dataclass
class StepPerformance:
    step_id: str
    executions: int = 0
    failures: int = 0
    average_time: float = 0.0
    is_bottleneck: bool = False

    @property
    def failure_rate(self) -> float:
        return self.failures / self.executions if self.executions else 0.0


@dataclass
class ErrorCount:
    error: str
    step_id: Optional[str] = None
    count: int = 0


@dataclass
class WorkflowAnalytics:
    """Aggregate counters over every finished execution of a workflow."""

    DAILY_WINDOW: ClassVar[int] = 30
    MAX_COMMON_ERRORS: ClassVar[int] = 20

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    cancelled_executions: int = 0
    average_execution_time: float = 0.0
    last_executed: Optional[datetime] = None
    daily_executions: List[DailyExecutions] = field(default_factory=list)
    step_performance: Dict[str, StepPerformance] = field(default_factory=dict)
    common_errors: List[ErrorCount] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return self.successful_executions / self.total_executions * 100

    def record(self, execution: Execution) -> None:
        """Fold one terminal execution into the counters."""
        self.average_execution_time = (
            (self.average_execution_time * self.total_executions) + execution.duration_ms
        ) / (self.total_executions + 1)
        self.total_executions += 1
        succeeded = execution.status == ExecutionStatus.COMPLETED
        if succeeded:
            self.successful_executions += 1
        elif execution.status == ExecutionStatus.FAILED:
            self.failed_executions += 1
        elif execution.status == ExecutionStatus.CANCELLED:
            self.cancelled_executions += 1
        self.last_executed = execution.completed_at or utcnow()

        day = self.last_executed.date().isoformat()
        if not self.daily_executions or self.daily_executions[-1].date != day:
            self.daily_executions.append(DailyExecutions(date=day))
            del self.daily_executions[:-self.DAILY_WINDOW]
        today = self.daily_executions[-1]
        today.count += 1
        if succeeded:
            today.successful += 1
        elif execution.status == ExecutionStatus.FAILED:
            today.failed += 1

        for attempt in execution.step_executions:
            if not attempt.is_terminal() or attempt.status == StepStatus.SKIPPED:
                continue
            perf = self.step_performance.setdefault(
                attempt.step_id, StepPerformance(step_id=attempt.step_id)
            )
            perf.average_time = (
                (perf.average_time * perf.executions) + attempt.duration_ms
            ) / (perf.executions + 1)
            perf.executions += 1
            if attempt.status == StepStatus.FAILED:
                perf.failures += 1
        self._mark_bottlenecks()

        if execution.error is not None:
            self._record_error(execution.error)

    def _mark_bottlenecks(self) -> None:
        if not self.step_performance:
            return
        slowest = max(p.average_time for p in self.step_performance.values())
        for perf in self.step_performance.values():
            perf.is_bottleneck = slowest > 0 and perf.average_time == slowest

    def _record_error(self, error: ExecutionError) -> None:
        for entry in self.common_errors:
            if entry.error == error.message and entry.step_id == error.step_id:
                entry.count += 1
                break
        else:
            self.common_errors.append(ErrorCount(error=error.message, step_id=error.step_id, count=1))
        self.common_errors.sort(key=lambda e: e.count, reverse=True)
        del self.common_errors[self.MAX_COMMON_ERRORS:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "cancelled_executions": self.cancelled_executions,
            "success_rate": self.success_rate,
            "average_execution_time": self.average_execution_time,
            "last_executed": _iso(self.last_executed),
            "daily_executions": [d.__dict__.copy() for d in self.daily_executions],
            "step_performance": {
                k: {
                    "executions": p.executions,
                    "failures": p.failures,
                    "failure_rate": p.failure_rate,
                    "average_time": p.average_time,
                    "is_bottleneck": p.is_bottleneck,
                }
                for k, p in self.step_performance.items()
            },
            "common_errors": [e.__dict__.copy() for e in self.common_errors],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowAnalytics":
        return cls(
            total_executions=data.get("total_executions", 0),
            successful_executions=data.get("successful_executions", 0),
            failed_executions=data.get("failed_executions", 0),
            cancelled_executions=data.get("cancelled_executions", 0),
            average_execution_time=data.get("average_execution_time", 0.0),
            last_executed=_parse_dt(data.get("last_executed")),
            daily_executions=[DailyExecutions(**d) for d in data.get("daily_executions", [])],
            step_performance={
                step_id: StepPerformance(
                    step_id=step_id,
                    executions=p.get("executions", 0),
                    failures=p.get("failures", 0),
                    average_time=p.get("average_time", 0.0),
                    is_bottleneck=p.get("is_bottleneck", False),
                )
                for step_id, p in data.get("step_performance", {}).items()
            },
            common_errors=[ErrorCount(**e) for e in data.get("common_errors", [])],
        )


# === Workflow Definition ===


@dataclass
class VersionRecord:
    version: str
    changes: str = ""
    changed_by: Optional[str] = None
    changed_at: datetime = field(default_factory=utcnow)
    snapshot: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowDefinition:
    """
    A workflow definition: the aggregate owning triggers, steps,
    execution history and analytics.
    """
    id: str = field(default_factory=_new_id)
    name: str = ""
    description: str = ""
    owner_id: str = ""
    team_id: Optional[str] = None
    category: WorkflowCategory = WorkflowCategory.CUSTOM
    status: WorkflowStatus = WorkflowStatus.DRAFT

    version: str = "1.0.0"
    version_history: List[VersionRecord] = field(default_factory=list)

    config: WorkflowConfig = field(default_factory=WorkflowConfig)
    triggers: List[Trigger] = field(default_factory=list)
    steps: List[Step] = field(default_factory=list)

    executions: List[Execution] = field(default_factory=list)
    analytics: WorkflowAnalytics = field(default_factory=WorkflowAnalytics)

    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def get_trigger(self, trigger_id: str) -> Optional[Trigger]:
        for trigger in self.triggers:
            if trigger.id == trigger_id:
                return trigger
        return None

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        for execution in self.executions:
            if execution.id == execution_id:
                return execution
        return None

    def enabled_steps(self) -> List[Step]:
        return [s for s in self.steps if s.enabled]

    def validate(self) -> List[str]:
        """Static validation of the definition. Returns a list of errors."""
        errors = []

        if not self.name:
            errors.append("Workflow name is required")

        seen = set()
        for step in self.steps:
            if step.id in seen:
                errors.append(f"Duplicate step id: {step.id}")
            seen.add(step.id)

        if self.config.workflow_type == WorkflowType.SEQUENTIAL:
            orders: Dict[int, str] = {}
            for step in self.steps:
                if step.order in orders:
                    errors.append(
                        f"Step {step.id} reuses order {step.order} of step {orders[step.order]}"
                    )
                orders[step.order] = step.id

        for step in self.steps:
            for dep in step.dependencies:
                if dep not in seen:
                    errors.append(f"Step {step.id} depends on unknown step: {dep}")
            for target in step.routing_targets():
                if target not in seen:
                    errors.append(f"Step {step.id} routes to unknown step: {target}")
            if isinstance(step.config, ConditionStepConfig):
                if not step.config.true_step or not step.config.false_step:
                    errors.append(f"Condition step {step.id} must define true and false targets")
            if isinstance(step.config, ParallelStepConfig) and not step.config.branches:
                errors.append(f"Parallel step {step.id} must define at least one branch")

        for trigger in self.triggers:
            if trigger.event and trigger.event.debounce < 0:
                errors.append(f"Trigger {trigger.id} has a negative debounce window")
            if trigger.trigger_type == TriggerType.SCHEDULED and not (
                trigger.schedule and trigger.schedule.cron
            ):
                errors.append(f"Scheduled trigger {trigger.id} has no cron expression")

        return errors

    def structure(self) -> Dict[str, Any]:
        """The parts of the definition whose change bumps the version."""
        return {
            "steps": [{k: v for k, v in s.to_dict().items() if k != "stats"} for s in self.steps],
            "triggers": [{k: v for k, v in t.to_dict().items() if k != "stats"} for t in self.triggers],
        }

    def bump_version(self, changes: str = "", changed_by: Optional[str] = None,
                     snapshot: Optional[Dict[str, Any]] = None) -> str:
        """Record the current version in history and bump the patch number."""
        self.version_history.append(VersionRecord(
            version=self.version,
            changes=changes,
            changed_by=changed_by,
            snapshot=snapshot if snapshot is not None else self.structure(),
        ))
        major, minor, patch = (int(p) for p in self.version.split("."))
        self.version = f"{major}.{minor}.{patch + 1}"
        self.updated_at = utcnow()
        return self.version

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner_id": self.owner_id,
            "team_id": self.team_id,
            "category": self.category.value,
            "status": self.status.value,
            "version": self.version,
            "version_history": [
                {
                    "version": v.version,
                    "changes": v.changes,
                    "changed_by": v.changed_by,
                    "changed_at": _iso(v.changed_at),
                    "snapshot": v.snapshot,
                }
                for v in self.version_history
            ],
            "config": self.config.to_dict(),
            "triggers": [t.to_dict() for t in self.triggers],
            "steps": [s.to_dict() for s in self.steps],
            "executions": [e.to_dict() for e in self.executions],
            "analytics": self.analytics.to_dict(),
            "tags": list(self.tags),
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        workflow = cls(
            id=data.get("id", _new_id()),
            name=data.get("name", ""),
            description=data.get("description", ""),
            owner_id=data.get("owner_id", ""),
            team_id=data.get("team_id"),
            category=WorkflowCategory(data.get("category", "custom")),
            status=WorkflowStatus(data.get("status", "draft")),
            version=data.get("version", "1.0.0"),
            config=WorkflowConfig.from_dict(data.get("config", {})),
            triggers=[Trigger.from_dict(t) for t in data.get("triggers", [])],
            steps=[Step.from_dict(s) for s in data.get("steps", [])],
            executions=[Execution.from_dict(e) for e in data.get("executions", [])],
            analytics=WorkflowAnalytics.from_dict(data.get("analytics", {})),
            tags=list(data.get("tags", [])),
            metadata=data.get("metadata", {}),
        )
        for record in data.get("version_history", []):
            workflow.version_history.append(VersionRecord(
                version=record["version"],
                changes=record.get("changes", ""),
                changed_by=record.get("changed_by"),
                changed_at=_parse_dt(record.get("changed_at")) or utcnow(),
                snapshot=record.get("snapshot", {}),
            ))
        if data.get("created_at"):
            workflow.created_at = _parse_dt(data["created_at"])
        if data.get("updated_at"):
            workflow.updated_at = _parse_dt(data["updated_at"])
        return workflow
