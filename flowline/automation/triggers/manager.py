"""
Flowline Trigger Manager

Decides, from trigger definitions and external stimuli, when a workflow
execution starts and with which input.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

import structlog

from flowline.automation.capabilities import Clock, SystemClock
from flowline.automation.errors import TriggerEvaluationError, WorkflowError
from flowline.automation.types import (
    Trigger,
    TriggeredBy,
    TriggeredByType,
    TriggerType,
    utcnow,
)

if TYPE_CHECKING:
    from flowline.automation.engine import WorkflowEngine
    from flowline.automation.types import Execution

logger = structlog.get_logger(__name__)


PROVENANCE = {
    TriggerType.MANUAL: TriggeredByType.USER,
    TriggerType.SCHEDULED: TriggeredByType.SCHEDULE,
    TriggerType.WEBHOOK: TriggeredByType.WEBHOOK,
    TriggerType.API_CALL: TriggeredByType.API,
    TriggerType.EVENT: TriggeredByType.EVENT,
    TriggerType.ENTITY_CHANGE: TriggeredByType.EVENT,
    TriggerType.EMAIL: TriggeredByType.EVENT,
    TriggerType.FILE_UPLOAD: TriggeredByType.EVENT,
    TriggerType.INTEGRATION: TriggeredByType.EVENT,
}


@dataclass
class Stimulus:
    """
    Something that happened outside the engine: a manual request, an
    inbound event or entity change, or a webhook call.

    Delivery is at-least-once; ``event_id`` is carried through for callers
    that need to de-duplicate.
    """
    kind: TriggerType
    payload: Dict[str, Any] = field(default_factory=dict)

    event_type: Optional[str] = None
    entity_type: Optional[str] = None
    operation: Optional[str] = None
    event_id: Optional[str] = None

    # Webhook calls
    path: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    # Manual requests
    workflow_id: Optional[str] = None
    user_id: Optional[str] = None

    received_at: datetime = field(default_factory=utcnow)


@dataclass
class TriggerMatch:
    """A trigger that fired: which workflow to start, with what input and provenance."""
    workflow_id: str
    trigger_id: str
    input: Dict[str, Any]
    triggered_by: TriggeredBy


class TriggerManager:
    """
    Manages workflow triggers.

    Features:
    - Scheduled (cron + timezone) triggers with validity window and run cap
    - Event, entity-change and other push triggers with AND-ed conditions
    - Trailing-edge debounce, last stimulus wins
    - Webhook routing with authentication
    - Manual starts

    Every match increments the trigger's stats. A trigger that cannot be
    evaluated counts as a failed trigger, starts nothing, and is reported
    to the error callbacks.
    """

    def __init__(
        self,
        engine: Optional["WorkflowEngine"] = None,
        clock: Optional[Clock] = None,
        scheduler_interval_seconds: float = 30.0,
    ):
        self.engine = engine
        self.clock = clock or SystemClock()
        self.scheduler_interval_seconds = scheduler_interval_seconds

        # trigger id -> (workflow id, trigger)
        self._triggers: Dict[str, Tuple[str, Trigger]] = {}

        self._handlers: Dict[TriggerType, "BaseTriggerHandler"] = {}
        self._install_handlers()

        # Debounced triggers: trigger id -> pending dispatch
        self._debounce_tasks: Dict[str, asyncio.Task] = {}
        self._debounce_latest: Dict[str, TriggerMatch] = {}

        self._on_match: List[Callable] = []
        self._on_error: List[Callable] = []

        self._schedule_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self._stats = {
            "stimuli": 0,
            "matches": 0,
            "errors": 0,
        }
        self._initialized = False

    def set_engine(self, engine: "WorkflowEngine") -> None:
        """Set the workflow engine (for deferred initialization)."""
        self.engine = engine

    def _install_handlers(self) -> None:
        from flowline.automation.triggers.schedule import ScheduleTriggerHandler
        from flowline.automation.triggers.webhook import WebhookTriggerHandler
        from flowline.automation.triggers.event import EventTriggerHandler
        from flowline.automation.triggers.manual import ManualTriggerHandler

        events = EventTriggerHandler(self)
        self._handlers[TriggerType.SCHEDULED] = ScheduleTriggerHandler(self)
        self._handlers[TriggerType.WEBHOOK] = WebhookTriggerHandler(self)
        self._handlers[TriggerType.MANUAL] = ManualTriggerHandler(self)
        for trigger_type in (
            TriggerType.EVENT,
            TriggerType.ENTITY_CHANGE,
            TriggerType.EMAIL,
            TriggerType.API_CALL,
            TriggerType.FILE_UPLOAD,
            TriggerType.INTEGRATION,
        ):
            self._handlers[trigger_type] = events

    async def initialize(self, start_scheduler: bool = True) -> None:
        """Initialize the trigger manager and optionally start the schedule loop."""
        if self._initialized:
            return

        self._shutdown_event.clear()
        if start_scheduler:
            self._schedule_task = asyncio.create_task(self._schedule_loop())

        self._initialized = True
        logger.info("trigger_manager_initialized", scheduler=start_scheduler)

    async def shutdown(self) -> None:
        """Stop the schedule loop and drop pending debounced dispatches."""
        self._shutdown_event.set()

        tasks = list(self._debounce_tasks.values())
        if self._schedule_task:
            tasks.append(self._schedule_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._debounce_tasks.clear()
        self._debounce_latest.clear()
        self._schedule_task = None
        self._initialized = False
        logger.info("trigger_manager_shutdown")

    # === Trigger Registration ===

    def get_handler(self, trigger_type: TriggerType) -> "BaseTriggerHandler":
        return self._handlers[trigger_type]

    async def register(self, workflow_id: str, trigger: Trigger) -> Trigger:
        """
        Register a trigger for a workflow.

        Raises:
            TriggerEvaluationError: the trigger definition is malformed.
        """
        handler = self.get_handler(trigger.trigger_type)
        handler.validate(trigger)
        self._triggers[trigger.id] = (workflow_id, trigger)

        logger.info(
            "trigger_registered",
            trigger_id=trigger.id,
            type=trigger.trigger_type.value,
            workflow_id=workflow_id,
        )
        return trigger

    async def unregister(self, trigger_id: str) -> bool:
        entry = self._triggers.pop(trigger_id, None)
        if entry is None:
            return False

        task = self._debounce_tasks.pop(trigger_id, None)
        if task:
            task.cancel()
        self._debounce_latest.pop(trigger_id, None)
        self.get_handler(entry[1].trigger_type).forget(trigger_id)

        logger.info("trigger_unregistered", trigger_id=trigger_id)
        return True

    async def unregister_all(self, workflow_id: str) -> None:
        """Unregister all triggers for a workflow."""
        for trigger_id in [tid for tid, (wid, _) in self._triggers.items() if wid == workflow_id]:
            await self.unregister(trigger_id)

    def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> List[Trigger]:
        triggers = [
            t for wid, t in self._triggers.values()
            if workflow_id is None or wid == workflow_id
        ]
        if trigger_type:
            triggers = [t for t in triggers if t.trigger_type == trigger_type]
        return triggers

    # === Evaluation ===

    async def evaluate(
        self,
        workflow_id: str,
        trigger: Trigger,
        stimulus: Stimulus,
    ) -> Optional[TriggerMatch]:
        """
        Evaluate one trigger against one stimulus.

        Returns the match (input + provenance) or None.

        Raises:
            TriggerEvaluationError: the trigger could not be evaluated.
        """
        if not trigger.enabled or trigger.trigger_type != stimulus.kind:
            return None

        handler = self.get_handler(trigger.trigger_type)
        built_input = await handler.evaluate(workflow_id, trigger, stimulus)
        if built_input is None:
            return None

        return TriggerMatch(
            workflow_id=workflow_id,
            trigger_id=trigger.id,
            input=built_input,
            triggered_by=TriggeredBy(
                trigger_type=PROVENANCE[trigger.trigger_type],
                user_id=stimulus.user_id,
                trigger_id=trigger.id,
            ),
        )

    async def fire(self, stimulus: Stimulus) -> List["Execution"]:
        """
        Offer a stimulus to every registered trigger of its kind.

        Returns the executions started right away; debounced triggers start
        theirs once their window closes.
        """
        self._stats["stimuli"] += 1
        started = []
        for workflow_id, trigger in list(self._triggers.values()):
            if trigger.trigger_type != stimulus.kind:
                continue
            match = await self._safe_evaluate(workflow_id, trigger, stimulus)
            if match is None:
                continue

            debounce = trigger.event.debounce if trigger.event else 0
            if debounce > 0:
                self._debounce(trigger, match, debounce)
                continue

            execution = await self._dispatch(trigger, match)
            if execution is not None:
                started.append(execution)
        return started

    async def tick(self, at: Optional[datetime] = None) -> List["Execution"]:
        """Evaluate scheduled triggers against a clock tick."""
        at = at or self.clock.now()
        return await self.fire(Stimulus(kind=TriggerType.SCHEDULED, received_at=at))

    async def _safe_evaluate(
        self,
        workflow_id: str,
        trigger: Trigger,
        stimulus: Stimulus,
    ) -> Optional[TriggerMatch]:
        try:
            return await self.evaluate(workflow_id, trigger, stimulus)
        except TriggerEvaluationError as e:
            if e.trigger_id is None:
                e.trigger_id = trigger.id
            trigger.stats.failed_triggers += 1
            self._stats["errors"] += 1
            logger.error(
                "trigger_evaluation_failed",
                trigger_id=trigger.id,
                workflow_id=workflow_id,
                error=str(e),
            )
            await self._fire_callbacks(self._on_error, workflow_id, e)
            return None

    def _debounce(self, trigger: Trigger, match: TriggerMatch, debounce_ms: int) -> None:
        """Restart the trigger's window; only the latest match is dispatched."""
        self._debounce_latest[trigger.id] = match
        pending = self._debounce_tasks.get(trigger.id)
        if pending and not pending.done():
            pending.cancel()
        self._debounce_tasks[trigger.id] = asyncio.create_task(
            self._dispatch_after(trigger, debounce_ms / 1000)
        )
        logger.debug("trigger_debounced", trigger_id=trigger.id, window_ms=debounce_ms)

    async def _dispatch_after(self, trigger: Trigger, delay: float) -> None:
        await self.clock.sleep(delay)
        match = self._debounce_latest.pop(trigger.id, None)
        self._debounce_tasks.pop(trigger.id, None)
        if match is not None:
            await self._dispatch(trigger, match)

    async def _dispatch(self, trigger: Trigger, match: TriggerMatch) -> Optional["Execution"]:
        trigger.stats.total_triggers += 1
        trigger.stats.last_triggered = self.clock.now()
        self._stats["matches"] += 1

        logger.info(
            "trigger_matched",
            trigger_id=trigger.id,
            workflow_id=match.workflow_id,
            type=trigger.trigger_type.value,
        )
        await self._fire_callbacks(self._on_match, match)

        if self.engine is None:
            return None
        try:
            return await self.engine.execute(
                match.workflow_id,
                inputs=match.input,
                triggered_by=match.triggered_by,
            )
        except WorkflowError as e:
            logger.error(
                "trigger_dispatch_failed",
                trigger_id=trigger.id,
                workflow_id=match.workflow_id,
                error=str(e),
            )
            await self._fire_callbacks(self._on_error, match.workflow_id, e)
            return None

    # === Scheduling ===

    async def _schedule_loop(self) -> None:
        """Background loop feeding clock ticks to scheduled triggers."""
        while not self._shutdown_event.is_set():
            try:
                await self.tick(self.clock.now())
                await self.clock.sleep(self.scheduler_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("schedule_loop_error", error=str(e))
                await self.clock.sleep(self.scheduler_interval_seconds)

    # === Event Callbacks ===

    def on_match(self, callback: Callable) -> None:
        self._on_match.append(callback)

    def on_error(self, callback: Callable) -> None:
        """Register a callback for trigger evaluation errors: callback(workflow_id, error)."""
        self._on_error.append(callback)

    async def _fire_callbacks(self, callbacks: List[Callable], *args) -> None:
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("trigger_callback_error", error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for _, trigger in self._triggers.values():
            by_type[trigger.trigger_type.value] = by_type.get(trigger.trigger_type.value, 0) + 1
        return {
            **self._stats,
            "registered": len(self._triggers),
            "by_type": by_type,
            "pending_debounce": len(self._debounce_tasks),
        }


class BaseTriggerHandler:
    """Base class for trigger handlers."""

    def __init__(self, manager: TriggerManager):
        self.manager = manager

    def validate(self, trigger: Trigger) -> None:
        """Reject malformed definitions at registration time."""

    def forget(self, trigger_id: str) -> None:
        """Drop per-trigger state once the trigger is unregistered."""

    async def evaluate(
        self,
        workflow_id: str,
        trigger: Trigger,
        stimulus: Stimulus,
    ) -> Optional[Dict[str, Any]]:
        """Return the execution input if the stimulus matches, else None."""
        raise NotImplementedError
