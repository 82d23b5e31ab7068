"""
Flowline Event Trigger Handler

Event, entity-change and other push triggers (email, api call, file
upload, integration).
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from flowline.automation.conditions.evaluator import ConditionEvaluator
from flowline.automation.errors import TriggerEvaluationError
from flowline.automation.types import Trigger, TriggerType
from flowline.automation.triggers.manager import BaseTriggerHandler, Stimulus

logger = structlog.get_logger(__name__)


class EventTriggerHandler(BaseTriggerHandler):
    """
    Handler for push triggers.

    A stimulus matches when its event type, entity type and operation
    agree with whichever of them the trigger configures, and every
    configured condition holds on the payload.
    """

    def __init__(self, manager):
        super().__init__(manager)
        self.evaluator = ConditionEvaluator()

    def validate(self, trigger: Trigger) -> None:
        config = trigger.event
        if config is None:
            return
        if config.debounce < 0:
            raise TriggerEvaluationError("Debounce window must be >= 0", trigger_id=trigger.id)
        if trigger.trigger_type == TriggerType.ENTITY_CHANGE and not config.entity_type:
            raise TriggerEvaluationError("Entity change trigger has no entity type", trigger_id=trigger.id)

    async def evaluate(
        self,
        workflow_id: str,
        trigger: Trigger,
        stimulus: Stimulus,
    ) -> Optional[Dict[str, Any]]:
        self.validate(trigger)
        config = trigger.event

        if config is not None:
            if config.event_type and config.event_type != stimulus.event_type:
                return None
            if config.entity_type and config.entity_type != stimulus.entity_type:
                return None
            if config.operations and stimulus.operation not in config.operations:
                return None
            if not self.evaluator.matches(config.conditions, stimulus.payload, trigger.id):
                return None

        return {
            **stimulus.payload,
            "trigger": {
                "type": trigger.trigger_type.value,
                "event_type": stimulus.event_type,
                "entity_type": stimulus.entity_type,
                "operation": stimulus.operation,
                "event_id": stimulus.event_id,
                "received_at": stimulus.received_at.isoformat(),
            },
        }
