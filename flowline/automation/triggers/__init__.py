"""
Flowline Triggers

Trigger evaluation for scheduled, event, webhook and manual starts.
"""

from flowline.automation.triggers.manager import (
    BaseTriggerHandler,
    Stimulus,
    TriggerManager,
    TriggerMatch,
)
from flowline.automation.triggers.schedule import ScheduleTriggerHandler
from flowline.automation.triggers.event import EventTriggerHandler
from flowline.automation.triggers.webhook import WebhookTriggerHandler
from flowline.automation.triggers.manual import ManualTriggerHandler, validate_inputs

__all__ = [
    "BaseTriggerHandler",
    "Stimulus",
    "TriggerManager",
    "TriggerMatch",
    "ScheduleTriggerHandler",
    "EventTriggerHandler",
    "WebhookTriggerHandler",
    "ManualTriggerHandler",
    "validate_inputs",
]
