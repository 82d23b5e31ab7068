"""
Flowline Manual Trigger Handler

User-initiated starts.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from flowline.automation.types import Trigger
from flowline.automation.triggers.manager import BaseTriggerHandler, Stimulus

logger = structlog.get_logger(__name__)

_JSON_TYPES = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def validate_inputs(schema: Dict[str, Any], inputs: Optional[Dict[str, Any]]) -> List[str]:
    """Check inputs against the ``required``/``properties`` parts of a JSON schema."""
    inputs = inputs or {}
    errors = []

    for required_field in schema.get("required", []):
        if required_field not in inputs:
            errors.append(f"Missing required input: {required_field}")

    for name, prop in schema.get("properties", {}).items():
        if name not in inputs or "type" not in prop:
            continue
        expected = _JSON_TYPES.get(prop["type"])
        value = inputs[name]
        if expected is None:
            continue
        if isinstance(value, bool) and prop["type"] in ("number", "integer"):
            errors.append(f"Field '{name}' must be a {prop['type']}")
        elif not isinstance(value, expected):
            errors.append(f"Field '{name}' must be a {prop['type']}")

    return errors


class ManualTriggerHandler(BaseTriggerHandler):
    """
    Handler for manual triggers.

    A manual stimulus names the workflow it wants to start; its payload
    becomes the execution input.
    """

    async def evaluate(
        self,
        workflow_id: str,
        trigger: Trigger,
        stimulus: Stimulus,
    ) -> Optional[Dict[str, Any]]:
        if stimulus.workflow_id != workflow_id:
            return None

        logger.info(
            "manual_trigger_requested",
            trigger_id=trigger.id,
            workflow_id=workflow_id,
            user_id=stimulus.user_id,
        )
        return dict(stimulus.payload)
