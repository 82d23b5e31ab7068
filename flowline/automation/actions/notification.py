"""
Flowline Notification Step Handler

Renders a message template and hands it to the notification dispatcher
once per resolved recipient.
"""

from __future__ import annotations

from typing import Any, Dict, List, TYPE_CHECKING

import structlog

from flowline.automation.actions.executor import BaseStepHandler
from flowline.automation.types import NotificationStepConfig, Step

if TYPE_CHECKING:
    from flowline.automation.execution.context import ExecutionContext

logger = structlog.get_logger(__name__)


class NotificationStepHandler(BaseStepHandler):
    """
    Handler for ``notification`` steps.

    Recipients are expanded through the stakeholder resolver (teams and
    roles become their members) and de-duplicated. The template sees the
    context variables plus the step's own ``variables``; tokens that
    resolve to nothing are left in the message verbatim.
    """

    async def execute(
        self,
        step: Step,
        step_input: Dict[str, Any],
        context: "ExecutionContext",
    ) -> Any:
        config: NotificationStepConfig = step.config

        recipients: List[str] = []
        for recipient in config.recipients:
            value = context.render(recipient.value)
            for resolved in await self.capabilities.stakeholders.resolve(recipient.recipient_type, value):
                if resolved not in recipients:
                    recipients.append(resolved)

        scope = context.scoped(self.resolve_params(config.variables, context)) if config.variables else context
        message = scope.render(config.template)

        metadata = {
            "channel": config.channel,
            "step_id": step.id,
            "execution_id": context.execution.id if context.execution else None,
        }

        delivery_ids = []
        for recipient in recipients:
            delivery_ids.append(
                await self.capabilities.notifier.schedule_notification(recipient, message, metadata)
            )

        logger.info(
            "notifications_sent",
            step_id=step.id,
            channel=config.channel,
            count=len(delivery_ids),
        )
        return {"sent": len(delivery_ids), "delivery_ids": delivery_ids, "message": message}
