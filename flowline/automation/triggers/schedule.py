"""
Flowline Schedule Trigger Handler

Cron-based schedule triggers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytz
import structlog
from croniter import croniter

from flowline.automation.errors import TriggerEvaluationError
from flowline.automation.types import Trigger
from flowline.automation.triggers.manager import BaseTriggerHandler, Stimulus

logger = structlog.get_logger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ScheduleTriggerHandler(BaseTriggerHandler):
    """
    Handler for scheduled (cron) triggers.

    A tick matches when the cron expression matches the tick's minute in
    the trigger's timezone, the tick lies inside the optional
    ``start_date``/``end_date`` window and fewer than ``max_runs``
    executions have been started. Each cron minute fires at most once,
    however many ticks land in it.
    """

    def __init__(self, manager):
        super().__init__(manager)
        self._last_fired: Dict[str, datetime] = {}

    def validate(self, trigger: Trigger) -> None:
        schedule = trigger.schedule
        if schedule is None or not schedule.cron:
            raise TriggerEvaluationError("Scheduled trigger has no cron expression", trigger_id=trigger.id)
        if not self.validate_cron(schedule.cron):
            raise TriggerEvaluationError(f"Invalid cron expression: {schedule.cron}", trigger_id=trigger.id)
        try:
            pytz.timezone(schedule.timezone)
        except pytz.UnknownTimeZoneError:
            raise TriggerEvaluationError(f"Unknown timezone: {schedule.timezone}", trigger_id=trigger.id) from None

    def forget(self, trigger_id: str) -> None:
        self._last_fired.pop(trigger_id, None)

    async def evaluate(
        self,
        workflow_id: str,
        trigger: Trigger,
        stimulus: Stimulus,
    ) -> Optional[Dict[str, Any]]:
        self.validate(trigger)
        schedule = trigger.schedule
        tick = _aware(stimulus.received_at)

        if schedule.start_date and tick < _aware(schedule.start_date):
            return None
        if schedule.end_date and tick > _aware(schedule.end_date):
            return None
        if schedule.max_runs is not None and trigger.stats.total_triggers >= schedule.max_runs:
            logger.debug("schedule_max_runs_reached", trigger_id=trigger.id, max_runs=schedule.max_runs)
            return None

        local = tick.astimezone(pytz.timezone(schedule.timezone))
        minute = local.replace(second=0, microsecond=0)
        if self._last_fired.get(trigger.id) == minute:
            return None
        if not croniter.match(schedule.cron, local):
            return None

        self._last_fired[trigger.id] = minute
        return {
            "trigger": {
                "type": trigger.trigger_type.value,
                "scheduled_for": minute.isoformat(),
                "cron": schedule.cron,
                "timezone": schedule.timezone,
            }
        }

    @staticmethod
    def next_run(cron_expression: str, tz_name: str = "UTC", after: Optional[datetime] = None) -> datetime:
        """Next time the expression fires after ``after`` (default: now)."""
        tz = pytz.timezone(tz_name)
        base = _aware(after).astimezone(tz) if after else datetime.now(tz)
        return croniter(cron_expression, base).get_next(datetime)

    @staticmethod
    def validate_cron(expression: str) -> bool:
        """Validate a cron expression."""
        return bool(expression) and croniter.is_valid(expression)

    @staticmethod
    def describe_cron(expression: str) -> str:
        """Get human-readable description of common cron expressions."""
        descriptions = {
            "* * * * *": "Every minute",
            "0 * * * *": "Every hour",
            "0 0 * * *": "Every day at midnight",
            "0 0 * * 0": "Every Sunday at midnight",
            "0 0 1 * *": "First day of every month at midnight",
            "0 9 * * 1-5": "Every weekday at 9 AM",
            "*/5 * * * *": "Every 5 minutes",
            "*/15 * * * *": "Every 15 minutes",
        }
        return descriptions.get(expression.strip(), f"Cron: {expression}")
