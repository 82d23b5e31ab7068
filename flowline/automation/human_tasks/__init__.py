"""
Flowline Human Tasks

Pending tasks assigned to people, with escalation on timeout.
"""

from flowline.automation.human_tasks.manager import HumanTask, HumanTaskManager

__all__ = ["HumanTask", "HumanTaskManager"]
