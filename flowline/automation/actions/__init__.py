"""
Flowline Step Handlers

The step executor and one handler per step kind.
"""

from flowline.automation.actions.executor import BaseStepHandler, StepExecutor

__all__ = ["BaseStepHandler", "StepExecutor"]
