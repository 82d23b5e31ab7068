"""
Flowline Workflow Execution

Execution infrastructure:
- Execution context and variable resolution
- Queueing of executions beyond the concurrency limit
- Execution history retention
"""

from flowline.automation.execution.context import ExecutionContext
from flowline.automation.execution.queue import ExecutionQueue
from flowline.automation.execution.history import ExecutionHistory

__all__ = [
    "ExecutionContext",
    "ExecutionQueue",
    "ExecutionHistory",
]
