"""
Flowline Execution History

Capped execution history kept on each workflow definition.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from flowline.automation.types import (
    Execution,
    ExecutionStatus,
    WorkflowDefinition,
    utcnow,
)

logger = structlog.get_logger(__name__)


class ExecutionHistory:
    """
    Manages the execution history embedded in workflow definitions.

    Features:
    - Recording executions as they start
    - Query and filtering
    - Retention by count and by age

    Pruning only ever drops finished executions, oldest first. Running,
    paused and pending executions stay regardless of the limits, and the
    workflow's identity, configuration and analytics are untouched.
    """

    def __init__(self, max_history_count: int = 1000, retention_days: int = 30):
        self.max_history_count = max_history_count
        self.retention_days = retention_days

    def record(self, workflow: WorkflowDefinition, execution: Execution) -> None:
        if workflow.get_execution(execution.id) is None:
            workflow.executions.append(execution)

    def list(
        self,
        workflow: WorkflowDefinition,
        status: Optional[ExecutionStatus] = None,
        from_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Execution]:
        """Executions newest first."""
        executions = list(workflow.executions)
        if status:
            executions = [e for e in executions if e.status == status]
        if from_date:
            executions = [e for e in executions if e.created_at >= from_date]
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return executions[offset:offset + limit]

    def prune(self, workflow: WorkflowDefinition, now: Optional[datetime] = None) -> int:
        """Apply the retention limits. Returns the number of executions dropped."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.retention_days)

        finished = sorted(
            (e for e in workflow.executions if e.is_terminal()),
            key=lambda e: e.completed_at or e.created_at,
        )
        drop = {e.id for e in finished if (e.completed_at or e.created_at) < cutoff}

        excess = len(workflow.executions) - len(drop) - self.max_history_count
        for execution in finished:
            if excess <= 0:
                break
            if execution.id not in drop:
                drop.add(execution.id)
                excess -= 1

        if drop:
            workflow.executions = [e for e in workflow.executions if e.id not in drop]
            logger.debug("execution_history_pruned", workflow_id=workflow.id, dropped=len(drop))
        return len(drop)

    def error_analysis(self, workflow: WorkflowDefinition, limit: int = 10) -> Dict[str, Any]:
        """Group the failures still in history by message."""
        counts: Dict[str, int] = {}
        failures = [e for e in workflow.executions if e.status == ExecutionStatus.FAILED]
        for execution in failures:
            key = execution.error.message[:100] if execution.error else "Unknown error"
            counts[key] = counts.get(key, 0) + 1

        top = sorted(counts.items(), key=lambda x: x[1], reverse=True)
        return {
            "total_failures": len(failures),
            "unique_errors": len(counts),
            "top_errors": [{"error": e, "count": c} for e, c in top[:limit]],
        }
