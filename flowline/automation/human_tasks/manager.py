"""
Flowline Human Task Manager

Pending human tasks created by ``human_task`` steps, and the waits that
park those steps until someone responds.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import uuid

import structlog

from flowline.automation.capabilities import Clock, NotificationDispatcher, SystemClock
from flowline.automation.types import HumanTaskStatus, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class HumanTask:
    """A task waiting on a person."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str = ""
    workflow_id: str = ""
    step_id: str = ""

    title: str = ""
    instructions: str = ""
    form_schema: Dict[str, Any] = field(default_factory=dict)
    assignees: List[str] = field(default_factory=list)
    due_date: Optional[datetime] = None

    status: HumanTaskStatus = HumanTaskStatus.PENDING
    claimed_by: Optional[str] = None
    completed_by: Optional[str] = None
    response: Any = None
    escalations: int = 0

    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def is_open(self) -> bool:
        return self.status in (HumanTaskStatus.PENDING, HumanTaskStatus.IN_PROGRESS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "title": self.title,
            "assignees": list(self.assignees),
            "status": self.status.value,
            "claimed_by": self.claimed_by,
            "completed_by": self.completed_by,
            "response": self.response,
            "escalations": self.escalations,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class HumanTaskManager:
    """
    Tracks human tasks and resolves the steps waiting on them.

    Features:
    - Task creation with assignee notification
    - Claim/respond/cancel handling
    - Reassignment on escalation
    - Waits that time out on the injected clock
    - Closed tasks dropped after ``retention_seconds``
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationDispatcher] = None,
        retention_seconds: float = 7 * 24 * 3600,
    ):
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.retention_seconds = retention_seconds

        self._tasks: Dict[str, HumanTask] = {}
        self._waiters: Dict[str, asyncio.Future] = {}

        self._on_task_created: List[Callable] = []
        self._on_task_completed: List[Callable] = []
        self._on_task_escalated: List[Callable] = []

    # === Task Management ===

    async def create_task(
        self,
        execution_id: str,
        step_id: str,
        assignees: List[str],
        title: str = "",
        instructions: str = "",
        workflow_id: str = "",
        form_schema: Optional[Dict[str, Any]] = None,
        due_date: Optional[datetime] = None,
    ) -> HumanTask:
        """Create a pending task and notify its assignees."""
        self.prune_closed()

        task = HumanTask(
            execution_id=execution_id,
            workflow_id=workflow_id,
            step_id=step_id,
            title=title or "Task requires attention",
            instructions=instructions,
            form_schema=form_schema or {},
            assignees=list(assignees),
            due_date=due_date,
        )
        self._tasks[task.id] = task

        await self._notify(task, task.assignees, "assigned")
        await self._fire_callbacks(self._on_task_created, task)

        logger.info(
            "human_task_created",
            task_id=task.id,
            execution_id=execution_id,
            step_id=step_id,
            assignees=task.assignees,
        )
        return task

    def get_task(self, task_id: str) -> Optional[HumanTask]:
        return self._tasks.get(task_id)

    def prune_closed(self) -> int:
        """Forget completed and cancelled tasks closed longer than the retention period."""
        cutoff = utcnow() - timedelta(seconds=self.retention_seconds)
        expired = [
            task_id for task_id, task in self._tasks.items()
            if not task.is_open() and task.completed_at is not None and task.completed_at < cutoff
        ]
        for task_id in expired:
            del self._tasks[task_id]

        if expired:
            logger.debug("human_tasks_pruned", count=len(expired))
        return len(expired)

    def list_tasks(
        self,
        status: Optional[HumanTaskStatus] = None,
        assignee: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> List[HumanTask]:
        tasks = list(self._tasks.values())
        if status:
            tasks = [t for t in tasks if t.status == status]
        if assignee:
            tasks = [t for t in tasks if assignee in t.assignees]
        if execution_id:
            tasks = [t for t in tasks if t.execution_id == execution_id]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    async def claim(self, task_id: str, user_id: str) -> bool:
        """Mark a task as being worked on by one of its assignees."""
        task = self._tasks.get(task_id)
        if not task or task.status != HumanTaskStatus.PENDING:
            return False
        if task.assignees and user_id not in task.assignees:
            logger.warning("human_task_claim_not_authorized", task_id=task_id, user_id=user_id)
            return False

        task.status = HumanTaskStatus.IN_PROGRESS
        task.claimed_by = user_id
        logger.info("human_task_claimed", task_id=task_id, user_id=user_id)
        return True

    async def respond(self, task_id: str, user_id: str, response: Any = None) -> bool:
        """Complete a task with the assignee's response."""
        task = self._tasks.get(task_id)
        if not task:
            logger.warning("human_task_not_found", task_id=task_id)
            return False
        if not task.is_open():
            logger.warning("human_task_not_open", task_id=task_id, status=task.status.value)
            return False
        if task.assignees and user_id not in task.assignees:
            logger.warning("human_task_response_not_authorized", task_id=task_id, user_id=user_id)
            return False

        task.status = HumanTaskStatus.COMPLETED
        task.completed_by = user_id
        task.response = response
        task.completed_at = utcnow()

        logger.info("human_task_completed", task_id=task_id, user_id=user_id)
        await self._fire_callbacks(self._on_task_completed, task)
        self._resolve_waiter(task)
        return True

    async def cancel(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if not task or not task.is_open():
            return False

        task.status = HumanTaskStatus.CANCELLED
        task.completed_at = utcnow()
        logger.info("human_task_cancelled", task_id=task_id)
        self._resolve_waiter(task)
        return True

    async def reassign(self, task_id: str, assignees: List[str]) -> bool:
        """Hand an open task to new assignees after an escalation."""
        task = self._tasks.get(task_id)
        if not task or not task.is_open():
            return False

        task.assignees = list(assignees)
        task.status = HumanTaskStatus.PENDING
        task.claimed_by = None
        task.escalations += 1

        logger.info(
            "human_task_escalated",
            task_id=task_id,
            assignees=task.assignees,
            escalations=task.escalations,
        )
        await self._notify(task, task.assignees, "escalated")
        await self._fire_callbacks(self._on_task_escalated, task)
        return True

    # === Waiting ===

    async def wait_for_response(
        self,
        task_id: str,
        timeout_seconds: Optional[float] = None,
    ) -> Optional[HumanTask]:
        """
        Wait until the task is completed or cancelled.

        Returns the task once it is closed, or None if ``timeout_seconds``
        elapsed first. A timed-out wait leaves the task open so it can be
        waited on again.
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(f"Unknown human task: {task_id}")
        if not task.is_open():
            return task

        future = self._waiters.get(task_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._waiters[task_id] = future

        if timeout_seconds is None:
            return await asyncio.shield(future)

        timer = asyncio.ensure_future(self.clock.sleep(timeout_seconds))
        try:
            done, _ = await asyncio.wait({future, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()

        if future in done:
            return future.result()
        return None

    def _resolve_waiter(self, task: HumanTask) -> None:
        future = self._waiters.pop(task.id, None)
        if future and not future.done():
            future.set_result(task)

    # === Notification ===

    async def _notify(self, task: HumanTask, recipients: List[str], reason: str) -> None:
        if self.notifier is None:
            return
        message = f"{task.title}: {task.instructions}" if task.instructions else task.title
        for recipient in recipients:
            await self.notifier.schedule_notification(
                recipient,
                message,
                {"channel": "human_task", "task_id": task.id, "reason": reason},
            )

    # === Event Callbacks ===

    def on_task_created(self, callback: Callable) -> None:
        self._on_task_created.append(callback)

    def on_task_completed(self, callback: Callable) -> None:
        self._on_task_completed.append(callback)

    def on_task_escalated(self, callback: Callable) -> None:
        self._on_task_escalated.append(callback)

    async def _fire_callbacks(self, callbacks: List[Callable], task: HumanTask) -> None:
        for callback in callbacks:
            try:
                result = callback(task)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("human_task_callback_error", task_id=task.id, error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for task in self._tasks.values():
            by_status[task.status.value] = by_status.get(task.status.value, 0) + 1
        return {"total_tasks": len(self._tasks), "by_status": by_status}
