"""
Flowline Workflow Registry

Storage and retrieval of workflow definitions.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from flowline.automation.types import (
    Execution,
    TriggerType,
    WorkflowCategory,
    WorkflowDefinition,
    WorkflowStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)


class WorkflowRegistry:
    """
    Registry for workflow definitions.

    Features:
    - In-memory storage with optional JSON persistence
    - Query and filtering
    - Execution lookup across workflows
    - Event callbacks

    Each definition is stored as one record embedding its triggers,
    steps and capped execution history.
    """

    FILE_NAME = "workflows.json"

    def __init__(
        self,
        persistence_path: Optional[Path] = None,
        auto_persist: bool = True,
    ):
        self.persistence_path = Path(persistence_path) if persistence_path else None
        self.auto_persist = auto_persist

        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._by_name: Dict[str, str] = {}

        self._on_workflow_created: List[Callable] = []
        self._on_workflow_updated: List[Callable] = []
        self._on_workflow_deleted: List[Callable] = []

        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._initialized:
            return

        if self.persistence_path and (self.persistence_path / self.FILE_NAME).exists():
            await self._load_from_disk()

        self._initialized = True
        logger.info("workflow_registry_initialized", workflow_count=len(self._workflows))

    async def shutdown(self) -> None:
        if self.persistence_path and self.auto_persist:
            await self.persist()
        self._initialized = False

    # === Workflow Operations ===

    async def save(self, workflow: WorkflowDefinition) -> str:
        """Store a new or changed definition."""
        async with self._lock:
            is_new = workflow.id not in self._workflows
            previous = self._workflows.get(workflow.id)
            if previous is not None and self._by_name.get(previous.name) == previous.id:
                del self._by_name[previous.name]

            workflow.updated_at = utcnow()
            self._workflows[workflow.id] = workflow
            self._by_name[workflow.name] = workflow.id

            if self.persistence_path and self.auto_persist:
                self._save_to_disk()

        if is_new:
            await self._fire_callbacks(self._on_workflow_created, workflow)
        else:
            await self._fire_callbacks(self._on_workflow_updated, workflow)

        logger.info("workflow_saved", workflow_id=workflow.id, name=workflow.name, is_new=is_new)
        return workflow.id

    def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(workflow_id)

    def get_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        workflow_id = self._by_name.get(name)
        return self._workflows.get(workflow_id) if workflow_id else None

    async def delete(self, workflow_id: str) -> bool:
        async with self._lock:
            workflow = self._workflows.pop(workflow_id, None)
            if workflow is None:
                return False
            if self._by_name.get(workflow.name) == workflow_id:
                del self._by_name[workflow.name]

            if self.persistence_path and self.auto_persist:
                self._save_to_disk()

        await self._fire_callbacks(self._on_workflow_deleted, workflow)
        logger.info("workflow_deleted", workflow_id=workflow_id)
        return True

    def list(
        self,
        status: Optional[WorkflowStatus] = None,
        category: Optional[WorkflowCategory] = None,
        owner_id: Optional[str] = None,
        team_id: Optional[str] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowDefinition]:
        """List workflows with filters, most recently updated first."""
        workflows = list(self._workflows.values())

        if status:
            workflows = [w for w in workflows if w.status == status]
        if category:
            workflows = [w for w in workflows if w.category == category]
        if owner_id:
            workflows = [w for w in workflows if w.owner_id == owner_id]
        if team_id:
            workflows = [w for w in workflows if w.team_id == team_id]
        if tag:
            workflows = [w for w in workflows if tag in w.tags]
        if search:
            needle = search.lower()
            workflows = [
                w for w in workflows
                if needle in w.name.lower() or needle in w.description.lower()
            ]

        workflows.sort(key=lambda w: w.updated_at, reverse=True)
        return workflows[offset:offset + limit]

    def count(self, status: Optional[WorkflowStatus] = None) -> int:
        if status:
            return len([w for w in self._workflows.values() if w.status == status])
        return len(self._workflows)

    def find_by_trigger(self, trigger_type: TriggerType) -> List[WorkflowDefinition]:
        """Active workflows with an enabled trigger of ``trigger_type``."""
        return [
            w for w in self._workflows.values()
            if w.status == WorkflowStatus.ACTIVE
            and any(t.enabled and t.trigger_type == trigger_type for t in w.triggers)
        ]

    # === Execution Lookup ===

    def find_execution(self, execution_id: str) -> Optional[Execution]:
        for workflow in self._workflows.values():
            execution = workflow.get_execution(execution_id)
            if execution is not None:
                return execution
        return None

    # === Event Callbacks ===

    def on_workflow_created(self, callback: Callable) -> None:
        self._on_workflow_created.append(callback)

    def on_workflow_updated(self, callback: Callable) -> None:
        self._on_workflow_updated.append(callback)

    def on_workflow_deleted(self, callback: Callable) -> None:
        self._on_workflow_deleted.append(callback)

    async def _fire_callbacks(self, callbacks: List[Callable], *args) -> None:
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("registry_callback_error", error=str(e))

    # === Persistence ===

    async def persist(self) -> None:
        """Write every definition to disk now."""
        async with self._lock:
            self._save_to_disk()

    async def _load_from_disk(self) -> None:
        workflows_file = self.persistence_path / self.FILE_NAME
        with open(workflows_file, "r") as f:
            data: Dict[str, Any] = json.load(f)

        for workflow_data in data.get("workflows", []):
            workflow = WorkflowDefinition.from_dict(workflow_data)
            self._workflows[workflow.id] = workflow
            self._by_name[workflow.name] = workflow.id

        logger.info("workflows_loaded", count=len(self._workflows), path=str(workflows_file))

    def _save_to_disk(self) -> None:
        if not self.persistence_path:
            return

        self.persistence_path.mkdir(parents=True, exist_ok=True)
        workflows_file = self.persistence_path / self.FILE_NAME
        data = {
            "saved_at": utcnow().isoformat(),
            "workflows": [w.to_dict() for w in self._workflows.values()],
        }
        with open(workflows_file, "w") as f:
            json.dump(data, f, indent=2, default=str)

        logger.debug("workflows_persisted", count=len(self._workflows), path=str(workflows_file))
