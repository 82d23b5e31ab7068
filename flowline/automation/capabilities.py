"""
Flowline Capabilities

External collaborators the engine consumes: entity storage, notification
dispatch, stakeholder resolution, integrations, data transforms and the
clock. Each has a base class and an in-process default.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import uuid

import structlog

from flowline.automation.errors import UnsupportedActionError
from flowline.automation.types import RecipientType, utcnow

logger = structlog.get_logger(__name__)


# === Clock ===


class Clock:
    """Source of time for schedules, delays and deadlines."""

    def now(self) -> datetime:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock backed by asyncio."""

    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


# === Entity Store ===


class EntityStore:
    """Creates domain entities (tasks, projects, ...) for action steps."""

    async def create_entity(self, entity_type: str, payload: Dict[str, Any]) -> str:
        raise NotImplementedError


class InMemoryEntityStore(EntityStore):
    """Keeps created entities in a dict, keyed by generated id."""

    def __init__(self):
        self.entities: Dict[str, Tuple[str, Dict[str, Any]]] = {}

    async def create_entity(self, entity_type: str, payload: Dict[str, Any]) -> str:
        entity_id = str(uuid.uuid4())
        self.entities[entity_id] = (entity_type, dict(payload))
        logger.debug("entity_created", entity_type=entity_type, entity_id=entity_id)
        return entity_id

    def of_type(self, entity_type: str) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.entities.values() if kind == entity_type]


# === Notification Dispatch ===


class NotificationDispatcher:
    """Hands rendered messages to a delivery transport."""

    async def schedule_notification(
        self,
        recipient: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> str:
        raise NotImplementedError


class LogNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the structured log and remembers them."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def schedule_notification(
        self,
        recipient: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> str:
        delivery_id = str(uuid.uuid4())
        self.sent.append({
            "delivery_id": delivery_id,
            "recipient": recipient,
            "message": message,
            "metadata": dict(metadata),
        })
        logger.info(
            "notification_scheduled",
            delivery_id=delivery_id,
            recipient=recipient,
            channel=metadata.get("channel"),
        )
        return delivery_id


# === Stakeholder Resolution ===


class StakeholderResolver:
    """Expands teams and roles into the individual recipients behind them."""

    async def resolve(self, recipient_type: RecipientType, value: str) -> List[str]:
        raise NotImplementedError


class StaticStakeholderResolver(StakeholderResolver):
    """
    Resolves from fixed membership tables.

    Users and email addresses resolve to themselves; teams and roles
    resolve through ``teams``/``roles`` and to nobody when unknown.
    """

    def __init__(
        self,
        teams: Optional[Dict[str, List[str]]] = None,
        roles: Optional[Dict[str, List[str]]] = None,
    ):
        self.teams = teams or {}
        self.roles = roles or {}

    async def resolve(self, recipient_type: RecipientType, value: str) -> List[str]:
        if recipient_type == RecipientType.TEAM:
            return list(self.teams.get(value, []))
        if recipient_type == RecipientType.ROLE:
            return list(self.roles.get(value, []))
        return [value]


# === Integrations ===


IntegrationHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class IntegrationGateway:
    """Calls operations on external services."""

    async def call(self, service: str, operation: str, parameters: Dict[str, Any]) -> Any:
        raise NotImplementedError


class IntegrationRegistry(IntegrationGateway):
    """Dispatches to coroutine handlers registered per (service, operation)."""

    def __init__(self):
        self._handlers: Dict[Tuple[str, str], IntegrationHandler] = {}

    def register(self, service: str, operation: str, handler: IntegrationHandler) -> None:
        self._handlers[(service, operation)] = handler
        logger.info("integration_registered", service=service, operation=operation)

    async def call(self, service: str, operation: str, parameters: Dict[str, Any]) -> Any:
        handler = self._handlers.get((service, operation))
        if handler is None:
            raise UnsupportedActionError(f"No integration registered for {service}.{operation}")
        return await handler(parameters)


# === Data Transforms ===


TransformHandler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Any]]


class DataTransformer:
    """Applies a named transform to resolved step data."""

    async def transform(self, name: str, data: Dict[str, Any], parameters: Dict[str, Any]) -> Any:
        raise NotImplementedError


async def _map_transform(data: Dict[str, Any], parameters: Dict[str, Any]) -> Any:
    return data


async def _merge_transform(data: Dict[str, Any], parameters: Dict[str, Any]) -> Any:
    merged: Dict[str, Any] = {}
    for value in data.values():
        if isinstance(value, dict):
            merged.update(value)
    return merged


class TransformRegistry(DataTransformer):
    """Named transforms; ``map`` and ``merge`` are built in."""

    def __init__(self):
        self._transforms: Dict[str, TransformHandler] = {
            "map": _map_transform,
            "merge": _merge_transform,
        }

    def register(self, name: str, handler: TransformHandler) -> None:
        self._transforms[name] = handler

    async def transform(self, name: str, data: Dict[str, Any], parameters: Dict[str, Any]) -> Any:
        handler = self._transforms.get(name)
        if handler is None:
            raise UnsupportedActionError(f"Unknown data transform: {name}")
        return await handler(data, parameters)


# === Sub-workflows ===


class SubWorkflowRunner:
    """Starts another workflow and optionally waits for its outcome."""

    async def run_sub_workflow(
        self,
        workflow_id: str,
        inputs: Dict[str, Any],
        wait: bool = True,
        parent_execution_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class Capabilities:
    """Bundle of external collaborators handed to the step executor."""
    clock: Clock = field(default_factory=SystemClock)
    entity_store: EntityStore = field(default_factory=InMemoryEntityStore)
    notifier: NotificationDispatcher = field(default_factory=LogNotificationDispatcher)
    stakeholders: StakeholderResolver = field(default_factory=StaticStakeholderResolver)
    integrations: IntegrationGateway = field(default_factory=IntegrationRegistry)
    transforms: DataTransformer = field(default_factory=TransformRegistry)
    sub_workflows: Optional[SubWorkflowRunner] = None
