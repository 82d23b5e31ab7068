"""
Shared fixtures for Flowline tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from flowline.automation.actions.action import ActionStepHandler
from flowline.automation.capabilities import Capabilities, Clock
from flowline.automation.engine import WorkflowEngine
from flowline.automation.types import (
    ActionStepConfig,
    ErrorHandling,
    OnError,
    Step,
    StepType,
    WorkflowConfig,
    WorkflowDefinition,
    WorkflowType,
)
from flowline.core.config import EngineConfig


class FakeClock(Clock):
    """Clock whose sleeps return at once and advance virtual time."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class ActionRecorder:
    """Custom actions that succeed, fail a set number of times, or record call order."""

    def __init__(self):
        self.calls: List[str] = []
        self.failures: Dict[str, int] = {}

    def install(self, engine: WorkflowEngine) -> ActionStepHandler:
        engine.executor.initialize()
        handler = engine.executor.get_handler(StepType.ACTION)
        handler.register_action("record", self.record)
        handler.register_action("fail", self.fail)
        handler.register_action("flaky", self.flaky)
        return handler

    async def record(self, params: Dict[str, Any], capabilities: Capabilities) -> Any:
        label = params.get("label", "?")
        self.calls.append(label)
        await asyncio.sleep(0)
        return {"label": label}

    async def fail(self, params: Dict[str, Any], capabilities: Capabilities) -> Any:
        self.calls.append(params.get("label", "?"))
        raise RuntimeError(f"action {params.get('label')} failed")

    async def flaky(self, params: Dict[str, Any], capabilities: Capabilities) -> Any:
        label = params.get("label", "?")
        self.calls.append(label)
        remaining = self.failures.get(label, 0)
        if remaining > 0:
            self.failures[label] = remaining - 1
            raise RuntimeError(f"action {label} failed, {remaining - 1} failures left")
        return {"label": label}


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the real loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def action_step(
    step_id: str,
    action: str = "record",
    order: int = 0,
    dependencies: Optional[List[str]] = None,
    on_error: OnError = OnError.STOP,
    **handling,
) -> Step:
    return Step(
        id=step_id,
        name=step_id,
        config=ActionStepConfig(action_type=action, parameters={"label": step_id}),
        order=order,
        dependencies=list(dependencies or []),
        error_handling=ErrorHandling(on_error=on_error, **handling),
    )


def make_workflow(
    steps: List[Step],
    workflow_type: WorkflowType = WorkflowType.PARALLEL,
    name: str = "Test Workflow",
    **config,
) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        owner_id="owner-1",
        steps=steps,
        config=WorkflowConfig(workflow_type=workflow_type, **config),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return ActionRecorder()


@pytest.fixture
def make_engine(recorder):
    """Factory for engines; call it inside the test's event loop."""
    def factory(clock: Optional[Clock] = None, **config) -> WorkflowEngine:
        capabilities = Capabilities(clock=clock) if clock else Capabilities()
        engine = WorkflowEngine(capabilities=capabilities, config=EngineConfig(**config))
        recorder.install(engine)
        return engine

    return factory
