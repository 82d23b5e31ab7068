"""
Flowline Execution Context

Variable store and metadata threaded through one workflow execution.
"""

from __future__ import annotations

import copy
import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from flowline.automation.types import Suspension, utcnow

if TYPE_CHECKING:
    from flowline.automation.types import Execution

logger = structlog.get_logger(__name__)

_MISSING = object()


class ExecutionContext:
    """
    Execution context for one workflow run.

    - ``variables`` holds the execution input plus one entry per finished
      step, keyed by step id. Only the orchestrator writes step outputs.
    - ``environment``, ``priority`` and ``metadata`` describe the run.
    - ``env`` exposes the workflow's unencrypted environment entries.

    Template substitution with ``{{ name }}`` tokens is a single textual
    pass: substituted values are never scanned for further tokens, and
    tokens that do not resolve are left as they are.
    """

    TOKEN_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")

    def __init__(
        self,
        execution: Optional["Execution"] = None,
        variables: Optional[Dict[str, Any]] = None,
        environment: str = "production",
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.execution = execution
        self.variables: Dict[str, Any] = dict(variables or {})
        self.environment = environment
        self.priority = priority
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.env: Dict[str, str] = dict(env or {})

    # === Data Access ===

    def namespace(self) -> Dict[str, Any]:
        """Names visible to templates and expressions. Variables shadow builtins."""
        names: Dict[str, Any] = {
            "env": self.env,
            "metadata": self.metadata,
            "environment": self.environment,
            "priority": self.priority,
        }
        names.update(self.variables)
        return names

    def get(self, path: str, default: Any = None) -> Any:
        """Get a value using dot notation, e.g. ``fetch.items.0.name``."""
        value = self._lookup(path)
        return default if value is _MISSING else value

    def has(self, path: str) -> bool:
        return self._lookup(path) is not _MISSING

    def _lookup(self, path: str) -> Any:
        return self._get_nested(self.namespace(), path.split("."))

    def _get_nested(self, data: Any, parts: List[str]) -> Any:
        for part in parts:
            if isinstance(data, dict):
                if part not in data:
                    return _MISSING
                data = data[part]
            elif isinstance(data, (list, tuple)):
                try:
                    index = int(part)
                except ValueError:
                    return _MISSING
                if not -len(data) <= index < len(data):
                    return _MISSING
                data = data[index]
            else:
                return _MISSING
        return data

    # === Step Output Management ===

    def apply_step_output(self, step_id: str, output: Any) -> None:
        """Record a step's output under its id."""
        self.variables[step_id] = output
        logger.debug("context_step_output_applied", step_id=step_id)

    def step_input(self) -> Dict[str, Any]:
        """Input handed to a step: a private copy of every variable."""
        return copy.deepcopy(self.variables)

    def scoped(self, values: Dict[str, Any]) -> "ExecutionContext":
        """A child context with extra variables layered on top (loop items)."""
        child = ExecutionContext(
            execution=self.execution,
            variables={**self.variables, **values},
            environment=self.environment,
            priority=self.priority,
            metadata=self.metadata,
            env=self.env,
        )
        return child

    # === Template Substitution ===

    def render(self, template: str) -> str:
        """Substitute ``{{ name }}`` tokens in ``template``."""
        def replace(match: "re.Match[str]") -> str:
            value = self._lookup(match.group(1))
            if value is _MISSING:
                return match.group(0)
            return self._stringify(value)

        return self.TOKEN_PATTERN.sub(replace, template)

    def resolve(self, value: Any) -> Any:
        """
        Resolve tokens inside an arbitrary value.

        A string that is exactly one token resolves to the raw value so that
        lists and numbers keep their type; other strings are rendered.
        """
        if isinstance(value, str):
            match = self.TOKEN_PATTERN.fullmatch(value.strip())
            if match:
                found = self._lookup(match.group(1))
                return value if found is _MISSING else found
            return self.render(value)

        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}

        if isinstance(value, list):
            return [self.resolve(item) for item in value]

        return value

    @staticmethod
    def _stringify(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)

    # === Suspension ===

    def suspend(self, step_id: str, reason: str, deadline: Optional[datetime] = None) -> None:
        """Record on the execution that ``step_id`` is parked, and why."""
        if self.execution is None or self.execution.is_terminal():
            return
        self.execution.suspensions[step_id] = Suspension(
            step_id=step_id,
            reason=reason,
            since=utcnow(),
            deadline=deadline,
        )
        logger.info(
            "step_suspended",
            execution_id=self.execution.id,
            step_id=step_id,
            reason=reason,
            deadline=deadline.isoformat() if deadline else None,
        )

    def resume(self, step_id: str) -> None:
        if self.execution is not None:
            self.execution.suspensions.pop(step_id, None)

    # === Serialization ===

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the context suitable for storing on the execution."""
        return {
            "variables": copy.deepcopy(self.variables),
            "environment": self.environment,
            "priority": self.priority,
            "metadata": copy.deepcopy(self.metadata),
            "env": dict(self.env),
        }

    def __repr__(self) -> str:
        execution_id = self.execution.id if self.execution else None
        return f"ExecutionContext(execution={execution_id}, keys={list(self.variables.keys())})"
