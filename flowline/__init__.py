"""
Flowline - workflow automation engine

Runs user-defined workflows: triggers decide when an execution starts,
steps run as a dependency graph with branching, parallelism, retries,
waits and human tasks.
"""

__version__ = "1.0.0"
__author__ = "Flowline Team"

from flowline.automation.engine import WorkflowEngine
from flowline.core.config import FlowlineConfig

__all__ = ["WorkflowEngine", "FlowlineConfig", "__version__"]
