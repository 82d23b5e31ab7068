"""Flowline Core Module - configuration and logging shared by the engine."""

from flowline.core.config import (
    EngineConfig,
    FlowlineConfig,
    LoggingConfig,
    LogLevel,
    get_config,
    reset_config,
    set_config,
)
from flowline.core.logging import setup_logging

__all__ = [
    "EngineConfig",
    "FlowlineConfig",
    "LoggingConfig",
    "LogLevel",
    "get_config",
    "reset_config",
    "set_config",
    "setup_logging",
]
