"""
Flowline Configuration

Centralized configuration for the workflow engine with:
- Environment-based configuration
- Type-safe settings with Pydantic
- JSON configuration files
"""

from __future__ import annotations

from enum import Enum
import json
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for Flowline."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EngineConfig(BaseModel):
    """Configuration for the workflow engine and step orchestrator."""
    max_concurrent_executions: int = 100
    default_step_timeout_ms: Optional[int] = None  # None: unbounded
    max_parallel_steps: int = 10  # per execution
    history_limit: int = 1000  # executions kept per workflow
    history_retention_days: int = 30
    human_task_retention_days: int = 7  # closed tasks only
    scheduler_interval_seconds: float = 30.0
    wait_poll_interval_ms: int = 1000
    exhausted_retry_policy: Literal["stop", "skip"] = "stop"
    default_environment: str = "production"
    persistence_path: Optional[Path] = None

    @field_validator("max_concurrent_executions", "max_parallel_steps", "history_limit")
    @classmethod
    def ensure_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""
    level: LogLevel = LogLevel.INFO
    format: Literal["json", "text"] = "json"


class FlowlineConfig(BaseSettings):
    """
    Main Flowline Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with FLOWLINE_ (e.g.
    FLOWLINE_ENGINE__MAX_PARALLEL_STEPS=4).
    """

    instance_id: str = Field(default="flowline-primary")
    environment: Literal["development", "staging", "production"] = "development"

    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {
        "env_prefix": "FLOWLINE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @classmethod
    def from_file(cls, config_path: Path) -> "FlowlineConfig":
        """Load configuration from a JSON file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[FlowlineConfig] = None


def get_config() -> FlowlineConfig:
    """Get the global Flowline configuration instance."""
    global _config
    if _config is None:
        _config = FlowlineConfig()
    return _config


def set_config(config: FlowlineConfig) -> None:
    """Set the global Flowline configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
