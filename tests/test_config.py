"""
Tests for Flowline configuration.
"""

import pytest
import structlog
from pydantic import ValidationError

from flowline.automation.engine import WorkflowEngine
from flowline.core.logging import setup_logging
from flowline.core.config import (
    EngineConfig,
    FlowlineConfig,
    LogLevel,
    get_config,
    reset_config,
    set_config,
)


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestEngineConfig:
    """Tests for engine settings."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.max_concurrent_executions == 100
        assert config.max_parallel_steps == 10
        assert config.default_step_timeout_ms is None
        assert config.exhausted_retry_policy == "stop"

    @pytest.mark.parametrize("field", ["max_concurrent_executions", "max_parallel_steps", "history_limit"])
    def test_limits_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            EngineConfig(**{field: 0})

    def test_unknown_retry_policy_rejected(self):
        with pytest.raises(ValidationError):
            EngineConfig(exhausted_retry_policy="escalate")


class TestFlowlineConfig:
    """Tests for settings loading."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FLOWLINE_INSTANCE_ID", "worker-7")
        monkeypatch.setenv("FLOWLINE_ENGINE__MAX_PARALLEL_STEPS", "4")
        monkeypatch.setenv("FLOWLINE_LOGGING__LEVEL", "DEBUG")

        config = FlowlineConfig()

        assert config.instance_id == "worker-7"
        assert config.engine.max_parallel_steps == 4
        assert config.logging.level == LogLevel.DEBUG

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "conf" / "flowline.json"
        FlowlineConfig(
            environment="staging",
            engine=EngineConfig(history_limit=5, default_step_timeout_ms=2000),
        ).to_file(path)

        loaded = FlowlineConfig.from_file(path)

        assert loaded.environment == "staging"
        assert loaded.engine.history_limit == 5
        assert loaded.engine.default_step_timeout_ms == 2000

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FlowlineConfig.from_file(tmp_path / "nope.json")

    def test_global_instance(self):
        first = get_config()
        assert get_config() is first

        custom = FlowlineConfig(instance_id="custom")
        set_config(custom)
        assert get_config() is custom

        reset_config()
        assert get_config() is not custom

    @pytest.mark.asyncio
    async def test_engine_uses_global_config(self, monkeypatch):
        monkeypatch.setenv("FLOWLINE_ENGINE__MAX_PARALLEL_STEPS", "4")
        monkeypatch.setenv("FLOWLINE_ENGINE__HISTORY_LIMIT", "7")

        engine = WorkflowEngine()

        assert engine.config.max_parallel_steps == 4
        assert engine.config.history_limit == 7

    @pytest.mark.asyncio
    async def test_explicit_engine_config_wins(self, monkeypatch):
        monkeypatch.setenv("FLOWLINE_ENGINE__MAX_PARALLEL_STEPS", "4")

        engine = WorkflowEngine(config=EngineConfig(max_parallel_steps=2))

        assert engine.config.max_parallel_steps == 2


class TestLoggingSetup:
    """Tests for structlog configuration."""

    @pytest.fixture(autouse=True)
    def restore_structlog(self):
        yield
        structlog.reset_defaults()

    @pytest.mark.parametrize("json_output, renderer", [
        (True, structlog.processors.JSONRenderer),
        (False, structlog.dev.ConsoleRenderer),
    ])
    def test_renderer(self, json_output, renderer):
        setup_logging("DEBUG", json_output=json_output)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], renderer)
        assert structlog.stdlib.add_log_level in processors
