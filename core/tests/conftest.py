"""Shared fixtures: isolated configuration, a manual clock and an engine wired to it."""

import logging

import pytest

from flowcore.config import EngineConfig
from flowcore.observability import clear_trace_context
from flowcore.runtime.engine import WorkflowEngine
from flowcore.runtime.timers import ManualTimerService
from flowcore.storage.execution_store import InMemoryExecutionStore


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Never read the developer's ~/.flowcore configuration during tests."""
    monkeypatch.setenv("FLOWCORE_CONFIG", str(tmp_path / "no-config.json"))
    monkeypatch.delenv("FLOWCORE_STORAGE_PATH", raising=False)
    monkeypatch.delenv("FLOWCORE_LOG_LEVEL", raising=False)
    yield
    clear_trace_context()


@pytest.fixture
def config():
    return EngineConfig(
        default_max_retries=0,
        default_retry_delay=60.0,
        default_backoff_multiplier=2.0,
        loop_max_iterations=10,
        max_concurrent_handlers=8,
        storage_path=None,
        log_level="INFO",
        log_format="human",
    )


@pytest.fixture
def timers():
    return ManualTimerService()


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def engine(store, timers, config):
    return WorkflowEngine(store=store, timers=timers, config=config)


@pytest.fixture
def root_logger():
    """Restore the root logger after configure_logging replaces its handlers."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
