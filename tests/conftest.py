"""
Shared pytest fixtures and configuration for kvbulk tests.

This module provides:
- A fresh in-memory database per test
- Cancellation tokens
- Fast retry and step policies (no real backoff sleeps)
- Settings / logging isolation between tests

Usage:
    Fixtures are auto-discovered by pytest. Simply use them as function
    arguments (pytest injects them automatically).
"""

import sys
from pathlib import Path

import pytest
import structlog

# Ensure kvbulk package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from kvbulk.core.cancellation import CancellationToken
from kvbulk.core.logging import clear_context
from kvbulk.core.settings import reset_settings
from kvbulk.execution.generation import StepPolicy
from kvbulk.execution.retry import ConstantBackoff, RetryPolicy, TransactionRunner
from kvbulk.storage.memory import MemoryDatabase


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        # Mark all tests without explicit markers as unit tests
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolate_settings_and_logging(monkeypatch):
    """Drop cached settings and logging state around every test."""
    for name in ("KVBULK_INITIAL_STEP", "KVBULK_MIN_STEP", "KVBULK_MAX_STEP", "KVBULK_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()
    clear_context()
    structlog.reset_defaults()


# =============================================================================
# Store and execution fixtures
# =============================================================================


@pytest.fixture
def db() -> MemoryDatabase:
    """Empty in-memory database."""
    return MemoryDatabase()


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def fast_runner() -> TransactionRunner:
    """Runner retrying up to 10 times without sleeping."""
    return TransactionRunner(RetryPolicy(ConstantBackoff(max_retries=10, delay=0.0)))


@pytest.fixture
def fast_policy() -> StepPolicy:
    """Step policy with a negligible cooldown."""
    return StepPolicy(cooldown_base=0.001, cooldown_max=0.001)
