"""
Pytest configuration file for the visit-adjust engine.
This file sets up fixtures and configurations for testing.
"""

from datetime import datetime
from pathlib import Path

import logfire
import pytest
from dotenv import load_dotenv

from visit_adjust.config import EngineSettings
from visit_adjust.ports import (
    InMemoryPersistenceStore,
    InMemoryScheduleStore,
    InMemoryUsageCounter,
    LoggingNotificationGateway,
    StaticPermissionConfigProvider,
)

# Load environment variables from .env and .env.secrets
BASE_DIR = Path(__file__).parent.parent
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR / ".env.secrets")


@pytest.fixture(scope="session", autouse=True)
def setup_logfire():
    """
    Set up Logfire for testing.
    This fixture runs automatically before any tests.
    """
    # Spans stay local unless a token is configured
    logfire.configure(
        service_name="visit_adjust_test",
        send_to_logfire="if-token-present",
        console=False,
    )

    logfire.info("pytest_session_start", message="Starting test session")

    yield

    logfire.info("pytest_session_end", message="Test session completed")
    logfire.force_flush()


@pytest.fixture
def now():
    """Reference time: Monday 2025-03-10 08:00, two days before the test visits."""
    return datetime(2025, 3, 10, 8, 0)


@pytest.fixture
def settings():
    """Engine settings without a travel buffer, so overlaps are exact."""
    return EngineSettings(buffer_minutes=0, lookup_timeout_seconds=1.0)


@pytest.fixture
def schedule_store():
    return InMemoryScheduleStore()


@pytest.fixture
def config_provider():
    return StaticPermissionConfigProvider()


@pytest.fixture
def usage_counter():
    return InMemoryUsageCounter()


@pytest.fixture
def notifications():
    return LoggingNotificationGateway()


@pytest.fixture
def persistence():
    return InMemoryPersistenceStore()
