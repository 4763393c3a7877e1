"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

CONVERGE_ENV_VARS = (
    "DECLARATIONS_PATH",
    "STATE_PATH",
    "CONVERGE_PROVIDER",
    "MAX_WORKERS",
    "CREATE_TIMEOUT",
    "UPDATE_TIMEOUT",
    "DELETE_TIMEOUT",
    "PROTECTED_RESOURCE_TYPES",
    "PROVIDER_MAX_RETRIES",
    "RETRY_BACKOFF_BASE_SECONDS",
    "FETCH_MAX_ATTEMPTS",
    "FETCH_TIMEOUT",
    "FETCH_BACKOFF_INITIAL",
    "FETCH_BACKOFF_MAX",
    "KILL_SWITCH",
    "MAX_CHANGES_PER_APPLY",
    "IGNORE_RULES_FILE",
    "LOG_IGNORED_CHANGES",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's environment from leaking into configuration."""
    for key in CONVERGE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_log_handlers() -> Iterator[None]:
    """Drop handlers and the root level installed by setup_logging during a test."""
    root_logger = logging.getLogger()
    level = root_logger.level
    yield
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if handler.get_name() == "converge":
            root_logger.removeHandler(handler)
