"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets the TESTING environment variable so no .env file is loaded and
seeds the settings every test module relies on.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"

os.environ.setdefault("APP_ADMIN_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_ADMIN_API_KEYS", "test-admin-key-123,test-admin-key-456")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.current = start_ms

    def __call__(self) -> int:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += int(seconds * 1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
