"""Pytest configuration for promptrun tests.

Sets the test environment before settings are first loaded.
"""

import os


def pytest_configure(config):
    """Configure test environment before any tests run."""
    config.addinivalue_line("markers", "security: Security-related tests (required gate)")
    config.addinivalue_line("markers", "slow: Slow-running tests (excluded from fast)")

    os.environ.setdefault("PROMPTRUN_ENVIRONMENT", "test")
    # Tests must never pick up a developer's .env credentials or endpoints
    os.environ.setdefault("PROMPTRUN_EXECUTION_BASE_URL", "http://execution.test")
    os.environ.setdefault("PROMPTRUN_DATABASE_URL", "sqlite+aiosqlite://")
    os.environ.setdefault("PROMPTRUN_TELEMETRY_SAMPLE_RATE", "1.0")
