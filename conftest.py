"""
Root-level pytest configuration for the skill-verification pipeline.

Configures:
- pytest-asyncio for async test support
- Custom markers (integration, etc.)
- Test environment setup
"""

import pytest

from utils.rate_limiter import reset_limiters


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (may require network access)"
    )
    config.addinivalue_line(
        "markers",
        "asyncio: marks tests as async (automatically handled by pytest-asyncio)"
    )


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """
    Keep real credentials and shared limiter state out of tests.

    A developer's .env must never make a test talk to GitHub or Gemini.
    """
    for name in (
        "GITHUB_TOKEN",
        "GOOGLE_API_KEY",
        "GEMINI_API_KEY",
        "GITHUB_WEBHOOK_SECRET",
        "ADMIN_SECRET",
        "SKILLS_DB_PATH",
        "SCHEDULER_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_limiters()
    yield
    reset_limiters()
