from unittest.mock import MagicMock

import pytest


@pytest.fixture
def db_session():
    """Mock database session. Savepoints (``begin_nested``) work as context managers."""
    return MagicMock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    monkeypatch.setenv("VOYAGE_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
