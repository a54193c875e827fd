"""Tests for the async engine and session factory cache."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.config.settings import get_settings
from src.db import session as db_session


@pytest.fixture(autouse=True)
def _reset_cache():
    """Start and end each test with no cached engine."""
    db_session._engine = None
    db_session._session_factory = None
    yield
    db_session._engine = None
    db_session._session_factory = None


class TestSessionFactory:
    """Engine and factory are built once and reused."""

    def test_factory_cached(self) -> None:
        """Repeated calls return the same factory and build one engine."""
        with patch("src.db.session.create_async_engine", return_value=MagicMock()) as create:
            first = db_session.get_session_factory()
            second = db_session.get_session_factory()
        assert first is second
        create.assert_called_once()

    def test_engine_uses_pool_settings(self) -> None:
        settings = get_settings()
        with patch("src.db.session.create_async_engine", return_value=MagicMock()) as create:
            db_session.get_session_factory()
        kwargs = create.call_args.kwargs
        assert kwargs["pool_size"] == settings.database_pool_size
        assert kwargs["max_overflow"] == settings.database_max_overflow
        assert kwargs["pool_pre_ping"] is True
        assert create.call_args.args[0].startswith("postgresql+asyncpg://")


class TestDisposeEngine:
    """Shutdown releases the pool."""

    async def test_disposes_and_clears(self) -> None:
        engine = MagicMock()
        engine.dispose = AsyncMock()
        with patch("src.db.session.create_async_engine", return_value=engine):
            db_session.get_session_factory()
            await db_session.dispose_engine()
        engine.dispose.assert_awaited_once()
        assert db_session._engine is None
        assert db_session._session_factory is None

    async def test_noop_without_engine(self) -> None:
        await db_session.dispose_engine()
        assert db_session._engine is None
