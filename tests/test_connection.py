"""
Unit tests for engine configuration.
"""
import pytest
from sqlalchemy.pool import StaticPool

from service_payments.config import Settings
from service_payments.database.connection import engine_options


class TestEngineOptions:
    """Test suite for backend-specific engine options."""

    @pytest.mark.unit
    def test_in_memory_sqlite_shares_one_connection(self, test_settings: Settings) -> None:
        options = engine_options(test_settings)

        assert options["poolclass"] is StaticPool
        assert options["connect_args"] == {"check_same_thread": False}
        assert "pool_size" not in options

    @pytest.mark.unit
    def test_file_sqlite_uses_default_pool(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={"database_url": "sqlite+aiosqlite:///./payments.db"}
        )

        options = engine_options(settings)

        assert "poolclass" not in options
        assert "pool_size" not in options

    @pytest.mark.unit
    def test_postgres_pool_settings(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={
                "database_url": "postgresql+asyncpg://payments:secret@db:5432/payments",
                "database_pool_size": 5,
                "database_max_overflow": 10,
            }
        )

        options = engine_options(settings)

        assert options["pool_size"] == 5
        assert options["max_overflow"] == 10
        assert options["pool_pre_ping"] is True
