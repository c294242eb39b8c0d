"""Settings validation tests."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from centelhas.config import Settings


def make_settings(**values) -> Settings:
    return Settings(_env_file=None, **values)


class TestSettings:
    def test_defaults(self):
        settings = make_settings()

        assert settings.is_sqlite
        assert settings.ledger_max_attempts == 3
        assert settings.min_table_players == 2
        assert settings.redis_url is None

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("MIN_TABLE_PLAYERS", "4")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")

        settings = make_settings()

        assert settings.min_table_players == 4
        assert settings.redis_url == "redis://localhost:6379/0"

    @pytest.mark.parametrize(
        "values",
        [
            {"ledger_max_attempts": 0},
            {"lock_timeout_seconds": 0},
            {"retry_wait_min_seconds": -1},
            {"min_table_players": 1},
            {"retry_wait_min_seconds": 2.0, "retry_wait_max_seconds": 1.0},
        ],
    )
    def test_invalid_values_rejected(self, values):
        with pytest.raises(PydanticValidationError):
            make_settings(**values)

    def test_sqlite_rejected_in_production(self):
        with pytest.raises(PydanticValidationError, match="SQLite"):
            make_settings(app_env="production")

        settings = make_settings(
            app_env="production",
            database_url="postgresql+asyncpg://centelhas:secret@db:5432/centelhas",
        )
        assert not settings.is_sqlite
