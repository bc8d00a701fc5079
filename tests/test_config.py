"""
בדיקות להגדרות האפליקציה - app/core/config.py
"""
import warnings
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from app.core.config import Settings


def _settings(**overrides) -> Settings:
    # _env_file=None כדי שקובץ .env מקומי לא ישפיע על הבדיקות
    return Settings(_env_file=None, **overrides)


class TestDatabaseUrl:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("postgres://u:p@db:5432/rides", "postgresql+asyncpg://u:p@db:5432/rides"),
            ("postgresql://u:p@db:5432/rides", "postgresql+asyncpg://u:p@db:5432/rides"),
            ("postgresql+asyncpg://u:p@db/rides", "postgresql+asyncpg://u:p@db/rides"),
            ("sqlite+aiosqlite:///./rides.db", "sqlite+aiosqlite:///./rides.db"),
        ],
    )
    def test_converted_to_async_driver(self, raw, expected):
        assert _settings(DATABASE_URL=raw).DATABASE_URL == expected


class TestTimezone:

    @pytest.mark.unit
    def test_default_is_utc(self):
        assert _settings().timezone == ZoneInfo("UTC")

    @pytest.mark.unit
    def test_iana_name_accepted(self):
        assert _settings(DEFAULT_TIMEZONE="Asia/Jerusalem").timezone == ZoneInfo("Asia/Jerusalem")

    @pytest.mark.unit
    @pytest.mark.parametrize("name", ["Mars/Olympus_Mons", "not a zone"])
    def test_unknown_zone_rejected(self, name):
        with pytest.raises(ValidationError, match="DEFAULT_TIMEZONE"):
            _settings(DEFAULT_TIMEZONE=name)


class TestNumericLimits:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "field", ["PROPAGATION_MAX_CONCURRENCY", "RIDES_PAGE_SIZE", "WIZARD_SESSION_TTL_SECONDS"]
    )
    @pytest.mark.parametrize("value", [0, -3])
    def test_must_be_positive(self, field, value):
        with pytest.raises(ValidationError):
            _settings(**{field: value})

    @pytest.mark.unit
    def test_valid_values_kept(self):
        s = _settings(PROPAGATION_MAX_CONCURRENCY=1, RIDES_PAGE_SIZE=10, WIZARD_SESSION_TTL_SECONDS=60)

        assert s.PROPAGATION_MAX_CONCURRENCY == 1
        assert s.RIDES_PAGE_SIZE == 10
        assert s.WIZARD_SESSION_TTL_SECONDS == 60


class TestDerivedValues:

    @pytest.mark.unit
    def test_api_base_url_trailing_slash_removed(self):
        assert _settings(TELEGRAM_API_BASE_URL="http://localhost:8081/").TELEGRAM_API_BASE_URL == "http://localhost:8081"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "debug,level,expected",
        [
            (False, "", "INFO"),
            (True, "", "DEBUG"),
            (True, "WARNING", "WARNING"),
        ],
    )
    def test_log_level(self, debug, level, expected):
        assert _settings(DEBUG=debug, LOG_LEVEL=level).log_level == expected


class TestProductionWarnings:

    @pytest.mark.unit
    def test_warns_on_unauthenticated_webhook(self):
        with pytest.warns(UserWarning, match="TELEGRAM_WEBHOOK_SECRET_TOKEN"):
            _settings(TELEGRAM_BOT_TOKEN="123:abc", TELEGRAM_WEBHOOK_SECRET_TOKEN="")

    @pytest.mark.unit
    def test_warns_on_debug_with_remote_db(self):
        with pytest.warns(UserWarning, match="DEBUG=True"):
            _settings(DEBUG=True, DATABASE_URL="postgresql://u:p@db.example.com/rides")

    @pytest.mark.unit
    def test_quiet_for_local_development(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            _settings(DEBUG=True, DATABASE_URL="sqlite+aiosqlite:///./rides.db")
