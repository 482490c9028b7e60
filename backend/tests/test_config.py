"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    from adsync.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.meta_api_version == "v22.0"
        assert settings.sync_max_attempts == 3
        assert settings.storage_bucket == "ad-media"
        get_settings.cache_clear()


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from adsync.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        origins = settings.cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_plain_postgres_url_is_rewritten_for_asyncpg():
    from adsync.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db-host:5432/app")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host:5432/app"


def test_production_requires_api_key():
    """Production mode should refuse to start without an API key."""
    from adsync.config import Settings
    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            api_key="",
            cron_secret="cron",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_requires_cron_secret():
    from adsync.config import Settings
    with pytest.raises(ValueError, match="CRON_SECRET must be set"):
        Settings(
            environment="production",
            api_key="key",
            cron_secret="",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_accepts_real_secrets():
    from adsync.config import Settings
    settings = Settings(
        environment="production",
        api_key="a-real-api-key",
        cron_secret="a-real-cron-secret",
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True


def test_heartbeat_must_not_exceed_stale_threshold():
    from adsync.config import Settings
    with pytest.raises(ValueError, match="SYNC_HEARTBEAT_MINUTES"):
        Settings(sync_heartbeat_minutes=20, sync_stale_minutes=10)
