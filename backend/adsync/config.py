import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/creative_sync"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""  # Scheduler calls /api/cron/* with X-Cron-Secret
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Server (run.py)
    host: str = "0.0.0.0"
    port: int = 8000
    web_concurrency: int = 4

    # Meta Marketing API
    meta_access_token: str = ""
    meta_api_version: str = "v22.0"
    meta_graph_url: str = "https://graph.facebook.com"
    meta_timeout_seconds: float = 30.0
    meta_page_size: int = 200
    meta_insights_page_size: int = 500

    # Sync pipeline
    sync_max_attempts: int = 3
    sync_retry_base_seconds: float = 2.0
    sync_default_days: int = 14
    sync_initial_days: int = 90
    sync_daily_chunk_days: int = 15
    sync_upsert_batch_size: int = 200
    sync_upsert_concurrency: int = 4

    # Stuck-job reaper thresholds
    sync_stale_minutes: int = 10
    sync_heartbeat_minutes: int = 5
    media_stale_minutes: int = 15

    # Durable media storage (Supabase-compatible storage REST API)
    storage_url: str = ""
    storage_service_key: str = ""
    storage_bucket: str = "ad-media"
    media_max_batch: int = 200
    media_thumb_concurrency: int = 10
    media_video_concurrency: int = 3
    media_max_video_bytes: int = 50 * 1024 * 1024
    media_timeout_seconds: float = 30.0

    # Thumbnail discovery for ads listed without one
    enrich_max_items: int = 1000
    enrich_concurrency: int = 20
    enrich_time_budget_seconds: float = 115.0

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.cron_secret:
                raise ValueError("CRON_SECRET must be set in production.")
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
            if not self.meta_access_token:
                logger.warning("META_ACCESS_TOKEN is not set — syncs will fail until it is configured.")
        if self.sync_max_attempts < 1:
            raise ValueError("SYNC_MAX_ATTEMPTS must be at least 1.")
        if self.sync_heartbeat_minutes > self.sync_stale_minutes:
            raise ValueError("SYNC_HEARTBEAT_MINUTES must not exceed SYNC_STALE_MINUTES.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
