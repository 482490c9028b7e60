"""
Creative Sync — Database Models
Accounts, creatives, daily metrics, name mappings and the durable progress
logs for sync and media-refresh runs.
"""

import enum
from datetime import date as date_type, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column
from adsync.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class SyncType(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    INITIAL = "initial"


class AnalysisStatus(str, enum.Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"


class KpiDirection(str, enum.Enum):
    GTE = "gte"
    LTE = "lte"


TAG_FIELDS = ("ad_type", "person", "style", "product", "hook", "theme")

COUNTER_FIELDS = (
    "spend", "impressions", "clicks", "purchases", "purchase_value",
    "adds_to_cart", "video_views", "thruplays", "frequency", "video_avg_play_time",
)

# Stored in thumbnail_url once discovery has found nothing, so the ad is not retried
NO_THUMBNAIL_SENTINEL = "no-thumbnail"


# ══════════════════════════════════════════════════════════════════════
#  ACCOUNTS
# ══════════════════════════════════════════════════════════════════════

class Account(Base):
    """An external ad account and its per-account sync / threshold configuration."""
    __tablename__ = "ad_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    date_range_days: Mapped[int] = mapped_column(Integer, default=14)

    # Winner KPI thresholds
    winner_kpi: Mapped[str] = mapped_column(String(32), default="roas")
    winner_kpi_direction: Mapped[str] = mapped_column(String(8), default=KpiDirection.GTE.value)
    scale_threshold: Mapped[float] = mapped_column(Float, nullable=True)
    kill_threshold: Mapped[float] = mapped_column(Float, nullable=True)
    iteration_spend_threshold: Mapped[float] = mapped_column(Float, default=50.0)
    report_schedule: Mapped[str] = mapped_column(String(32), nullable=True)

    # Rollups recomputed after every creative upsert
    creative_count: Mapped[int] = mapped_column(Integer, default=0)
    untagged_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_ad_accounts_is_active", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CREATIVES
# ══════════════════════════════════════════════════════════════════════

class Creative(Base):
    """One row per external ad id. Derived metrics are computed on read."""
    __tablename__ = "creatives"

    ad_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False)
    ad_name: Mapped[str] = mapped_column(Text, nullable=True)
    ad_status: Mapped[str] = mapped_column(String(32), nullable=True)
    campaign_name: Mapped[str] = mapped_column(Text, nullable=True)
    adset_name: Mapped[str] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str] = mapped_column(Text, nullable=True)
    video_url: Mapped[str] = mapped_column(Text, nullable=True)

    # Tags
    unique_code: Mapped[str] = mapped_column(String(128), nullable=True)
    ad_type: Mapped[str] = mapped_column(String(255), nullable=True)
    person: Mapped[str] = mapped_column(String(255), nullable=True)
    style: Mapped[str] = mapped_column(String(255), nullable=True)
    product: Mapped[str] = mapped_column(String(255), nullable=True)
    hook: Mapped[str] = mapped_column(String(255), nullable=True)
    theme: Mapped[str] = mapped_column(String(255), nullable=True)
    tag_source: Mapped[str] = mapped_column(String(20), default="untagged")

    # Raw counters for the account's sync window
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    purchases: Mapped[float] = mapped_column(Float, default=0.0)
    purchase_value: Mapped[float] = mapped_column(Float, default=0.0)
    adds_to_cart: Mapped[float] = mapped_column(Float, default=0.0)
    video_views: Mapped[int] = mapped_column(BigInteger, default=0)
    thruplays: Mapped[int] = mapped_column(BigInteger, default=0)
    frequency: Mapped[float] = mapped_column(Float, default=0.0)
    video_avg_play_time: Mapped[float] = mapped_column(Float, default=0.0)

    notes: Mapped[str] = mapped_column(Text, nullable=True)

    # AI analysis (populated by an external service)
    ai_analysis: Mapped[str] = mapped_column(Text, nullable=True)
    ai_hook_analysis: Mapped[str] = mapped_column(Text, nullable=True)
    ai_visual_notes: Mapped[str] = mapped_column(Text, nullable=True)
    ai_cta_notes: Mapped[str] = mapped_column(Text, nullable=True)
    analyzed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    analysis_status: Mapped[str] = mapped_column(String(20), default=AnalysisStatus.PENDING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_creatives_account_id", "account_id"),
        Index("ix_creatives_account_tag_source", "account_id", "tag_source"),
        Index("ix_creatives_unique_code", "unique_code"),
        Index("ix_creatives_spend", "spend"),
    )


class DailyMetric(Base):
    """Per-creative, per-day raw counters. Upserted by (ad_id, date)."""
    __tablename__ = "creative_daily_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ad_id: Mapped[str] = mapped_column(String(64), ForeignKey("creatives.ad_id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)

    spend: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    purchases: Mapped[float] = mapped_column(Float, default=0.0)
    purchase_value: Mapped[float] = mapped_column(Float, default=0.0)
    adds_to_cart: Mapped[float] = mapped_column(Float, default=0.0)
    video_views: Mapped[int] = mapped_column(BigInteger, default=0)
    thruplays: Mapped[int] = mapped_column(BigInteger, default=0)
    frequency: Mapped[float] = mapped_column(Float, default=0.0)
    video_avg_play_time: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("ad_id", "date", name="uq_daily_metrics_ad_date"),
        Index("ix_daily_metrics_account_date", "account_id", "date"),
    )


class NameMapping(Base):
    """CSV-imported unique_code → tag tuple, used when a name fails to parse."""
    __tablename__ = "name_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False)
    unique_code: Mapped[str] = mapped_column(String(128), nullable=False)
    ad_type: Mapped[str] = mapped_column(String(255), nullable=True)
    person: Mapped[str] = mapped_column(String(255), nullable=True)
    style: Mapped[str] = mapped_column(String(255), nullable=True)
    product: Mapped[str] = mapped_column(String(255), nullable=True)
    hook: Mapped[str] = mapped_column(String(255), nullable=True)
    theme: Mapped[str] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "unique_code", name="uq_name_mappings_account_code"),
    )


# ══════════════════════════════════════════════════════════════════════
#  PROGRESS LOGS
# ══════════════════════════════════════════════════════════════════════

class SyncLog(Base):
    """One row per sync invocation; the durable progress record polled by the UI."""
    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False)
    requested_scope: Mapped[str] = mapped_column(String(64), nullable=False)  # account id or "all"
    sync_type: Mapped[str] = mapped_column(String(20), default=SyncType.FULL.value)
    since: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    date_range_start: Mapped[date_type] = mapped_column(Date, nullable=True)
    date_range_end: Mapped[date_type] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.QUEUED.value)
    current_phase: Mapped[int] = mapped_column(Integer, nullable=True)

    creatives_fetched: Mapped[int] = mapped_column(Integer, default=0)
    creatives_upserted: Mapped[int] = mapped_column(Integer, default=0)
    tags_parsed: Mapped[int] = mapped_column(Integer, default=0)
    tags_csv_matched: Mapped[int] = mapped_column(Integer, default=0)
    tags_manual_preserved: Mapped[int] = mapped_column(Integer, default=0)
    tags_untagged: Mapped[int] = mapped_column(Integer, default=0)
    daily_rows_upserted: Mapped[int] = mapped_column(Integer, default=0)
    meta_api_calls: Mapped[int] = mapped_column(Integer, default=0)

    sync_state: Mapped[dict] = mapped_column(JSON, nullable=True)  # {"last_activity": iso, ...cursors}
    api_errors: Mapped[list] = mapped_column(JSON, nullable=True)  # [{timestamp, message, phase?, kind?}]

    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_sync_logs_account_status", "account_id", "status"),
        Index("ix_sync_logs_started_at", "started_at"),
        # At most one running sync per account
        Index(
            "uq_sync_logs_running_account", "account_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )


class MediaRefreshLog(Base):
    """Progress record for a media-cache run. Phases: 1 discover, 2 thumbnails, 3 videos."""
    __tablename__ = "media_refresh_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=True)  # None = all accounts
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.RUNNING.value)
    current_phase: Mapped[int] = mapped_column(Integer, default=1)

    thumbs_total: Mapped[int] = mapped_column(Integer, default=0)
    thumbs_cached: Mapped[int] = mapped_column(Integer, default=0)
    thumbs_failed: Mapped[int] = mapped_column(Integer, default=0)
    videos_total: Mapped[int] = mapped_column(Integer, default=0)
    videos_cached: Mapped[int] = mapped_column(Integer, default=0)
    videos_failed: Mapped[int] = mapped_column(Integer, default=0)

    api_errors: Mapped[list] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_activity: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_media_refresh_logs_status", "status"),
    )
