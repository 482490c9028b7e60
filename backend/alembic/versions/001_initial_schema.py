"""Initial creative sync schema: accounts, creatives, daily metrics, name
mappings, sync and media-refresh logs.

Revision ID: 001
Revises:
Create Date: 2026-09-28

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _counter_columns() -> list:
    return [
        sa.Column("spend", sa.Float(), nullable=True, server_default="0"),
        sa.Column("impressions", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("clicks", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("purchases", sa.Float(), nullable=True, server_default="0"),
        sa.Column("purchase_value", sa.Float(), nullable=True, server_default="0"),
        sa.Column("adds_to_cart", sa.Float(), nullable=True, server_default="0"),
        sa.Column("video_views", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("thruplays", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("frequency", sa.Float(), nullable=True, server_default="0"),
        sa.Column("video_avg_play_time", sa.Float(), nullable=True, server_default="0"),
    ]


def _tag_columns() -> list:
    return [
        sa.Column("ad_type", sa.String(255), nullable=True),
        sa.Column("person", sa.String(255), nullable=True),
        sa.Column("style", sa.String(255), nullable=True),
        sa.Column("product", sa.String(255), nullable=True),
        sa.Column("hook", sa.String(255), nullable=True),
        sa.Column("theme", sa.String(255), nullable=True),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    if "ad_accounts" in insp.get_table_names():
        return

    op.create_table(
        "ad_accounts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("date_range_days", sa.Integer(), nullable=True, server_default="14"),
        sa.Column("winner_kpi", sa.String(32), nullable=True, server_default="roas"),
        sa.Column("winner_kpi_direction", sa.String(8), nullable=True, server_default="gte"),
        sa.Column("scale_threshold", sa.Float(), nullable=True),
        sa.Column("kill_threshold", sa.Float(), nullable=True),
        sa.Column("iteration_spend_threshold", sa.Float(), nullable=True, server_default="50"),
        sa.Column("report_schedule", sa.String(32), nullable=True),
        sa.Column("creative_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("untagged_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ad_accounts_is_active", "ad_accounts", ["is_active"], unique=False)

    op.create_table(
        "creatives",
        sa.Column("ad_id", sa.String(64), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("ad_name", sa.Text(), nullable=True),
        sa.Column("ad_status", sa.String(32), nullable=True),
        sa.Column("campaign_name", sa.Text(), nullable=True),
        sa.Column("adset_name", sa.Text(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("unique_code", sa.String(128), nullable=True),
        *_tag_columns(),
        sa.Column("tag_source", sa.String(20), nullable=True, server_default="untagged"),
        *_counter_columns(),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("ai_analysis", sa.Text(), nullable=True),
        sa.Column("ai_hook_analysis", sa.Text(), nullable=True),
        sa.Column("ai_visual_notes", sa.Text(), nullable=True),
        sa.Column("ai_cta_notes", sa.Text(), nullable=True),
        sa.Column("analyzed_at", sa.DateTime(), nullable=True),
        sa.Column("analysis_status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["account_id"], ["ad_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("ad_id"),
    )
    op.create_index("ix_creatives_account_id", "creatives", ["account_id"], unique=False)
    op.create_index("ix_creatives_account_tag_source", "creatives", ["account_id", "tag_source"], unique=False)
    op.create_index("ix_creatives_unique_code", "creatives", ["unique_code"], unique=False)
    op.create_index("ix_creatives_spend", "creatives", ["spend"], unique=False)

    op.create_table(
        "creative_daily_metrics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ad_id", sa.String(64), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        *_counter_columns(),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["ad_id"], ["creatives.ad_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["account_id"], ["ad_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ad_id", "date", name="uq_daily_metrics_ad_date"),
    )
    op.create_index("ix_daily_metrics_account_date", "creative_daily_metrics", ["account_id", "date"], unique=False)

    op.create_table(
        "name_mappings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("unique_code", sa.String(128), nullable=False),
        *_tag_columns(),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["account_id"], ["ad_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "unique_code", name="uq_name_mappings_account_code"),
    )

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("requested_scope", sa.String(64), nullable=False),
        sa.Column("sync_type", sa.String(20), nullable=True, server_default="full"),
        sa.Column("since", sa.DateTime(), nullable=True),
        sa.Column("date_range_start", sa.Date(), nullable=True),
        sa.Column("date_range_end", sa.Date(), nullable=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="queued"),
        sa.Column("current_phase", sa.Integer(), nullable=True),
        sa.Column("creatives_fetched", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("creatives_upserted", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("tags_parsed", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("tags_csv_matched", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("tags_manual_preserved", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("tags_untagged", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("daily_rows_upserted", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("meta_api_calls", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("sync_state", sa.JSON(), nullable=True),
        sa.Column("api_errors", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["ad_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_logs_account_status", "sync_logs", ["account_id", "status"], unique=False)
    op.create_index("ix_sync_logs_started_at", "sync_logs", ["started_at"], unique=False)
    # At most one running sync per account
    op.create_index(
        "uq_sync_logs_running_account", "sync_logs", ["account_id"],
        unique=True, postgresql_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "media_refresh_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="running"),
        sa.Column("current_phase", sa.Integer(), nullable=True, server_default="1"),
        sa.Column("thumbs_total", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("thumbs_cached", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("thumbs_failed", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("videos_total", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("videos_cached", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("videos_failed", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("api_errors", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("last_activity", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_media_refresh_logs_status", "media_refresh_logs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_media_refresh_logs_status", table_name="media_refresh_logs")
    op.drop_table("media_refresh_logs")
    op.drop_index("uq_sync_logs_running_account", table_name="sync_logs")
    op.drop_index("ix_sync_logs_started_at", table_name="sync_logs")
    op.drop_index("ix_sync_logs_account_status", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_table("name_mappings")
    op.drop_index("ix_daily_metrics_account_date", table_name="creative_daily_metrics")
    op.drop_table("creative_daily_metrics")
    op.drop_index("ix_creatives_spend", table_name="creatives")
    op.drop_index("ix_creatives_unique_code", table_name="creatives")
    op.drop_index("ix_creatives_account_tag_source", table_name="creatives")
    op.drop_index("ix_creatives_account_id", table_name="creatives")
    op.drop_table("creatives")
    op.drop_index("ix_ad_accounts_is_active", table_name="ad_accounts")
    op.drop_table("ad_accounts")
