"""
Reaper Service — scheduled cleanup of stalled sync and media-refresh runs.

A running sync is only "truly stuck" when it is both old (started more than
sync_stale_minutes ago) and silent (no heartbeat for sync_heartbeat_minutes).
Long phases keep heartbeating, so age alone never reaps a live run.

Every status change is conditional on the row still being running, which
makes concurrent sweeps harmless.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from adsync.config import Settings, get_settings
from adsync.database import async_session
from adsync.models import MediaRefreshLog, SyncLog, JobStatus
from adsync.services.sync_service import SyncService
from adsync.utils import duration_ms, error_entry, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

SYNC_TIMEOUT_MESSAGE = "Sync timed out (auto-cleanup)"
MEDIA_TIMEOUT_MESSAGE = "Media refresh timed out (auto-cleanup)"


class ReaperService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
        sync_service: Optional[SyncService] = None,
    ):
        self.session_factory = session_factory or async_session
        self.settings = settings or get_settings()
        self.sync_service = sync_service or SyncService(session_factory=self.session_factory, settings=self.settings)

    async def reap_stuck_syncs(self, now=None) -> dict:
        """
        Fail running syncs that are old AND silent, then promote the oldest
        queued sync of each affected account.
        Returns {"cleaned", "skipped", "promoted": [sync ids]}.
        """
        now = now or utcnow()
        stale_before = now - timedelta(minutes=self.settings.sync_stale_minutes)
        silent_before = now - timedelta(minutes=self.settings.sync_heartbeat_minutes)

        async with self.session_factory() as db:
            candidates = (await db.execute(
                select(SyncLog).where(
                    SyncLog.status == JobStatus.RUNNING.value,
                    SyncLog.started_at < stale_before,
                )
            )).scalars().all()

            cleaned, skipped, accounts = 0, 0, []
            for log in candidates:
                last_activity = parse_timestamp((log.sync_state or {}).get("last_activity"))
                if last_activity is not None and last_activity > silent_before:
                    skipped += 1
                    continue
                errors = list(log.api_errors or [])
                errors.append(error_entry(SYNC_TIMEOUT_MESSAGE, phase=log.current_phase, kind="timeout"))
                result = await db.execute(
                    update(SyncLog)
                    .where(SyncLog.id == log.id, SyncLog.status == JobStatus.RUNNING.value)
                    .values(
                        status=JobStatus.FAILED.value,
                        completed_at=now,
                        duration_ms=duration_ms(log.started_at, now),
                        api_errors=errors,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    cleaned += 1
                    accounts.append(log.account_id)
            await db.commit()

        promoted = []
        for account_id in dict.fromkeys(accounts):
            next_id = await self.sync_service.promote_next_queued(account_id)
            if next_id is not None:
                promoted.append(next_id)

        if cleaned or skipped:
            logger.info(f"Cleaned up {cleaned} stuck sync(s), skipped {skipped} active, promoted {len(promoted)}")
        return {"cleaned": cleaned, "skipped": skipped, "promoted": promoted}

    async def reap_stuck_media(self, now=None) -> dict:
        """Fail media refreshes running longer than media_stale_minutes."""
        now = now or utcnow()
        stale_before = now - timedelta(minutes=self.settings.media_stale_minutes)
        async with self.session_factory() as db:
            stuck = (await db.execute(
                select(MediaRefreshLog).where(
                    MediaRefreshLog.status == JobStatus.RUNNING.value,
                    MediaRefreshLog.started_at < stale_before,
                )
            )).scalars().all()
            cleaned = 0
            for log in stuck:
                errors = list(log.api_errors or [])
                errors.append(error_entry(
                    f"{MEDIA_TIMEOUT_MESSAGE} after {self.settings.media_stale_minutes}min",
                    phase=log.current_phase, kind="timeout",
                ))
                result = await db.execute(
                    update(MediaRefreshLog)
                    .where(MediaRefreshLog.id == log.id, MediaRefreshLog.status == JobStatus.RUNNING.value)
                    .values(status=JobStatus.FAILED.value, completed_at=now, api_errors=errors)
                    .execution_options(synchronize_session=False)
                )
                cleaned += result.rowcount
            await db.commit()
        if cleaned:
            logger.info(f"Cleaned up {cleaned} stuck media refresh(es)")
        return {"cleaned": cleaned}
