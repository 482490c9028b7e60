"""
Thumbnail Enrichment Service — finds images for creatives whose ad listing
carried no thumbnail, so the media cache has something to mirror.

Creatives with delivery and a NULL thumbnail_url are looked up one by one
through MetaAdsClient.discover_thumbnail (highest spend first, bounded
concurrency, wall-clock budget per invocation). A found URL is written
to thumbnail_url; when nothing is found the no-thumbnail sentinel is
written instead so the ad is not retried on every run. Auth, rate-limit
and network errors leave the row NULL for the next run.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from adsync.config import Settings, get_settings
from adsync.database import async_session
from adsync.errors import AdsAPIError
from adsync.meta_client import MetaAdsClient
from adsync.models import Creative, JobStatus, MediaRefreshLog, NO_THUMBNAIL_SENTINEL

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10


class ThumbnailEnrichmentService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        client_factory: Optional[Callable[[], MetaAdsClient]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory or async_session
        self.client_factory = client_factory or MetaAdsClient
        self.settings = settings or get_settings()
        self._clock = clock

    async def run(self, account_id: Optional[str] = None) -> dict:
        """
        Enrich one batch. Returns {"enriched", "sentinel", "failed",
        "skipped_budget", "total", "errors"}, or {"skipped": True, "reason"}
        while a media refresh is running.
        """
        async with self.session_factory() as db:
            running = (await db.execute(
                select(MediaRefreshLog.id).where(MediaRefreshLog.status == JobStatus.RUNNING.value).limit(1)
            )).scalar_one_or_none()
            if running is not None:
                logger.info(f"Media refresh {running} running, skipping thumbnail enrichment")
                return {"skipped": True, "reason": "A media refresh is already running"}

            query = (
                select(Creative.ad_id, Creative.account_id)
                .where(Creative.thumbnail_url.is_(None), Creative.impressions > 0)
                .order_by(Creative.spend.desc(), Creative.ad_id)
                .limit(self.settings.enrich_max_items)
            )
            if account_id:
                query = query.where(Creative.account_id == account_id)
            items = [dict(r) for r in (await db.execute(query)).mappings()]

        result = {"enriched": 0, "sentinel": 0, "failed": 0, "skipped_budget": 0, "total": len(items), "errors": []}
        if not items:
            logger.info("No creatives without a thumbnail to enrich")
            return result

        logger.info(f"Enriching {len(items)} creatives without a thumbnail (account: {account_id or 'all'})")
        deadline = self._clock() + self.settings.enrich_time_budget_seconds
        semaphore = asyncio.Semaphore(max(1, self.settings.enrich_concurrency))
        db_lock = asyncio.Lock()

        async with self.client_factory() as client:

            async def enrich(item: dict) -> None:
                async with semaphore:
                    if self._clock() > deadline:
                        result["skipped_budget"] += 1
                        return
                    try:
                        url = await client.discover_thumbnail(item["ad_id"], item["account_id"])
                    except AdsAPIError as e:
                        logger.warning(f"Thumbnail discovery for {item['ad_id']} failed ({e.kind}): {e.message}")
                        result["failed"] += 1
                        if len(result["errors"]) < MAX_REPORTED_ERRORS:
                            result["errors"].append(f"{item['ad_id']}: {e.message}")
                        return
                    async with db_lock:
                        written = await self._store(item["ad_id"], url or NO_THUMBNAIL_SENTINEL)
                    if written:
                        result["enriched" if url else "sentinel"] += 1

            await asyncio.gather(*(enrich(item) for item in items))

        logger.info(
            f"Thumbnail enrichment done: {result['enriched']} enriched, {result['sentinel']} sentinel, "
            f"{result['failed']} failed, {result['skipped_budget']} skipped (budget)"
        )
        return result

    async def _store(self, ad_id: str, value: str) -> bool:
        # Only fill a still-empty slot; a sync may have written a thumbnail meanwhile
        async with self.session_factory() as db:
            res = await db.execute(
                update(Creative)
                .where(Creative.ad_id == ad_id, Creative.thumbnail_url.is_(None))
                .values(thumbnail_url=value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return res.rowcount == 1
