"""
Cron / Scheduled Jobs — endpoints for an external scheduler.

Every endpoint verifies CRON_SECRET (X-Cron-Secret header or Bearer token):
  POST /cron/cleanup-stuck-syncs   every 5 min
  POST /cron/cleanup-stuck-media   every 15 min
  POST /cron/sync                  daily, all active accounts
  POST /cron/media-refresh         hourly
  POST /cron/enrich-thumbnails     hourly, before media-refresh
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from adsync.auth import require_cron_secret
from adsync.dependencies import (
    get_enrichment_service, get_media_service, get_reaper_service, get_sync_service,
)
from adsync.models import JobStatus, SyncType
from adsync.services.media_cache_service import MediaCacheService
from adsync.services.reaper_service import ReaperService
from adsync.services.sync_service import ALL_ACCOUNTS, SyncService
from adsync.services.thumbnail_enrichment_service import ThumbnailEnrichmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


@router.post("/cleanup-stuck-syncs")
async def cron_cleanup_stuck_syncs(
    background_tasks: BackgroundTasks,
    _: None = Depends(require_cron_secret),
    reaper: ReaperService = Depends(get_reaper_service),
):
    """Fail syncs that are old and silent, then run whatever got promoted."""
    try:
        result = await reaper.reap_stuck_syncs()
        for sync_id in result["promoted"]:
            background_tasks.add_task(reaper.sync_service.drain, sync_id)
        logger.info(f"Cron cleanup-stuck-syncs completed: {result}")
        return {"status": "ok", "result": result}
    except Exception as e:
        logger.exception("Cron cleanup-stuck-syncs failed")
        raise HTTPException(500, str(e))


@router.post("/cleanup-stuck-media")
async def cron_cleanup_stuck_media(
    _: None = Depends(require_cron_secret),
    reaper: ReaperService = Depends(get_reaper_service),
):
    try:
        result = await reaper.reap_stuck_media()
        logger.info(f"Cron cleanup-stuck-media completed: {result}")
        return {"status": "ok", "result": result}
    except Exception as e:
        logger.exception("Cron cleanup-stuck-media failed")
        raise HTTPException(500, str(e))


@router.post("/sync")
async def cron_sync(
    background_tasks: BackgroundTasks,
    sync_type: SyncType = SyncType.INCREMENTAL,
    _: None = Depends(require_cron_secret),
    service: SyncService = Depends(get_sync_service),
):
    """Queue a sync for every active account."""
    try:
        results = await service.request_sync(ALL_ACCOUNTS, sync_type.value)
        for r in results:
            if r["status"] == JobStatus.RUNNING.value:
                background_tasks.add_task(service.drain, r["sync_id"])
        logger.info(f"Cron sync queued {len(results)} account(s)")
        return {"status": "ok", "result": results}
    except Exception as e:
        logger.exception("Cron sync failed")
        raise HTTPException(500, str(e))


@router.post("/media-refresh")
async def cron_media_refresh(
    _: None = Depends(require_cron_secret),
    service: MediaCacheService = Depends(get_media_service),
):
    try:
        result = await service.run()
        logger.info(f"Cron media-refresh completed: {result}")
        return {"status": "ok", "result": result}
    except Exception as e:
        logger.exception("Cron media-refresh failed")
        raise HTTPException(500, str(e))


@router.post("/enrich-thumbnails")
async def cron_enrich_thumbnails(
    _: None = Depends(require_cron_secret),
    service: ThumbnailEnrichmentService = Depends(get_enrichment_service),
):
    try:
        result = await service.run()
        logger.info(f"Cron enrich-thumbnails completed: {result}")
        return {"status": "ok", "result": result}
    except Exception as e:
        logger.exception("Cron enrich-thumbnails failed")
        raise HTTPException(500, str(e))
