"""
Media Router — trigger a media-cache batch or thumbnail discovery and read
progress.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.database import get_db
from adsync.dependencies import get_enrichment_service, get_media_service
from adsync.models import MediaRefreshLog
from adsync.services.media_cache_service import MediaCacheService, media_log_to_dict
from adsync.services.thumbnail_enrichment_service import ThumbnailEnrichmentService
from adsync.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()


class MediaRefreshRequest(BaseModel):
    account_id: Optional[str] = None


@router.post("")
async def refresh_media(
    payload: MediaRefreshRequest = MediaRefreshRequest(),
    service: MediaCacheService = Depends(get_media_service),
):
    """Cache one batch of external thumbnails / videos. Skips if a refresh is already running."""
    try:
        return await service.run(payload.account_id)
    except Exception as e:
        logger.exception("Media refresh failed")
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Media refresh failed"))


@router.post("/enrich-thumbnails")
async def enrich_thumbnails(
    payload: MediaRefreshRequest = MediaRefreshRequest(),
    service: ThumbnailEnrichmentService = Depends(get_enrichment_service),
):
    """Look up images for creatives that were listed without a thumbnail."""
    try:
        return await service.run(payload.account_id)
    except Exception as e:
        logger.exception("Thumbnail enrichment failed")
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Thumbnail enrichment failed"))


@router.get("/status")
async def media_refresh_status(
    account_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Latest media refresh log (optionally for one account)."""
    query = select(MediaRefreshLog).order_by(MediaRefreshLog.started_at.desc(), MediaRefreshLog.id.desc()).limit(1)
    if account_id:
        query = query.where(MediaRefreshLog.account_id == account_id)
    log = (await db.execute(query)).scalar_one_or_none()
    if not log:
        return {"status": "idle", "log": None}
    return {"status": log.status, "log": media_log_to_dict(log)}
