"""
Creatives Router — list, filter and tag creatives; account rollups and
kill / scale recommendations.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.database import get_db
from adsync.errors import NotFoundError
from adsync.models import Account, Creative
from adsync.services import creative_service
from adsync.services.creative_service import CreativeFilters, creative_to_dict
from adsync.services.kill_scale import kill_scale
from adsync.services.tag_parser import TagSource
from adsync.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()

KILL_SCALE_POOL = 5000


class CreativeUpdate(BaseModel):
    notes: Optional[str] = None
    ad_type: Optional[str] = None
    person: Optional[str] = None
    style: Optional[str] = None
    product: Optional[str] = None
    hook: Optional[str] = None
    theme: Optional[str] = None
    tag_source: Optional[TagSource] = None


class BulkUntagRequest(BaseModel):
    ad_ids: list[str]


@router.get("")
async def list_creatives(
    account_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    search: Optional[str] = None,
    ad_type: Optional[str] = None,
    person: Optional[str] = None,
    style: Optional[str] = None,
    product: Optional[str] = None,
    hook: Optional[str] = None,
    theme: Optional[str] = None,
    tag_source: Optional[str] = None,
    ad_status: Optional[str] = None,
    delivery: Optional[str] = Query(None, pattern="^(had_delivery|active)$"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    filters = CreativeFilters(
        account_id=account_id, date_from=date_from, date_to=date_to, search=search,
        ad_type=ad_type, person=person, style=style, product=product, hook=hook, theme=theme,
        tag_source=tag_source, ad_status=ad_status, delivery=delivery, limit=limit, offset=offset,
    )
    return await creative_service.list_creatives(db, filters)


@router.get("/filters")
async def creative_filter_options(
    account_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Distinct tag values for the filter dropdowns."""
    return await creative_service.filter_options(db, account_id)


@router.get("/rollup")
async def creative_rollup(
    account_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
):
    """Blended account metrics computed from summed counters."""
    if not await db.get(Account, account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    return await creative_service.account_rollup(db, account_id, date_from, date_to)


@router.get("/kill-scale")
async def creative_kill_scale(
    account_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    top: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    account = await db.get(Account, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    listing = await creative_service.list_creatives(db, CreativeFilters(
        account_id=account_id, date_from=date_from, date_to=date_to,
        delivery="had_delivery", limit=KILL_SCALE_POOL,
    ))
    return kill_scale(listing["items"], account, top=top)


@router.post("/bulk-untag")
async def bulk_untag(payload: BulkUntagRequest, db: AsyncSession = Depends(get_db)):
    try:
        updated = await creative_service.bulk_untag(db, payload.ad_ids)
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Bulk untag failed"))
    return {"updated": updated}


@router.get("/{ad_id}")
async def get_creative(ad_id: str, db: AsyncSession = Depends(get_db)):
    creative = await db.get(Creative, ad_id)
    if not creative:
        raise HTTPException(status_code=404, detail="Creative not found")
    return creative_to_dict(creative)


@router.put("/{ad_id}")
async def update_creative(ad_id: str, payload: CreativeUpdate, db: AsyncSession = Depends(get_db)):
    """Edit tags / notes. Tag edits mark the creative manual; tag_source=untagged resets to auto."""
    changes = payload.model_dump(exclude_unset=True)
    if "tag_source" in changes:
        source = changes["tag_source"]
        if source is not None and source != TagSource.UNTAGGED:
            raise HTTPException(status_code=400, detail="tag_source can only be set to 'untagged' (reset)")
        changes["tag_source"] = source.value if source is not None else None
    try:
        creative = await creative_service.update_creative(db, ad_id, changes)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return creative_to_dict(creative)
