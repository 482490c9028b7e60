"""
Sync Router — start, cancel and poll creative syncs.

POST /sync creates SyncLog rows and returns immediately; claimed rows run in
a background task. Progress is read back by polling the SyncLog row.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.database import get_db
from adsync.dependencies import get_sync_service
from adsync.errors import NotFoundError
from adsync.models import SyncLog, JobStatus, SyncType
from adsync.services.sync_service import SyncService
from adsync.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncRequest(BaseModel):
    account_id: str
    sync_type: SyncType = SyncType.FULL
    since: Optional[datetime] = None


class CancelRequest(BaseModel):
    account_id: Optional[str] = None


def sync_log_to_dict(log: SyncLog) -> dict:
    return {
        "id": log.id,
        "account_id": log.account_id,
        "requested_scope": log.requested_scope,
        "sync_type": log.sync_type,
        "since": log.since.isoformat() if log.since else None,
        "date_range_start": log.date_range_start.isoformat() if log.date_range_start else None,
        "date_range_end": log.date_range_end.isoformat() if log.date_range_end else None,
        "status": log.status,
        "current_phase": log.current_phase,
        "creatives_fetched": log.creatives_fetched,
        "creatives_upserted": log.creatives_upserted,
        "tags_parsed": log.tags_parsed,
        "tags_csv_matched": log.tags_csv_matched,
        "tags_manual_preserved": log.tags_manual_preserved,
        "tags_untagged": log.tags_untagged,
        "daily_rows_upserted": log.daily_rows_upserted,
        "meta_api_calls": log.meta_api_calls,
        "sync_state": log.sync_state or {},
        "api_errors": log.api_errors or [],
        "started_at": log.started_at.isoformat() if log.started_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
        "duration_ms": log.duration_ms,
    }


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@router.post("")
async def start_sync(
    payload: SyncRequest,
    background_tasks: BackgroundTasks,
    service: SyncService = Depends(get_sync_service),
):
    """Queue a sync for one account (or "all"); claimed rows start in the background."""
    try:
        results = await service.request_sync(
            payload.account_id, payload.sync_type.value, since=_naive_utc(payload.since)
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Failed to start sync"))

    if not results:
        raise HTTPException(status_code=400, detail="No active accounts to sync.")

    for r in results:
        if r["status"] == JobStatus.RUNNING.value:
            background_tasks.add_task(service.drain, r["sync_id"])

    return {
        "sync_id": results[0]["sync_id"],
        "sync_ids": [r["sync_id"] for r in results],
        "status": results[0]["status"],
        "syncs": results,
    }


@router.post("/cancel")
async def cancel_sync(
    payload: CancelRequest = CancelRequest(),
    service: SyncService = Depends(get_sync_service),
):
    try:
        cancelled = await service.cancel(payload.account_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Failed to cancel sync"))
    return {"cancelled": cancelled}


@router.get("/history")
async def sync_history(
    account_id: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    query = select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
    if account_id:
        query = query.where(SyncLog.account_id == account_id)
    logs = (await db.execute(query)).scalars().all()
    return [sync_log_to_dict(log) for log in logs]


@router.get("/status")
async def sync_status(
    account_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Active (running / queued) syncs, for the progress banner."""
    query = (
        select(SyncLog)
        .where(SyncLog.status.in_([JobStatus.RUNNING.value, JobStatus.QUEUED.value]))
        .order_by(SyncLog.started_at, SyncLog.id)
    )
    if account_id:
        query = query.where(SyncLog.account_id == account_id)
    logs = (await db.execute(query)).scalars().all()
    return {"is_syncing": bool(logs), "syncs": [sync_log_to_dict(log) for log in logs]}


@router.get("/{sync_id}")
async def get_sync(sync_id: int, db: AsyncSession = Depends(get_db)):
    log = await db.get(SyncLog, sync_id)
    if not log:
        raise HTTPException(status_code=404, detail="Sync not found")
    return sync_log_to_dict(log)
