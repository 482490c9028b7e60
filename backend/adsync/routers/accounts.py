"""
Accounts Router — ad accounts, their sync / KPI configuration, and the
CSV name-mapping upload used as the tagging fallback.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.database import get_db
from adsync.errors import NotFoundError, ValidationError
from adsync.models import (
    Account, Creative, DailyMetric, MediaRefreshLog, NameMapping, SyncLog, KpiDirection,
)
from adsync.services.kill_scale import SUPPORTED_KPIS, thresholds
from adsync.services.name_mapping_service import import_mappings, list_mappings, parse_mapping_csv
from adsync.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class AccountCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    is_active: bool = True
    date_range_days: int = Field(14, ge=1, le=365)
    winner_kpi: str = "roas"
    winner_kpi_direction: KpiDirection = KpiDirection.GTE
    scale_threshold: Optional[float] = None
    kill_threshold: Optional[float] = None
    iteration_spend_threshold: float = 50.0
    report_schedule: Optional[str] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None
    date_range_days: Optional[int] = Field(None, ge=1, le=365)
    winner_kpi: Optional[str] = None
    winner_kpi_direction: Optional[KpiDirection] = None
    scale_threshold: Optional[float] = None
    kill_threshold: Optional[float] = None
    iteration_spend_threshold: Optional[float] = None
    report_schedule: Optional[str] = None


def account_to_dict(a: Account) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "is_active": a.is_active,
        "date_range_days": a.date_range_days,
        "winner_kpi": a.winner_kpi,
        "winner_kpi_direction": a.winner_kpi_direction,
        "scale_threshold": a.scale_threshold,
        "kill_threshold": a.kill_threshold,
        "iteration_spend_threshold": a.iteration_spend_threshold,
        "report_schedule": a.report_schedule,
        "creative_count": a.creative_count or 0,
        "untagged_count": a.untagged_count or 0,
        "last_synced_at": a.last_synced_at.isoformat() if a.last_synced_at else None,
        "thresholds": thresholds(a),
    }


def _check_kpi(kpi: Optional[str]) -> None:
    if kpi is not None and kpi not in SUPPORTED_KPIS:
        raise HTTPException(status_code=400, detail=f"Unsupported winner_kpi '{kpi}'. Use one of: {', '.join(SUPPORTED_KPIS)}")


async def _get_account(db: AsyncSession, account_id: str) -> Account:
    account = await db.get(Account, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.get("")
async def list_accounts(db: AsyncSession = Depends(get_db)):
    accounts = (await db.execute(select(Account).order_by(Account.name))).scalars().all()
    return [account_to_dict(a) for a in accounts]


@router.post("")
async def create_account(payload: AccountCreate, db: AsyncSession = Depends(get_db)):
    _check_kpi(payload.winner_kpi)
    if await db.get(Account, payload.id):
        raise HTTPException(status_code=409, detail=f"Account {payload.id} already exists")
    data = payload.model_dump()
    data["winner_kpi_direction"] = payload.winner_kpi_direction.value
    account = Account(**data, creative_count=0, untagged_count=0)
    db.add(account)
    await db.flush()
    logger.info(f"Account {account.id} created")
    return account_to_dict(account)


@router.get("/{account_id}")
async def get_account(account_id: str, db: AsyncSession = Depends(get_db)):
    return account_to_dict(await _get_account(db, account_id))


@router.put("/{account_id}")
async def update_account(account_id: str, payload: AccountUpdate, db: AsyncSession = Depends(get_db)):
    account = await _get_account(db, account_id)
    changes = payload.model_dump(exclude_unset=True)
    _check_kpi(changes.get("winner_kpi"))
    if changes.get("winner_kpi_direction") is not None:
        changes["winner_kpi_direction"] = changes["winner_kpi_direction"].value
    for key, value in changes.items():
        setattr(account, key, value)
    await db.flush()
    await db.refresh(account)
    return account_to_dict(account)


@router.delete("/{account_id}")
async def delete_account(account_id: str, db: AsyncSession = Depends(get_db)):
    """Delete an account and everything synced for it."""
    account = await _get_account(db, account_id)
    for model in (DailyMetric, Creative, NameMapping, SyncLog, MediaRefreshLog):
        await db.execute(delete(model).where(model.account_id == account_id))
    await db.delete(account)
    logger.info(f"Account {account_id} deleted")
    return {"deleted": account_id}


# ── Name mappings ──────────────────────────────────────────────────────

@router.get("/{account_id}/name-mappings")
async def get_name_mappings(account_id: str, db: AsyncSession = Depends(get_db)):
    await _get_account(db, account_id)
    return await list_mappings(db, account_id)


@router.post("/{account_id}/name-mappings")
async def upload_name_mappings(
    account_id: str,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
):
    """
    Upload a CSV with columns UniqueCode, Type, Person, Style, Product, Hook, Theme.
    The whole file is validated before anything is written.
    """
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="CSV file is too large")
    try:
        entries = parse_mapping_csv(content)
        return await import_mappings(db, account_id, entries)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"message": e.message, "errors": e.errors})
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception(f"Name mapping import failed for {account_id}")
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Name mapping import failed"))
