"""
Creative Service — reads and user edits on creatives.

Listing attaches derived metrics computed from raw counters. With a date
window the counters come from DailyMetric rows summed per creative, and
ratios are recomputed from those sums.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.errors import NotFoundError
from adsync.models import Account, Creative, DailyMetric, NameMapping, COUNTER_FIELDS, NO_THUMBNAIL_SENTINEL, TAG_FIELDS
from adsync.services.metrics import SUMMED_COUNTERS, aggregate_metrics, compute_metrics, safe_div
from adsync.services.tag_parser import TagAction, TagSource, can_transition, resolve_tags

logger = logging.getLogger(__name__)

_CREATIVE_FIELDS = (
    "ad_id", "account_id", "ad_name", "ad_status", "campaign_name", "adset_name",
    "thumbnail_url", "video_url", "unique_code", *TAG_FIELDS, "tag_source", "notes",
    "ai_analysis", "ai_hook_analysis", "ai_visual_notes", "ai_cta_notes", "analysis_status",
)


@dataclass
class CreativeFilters:
    account_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    search: Optional[str] = None
    ad_type: Optional[str] = None
    person: Optional[str] = None
    style: Optional[str] = None
    product: Optional[str] = None
    hook: Optional[str] = None
    theme: Optional[str] = None
    tag_source: Optional[str] = None
    ad_status: Optional[str] = None
    delivery: Optional[str] = None  # "had_delivery" | "active"
    limit: int = 100
    offset: int = 0

    @property
    def has_date_window(self) -> bool:
        return self.date_from is not None or self.date_to is not None


def creative_to_dict(c: Creative, counters: Optional[dict] = None) -> dict:
    """Serialize a creative with derived metrics attached."""
    data = {f: getattr(c, f) for f in _CREATIVE_FIELDS}
    if data["thumbnail_url"] == NO_THUMBNAIL_SENTINEL:
        data["thumbnail_url"] = None
    data["analyzed_at"] = c.analyzed_at.isoformat() if c.analyzed_at else None
    if counters is None:
        counters = {k: getattr(c, k) or 0 for k in COUNTER_FIELDS}
    data.update(counters)
    data.update(compute_metrics(counters))
    return data


def _apply_filters(query, filters: CreativeFilters):
    if filters.account_id:
        query = query.where(Creative.account_id == filters.account_id)
    for tag in (*TAG_FIELDS, "tag_source", "ad_status"):
        value = getattr(filters, tag)
        if value:
            query = query.where(getattr(Creative, tag) == value)
    if filters.search:
        pattern = f"%{filters.search.strip()}%"
        query = query.where(or_(Creative.ad_name.ilike(pattern), Creative.unique_code.ilike(pattern)))
    if filters.delivery == "active":
        query = query.where(Creative.ad_status == "ACTIVE")
    return query


async def list_creatives(db: AsyncSession, filters: CreativeFilters) -> dict:
    if filters.has_date_window:
        return await _list_for_window(db, filters)

    query = _apply_filters(select(Creative), filters)
    if filters.delivery == "had_delivery":
        query = query.where(Creative.spend > 0)
    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    rows = (await db.execute(
        query.order_by(Creative.spend.desc(), Creative.ad_id).limit(filters.limit).offset(filters.offset)
    )).scalars().all()
    return {
        "items": [creative_to_dict(c) for c in rows],
        "total": total,
        "limit": filters.limit,
        "offset": filters.offset,
    }


async def daily_sums(
    db: AsyncSession,
    ad_ids: Optional[list[str]] = None,
    account_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> dict[str, dict]:
    """Summed DailyMetric counters per ad_id over a date window."""
    cols = [func.sum(getattr(DailyMetric, k)).label(k) for k in SUMMED_COUNTERS]
    query = select(
        DailyMetric.ad_id,
        *cols,
        func.sum(DailyMetric.frequency * DailyMetric.impressions).label("_freq_weighted"),
        func.sum(DailyMetric.video_avg_play_time * DailyMetric.video_views).label("_play_weighted"),
    ).group_by(DailyMetric.ad_id)
    if ad_ids is not None:
        query = query.where(DailyMetric.ad_id.in_(ad_ids))
    if account_id:
        query = query.where(DailyMetric.account_id == account_id)
    if date_from:
        query = query.where(DailyMetric.date >= date_from)
    if date_to:
        query = query.where(DailyMetric.date <= date_to)

    sums = {}
    for row in (await db.execute(query)).mappings():
        totals = {k: float(row[k] or 0) for k in SUMMED_COUNTERS}
        totals["frequency"] = safe_div(row["_freq_weighted"], totals["impressions"])
        totals["video_avg_play_time"] = safe_div(row["_play_weighted"], totals["video_views"])
        sums[row["ad_id"]] = totals
    return sums


async def _list_for_window(db: AsyncSession, filters: CreativeFilters) -> dict:
    creatives = (await db.execute(_apply_filters(select(Creative), filters))).scalars().all()
    if not creatives:
        return {"items": [], "total": 0, "limit": filters.limit, "offset": filters.offset}

    sums = await daily_sums(
        db,
        account_id=filters.account_id,
        date_from=filters.date_from,
        date_to=filters.date_to,
    )
    empty = {k: 0 for k in COUNTER_FIELDS}
    items = [creative_to_dict(c, sums.get(c.ad_id, dict(empty))) for c in creatives]
    if filters.delivery == "had_delivery":
        items = [i for i in items if i["spend"] > 0]
    items.sort(key=lambda i: (-i["spend"], i["ad_id"]))
    return {
        "items": items[filters.offset:filters.offset + filters.limit],
        "total": len(items),
        "limit": filters.limit,
        "offset": filters.offset,
    }


async def account_rollup(
    db: AsyncSession,
    account_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> dict:
    """Blended account metrics: counters summed across creatives, ratios from the sums."""
    if date_from or date_to:
        rows = list((await daily_sums(db, account_id=account_id, date_from=date_from, date_to=date_to)).values())
    else:
        creatives = (await db.execute(
            select(Creative).where(Creative.account_id == account_id)
        )).scalars().all()
        rows = [{k: getattr(c, k) or 0 for k in COUNTER_FIELDS} for c in creatives]
    return {
        "account_id": account_id,
        "date_from": date_from.isoformat() if date_from else None,
        "date_to": date_to.isoformat() if date_to else None,
        "creatives": len(rows),
        **aggregate_metrics(rows),
    }


async def filter_options(db: AsyncSession, account_id: Optional[str] = None) -> dict:
    """Distinct tag values present on creatives, for the filter dropdowns."""
    options = {}
    for tag in TAG_FIELDS:
        column = getattr(Creative, tag)
        query = select(column).where(column.is_not(None)).distinct().order_by(column)
        if account_id:
            query = query.where(Creative.account_id == account_id)
        options[tag] = list((await db.execute(query)).scalars().all())
    return options


async def recompute_account_rollups(db: AsyncSession, account_id: str) -> tuple[int, int]:
    """Refresh ad_accounts.creative_count / untagged_count from the creatives table."""
    total = (await db.execute(
        select(func.count()).select_from(Creative).where(Creative.account_id == account_id)
    )).scalar() or 0
    untagged = (await db.execute(
        select(func.count()).select_from(Creative).where(
            Creative.account_id == account_id,
            Creative.tag_source == TagSource.UNTAGGED.value,
        )
    )).scalar() or 0
    await db.execute(
        update(Account).where(Account.id == account_id).values(creative_count=total, untagged_count=untagged)
    )
    return total, untagged


# ══════════════════════════════════════════════════════════════════════
#  EDITS
# ══════════════════════════════════════════════════════════════════════

async def _load_mappings(db: AsyncSession, account_id: str) -> dict:
    rows = (await db.execute(
        select(NameMapping).where(NameMapping.account_id == account_id)
    )).scalars().all()
    return {m.unique_code: {f: getattr(m, f) for f in TAG_FIELDS} for m in rows}


async def reset_to_auto(db: AsyncSession, creative: Creative) -> Creative:
    """Explicit reset: clear tags (manual included) and immediately re-run auto tagging."""
    if not can_transition(creative.tag_source, TagSource.UNTAGGED, explicit_reset=True):
        raise ValueError(f"Cannot reset tags from {creative.tag_source}")
    for tag in TAG_FIELDS:
        setattr(creative, tag, None)
    creative.tag_source = TagSource.UNTAGGED.value

    mappings = await _load_mappings(db, creative.account_id)
    decision = resolve_tags(creative.ad_name, mappings, current_source=TagSource.UNTAGGED, explicit_code=creative.unique_code)
    if decision.action == TagAction.APPLY:
        for key, value in decision.values().items():
            setattr(creative, key, value)
    return creative


async def update_creative(db: AsyncSession, ad_id: str, payload: dict) -> Creative:
    """
    Apply a user edit. Any tag field makes the creative manual;
    tag_source "untagged" resets and re-runs auto tagging instead.
    """
    creative = await db.get(Creative, ad_id)
    if creative is None:
        raise NotFoundError(f"Creative {ad_id} not found")

    if "notes" in payload:
        creative.notes = payload["notes"]

    if payload.get("tag_source") == TagSource.UNTAGGED.value:
        await reset_to_auto(db, creative)
    else:
        tag_updates = {k: payload[k] for k in TAG_FIELDS if k in payload}
        if tag_updates:
            for key, value in tag_updates.items():
                setattr(creative, key, value)
            creative.tag_source = TagSource.MANUAL.value

    await db.flush()
    await recompute_account_rollups(db, creative.account_id)
    logger.info(f"Creative {ad_id} updated (tag_source={creative.tag_source})")
    return creative


async def bulk_untag(db: AsyncSession, ad_ids: list[str]) -> int:
    """Reset the given creatives to untagged with cleared tag fields."""
    if not ad_ids:
        return 0
    account_ids = (await db.execute(
        select(Creative.account_id).where(Creative.ad_id.in_(ad_ids)).distinct()
    )).scalars().all()
    result = await db.execute(
        update(Creative)
        .where(Creative.ad_id.in_(ad_ids))
        .values(tag_source=TagSource.UNTAGGED.value, **{f: None for f in TAG_FIELDS})
        .execution_options(synchronize_session=False)
    )
    for account_id in account_ids:
        await recompute_account_rollups(db, account_id)
    logger.info(f"Bulk-untagged {result.rowcount} creatives")
    return result.rowcount
