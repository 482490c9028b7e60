"""
Name Mapping Service — CSV import of unique_code → tag mappings.

The whole upload is validated before anything is written. After the upsert,
untagged creatives in the account are re-run through tag precedence so new
mappings take effect without waiting for the next sync.
"""

import csv
import io
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.database import upsert_insert
from adsync.errors import NotFoundError, ValidationError
from adsync.models import Account, Creative, NameMapping, TAG_FIELDS
from adsync.services.creative_service import recompute_account_rollups
from adsync.services.tag_parser import TagSource, extract_unique_code, needs_update, resolve_tags
from adsync.utils import utcnow

logger = logging.getLogger(__name__)

# canonical field -> accepted header spellings (compared case-insensitively)
COLUMN_ALIASES = {
    "unique_code": ("uniquecode", "unique_code", "code"),
    "ad_type": ("type", "ad_type"),
    "person": ("person",),
    "style": ("style",),
    "product": ("product",),
    "hook": ("hook",),
    "theme": ("theme",),
}
MAX_ROWS = 10_000


def _resolve_headers(fieldnames: list[str]) -> dict[str, str]:
    normalized = {name.strip().lower(): name for name in fieldnames if name}
    resolved, missing = {}, []
    for field, aliases in COLUMN_ALIASES.items():
        match = next((normalized[a] for a in aliases if a in normalized), None)
        if match is None:
            missing.append(aliases[0])
        else:
            resolved[field] = match
    if missing:
        raise ValidationError(
            "CSV is missing required columns",
            errors=[f"missing column: {m}" for m in missing],
        )
    return resolved


def parse_mapping_csv(content: bytes | str) -> list[dict]:
    """Parse and validate an uploaded mapping CSV. Raises ValidationError, writes nothing."""
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ValidationError("CSV must be UTF-8 encoded")
    reader = csv.DictReader(io.StringIO(content))
    if not reader.fieldnames:
        raise ValidationError("CSV is empty")
    headers = _resolve_headers(reader.fieldnames)

    rows: dict[str, dict] = {}
    errors = []
    for line_no, raw in enumerate(reader, start=2):
        if not any((v or "").strip() for v in raw.values() if isinstance(v, str)):
            continue
        entry = {f: ((raw.get(col) or "").strip() or None) for f, col in headers.items()}
        if not entry["unique_code"]:
            errors.append(f"line {line_no}: UniqueCode is empty")
            continue
        rows[entry["unique_code"]] = entry  # latest row wins
        if len(rows) > MAX_ROWS:
            raise ValidationError(f"CSV has more than {MAX_ROWS} mappings")
    if errors:
        raise ValidationError("CSV has invalid rows", errors=errors)
    if not rows:
        raise ValidationError("CSV contains no mappings")
    return list(rows.values())


async def import_mappings(db: AsyncSession, account_id: str, entries: list[dict]) -> dict:
    """
    Upsert mappings for an account and re-match its untagged creatives.
    Returns {"upserted", "matched", "unmatched"} where unmatched lists codes
    no creative in the account carries.
    """
    account = await db.get(Account, account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")

    now = utcnow()
    params = [
        {"account_id": account_id, **{k: e.get(k) for k in ("unique_code", *TAG_FIELDS)}, "created_at": now, "updated_at": now}
        for e in entries
    ]
    stmt = upsert_insert(db, NameMapping)
    stmt = stmt.on_conflict_do_update(
        index_elements=["account_id", "unique_code"],
        set_={**{f: getattr(stmt.excluded, f) for f in TAG_FIELDS}, "updated_at": stmt.excluded.updated_at},
    )
    await db.execute(stmt, params)

    mapping_rows = (await db.execute(
        select(NameMapping).where(NameMapping.account_id == account_id)
    )).scalars().all()
    mappings = {m.unique_code: {f: getattr(m, f) for f in TAG_FIELDS} for m in mapping_rows}

    creatives = (await db.execute(
        select(Creative).where(Creative.account_id == account_id)
    )).scalars().all()

    matched = 0
    seen_codes = set()
    for c in creatives:
        seen_codes.update(code for code in (c.unique_code, extract_unique_code(c.ad_name)) if code)
        if c.tag_source != TagSource.UNTAGGED.value:
            continue
        decision = resolve_tags(c.ad_name, mappings, current_source=c.tag_source, explicit_code=c.unique_code)
        current = {"unique_code": c.unique_code, "tag_source": c.tag_source, **{f: getattr(c, f) for f in TAG_FIELDS}}
        if not needs_update(current, decision):
            continue
        for key, value in decision.values().items():
            setattr(c, key, value)
        if decision.tag_source == TagSource.CSV_MATCH:
            matched += 1

    await db.flush()
    await recompute_account_rollups(db, account_id)
    unmatched = sorted(e["unique_code"] for e in entries if e["unique_code"] not in seen_codes)
    logger.info(f"Name mappings for {account_id}: {len(entries)} upserted, {matched} creatives matched")
    return {"upserted": len(entries), "matched": matched, "unmatched": unmatched}


async def list_mappings(db: AsyncSession, account_id: str) -> list[dict]:
    rows = (await db.execute(
        select(NameMapping).where(NameMapping.account_id == account_id).order_by(NameMapping.unique_code)
    )).scalars().all()
    return [{"unique_code": m.unique_code, **{f: getattr(m, f) for f in TAG_FIELDS}} for m in rows]
