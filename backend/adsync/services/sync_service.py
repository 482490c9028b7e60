"""
Sync Service — orchestrates a creative sync run against the Meta API.

Lifecycle of a SyncLog row:  queued → running → completed | failed

A running sync walks six phases:
  1. fetch the ad list (paginated)
  2. fetch aggregate insights for the window
  3. merge ads + insights into upsert candidates and apply tag precedence
  4. upsert creatives, recompute account rollups
  5. fetch daily insights in chunks and upsert DailyMetric rows
  6. finalize and promote the next queued sync for the account

Admission is a single conditional UPDATE (the "claim"): a row only becomes
running if no other running row exists for the account. A partial unique
index backs this at the database level.

Every page request and every write is preceded by a checkpoint that bumps
the heartbeat and re-checks the row is still running, so a cancel (or the
reaper) stops the run at the next suspension point without further writes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from adsync.config import Settings, get_settings
from adsync.database import async_session, upsert_insert
from adsync.errors import (
    AdsAPIError, AuthError, ConflictError, NotFoundError, RateLimitError, SyncCancelled, TransientNetworkError,
)
from adsync.meta_client import DateRange, MetaAdsClient
from adsync.models import (
    Account, Creative, DailyMetric, NameMapping, SyncLog, JobStatus, SyncType,
    COUNTER_FIELDS, NO_THUMBNAIL_SENTINEL, TAG_FIELDS,
)
from adsync.services.creative_service import recompute_account_rollups
from adsync.services.metrics import parse_insight_row, sum_counters
from adsync.services.tag_parser import TagAction, TagSource, resolve_tags
from adsync.utils import duration_ms, error_entry, to_float, utcnow

logger = logging.getLogger(__name__)

ALL_ACCOUNTS = "all"
CANCELLED_MESSAGE = "Cancelled by user"

PHASE_FETCH_ADS = 1
PHASE_FETCH_INSIGHTS = 2
PHASE_TAG = 3
PHASE_UPSERT_CREATIVES = 4
PHASE_DAILY = 5
PHASE_FINALIZE = 6

_LOG_COUNTERS = (
    "creatives_fetched", "creatives_upserted", "tags_parsed", "tags_csv_matched",
    "tags_manual_preserved", "tags_untagged", "daily_rows_upserted", "meta_api_calls",
)
_AD_COLUMNS = ("ad_name", "ad_status", "campaign_name", "adset_name")
_ZERO_COUNTERS = {k: 0 for k in COUNTER_FIELDS}


def sync_window(account: Account, sync_type: str, since: Optional[datetime], settings: Settings, today=None) -> DateRange:
    """Date window for a run: `since` if given, else 90 days for initial syncs, else the account's range."""
    until = today or utcnow().date()
    if since is not None:
        start = since.date()
    elif sync_type == SyncType.INITIAL.value:
        start = until - timedelta(days=settings.sync_initial_days)
    else:
        start = until - timedelta(days=account.date_range_days or settings.sync_default_days)
    return DateRange(since=min(start, until), until=until)


def date_chunks(window: DateRange, days: int) -> list[DateRange]:
    """Split a window into consecutive inclusive chunks of at most `days` days."""
    chunks = []
    start = window.since
    while start <= window.until:
        end = min(start + timedelta(days=days - 1), window.until)
        chunks.append(DateRange(since=start, until=end))
        start = end + timedelta(days=1)
    return chunks


@dataclass
class _SyncRun:
    """In-memory view of a running SyncLog, flushed to the row at every checkpoint."""
    log_id: int
    account_id: str
    sync_type: str
    window: DateRange
    started_at: datetime
    client: MetaAdsClient
    phase: int = PHASE_FETCH_ADS
    counters: dict = field(default_factory=lambda: {k: 0 for k in _LOG_COUNTERS})
    state: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)


class SyncService:
    """Entry points: request_sync, run, drain, cancel, promote_next_queued."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        client_factory: Optional[Callable[[], MetaAdsClient]] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.session_factory = session_factory or async_session
        self.client_factory = client_factory or MetaAdsClient
        self.settings = settings or get_settings()
        self._sleep = sleep

    # ══════════════════════════════════════════════════════════════════
    #  ADMISSION
    # ══════════════════════════════════════════════════════════════════

    async def request_sync(
        self,
        account_id: str,
        sync_type: str = SyncType.FULL.value,
        since: Optional[datetime] = None,
    ) -> list[dict]:
        """
        Create one queued SyncLog per target account and try to claim each.
        Returns [{"sync_id", "account_id", "status"}] where status is
        "running" for claimed rows and "queued" otherwise.
        """
        sync_type = SyncType(sync_type).value
        async with self.session_factory() as db:
            if account_id == ALL_ACCOUNTS:
                result = await db.execute(
                    select(Account.id).where(Account.is_active.is_(True)).order_by(Account.id)
                )
                account_ids = list(result.scalars().all())
            else:
                account = await db.get(Account, account_id)
                if account is None:
                    raise NotFoundError(f"Account {account_id} not found")
                account_ids = [account.id]

            logs = []
            for acc_id in account_ids:
                log = SyncLog(
                    account_id=acc_id,
                    requested_scope=account_id,
                    sync_type=sync_type,
                    since=since,
                    status=JobStatus.QUEUED.value,
                    started_at=utcnow(),
                    api_errors=[],
                    sync_state={},
                )
                db.add(log)
                logs.append(log)
            await db.commit()
            created = [(log.id, log.account_id) for log in logs]

        results = []
        for log_id, acc_id in created:
            claimed = await self.claim(log_id)
            status = JobStatus.RUNNING.value if claimed else JobStatus.QUEUED.value
            logger.info(f"Sync {log_id} for {acc_id} ({sync_type}) → {status}")
            results.append({"sync_id": log_id, "account_id": acc_id, "status": status})
        return results

    async def claim(self, sync_id: int) -> bool:
        """Atomically move a queued row to running if its account has no running sync."""
        try:
            return await self._claim(sync_id)
        except ConflictError as e:
            # Another claim won between our check and the write; stay queued
            logger.warning(f"Claim of sync {sync_id} lost a race, leaving it queued: {e}")
            return False

    async def _claim(self, sync_id: int) -> bool:
        now = utcnow()
        running = aliased(SyncLog)
        busy = (
            select(running.id)
            .where(running.account_id == SyncLog.account_id, running.status == JobStatus.RUNNING.value)
            .exists()
        )
        stmt = (
            update(SyncLog)
            .where(SyncLog.id == sync_id, SyncLog.status == JobStatus.QUEUED.value, ~busy)
            .values(
                status=JobStatus.RUNNING.value,
                started_at=now,
                current_phase=PHASE_FETCH_ADS,
                sync_state={"last_activity": now.isoformat()},
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            try:
                result = await db.execute(stmt)
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise ConflictError(f"sync {sync_id}: {e.orig}") from e
            return result.rowcount == 1

    async def promote_next_queued(self, account_id: str) -> Optional[int]:
        """Claim the oldest queued sync for the account. Returns its id if promoted."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncLog.id)
                .where(SyncLog.account_id == account_id, SyncLog.status == JobStatus.QUEUED.value)
                .order_by(SyncLog.started_at, SyncLog.id)
                .limit(1)
            )
            next_id = result.scalar_one_or_none()
        if next_id is None:
            return None
        if await self.claim(next_id):
            logger.info(f"Promoted queued sync {next_id} for {account_id}")
            return next_id
        return None

    async def cancel(self, account_id: Optional[str] = None) -> int:
        """Mark running and queued syncs failed with a cancelled marker. Returns rows changed."""
        now = utcnow()
        async with self.session_factory() as db:
            query = select(SyncLog).where(
                SyncLog.status.in_([JobStatus.RUNNING.value, JobStatus.QUEUED.value])
            )
            if account_id:
                query = query.where(SyncLog.account_id == account_id)
            logs = (await db.execute(query)).scalars().all()

            cancelled = 0
            for log in logs:
                errors = list(log.api_errors or [])
                errors.append(error_entry(CANCELLED_MESSAGE, phase=log.current_phase, kind="cancelled"))
                result = await db.execute(
                    update(SyncLog)
                    .where(SyncLog.id == log.id, SyncLog.status == log.status)
                    .values(
                        status=JobStatus.FAILED.value,
                        completed_at=now,
                        duration_ms=duration_ms(log.started_at, now),
                        api_errors=errors,
                    )
                    .execution_options(synchronize_session=False)
                )
                cancelled += result.rowcount
            await db.commit()
        logger.info(f"Cancelled {cancelled} sync(s) for {account_id or 'all accounts'}")
        return cancelled

    # ══════════════════════════════════════════════════════════════════
    #  EXECUTION
    # ══════════════════════════════════════════════════════════════════

    async def drain(self, sync_id: int) -> None:
        """Run a claimed sync, then keep running whatever it promotes."""
        next_id: Optional[int] = sync_id
        while next_id is not None:
            next_id = await self.run(next_id)

    async def run(self, sync_id: int) -> Optional[int]:
        """
        Execute phases 1→6 for a running SyncLog. Returns the id of the queued
        sync promoted afterwards, if any.
        """
        async with self.session_factory() as db:
            log = await db.get(SyncLog, sync_id)
            if log is None or log.status != JobStatus.RUNNING.value:
                logger.warning(f"Sync {sync_id} is not running, nothing to do")
                return None
            account = await db.get(Account, log.account_id)
            account_id = log.account_id
            if account is None:
                await self._fail_row(db, log, f"Account {account_id} no longer exists", kind="permanent")
                return None
            window = sync_window(account, log.sync_type, log.since, self.settings)
            log.date_range_start = window.since
            log.date_range_end = window.until
            await db.commit()
            ctx = _SyncRun(
                log_id=log.id,
                account_id=account_id,
                sync_type=log.sync_type,
                window=window,
                started_at=log.started_at or utcnow(),
                client=self.client_factory(),
                state=dict(log.sync_state or {}),
                errors=list(log.api_errors or []),
            )

        logger.info(f"Sync {sync_id} started for {account_id}: {ctx.sync_type} {window.since}..{window.until}")
        try:
            async with ctx.client:
                ads = await self._fetch_ads(ctx)
                insights = await self._fetch_insights(ctx)
                candidates = await self._build_candidates(ctx, ads, insights)
                known_ids = await self._upsert_creatives(ctx, candidates)
                await self._sync_daily_metrics(ctx, known_ids)
            await self._finalize(ctx)
        except SyncCancelled:
            logger.info(f"Sync {sync_id} stopped: row is no longer running")
        except AdsAPIError as e:
            logger.warning(f"Sync {sync_id} failed in phase {ctx.phase}: {e.kind}: {e.message}")
            extra = {}
            if isinstance(e, AuthError) and e.seconds_remaining is not None:
                extra["seconds_remaining"] = e.seconds_remaining
            await self._fail(ctx, e.message, kind=e.kind, **extra)
        except Exception as e:
            logger.exception(f"Sync {sync_id} crashed in phase {ctx.phase}")
            await self._fail(ctx, f"Internal error: {str(e)[:300]}", kind="internal")
        return await self.promote_next_queued(account_id)

    # ── Phase 1 ───────────────────────────────────────────────────────

    async def _fetch_ads(self, ctx: _SyncRun) -> dict[str, dict]:
        ads: dict[str, dict] = {}
        cursor = None
        while True:
            await self._checkpoint(ctx, phase=PHASE_FETCH_ADS)
            page = await self._with_retry(
                ctx, lambda: ctx.client.get_ads_page(ctx.account_id, after=cursor)
            )
            for ad in page.items:
                if ad.get("id"):
                    ads[str(ad["id"])] = ad
            ctx.counters["creatives_fetched"] = len(ads)
            if not page.next_cursor:
                break
            cursor = page.next_cursor
            ctx.state["ads_cursor"] = cursor
        ctx.state.pop("ads_cursor", None)
        logger.info(f"Sync {ctx.log_id}: fetched {len(ads)} ads")
        return ads

    # ── Phase 2 ───────────────────────────────────────────────────────

    async def _fetch_insights(self, ctx: _SyncRun) -> dict[str, dict]:
        insights: dict[str, dict] = {}
        cursor = None
        while True:
            await self._checkpoint(ctx, phase=PHASE_FETCH_INSIGHTS)
            page = await self._with_retry(
                ctx, lambda: ctx.client.get_insights_page(ctx.account_id, ctx.window, level="ad", after=cursor)
            )
            for row in page.items:
                ad_id = row.get("ad_id")
                if not ad_id:
                    continue
                counters = parse_insight_row(row)
                if ad_id in insights:
                    counters = sum_counters([insights[ad_id], counters])
                insights[str(ad_id)] = counters
            if not page.next_cursor:
                break
            cursor = page.next_cursor
        logger.info(f"Sync {ctx.log_id}: {len(insights)} ads with insights")
        return insights

    # ── Phase 3 ───────────────────────────────────────────────────────

    async def _build_candidates(self, ctx: _SyncRun, ads: dict, insights: dict) -> list[dict]:
        await self._checkpoint(ctx, phase=PHASE_TAG)
        async with self.session_factory() as db:
            rows = (await db.execute(
                select(Creative).where(Creative.account_id == ctx.account_id)
            )).scalars().all()
            existing = {c.ad_id: _snapshot(c) for c in rows}
            mapping_rows = (await db.execute(
                select(NameMapping).where(NameMapping.account_id == ctx.account_id)
            )).scalars().all()
            mappings = {m.unique_code: {f: getattr(m, f) for f in TAG_FIELDS} for m in mapping_rows}

        full_retag = ctx.sync_type != SyncType.INCREMENTAL.value
        now = utcnow()
        candidates = []
        needs_video = {}
        for ad_id, ad in ads.items():
            current = existing.get(ad_id)
            counters = insights.get(ad_id)
            if current is None and (counters is None or to_float(counters.get("spend")) <= 0):
                # Zero-spend ads are never inserted as new rows
                continue

            creative_spec = ad.get("creative") or {}
            row = dict(current) if current else {
                "ad_id": ad_id,
                "account_id": ctx.account_id,
                "thumbnail_url": None,
                "video_url": None,
                "unique_code": None,
                "tag_source": TagSource.UNTAGGED.value,
                **{f: None for f in TAG_FIELDS},
                **_ZERO_COUNTERS,
            }
            row.update({
                "ad_name": ad.get("name"),
                "ad_status": ad.get("effective_status") or ad.get("status"),
                "campaign_name": (ad.get("campaign") or {}).get("name"),
                "adset_name": (ad.get("adset") or {}).get("name"),
            })
            if not row["thumbnail_url"] or row["thumbnail_url"] == NO_THUMBNAIL_SENTINEL:
                row["thumbnail_url"] = (
                    creative_spec.get("image_url") or creative_spec.get("thumbnail_url") or row["thumbnail_url"]
                )
            if not row["video_url"] and creative_spec.get("video_id"):
                needs_video[ad_id] = str(creative_spec["video_id"])

            if counters is not None:
                row.update({k: counters.get(k, 0) for k in COUNTER_FIELDS})
            elif full_retag:
                # No delivery in the window
                row.update(_ZERO_COUNTERS)

            name_changed = current is not None and current.get("ad_name") != row["ad_name"]
            still_untagged = row["tag_source"] == TagSource.UNTAGGED.value
            if current is None or full_retag or name_changed or still_untagged:
                decision = resolve_tags(
                    row["ad_name"],
                    mappings,
                    current_source=row["tag_source"],
                    explicit_code=current.get("unique_code") if current else None,
                )
                if decision.action == TagAction.SKIP_MANUAL:
                    ctx.counters["tags_manual_preserved"] += 1
                else:
                    row.update(decision.values())
                    key = {
                        TagSource.PARSED: "tags_parsed",
                        TagSource.CSV_MATCH: "tags_csv_matched",
                        TagSource.UNTAGGED: "tags_untagged",
                    }[decision.tag_source]
                    ctx.counters[key] += 1

            row["_new"] = current is None
            row["_changed"] = current is None or any(row[k] != current.get(k) for k in current)
            row["updated_at"] = now
            candidates.append(row)

        if needs_video:
            await self._checkpoint(ctx, phase=PHASE_TAG)
            sources = await self._with_retry(
                ctx, lambda: ctx.client.get_video_sources(list(needs_video.values()))
            )
            for row in candidates:
                video_id = needs_video.get(row["ad_id"])
                if video_id and sources.get(video_id):
                    row["video_url"] = sources[video_id]
                    row["_changed"] = True

        logger.info(
            f"Sync {ctx.log_id}: {len(candidates)} candidates "
            f"(parsed={ctx.counters['tags_parsed']}, csv={ctx.counters['tags_csv_matched']}, "
            f"manual={ctx.counters['tags_manual_preserved']}, untagged={ctx.counters['tags_untagged']})"
        )
        return candidates

    # ── Phase 4 ───────────────────────────────────────────────────────

    async def _upsert_creatives(self, ctx: _SyncRun, candidates: list[dict]) -> set[str]:
        await self._checkpoint(ctx, phase=PHASE_UPSERT_CREATIVES)
        changed = [c for c in candidates if c["_changed"]]
        batch_size = self.settings.sync_upsert_batch_size
        batches = [changed[i:i + batch_size] for i in range(0, len(changed), batch_size)]
        semaphore = asyncio.Semaphore(max(1, self.settings.sync_upsert_concurrency))

        async def write_batch(batch: list[dict]) -> int:
            async with semaphore:
                await self._checkpoint(ctx)
                rows = [_creative_params(c) for c in batch]
                async with self.session_factory() as db:
                    await db.execute(_creative_upsert(db), rows)
                    await db.commit()
                ctx.counters["creatives_upserted"] += len(rows)
                return len(rows)

        await asyncio.gather(*(write_batch(b) for b in batches))

        await self._checkpoint(ctx)
        async with self.session_factory() as db:
            total, untagged = await recompute_account_rollups(db, ctx.account_id)
            await db.commit()
            known = set((await db.execute(
                select(Creative.ad_id).where(Creative.account_id == ctx.account_id)
            )).scalars().all())
        logger.info(
            f"Sync {ctx.log_id}: upserted {ctx.counters['creatives_upserted']} creatives "
            f"({len(candidates) - len(changed)} unchanged); account has {total}, {untagged} untagged"
        )
        return known

    # ── Phase 5 ───────────────────────────────────────────────────────

    async def _sync_daily_metrics(self, ctx: _SyncRun, known_ids: set[str]) -> None:
        for chunk in date_chunks(ctx.window, self.settings.sync_daily_chunk_days):
            cursor = None
            while True:
                await self._checkpoint(ctx, phase=PHASE_DAILY)
                page = await self._with_retry(
                    ctx,
                    lambda: ctx.client.get_insights_page(
                        ctx.account_id, chunk, level="ad", time_increment=1, after=cursor
                    ),
                )
                rows = {}
                for item in page.items:
                    ad_id = str(item.get("ad_id") or "")
                    day = item.get("date_start")
                    if ad_id not in known_ids or not day:
                        continue
                    rows[(ad_id, day)] = {
                        "ad_id": ad_id,
                        "account_id": ctx.account_id,
                        "date": datetime.strptime(day, "%Y-%m-%d").date(),
                        **parse_insight_row(item),
                    }
                if rows:
                    await self._checkpoint(ctx)
                    async with self.session_factory() as db:
                        await db.execute(_daily_upsert(db), list(rows.values()))
                        await db.commit()
                    ctx.counters["daily_rows_upserted"] += len(rows)
                if not page.next_cursor:
                    break
                cursor = page.next_cursor
            ctx.state["daily_through"] = chunk.until.isoformat()
        logger.info(f"Sync {ctx.log_id}: upserted {ctx.counters['daily_rows_upserted']} daily rows")

    # ── Phase 6 ───────────────────────────────────────────────────────

    async def _finalize(self, ctx: _SyncRun) -> None:
        now = utcnow()
        ctx.phase = PHASE_FINALIZE
        ctx.state["last_activity"] = now.isoformat()
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncLog)
                .where(SyncLog.id == ctx.log_id, SyncLog.status == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.COMPLETED.value,
                    current_phase=PHASE_FINALIZE,
                    completed_at=now,
                    duration_ms=duration_ms(ctx.started_at, now),
                    sync_state=dict(ctx.state),
                    api_errors=list(ctx.errors),
                    **self._counter_values(ctx),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                raise SyncCancelled()
            await db.execute(
                update(Account).where(Account.id == ctx.account_id).values(last_synced_at=now)
            )
            await db.commit()
        logger.info(
            f"Sync {ctx.log_id} completed in {duration_ms(ctx.started_at, now)}ms "
            f"({ctx.counters['meta_api_calls']} API calls)"
        )

    # ══════════════════════════════════════════════════════════════════
    #  PROGRESS / FAILURE
    # ══════════════════════════════════════════════════════════════════

    def _counter_values(self, ctx: _SyncRun) -> dict:
        ctx.counters["meta_api_calls"] = ctx.client.calls
        return dict(ctx.counters)

    async def _checkpoint(self, ctx: _SyncRun, phase: Optional[int] = None) -> None:
        """Heartbeat + progress write, conditional on the row still running."""
        if phase is not None:
            ctx.phase = phase
        ctx.state["last_activity"] = utcnow().isoformat()
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncLog)
                .where(SyncLog.id == ctx.log_id, SyncLog.status == JobStatus.RUNNING.value)
                .values(
                    current_phase=ctx.phase,
                    sync_state=dict(ctx.state),
                    api_errors=list(ctx.errors),
                    **self._counter_values(ctx),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount == 0:
            raise SyncCancelled()

    async def _with_retry(self, ctx: _SyncRun, call: Callable[[], Awaitable]):
        """Retry rate-limit / transient errors with exponential backoff, bounded attempts."""
        max_attempts = self.settings.sync_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await call()
            except (RateLimitError, TransientNetworkError) as e:
                if attempt >= max_attempts:
                    raise
                delay = self.settings.sync_retry_base_seconds * (2 ** (attempt - 1))
                if isinstance(e, RateLimitError):
                    delay = max(delay, e.retry_after)
                ctx.errors.append(error_entry(
                    f"{e.message} (attempt {attempt}/{max_attempts}, retrying in {delay:.0f}s)",
                    phase=ctx.phase, kind=e.kind,
                ))
                logger.warning(f"Sync {ctx.log_id} phase {ctx.phase}: {e.kind}, retry {attempt} in {delay:.0f}s")
                await self._checkpoint(ctx)
                await self._sleep(delay)

    async def _fail(self, ctx: _SyncRun, message: str, kind: str, **extra) -> None:
        ctx.errors.append({**error_entry(message, phase=ctx.phase, kind=kind), **extra})
        now = utcnow()
        async with self.session_factory() as db:
            await db.execute(
                update(SyncLog)
                .where(SyncLog.id == ctx.log_id, SyncLog.status == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.FAILED.value,
                    completed_at=now,
                    duration_ms=duration_ms(ctx.started_at, now),
                    current_phase=ctx.phase,
                    sync_state=dict(ctx.state),
                    api_errors=list(ctx.errors),
                    **self._counter_values(ctx),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _fail_row(self, db, log: SyncLog, message: str, kind: str) -> None:
        now = utcnow()
        log.status = JobStatus.FAILED.value
        log.completed_at = now
        log.duration_ms = duration_ms(log.started_at, now)
        log.api_errors = list(log.api_errors or []) + [error_entry(message, phase=log.current_phase, kind=kind)]
        await db.commit()


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

def _snapshot(creative: Creative) -> dict:
    keys = (
        "ad_id", "account_id", "thumbnail_url", "video_url", "unique_code", "tag_source",
        *_AD_COLUMNS, *TAG_FIELDS, *COUNTER_FIELDS,
    )
    return {k: getattr(creative, k) for k in keys}


def _creative_params(candidate: dict) -> dict:
    params = {k: v for k, v in candidate.items() if not k.startswith("_")}
    params["created_at"] = candidate["updated_at"]
    return params


def _creative_upsert(db):
    """
    Upsert keyed by ad_id. Counters are last-write-wins; tag columns are
    compare-and-set against a stored manual tag_source; cached media URLs win
    over external ones.
    """
    stmt = upsert_insert(db, Creative)
    ex = stmt.excluded
    is_manual = Creative.tag_source == TagSource.MANUAL.value
    set_ = {c: getattr(ex, c) for c in ("account_id", *_AD_COLUMNS, *COUNTER_FIELDS, "updated_at")}
    for col in (*TAG_FIELDS, "unique_code", "tag_source"):
        set_[col] = case((is_manual, getattr(Creative, col)), else_=getattr(ex, col))
    for col in ("thumbnail_url", "video_url"):
        set_[col] = func.coalesce(getattr(Creative, col), getattr(ex, col))
    # A listing thumbnail replaces the discovery sentinel
    set_["thumbnail_url"] = case(
        (Creative.thumbnail_url == NO_THUMBNAIL_SENTINEL, ex.thumbnail_url), else_=set_["thumbnail_url"]
    )
    return stmt.on_conflict_do_update(index_elements=["ad_id"], set_=set_)


def _daily_upsert(db):
    stmt = upsert_insert(db, DailyMetric)
    ex = stmt.excluded
    set_ = {c: getattr(ex, c) for c in ("account_id", *COUNTER_FIELDS)}
    return stmt.on_conflict_do_update(index_elements=["ad_id", "date"], set_=set_)
