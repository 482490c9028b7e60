"""
Media Cache Service — mirrors creative thumbnails and videos from Meta's CDN
into durable object storage.

Phases recorded on MediaRefreshLog:
  1. discover creatives whose media URL is still external
  2. cache thumbnails (higher concurrency)
  3. cache videos (lower concurrency, hard size ceiling)

Transfers run concurrently under a per-type semaphore; database writes are
serialized and each item's URL swap is its own transaction, guarded on the
original URL still being present. If the swap doesn't land the uploaded
object is deleted, so no row points at a missing object and no object is
left unreferenced.
"""

import asyncio
import logging
from typing import Callable, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from adsync.config import Settings, get_settings
from adsync.database import async_session
from adsync.models import Creative, MediaRefreshLog, JobStatus, NO_THUMBNAIL_SENTINEL
from adsync.storage import PUBLIC_MARKER, ObjectStorage, StorageError
from adsync.utils import error_entry, utcnow

logger = logging.getLogger(__name__)

PHASE_DISCOVER = 1
PHASE_THUMBNAILS = 2
PHASE_VIDEOS = 3
MAX_LOGGED_ERRORS = 50

_KINDS = {
    "thumbnail": {"column": "thumbnail_url", "mime": "image/", "default_type": "image/jpeg", "prefix": "thumbs"},
    "video": {"column": "video_url", "mime": "video/", "default_type": "video/mp4", "prefix": "videos"},
}
_EXTENSIONS = {
    "image/png": "png", "image/webp": "webp", "image/gif": "gif", "image/jpeg": "jpg", "image/jpg": "jpg",
    "video/mp4": "mp4", "video/quicktime": "mov", "video/webm": "webm",
}


class MediaError(Exception):
    """A single media item could not be cached."""


def _extension(content_type: str, kind: str) -> str:
    ext = _EXTENSIONS.get(content_type)
    if ext:
        return ext
    return "jpg" if kind == "thumbnail" else "mp4"


class MediaCacheService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        storage_factory: Optional[Callable[[], ObjectStorage]] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory or async_session
        self.storage_factory = storage_factory or ObjectStorage
        self.http_transport = http_transport
        self.settings = settings or get_settings()
        self._db_lock = asyncio.Lock()

    # ══════════════════════════════════════════════════════════════════
    #  ENTRY POINT
    # ══════════════════════════════════════════════════════════════════

    async def run(self, account_id: Optional[str] = None) -> dict:
        """Cache one batch of uncached media. Returns per-type cached/failed/total counts."""
        async with self.session_factory() as db:
            running = (await db.execute(
                select(MediaRefreshLog.id)
                .where(MediaRefreshLog.status == JobStatus.RUNNING.value)
                .limit(1)
            )).scalar_one_or_none()
            if running is not None:
                logger.info(f"Media refresh {running} already running, skipping")
                return _summary(None, skipped=True, reason="A media refresh is already running", log_id=running)

            now = utcnow()
            log = MediaRefreshLog(
                account_id=account_id,
                status=JobStatus.RUNNING.value,
                current_phase=PHASE_DISCOVER,
                started_at=now,
                last_activity=now,
                api_errors=[],
            )
            db.add(log)
            await db.commit()
            log_id = log.id

        progress = {
            "thumbs_total": 0, "thumbs_cached": 0, "thumbs_failed": 0,
            "videos_total": 0, "videos_cached": 0, "videos_failed": 0,
        }
        errors: list = []
        storage = self.storage_factory()
        try:
            if not storage.configured:
                raise MediaError("Object storage is not configured (STORAGE_URL)")

            thumbs = await self._discover("thumbnail", account_id)
            videos = await self._discover("video", account_id)
            progress["thumbs_total"], progress["videos_total"] = len(thumbs), len(videos)
            logger.info(f"Media refresh {log_id}: {len(thumbs)} thumbnails, {len(videos)} videos to cache")

            async with httpx.AsyncClient(
                timeout=self.settings.media_timeout_seconds,
                follow_redirects=True,
                transport=self.http_transport,
            ) as http:
                await self._write_progress(log_id, PHASE_THUMBNAILS, progress, errors)
                await self._cache_batch(
                    log_id, "thumbnail", thumbs, http, storage,
                    self.settings.media_thumb_concurrency, progress, errors, PHASE_THUMBNAILS,
                )
                await self._write_progress(log_id, PHASE_VIDEOS, progress, errors)
                await self._cache_batch(
                    log_id, "video", videos, http, storage,
                    self.settings.media_video_concurrency, progress, errors, PHASE_VIDEOS,
                )
            await self._finish(log_id, JobStatus.COMPLETED.value, progress, errors)
        except Exception as e:
            logger.exception(f"Media refresh {log_id} failed")
            errors.append(error_entry(f"Media refresh failed: {str(e)[:300]}", kind="internal"))
            await self._finish(log_id, JobStatus.FAILED.value, progress, errors)
        finally:
            await storage.aclose()

        logger.info(
            f"Media refresh {log_id} done: thumbnails {progress['thumbs_cached']}/{progress['thumbs_total']}, "
            f"videos {progress['videos_cached']}/{progress['videos_total']}"
        )
        return _summary(progress, log_id=log_id)

    # ══════════════════════════════════════════════════════════════════
    #  PHASES
    # ══════════════════════════════════════════════════════════════════

    async def _discover(self, kind: str, account_id: Optional[str]) -> list[dict]:
        """Creatives with an external media URL, highest spend first, capped per invocation."""
        column = getattr(Creative, _KINDS[kind]["column"])
        query = (
            select(Creative.ad_id, Creative.account_id, column.label("url"))
            .where(
                column.is_not(None), column != "", column != NO_THUMBNAIL_SENTINEL,
                ~column.contains(PUBLIC_MARKER),
            )
            .order_by(Creative.spend.desc(), Creative.ad_id)
            .limit(self.settings.media_max_batch)
        )
        if account_id:
            query = query.where(Creative.account_id == account_id)
        async with self.session_factory() as db:
            return [dict(r) for r in (await db.execute(query)).mappings()]

    async def _cache_batch(
        self, log_id, kind, items, http, storage, concurrency, progress, errors, phase,
    ) -> None:
        semaphore = asyncio.Semaphore(max(1, concurrency))
        key = "thumbs" if kind == "thumbnail" else "videos"

        async def worker(item: dict) -> None:
            async with semaphore:
                ok = False
                try:
                    ok = await self._cache_item(kind, item, http, storage)
                except (MediaError, StorageError, httpx.HTTPError, SQLAlchemyError) as e:
                    logger.warning(f"Caching {kind} for {item['ad_id']} failed: {e}")
                    if len(errors) < MAX_LOGGED_ERRORS:
                        errors.append(error_entry(f"{item['ad_id']}: {str(e)[:200]}", phase=phase, kind=kind))
                except Exception as e:
                    # Malformed stored URLs and the like fail this item only
                    logger.exception(f"Unexpected error caching {kind} for {item['ad_id']}")
                    if len(errors) < MAX_LOGGED_ERRORS:
                        errors.append(error_entry(f"{item['ad_id']}: {str(e)[:200]}", phase=phase, kind=kind))
                progress[f"{key}_cached" if ok else f"{key}_failed"] += 1
                await self._write_progress(log_id, phase, progress, errors)

        await asyncio.gather(*(worker(item) for item in items))

    async def _cache_item(self, kind: str, item: dict, http: httpx.AsyncClient, storage: ObjectStorage) -> bool:
        spec = _KINDS[kind]
        content, content_type = await self._download(item["url"], kind, http)
        path = f"{item['account_id']}/{spec['prefix']}/{item['ad_id']}.{_extension(content_type, kind)}"
        public_url = await storage.upload(path, content, content_type)

        swapped = False
        try:
            swapped = await self._swap_url(spec["column"], item["ad_id"], item["url"], public_url)
        finally:
            if not swapped:
                # Row changed under us (or the write failed): drop the orphaned object
                try:
                    await storage.delete(path)
                except StorageError as e:
                    logger.error(f"Could not delete orphaned object {path}: {e}")
        if not swapped:
            raise MediaError("creative row changed before the cached URL could be written")
        return True

    async def _download(self, url: str, kind: str, http: httpx.AsyncClient) -> tuple[bytes, str]:
        spec = _KINDS[kind]
        limit = self.settings.media_max_video_bytes
        async with http.stream("GET", url) as response:
            if response.status_code >= 400:
                raise MediaError(f"download returned HTTP {response.status_code}")
            content_type = (response.headers.get("content-type") or spec["default_type"]).split(";")[0].strip().lower()
            if not content_type.startswith(spec["mime"]):
                raise MediaError(f"unexpected content type {content_type}")
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > limit:
                raise MediaError(f"{kind} is {int(declared)} bytes, over the {limit} byte limit")
            chunks, size = [], 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > limit:
                    raise MediaError(f"{kind} exceeds the {limit} byte limit")
                chunks.append(chunk)
        if size == 0:
            raise MediaError("download was empty")
        return b"".join(chunks), content_type

    async def _swap_url(self, column: str, ad_id: str, original: str, public_url: str) -> bool:
        col = getattr(Creative, column)
        async with self._db_lock:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(Creative)
                    .where(Creative.ad_id == ad_id, col == original)
                    .values({column: public_url})
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        return result.rowcount == 1

    # ══════════════════════════════════════════════════════════════════
    #  PROGRESS
    # ══════════════════════════════════════════════════════════════════

    async def _write_progress(self, log_id: int, phase: int, progress: dict, errors: list) -> None:
        async with self._db_lock:
            async with self.session_factory() as db:
                await db.execute(
                    update(MediaRefreshLog)
                    .where(MediaRefreshLog.id == log_id, MediaRefreshLog.status == JobStatus.RUNNING.value)
                    .values(current_phase=phase, last_activity=utcnow(), api_errors=list(errors), **progress)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

    async def _finish(self, log_id: int, status: str, progress: dict, errors: list) -> None:
        now = utcnow()
        async with self._db_lock:
            async with self.session_factory() as db:
                await db.execute(
                    update(MediaRefreshLog)
                    .where(MediaRefreshLog.id == log_id, MediaRefreshLog.status == JobStatus.RUNNING.value)
                    .values(status=status, completed_at=now, last_activity=now, api_errors=list(errors), **progress)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()


def _summary(progress: Optional[dict], skipped: bool = False, reason: Optional[str] = None, log_id=None) -> dict:
    p = progress or {}
    result = {
        "thumbnails": {
            "cached": p.get("thumbs_cached", 0),
            "failed": p.get("thumbs_failed", 0),
            "total": p.get("thumbs_total", 0),
        },
        "videos": {
            "cached": p.get("videos_cached", 0),
            "failed": p.get("videos_failed", 0),
            "total": p.get("videos_total", 0),
        },
        "log_id": log_id,
    }
    if skipped:
        result["skipped"] = True
        result["reason"] = reason
    return result


def media_log_to_dict(log: MediaRefreshLog) -> dict:
    return {
        "id": log.id,
        "account_id": log.account_id,
        "status": log.status,
        "current_phase": log.current_phase,
        "thumbs_total": log.thumbs_total,
        "thumbs_cached": log.thumbs_cached,
        "thumbs_failed": log.thumbs_failed,
        "videos_total": log.videos_total,
        "videos_cached": log.videos_cached,
        "videos_failed": log.videos_failed,
        "api_errors": log.api_errors or [],
        "started_at": log.started_at.isoformat() if log.started_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
        "last_activity": log.last_activity.isoformat() if log.last_activity else None,
    }
