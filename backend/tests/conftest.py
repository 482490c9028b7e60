"""
Shared fixtures: a throwaway SQLite database per test, settings tuned for
fast deterministic runs, and an in-memory stand-in for the Meta client.
"""

import os

os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from adsync.config import Settings
from adsync.database import Base
from adsync.meta_client import AdPage
from adsync.models import Account
import adsync.models  # noqa: F401


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'adsync.db'}",
        meta_access_token="test-token",
        storage_url="https://storage.test",
        storage_service_key="service-key",
        sync_upsert_concurrency=1,
        sync_upsert_batch_size=2,
        sync_retry_base_seconds=0.0,
        sync_daily_chunk_days=7,
        media_thumb_concurrency=2,
        media_video_concurrency=1,
        media_max_video_bytes=1024,
    )


@pytest.fixture
async def engine(settings):
    eng = create_async_engine(settings.database_url, connect_args={"timeout": 30})
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def account(session_factory):
    async with session_factory() as db:
        acc = Account(
            id="act_1",
            name="Test Account",
            is_active=True,
            date_range_days=14,
            winner_kpi="roas",
            winner_kpi_direction="gte",
            scale_threshold=2.0,
            iteration_spend_threshold=50.0,
            creative_count=0,
            untagged_count=0,
        )
        db.add(acc)
        await db.commit()
        return acc


async def no_sleep(_seconds):
    return None


# ── Meta API stand-in ─────────────────────────────────────────────────

def make_ad(ad_id, name, *, status="ACTIVE", thumbnail=None, video_id=None):
    return {
        "id": ad_id,
        "name": name,
        "status": status,
        "effective_status": status,
        "campaign": {"name": "Campaign A"},
        "adset": {"name": "Adset A"},
        "creative": {
            "thumbnail_url": thumbnail or f"https://cdn.example.com/{ad_id}.jpg",
            **({"video_id": video_id} if video_id else {}),
        },
    }


def make_insight(ad_id, spend, impressions=1000, clicks=10, purchases=0, purchase_value=0.0, date_start=None):
    row = {
        "ad_id": ad_id,
        "spend": str(spend),
        "impressions": str(impressions),
        "clicks": str(clicks),
        "frequency": "1.5",
        "actions": [
            {"action_type": "purchase", "value": str(purchases)},
            {"action_type": "video_view", "value": "100"},
        ],
        "action_values": [{"action_type": "purchase", "value": str(purchase_value)}],
        "video_thruplay_watched_actions": [{"action_type": "video_view", "value": "40"}],
    }
    if date_start:
        row["date_start"] = date_start
        row["date_stop"] = date_start
    return row


class FakeMetaClient:
    """
    Serves canned ads / insights with offset cursors. `errors` maps a call
    kind ("ads", "insights", "daily", "videos", "thumbnail") to exceptions
    raised, in order, before that kind starts succeeding.
    """

    def __init__(self, ads=None, insights=None, daily=None, video_sources=None, thumbnails=None, errors=None,
                 page_size=2):
        self.ads = list(ads or [])
        self.insights = list(insights or [])
        self.daily = list(daily or [])
        self.video_sources = dict(video_sources or {})
        self.thumbnails = dict(thumbnails or {})
        self.errors = {k: list(v) for k, v in (errors or {}).items()}
        self.page_size = page_size
        self.calls = 0
        self.log = []
        self.on_call = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def _record(self, kind, after=None):
        self.calls += 1
        self.log.append((kind, after))
        if self.on_call is not None:
            await self.on_call(kind)
        pending = self.errors.get(kind)
        if pending:
            raise pending.pop(0)

    def _paginate(self, rows, after):
        start = int(after or 0)
        end = start + self.page_size
        return AdPage(items=rows[start:end], next_cursor=str(end) if end < len(rows) else None)

    async def get_ads_page(self, account_id, date_range=None, after=None):
        await self._record("ads", after)
        return self._paginate(self.ads, after)

    async def get_insights_page(self, account_id, date_range, level="ad", time_increment=None, after=None):
        if time_increment:
            await self._record("daily", after)
            since, until = date_range.since.isoformat(), date_range.until.isoformat()
            rows = [r for r in self.daily if since <= r["date_start"] <= until]
            return self._paginate(rows, after)
        await self._record("insights", after)
        return self._paginate(self.insights, after)

    async def get_video_sources(self, video_ids):
        await self._record("videos")
        return {v: self.video_sources[v] for v in video_ids if v in self.video_sources}

    async def discover_thumbnail(self, ad_id, account_id):
        await self._record("thumbnail", ad_id)
        return self.thumbnails.get(ad_id)


# ── API client ────────────────────────────────────────────────────────

@pytest.fixture
def fake_meta():
    return FakeMetaClient(
        ads=[make_ad("1", "GS1_UGC_Sarah_Static_Serum_Question_Summer"), make_ad("2", "Promo video v2")],
        insights=[make_insight("1", 80.0, purchases=2, purchase_value=240.0), make_insight("2", 20.0)],
    )


@pytest.fixture
async def api_client(session_factory, settings, fake_meta):
    from httpx import ASGITransport, AsyncClient

    from adsync.auth import require_auth
    from adsync.database import get_db
    from adsync.dependencies import get_enrichment_service, get_media_service, get_reaper_service, get_sync_service
    from adsync.main import app
    from adsync.services.media_cache_service import MediaCacheService
    from adsync.services.reaper_service import ReaperService
    from adsync.services.sync_service import SyncService
    from adsync.services.thumbnail_enrichment_service import ThumbnailEnrichmentService

    async def override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def sync_service():
        return SyncService(session_factory, client_factory=lambda: fake_meta, settings=settings, sleep=no_sleep)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[require_auth] = lambda: "test"
    app.dependency_overrides[get_sync_service] = sync_service
    app.dependency_overrides[get_reaper_service] = lambda: ReaperService(session_factory, settings, sync_service())
    app.dependency_overrides[get_media_service] = lambda: MediaCacheService(session_factory, settings=settings)
    app.dependency_overrides[get_enrichment_service] = lambda: ThumbnailEnrichmentService(
        session_factory, client_factory=lambda: fake_meta, settings=settings
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
