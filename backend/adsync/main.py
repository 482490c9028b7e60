"""
Creative Sync — FastAPI Backend
Syncs ad creatives and their performance from the Meta Marketing API,
tags them from their names, and caches their media in object storage.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from adsync.config import get_settings
from adsync.database import init_db, check_db_connection
from adsync.auth import require_auth
from adsync.routers import accounts, creatives, cron, media, settings as settings_router, sync

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Creative Sync...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Creative Sync",
    description="Creative-level ad performance sync, tagging and media caching",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(accounts.router, prefix="/api/accounts", tags=["Accounts"], dependencies=_auth)
app.include_router(creatives.router, prefix="/api/creatives", tags=["Creatives"], dependencies=_auth)
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"], dependencies=_auth)
app.include_router(media.router, prefix="/api/media-refresh", tags=["Media"], dependencies=_auth)
app.include_router(settings_router.router, prefix="/api/settings", tags=["Settings"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No API key; guarded by CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Creative Sync",
        "database": "connected" if db_ok else "disconnected",
    }
