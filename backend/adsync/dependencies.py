"""
FastAPI dependency providers for the long-lived services.
Tests override these through app.dependency_overrides.
"""

from adsync.meta_client import MetaAdsClient
from adsync.services.media_cache_service import MediaCacheService
from adsync.services.reaper_service import ReaperService
from adsync.services.sync_service import SyncService
from adsync.services.thumbnail_enrichment_service import ThumbnailEnrichmentService


def get_sync_service() -> SyncService:
    return SyncService()


def get_media_service() -> MediaCacheService:
    return MediaCacheService()


def get_enrichment_service() -> ThumbnailEnrichmentService:
    return ThumbnailEnrichmentService()


def get_reaper_service() -> ReaperService:
    return ReaperService()


def get_meta_client() -> MetaAdsClient:
    return MetaAdsClient()
