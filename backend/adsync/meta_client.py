"""
Meta Marketing API Client
Thin httpx wrapper around the Graph API endpoints the sync pipeline needs:
paginated ad lists, paginated insights, thumbnail discovery and token
introspection.

The client never retries. Every failure is classified into the error
taxonomy in adsync.errors so the orchestrator can decide what to do.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import AsyncIterator, Optional

import httpx

from adsync.config import get_settings
from adsync.errors import (
    AdsAPIError, AuthError, RateLimitError, TransientNetworkError, PermanentError,
)

logger = logging.getLogger(__name__)

AD_FIELDS = "id,name,status,effective_status,campaign{name},adset{name},creative{thumbnail_url,image_url,video_id}"
INSIGHT_FIELDS = (
    "ad_id,spend,purchase_roas,cost_per_action_type,ctr,clicks,impressions,cpm,cpc,"
    "frequency,actions,action_values,video_avg_time_watched_actions,video_thruplay_watched_actions"
)

AUTH_ERROR_CODES = {102, 190}
RATE_LIMIT_CODES = {4, 17, 32, 613} | set(range(80000, 80015))
RATE_LIMIT_SUBCODES = {2446079}
DEFAULT_RETRY_AFTER = 30.0
VIDEO_LOOKUP_BATCH = 50
MIN_VIDEO_THUMB_WIDTH = 200
THUMBNAIL_CREATIVE_FIELDS = "creative{id,thumbnail_url,image_url,image_hash,object_story_spec}"


@dataclass(frozen=True)
class DateRange:
    since: date
    until: date

    def as_param(self) -> str:
        return json.dumps({"since": self.since.isoformat(), "until": self.until.isoformat()})


@dataclass
class AdPage:
    """One page of results plus the cursor for the next page (None when done)."""
    items: list = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class TokenInfo:
    is_valid: bool
    expires_at: Optional[int] = None  # epoch seconds, 0 = never expires
    seconds_remaining: Optional[int] = None
    scopes: list = field(default_factory=list)
    error: Optional[str] = None


def _parse_retry_after(response: httpx.Response) -> float:
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    return DEFAULT_RETRY_AFTER


def classify_response(response: httpx.Response) -> AdsAPIError:
    """Map a non-2xx Graph API response onto the error taxonomy."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    error = error if isinstance(error, dict) else {}
    code = error.get("code")
    subcode = error.get("error_subcode")
    message = error.get("message") or f"Meta API error (HTTP {status})"

    if status in (401, 403) or code in AUTH_ERROR_CODES:
        return AuthError(message, status_code=status, code=code)
    if status == 429 or code in RATE_LIMIT_CODES or subcode in RATE_LIMIT_SUBCODES:
        return RateLimitError(message, retry_after=_parse_retry_after(response), status_code=status, code=code)
    if status >= 500:
        return TransientNetworkError(message, status_code=status, code=code)
    return PermanentError(message, status_code=status, code=code)


class MetaAdsClient:
    """
    Graph API client sharing one httpx.AsyncClient.
    Use as an async context manager or call aclose() when done.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        page_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.access_token = access_token if access_token is not None else settings.meta_access_token
        self.api_version = api_version or settings.meta_api_version
        self.page_size = page_size or settings.meta_page_size
        self.insights_page_size = settings.meta_insights_page_size
        root = (base_url or settings.meta_graph_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{root}/{self.api_version}",
            timeout=timeout or settings.meta_timeout_seconds,
            transport=transport,
        )
        self.calls = 0

    async def __aenter__(self) -> "MetaAdsClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict) -> dict:
        if not self.access_token:
            raise AuthError("Meta access token is not configured")
        query = {**params, "access_token": self.access_token}
        self.calls += 1
        try:
            response = await self._client.get(path, params=query)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Meta API timeout on {path}: {e}")
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Meta API network error on {path}: {e}")

        if response.status_code >= 400:
            err = classify_response(response)
            logger.warning(f"Meta API {path} → {response.status_code} ({err.kind}): {err.message}")
            if isinstance(err, AuthError) and path != "/debug_token":
                err.seconds_remaining = await self._token_seconds_remaining()
            raise err
        try:
            return response.json()
        except ValueError:
            raise TransientNetworkError(f"Meta API returned a non-JSON body for {path}")

    @staticmethod
    def _page(body: dict) -> AdPage:
        items = body.get("data") or []
        paging = body.get("paging") or {}
        cursor = None
        # Graph only sends `next` when another page exists
        if paging.get("next"):
            cursor = (paging.get("cursors") or {}).get("after")
        return AdPage(items=items, next_cursor=cursor)

    # ── Ads ───────────────────────────────────────────────────────────

    async def get_ads_page(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        after: Optional[str] = None,
    ) -> AdPage:
        params = {"fields": AD_FIELDS, "limit": self.page_size}
        if date_range is not None:
            since = int(datetime.combine(date_range.since, datetime.min.time()).timestamp())
            params["filtering"] = json.dumps(
                [{"field": "updated_time", "operator": "GREATER_THAN", "value": since}]
            )
        if after:
            params["after"] = after
        return self._page(await self._get(f"/{account_id}/ads", params))

    async def list_ads(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        after: Optional[str] = None,
    ) -> AsyncIterator[AdPage]:
        """Lazy sequence of ad pages, restartable from any page cursor."""
        cursor = after
        while True:
            page = await self.get_ads_page(account_id, date_range, after=cursor)
            yield page
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    async def iter_ads(self, account_id: str, date_range: Optional[DateRange] = None) -> AsyncIterator[dict]:
        async for page in self.list_ads(account_id, date_range):
            for ad in page.items:
                yield ad

    # ── Insights ──────────────────────────────────────────────────────

    async def get_insights_page(
        self,
        account_id: str,
        date_range: DateRange,
        level: str = "ad",
        time_increment: Optional[int] = None,
        after: Optional[str] = None,
    ) -> AdPage:
        params = {
            "fields": INSIGHT_FIELDS,
            "level": level,
            "time_range": date_range.as_param(),
            "limit": self.insights_page_size,
        }
        if time_increment:
            params["time_increment"] = time_increment
        if after:
            params["after"] = after
        return self._page(await self._get(f"/{account_id}/insights", params))

    async def list_insights(
        self,
        account_id: str,
        date_range: DateRange,
        level: str = "ad",
        time_increment: Optional[int] = None,
        after: Optional[str] = None,
    ) -> AsyncIterator[AdPage]:
        cursor = after
        while True:
            page = await self.get_insights_page(account_id, date_range, level, time_increment, after=cursor)
            yield page
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    async def iter_insights(
        self,
        account_id: str,
        date_range: DateRange,
        level: str = "ad",
        time_increment: Optional[int] = None,
    ) -> AsyncIterator[dict]:
        async for page in self.list_insights(account_id, date_range, level, time_increment):
            for row in page.items:
                yield row

    # ── Videos ────────────────────────────────────────────────────────

    async def get_video_sources(self, video_ids: list[str]) -> dict[str, str]:
        """Resolve video ids to their downloadable source URLs (multi-id lookup)."""
        sources: dict[str, str] = {}
        unique_ids = list(dict.fromkeys(v for v in video_ids if v))
        for i in range(0, len(unique_ids), VIDEO_LOOKUP_BATCH):
            batch = unique_ids[i:i + VIDEO_LOOKUP_BATCH]
            body = await self._get("/", {"ids": ",".join(batch), "fields": "source"})
            for video_id, payload in body.items():
                if isinstance(payload, dict) and payload.get("source"):
                    sources[video_id] = payload["source"]
        return sources

    # ── Thumbnail discovery ───────────────────────────────────────────

    async def discover_thumbnail(self, ad_id: str, account_id: str) -> Optional[str]:
        """
        Find an image URL for an ad whose listing carried no thumbnail.
        Tries, in order: image_hash via adimages, video thumbnails, video
        picture, the promoted post's full_picture, then plain creative fields.
        Returns None when nothing is found. A missing ad (PermanentError)
        also returns None; auth, rate-limit and network errors propagate.
        """
        try:
            body = await self._get(f"/{ad_id}", {"fields": THUMBNAIL_CREATIVE_FIELDS})
        except PermanentError as e:
            logger.info(f"No creative for ad {ad_id}: {e.message}")
            return None
        creative = body.get("creative") or {}
        if not creative:
            return None
        story = creative.get("object_story_spec") or {}
        link_data = story.get("link_data") or {}
        photo_data = story.get("photo_data") or {}

        image_hash = creative.get("image_hash") or link_data.get("image_hash") or photo_data.get("image_hash")
        if image_hash:
            url = await self._ad_image_url(account_id, image_hash)
            if url:
                return url

        video_id = (story.get("video_data") or {}).get("video_id") or (
            ((story.get("template_data") or {}).get("video_data") or {}).get("video_id")
        )
        if video_id:
            url = await self._video_thumbnail_url(str(video_id))
            if url:
                return url

        if creative.get("id"):
            url = await self._story_picture_url(str(creative["id"]))
            if url:
                return url

        return (
            creative.get("image_url")
            or link_data.get("image_url")
            or photo_data.get("url")
            or photo_data.get("image_url")
            or creative.get("thumbnail_url")
        )

    async def _ad_image_url(self, account_id: str, image_hash: str) -> Optional[str]:
        try:
            body = await self._get(
                f"/{account_id}/adimages",
                {"hashes": json.dumps([image_hash]), "fields": "url,original_width,original_height"},
            )
        except PermanentError:
            return None
        images = body.get("data") or []
        return images[0].get("url") if images else None

    async def _video_thumbnail_url(self, video_id: str) -> Optional[str]:
        try:
            body = await self._get(f"/{video_id}", {"fields": "thumbnails{uri,width,height}"})
            thumbs = (body.get("thumbnails") or {}).get("data") or []
            best = max(thumbs, key=lambda t: t.get("width") or 0, default=None)
            if best and best.get("uri") and (best.get("width") or 0) >= MIN_VIDEO_THUMB_WIDTH:
                return best["uri"]
            picture = await self._get(
                f"/{video_id}/picture", {"redirect": "false", "width": 1080, "height": 1080}
            )
        except PermanentError:
            return None
        return (picture.get("data") or {}).get("url")

    async def _story_picture_url(self, creative_id: str) -> Optional[str]:
        try:
            body = await self._get(f"/{creative_id}", {"fields": "effective_object_story_id"})
            story_id = body.get("effective_object_story_id")
            if not story_id:
                return None
            post = await self._get(f"/{story_id}", {"fields": "full_picture"})
        except PermanentError:
            return None
        return post.get("full_picture")

    # ── Token ─────────────────────────────────────────────────────────

    async def _token_seconds_remaining(self) -> Optional[int]:
        """Remaining token lifetime for an auth failure; None when debug_token can't say."""
        try:
            info = await self.get_token_info()
        except AdsAPIError as e:
            logger.warning(f"Token lifetime lookup failed: {e.message}")
            return None
        if info.expires_at == 0:
            return None
        return info.seconds_remaining

    async def get_token_info(self) -> TokenInfo:
        """Introspect the configured token via debug_token."""
        if not self.access_token:
            return TokenInfo(is_valid=False, error="Meta access token is not configured")
        try:
            body = await self._get("/debug_token", {"input_token": self.access_token})
        except AuthError as e:
            return TokenInfo(is_valid=False, error=e.message)
        data = body.get("data") or {}
        expires_at = data.get("expires_at")
        seconds_remaining = None
        if expires_at:
            seconds_remaining = int(expires_at - time.time())
        return TokenInfo(
            is_valid=bool(data.get("is_valid")),
            expires_at=expires_at,
            seconds_remaining=seconds_remaining,
            scopes=data.get("scopes") or [],
            error=(data.get("error") or {}).get("message"),
        )
