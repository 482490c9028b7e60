"""
Settings Router — health of the external ads-platform token.
"""

from fastapi import APIRouter, Depends, HTTPException

from adsync.dependencies import get_meta_client
from adsync.errors import AdsAPIError
from adsync.meta_client import MetaAdsClient
from adsync.utils import safe_error_detail

router = APIRouter()

WARN_SECONDS = 2 * 3600
NOTICE_SECONDS = 7 * 86400


def token_warning(seconds_remaining) -> str | None:
    """Human-readable expiry warning, or None when the token is comfortably valid."""
    if seconds_remaining is None:
        return None
    if seconds_remaining <= 0:
        return "Token has expired. Generate a new long-lived token."
    if seconds_remaining < WARN_SECONDS:
        minutes = max(1, seconds_remaining // 60)
        return f"Token expires in {minutes} minutes. Syncs will fail once it expires."
    if seconds_remaining < NOTICE_SECONDS:
        days = seconds_remaining // 86400
        return f"Token expires in {days} day(s)." if days else "Token expires within a day."
    return None


@router.get("/meta-token")
async def meta_token_status(client: MetaAdsClient = Depends(get_meta_client)):
    """Introspect the configured Meta access token (validity, expiry, scopes)."""
    try:
        async with client:
            info = await client.get_token_info()
    except AdsAPIError as e:
        raise HTTPException(status_code=502, detail=f"Token check failed: {e.message}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Token check failed"))

    never_expires = info.is_valid and info.expires_at == 0
    return {
        "is_valid": info.is_valid,
        "expires_at": info.expires_at,
        "never_expires": never_expires,
        "seconds_remaining": info.seconds_remaining,
        "scopes": info.scopes,
        "error": info.error,
        "warning": None if never_expires or not info.is_valid else token_warning(info.seconds_remaining),
    }
