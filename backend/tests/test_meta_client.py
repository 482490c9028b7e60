"""
Tests for the Meta Graph API client: pagination and error classification.
"""

import time
from datetime import date

import httpx
import pytest

from adsync.errors import AuthError, PermanentError, RateLimitError, TransientNetworkError
from adsync.meta_client import DateRange, MetaAdsClient, classify_response


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _client(handler, token="test-token"):
    return MetaAdsClient(
        access_token=token,
        api_version="v22.0",
        base_url="https://graph.test",
        transport=httpx.MockTransport(handler),
    )


def _error(status, code=None, subcode=None, headers=None):
    body = {"error": {"message": f"error {code}", "code": code, "error_subcode": subcode}}
    return httpx.Response(status, json=body, headers=headers or {})


def test_classification_table():
    assert isinstance(classify_response(_error(401)), AuthError)
    assert isinstance(classify_response(_error(400, code=190)), AuthError)
    assert isinstance(classify_response(_error(400, code=17)), RateLimitError)
    assert isinstance(classify_response(_error(400, code=80004)), RateLimitError)
    assert isinstance(classify_response(_error(400, code=1, subcode=2446079)), RateLimitError)
    assert isinstance(classify_response(_error(503)), TransientNetworkError)
    assert isinstance(classify_response(_error(400, code=100)), PermanentError)


def test_rate_limit_reads_retry_after():
    err = classify_response(_error(429, headers={"Retry-After": "12"}))
    assert isinstance(err, RateLimitError)
    assert err.retry_after == 12.0
    assert err.retryable is True


def test_non_json_error_body_is_still_classified():
    err = classify_response(httpx.Response(502, text="<html>bad gateway</html>"))
    assert isinstance(err, TransientNetworkError)


@pytest.mark.anyio
async def test_ads_pagination_follows_cursor_until_no_next():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v22.0/act_1/ads"
        assert request.url.params["access_token"] == "test-token"
        after = request.url.params.get("after")
        seen.append(after)
        if after is None:
            return httpx.Response(200, json={
                "data": [{"id": "1"}, {"id": "2"}],
                "paging": {"cursors": {"after": "c1"}, "next": "https://graph.test/next"},
            })
        return httpx.Response(200, json={"data": [{"id": "3"}], "paging": {"cursors": {"after": "c2"}}})

    async with _client(handler) as client:
        ads = [ad async for ad in client.iter_ads("act_1")]
        assert client.calls == 2
    assert [a["id"] for a in ads] == ["1", "2", "3"]
    assert seen == [None, "c1"]


@pytest.mark.anyio
async def test_insights_page_sends_window_and_increment():
    def handler(request: httpx.Request) -> httpx.Response:
        params = request.url.params
        assert params["level"] == "ad"
        assert params["time_increment"] == "1"
        assert '"since": "2026-01-01"' in params["time_range"] or '"since":"2026-01-01"' in params["time_range"]
        return httpx.Response(200, json={"data": [{"ad_id": "1", "date_start": "2026-01-01"}]})

    async with _client(handler) as client:
        page = await client.get_insights_page(
            "act_1", DateRange(date(2026, 1, 1), date(2026, 1, 7)), time_increment=1
        )
    assert page.next_cursor is None
    assert page.items[0]["ad_id"] == "1"


@pytest.mark.anyio
async def test_missing_token_fails_without_a_request():
    def handler(request):
        raise AssertionError("no request expected")

    async with _client(handler, token="") as client:
        with pytest.raises(AuthError):
            await client.get_ads_page("act_1")
        assert client.calls == 0


@pytest.mark.anyio
async def test_timeouts_are_transient():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransientNetworkError):
            await client.get_ads_page("act_1")


@pytest.mark.anyio
async def test_error_status_raises_classified_error():
    def handler(request):
        return _error(400, code=4)

    async with _client(handler) as client:
        with pytest.raises(RateLimitError):
            await client.get_ads_page("act_1")


@pytest.mark.anyio
async def test_video_sources_lookup():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["fields"] == "source"
        ids = request.url.params["ids"].split(",")
        return httpx.Response(200, json={i: {"id": i, "source": f"https://video.cdn/{i}.mp4"} for i in ids if i != "v2"})

    async with _client(handler) as client:
        sources = await client.get_video_sources(["v1", "v2", "v1"])
    assert sources == {"v1": "https://video.cdn/v1.mp4"}


@pytest.mark.anyio
async def test_token_info_reports_expiry():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v22.0/debug_token"
        return httpx.Response(200, json={"data": {"is_valid": True, "expires_at": 0, "scopes": ["ads_read"]}})

    async with _client(handler) as client:
        info = await client.get_token_info()
    assert info.is_valid is True
    assert info.expires_at == 0
    assert info.seconds_remaining is None
    assert info.scopes == ["ads_read"]


@pytest.mark.anyio
async def test_auth_error_carries_remaining_token_lifetime():
    expires_at = int(time.time()) - 300

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v22.0/debug_token":
            return httpx.Response(200, json={"data": {"is_valid": False, "expires_at": expires_at}})
        return _error(400, code=190)

    async with _client(handler) as client:
        with pytest.raises(AuthError) as exc:
            await client.get_ads_page("act_1")
        assert client.calls == 2
    assert -400 < exc.value.seconds_remaining <= -300


@pytest.mark.anyio
async def test_auth_error_without_token_lifetime_when_debug_token_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return _error(401, code=190)

    async with _client(handler) as client:
        with pytest.raises(AuthError) as exc:
            await client.get_ads_page("act_1")
    assert exc.value.seconds_remaining is None


@pytest.mark.anyio
async def test_thumbnail_discovery_resolves_image_hash():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v22.0/a1":
            return httpx.Response(200, json={"creative": {"id": "c1", "image_hash": "h1"}})
        assert request.url.path == "/v22.0/act_1/adimages"
        assert request.url.params["hashes"] == '["h1"]'
        return httpx.Response(200, json={"data": [{"url": "https://scontent.test/h1.jpg"}]})

    async with _client(handler) as client:
        assert await client.discover_thumbnail("a1", "act_1") == "https://scontent.test/h1.jpg"


@pytest.mark.anyio
async def test_thumbnail_discovery_falls_back_to_video_picture_for_small_thumbnails():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == "/v22.0/a1":
            spec = {"video_data": {"video_id": "v9"}}
            return httpx.Response(200, json={"creative": {"id": "c1", "object_story_spec": spec}})
        if request.url.path == "/v22.0/v9":
            return httpx.Response(200, json={"thumbnails": {"data": [{"uri": "https://t.test/small.jpg", "width": 120}]}})
        assert request.url.path == "/v22.0/v9/picture"
        assert request.url.params["redirect"] == "false"
        return httpx.Response(200, json={"data": {"url": "https://t.test/v9-1080.jpg"}})

    async with _client(handler) as client:
        assert await client.discover_thumbnail("a1", "act_1") == "https://t.test/v9-1080.jpg"
    assert seen == ["/v22.0/a1", "/v22.0/v9", "/v22.0/v9/picture"]


@pytest.mark.anyio
async def test_thumbnail_discovery_for_missing_ad_returns_none():
    async with _client(lambda request: _error(400, code=100)) as client:
        assert await client.discover_thumbnail("gone", "act_1") is None

    async with _client(lambda request: _error(400, code=17)) as client:
        with pytest.raises(RateLimitError):
            await client.discover_thumbnail("a1", "act_1")
