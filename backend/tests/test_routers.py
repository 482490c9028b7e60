"""
API tests: sync admission and polling, creative listing / edits, accounts,
name-mapping upload, token status and cron endpoints.
"""

import pytest
from sqlalchemy import update

from adsync.auth import require_cron_secret
from adsync.dependencies import get_meta_client
from adsync.main import app
from adsync.meta_client import TokenInfo
from adsync.models import Creative, DailyMetric, SyncLog
from adsync.utils import utcnow


async def _sync(api_client, account_id="act_1", **body):
    response = await api_client.post("/api/sync", json={"account_id": account_id, **body})
    assert response.status_code == 200, response.text
    return response.json()


# ── Sync ──────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_start_sync_runs_in_background_and_is_pollable(api_client, account):
    started = await _sync(api_client)
    assert started["status"] == "running"
    assert started["sync_ids"] == [started["sync_id"]]

    response = await api_client.get(f"/api/sync/{started['sync_id']}")
    log = response.json()
    assert log["status"] == "completed"
    assert log["creatives_upserted"] == 2
    assert log["tags_parsed"] == 1
    assert log["api_errors"] == []

    history = (await api_client.get("/api/sync/history", params={"account_id": "act_1"})).json()
    assert [h["id"] for h in history] == [started["sync_id"]]
    status = (await api_client.get("/api/sync/status")).json()
    assert status["is_syncing"] is False


@pytest.mark.anyio
async def test_sync_for_unknown_account_is_404(api_client, account):
    response = await api_client.post("/api/sync", json={"account_id": "act_missing"})
    assert response.status_code == 404


@pytest.mark.anyio
async def test_sync_rejects_unknown_sync_type(api_client, account):
    response = await api_client.post("/api/sync", json={"account_id": "act_1", "sync_type": "weekly"})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_busy_account_queues_and_cancel_clears(api_client, account, session_factory):
    async with session_factory() as db:
        db.add(SyncLog(account_id="act_1", requested_scope="act_1", status="running", started_at=utcnow(),
                       sync_state={"last_activity": utcnow().isoformat()}, api_errors=[]))
        await db.commit()

    queued = await _sync(api_client)
    assert queued["status"] == "queued"
    status = (await api_client.get("/api/sync/status", params={"account_id": "act_1"})).json()
    assert status["is_syncing"] is True
    assert len(status["syncs"]) == 2

    cancelled = (await api_client.post("/api/sync/cancel", json={"account_id": "act_1"})).json()
    assert cancelled == {"cancelled": 2}
    log = (await api_client.get(f"/api/sync/{queued['sync_id']}")).json()
    assert log["status"] == "failed"
    assert log["api_errors"][-1]["message"] == "Cancelled by user"


@pytest.mark.anyio
async def test_missing_sync_is_404(api_client):
    response = await api_client.get("/api/sync/999")
    assert response.status_code == 404


# ── Creatives ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_list_creatives_with_metrics_and_filters(api_client, account):
    await _sync(api_client)

    listing = (await api_client.get("/api/creatives", params={"account_id": "act_1"})).json()
    assert listing["total"] == 2
    top = listing["items"][0]
    assert top["ad_id"] == "1"
    assert top["roas"] == pytest.approx(3.0)
    assert top["ctr"] == pytest.approx(1.0)

    untagged = (await api_client.get("/api/creatives", params={"tag_source": "untagged"})).json()
    assert [c["ad_id"] for c in untagged["items"]] == ["2"]

    search = (await api_client.get("/api/creatives", params={"search": "promo"})).json()
    assert [c["ad_id"] for c in search["items"]] == ["2"]

    options = (await api_client.get("/api/creatives/filters", params={"account_id": "act_1"})).json()
    assert options["person"] == ["Sarah"]


@pytest.mark.anyio
async def test_date_window_listing_uses_daily_rows(api_client, account, session_factory):
    await _sync(api_client)
    today = utcnow().date()
    async with session_factory() as db:
        db.add_all([
            DailyMetric(ad_id="1", account_id="act_1", date=today, spend=5.0, impressions=500, clicks=5,
                        purchases=1, purchase_value=20.0, adds_to_cart=0, video_views=0, thruplays=0,
                        frequency=1.0, video_avg_play_time=0.0),
        ])
        await db.commit()

    listing = (await api_client.get("/api/creatives", params={
        "account_id": "act_1", "date_from": today.isoformat(), "date_to": today.isoformat(),
    })).json()
    by_id = {c["ad_id"]: c for c in listing["items"]}
    assert by_id["1"]["spend"] == 5.0
    assert by_id["1"]["roas"] == pytest.approx(4.0)
    assert by_id["2"]["spend"] == 0


@pytest.mark.anyio
async def test_rollup_recomputes_ratios_from_sums(api_client, account):
    await _sync(api_client)
    rollup = (await api_client.get("/api/creatives/rollup", params={"account_id": "act_1"})).json()
    assert rollup["spend"] == pytest.approx(100.0)
    assert rollup["roas"] == pytest.approx(2.4)
    assert rollup["creatives"] == 2


@pytest.mark.anyio
async def test_manual_edit_and_reset(api_client, account):
    await _sync(api_client)

    edited = (await api_client.put("/api/creatives/2", json={"person": "Ana", "notes": "keep"})).json()
    assert edited["tag_source"] == "manual"
    assert edited["person"] == "Ana"
    assert edited["notes"] == "keep"

    # A later sync must not touch the manual tags
    await _sync(api_client)
    creative = (await api_client.get("/api/creatives/2")).json()
    assert creative["tag_source"] == "manual"
    assert creative["person"] == "Ana"

    reset = (await api_client.put("/api/creatives/2", json={"tag_source": "untagged"})).json()
    assert reset["tag_source"] == "untagged"
    assert reset["person"] is None

    bad = await api_client.put("/api/creatives/2", json={"tag_source": "parsed"})
    assert bad.status_code == 400
    missing = await api_client.put("/api/creatives/nope", json={"person": "x"})
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_bulk_untag(api_client, account):
    await _sync(api_client)
    result = (await api_client.post("/api/creatives/bulk-untag", json={"ad_ids": ["1"]})).json()
    assert result == {"updated": 1}
    creative = (await api_client.get("/api/creatives/1")).json()
    assert creative["tag_source"] == "untagged"
    assert creative["ad_type"] is None
    account_data = (await api_client.get("/api/accounts/act_1")).json()
    assert account_data["untagged_count"] == 2


@pytest.mark.anyio
async def test_kill_scale_buckets(api_client, account, session_factory):
    await _sync(api_client)
    async with session_factory() as db:
        await db.execute(update(Creative).where(Creative.ad_id == "2").values(spend=60.0, purchase_value=0.0))
        await db.commit()

    result = (await api_client.get("/api/creatives/kill-scale", params={"account_id": "act_1"})).json()
    assert result["thresholds"]["kill"] == pytest.approx(1.0)
    assert [c["ad_id"] for c in result["scale"]] == ["1"]
    assert [c["ad_id"] for c in result["kill"]] == ["2"]


# ── Accounts / mappings ───────────────────────────────────────────────

@pytest.mark.anyio
async def test_account_crud(api_client):
    created = await api_client.post("/api/accounts", json={"id": "act_9", "name": "Nine", "winner_kpi": "cpa",
                                                            "winner_kpi_direction": "lte", "scale_threshold": 20})
    assert created.status_code == 200
    assert created.json()["thresholds"]["kill"] == 40

    duplicate = await api_client.post("/api/accounts", json={"id": "act_9", "name": "Again"})
    assert duplicate.status_code == 409
    bad_kpi = await api_client.post("/api/accounts", json={"id": "act_10", "name": "X", "winner_kpi": "vibes"})
    assert bad_kpi.status_code == 400

    updated = (await api_client.put("/api/accounts/act_9", json={"date_range_days": 30})).json()
    assert updated["date_range_days"] == 30

    assert (await api_client.delete("/api/accounts/act_9")).json() == {"deleted": "act_9"}
    assert (await api_client.get("/api/accounts/act_9")).status_code == 404


@pytest.mark.anyio
async def test_name_mapping_upload(api_client, account):
    await _sync(api_client)
    csv = b"UniqueCode,Type,Person,Style,Product,Hook,Theme\nPromo video v2,Video,Bo,UGC,Cream,Deal,Summer\n"
    response = await api_client.post(
        "/api/accounts/act_1/name-mappings", files={"file": ("mappings.csv", csv, "text/csv")}
    )
    assert response.status_code == 200, response.text
    assert response.json()["matched"] == 1
    creative = (await api_client.get("/api/creatives/2")).json()
    assert creative["tag_source"] == "csv_match"

    mappings = (await api_client.get("/api/accounts/act_1/name-mappings")).json()
    assert mappings[0]["unique_code"] == "Promo video v2"


@pytest.mark.anyio
async def test_malformed_mapping_upload_writes_nothing(api_client, account):
    response = await api_client.post(
        "/api/accounts/act_1/name-mappings", files={"file": ("bad.csv", b"Code,Type\nGS1,Static\n", "text/csv")}
    )
    assert response.status_code == 400
    assert response.json()["detail"]["errors"]
    assert (await api_client.get("/api/accounts/act_1/name-mappings")).json() == []


# ── Settings / media / cron ───────────────────────────────────────────

class _TokenClient:
    def __init__(self, info):
        self.info = info

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def get_token_info(self):
        return self.info


@pytest.mark.anyio
async def test_meta_token_warns_when_close_to_expiry(api_client):
    app.dependency_overrides[get_meta_client] = lambda: _TokenClient(
        TokenInfo(is_valid=True, expires_at=1, seconds_remaining=3600)
    )
    data = (await api_client.get("/api/settings/meta-token")).json()
    assert data["is_valid"] is True
    assert "60 minutes" in data["warning"]

    app.dependency_overrides[get_meta_client] = lambda: _TokenClient(
        TokenInfo(is_valid=True, expires_at=0, seconds_remaining=None)
    )
    data = (await api_client.get("/api/settings/meta-token")).json()
    assert data["never_expires"] is True
    assert data["warning"] is None


@pytest.mark.anyio
async def test_media_refresh_status_idle(api_client):
    data = (await api_client.get("/api/media-refresh/status")).json()
    assert data == {"status": "idle", "log": None}


@pytest.mark.anyio
async def test_cron_sync_and_cleanup(api_client, account):
    app.dependency_overrides[require_cron_secret] = lambda: None

    synced = (await api_client.post("/api/cron/sync", params={"sync_type": "full"})).json()
    assert synced["status"] == "ok"
    [result] = synced["result"]
    log = (await api_client.get(f"/api/sync/{result['sync_id']}")).json()
    assert log["status"] == "completed"

    cleaned = (await api_client.post("/api/cron/cleanup-stuck-syncs")).json()
    assert cleaned["result"] == {"cleaned": 0, "skipped": 0, "promoted": []}
    media = (await api_client.post("/api/cron/cleanup-stuck-media")).json()
    assert media["result"] == {"cleaned": 0}


@pytest.mark.anyio
async def test_enrich_thumbnails_endpoints(api_client, account, session_factory, fake_meta):
    app.dependency_overrides[require_cron_secret] = lambda: None
    async with session_factory() as db:
        db.add(Creative(ad_id="9", account_id="act_1", spend=5.0, impressions=100))
        await db.commit()
    fake_meta.thumbnails = {"9": "https://scontent.test/9.jpg"}

    enriched = (await api_client.post("/api/cron/enrich-thumbnails")).json()
    assert enriched["status"] == "ok"
    assert enriched["result"]["enriched"] == 1

    again = (await api_client.post("/api/media-refresh/enrich-thumbnails", json={"account_id": "act_1"})).json()
    assert again["total"] == 0
    async with session_factory() as db:
        assert (await db.get(Creative, "9")).thumbnail_url == "https://scontent.test/9.jpg"
