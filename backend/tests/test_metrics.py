"""
Tests for derived metrics, divide-by-zero policy and aggregation.
"""

import math

import pytest

from adsync.services.metrics import (
    aggregate_metrics,
    compute_metrics,
    cpmr,
    naive_average,
    parse_insight_row,
    safe_div,
    sum_counters,
)


def test_zero_denominators_yield_zero():
    metrics = compute_metrics({})
    for name in ("ctr", "cpm", "cpc", "cpa", "roas", "cost_per_atc", "hold_rate", "thumb_stop_rate"):
        assert metrics[name] == 0.0
        assert not math.isnan(metrics[name])
    assert metrics["cpmr"] is None


def test_safe_div_ignores_nan_and_inf():
    assert safe_div(float("nan"), 2) == 0.0
    assert safe_div(1, float("inf")) == 0.0
    assert safe_div("10", "4") == 2.5


def test_compute_metrics_values():
    metrics = compute_metrics({
        "spend": 100.0, "impressions": 20000, "clicks": 400, "purchases": 4, "purchase_value": 350.0,
        "adds_to_cart": 10, "video_views": 5000, "thruplays": 1000, "frequency": 1.25,
    })
    assert metrics["ctr"] == pytest.approx(2.0)
    assert metrics["cpm"] == pytest.approx(5.0)
    assert metrics["cpc"] == pytest.approx(0.25)
    assert metrics["cpa"] == pytest.approx(25.0)
    assert metrics["roas"] == pytest.approx(3.5)
    assert metrics["cost_per_atc"] == pytest.approx(10.0)
    assert metrics["hold_rate"] == pytest.approx(20.0)
    assert metrics["thumb_stop_rate"] == pytest.approx(25.0)
    assert metrics["cpmr"] == pytest.approx(6.25)


def test_cpmr_reports_no_data_without_frequency():
    assert cpmr(5.0, 0) is None
    assert cpmr(0, 1.2) is None


def test_rollup_recomputes_from_summed_counters():
    # A tiny creative with a huge ROAS must not dominate the blended figure
    rows = [
        {"spend": 10.0, "purchase_value": 100.0},
        {"spend": 1000.0, "purchase_value": 100.0},
    ]
    rollup = aggregate_metrics(rows)
    naive = naive_average(rows, "roas")
    assert rollup["spend"] == 1010.0
    assert rollup["roas"] == pytest.approx(200 / 1010)
    assert naive == pytest.approx(5.05)
    assert rollup["roas"] != pytest.approx(naive)


def test_sum_counters_weights_frequency_by_impressions():
    totals = sum_counters([
        {"impressions": 1000, "frequency": 1.0, "video_views": 10, "video_avg_play_time": 2.0},
        {"impressions": 3000, "frequency": 2.0, "video_views": 30, "video_avg_play_time": 6.0},
    ])
    assert totals["impressions"] == 4000
    assert totals["frequency"] == pytest.approx(1.75)
    assert totals["video_avg_play_time"] == pytest.approx(5.0)


def test_parse_insight_row_prefers_first_purchase_type():
    row = {
        "spend": "12.50",
        "impressions": "2000",
        "clicks": "30",
        "frequency": "1.1",
        "actions": [
            {"action_type": "omni_purchase", "value": "3"},
            {"action_type": "purchase", "value": "2"},
            {"action_type": "add_to_cart", "value": "7"},
            {"action_type": "video_view", "value": "500"},
        ],
        "action_values": [{"action_type": "purchase", "value": "80.5"}],
        "video_thruplay_watched_actions": [{"action_type": "video_view", "value": "120"}],
        "video_avg_time_watched_actions": [{"action_type": "video_view", "value": "4.2"}],
    }
    counters = parse_insight_row(row)
    assert counters["spend"] == 12.5
    assert counters["impressions"] == 2000
    assert counters["purchases"] == 2.0
    assert counters["purchase_value"] == 80.5
    assert counters["adds_to_cart"] == 7.0
    assert counters["video_views"] == 500
    assert counters["thruplays"] == 120
    assert counters["video_avg_play_time"] == 4.2


def test_parse_insight_row_tolerates_missing_fields():
    counters = parse_insight_row({"ad_id": "1"})
    assert counters["spend"] == 0.0
    assert counters["purchases"] == 0.0
    assert counters["thruplays"] == 0
