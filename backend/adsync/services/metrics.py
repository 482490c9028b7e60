"""
Metrics Computer — ratio metrics derived from raw counters.

Divide-by-zero policy: a zero (or missing) denominator yields 0.0, never
NaN, Infinity or an exception. The only metric allowed to report "no data"
is CPMR, which returns None unless both CPM and frequency are known.

Aggregation always sums raw counters first and recomputes ratios from the
sums. Averaging per-creative ratios gives wrong answers for skewed spend
distributions; naive_average() exists only so tests can show the gap.
"""

import math
from typing import Iterable, Mapping, Optional

from adsync.utils import to_float, to_int

SUMMED_COUNTERS = (
    "spend", "impressions", "clicks", "purchases", "purchase_value",
    "adds_to_cart", "video_views", "thruplays",
)

PURCHASE_ACTION_TYPES = ("purchase", "offsite_conversion.fb_pixel_purchase", "omni_purchase")
ATC_ACTION_TYPES = ("add_to_cart", "offsite_conversion.fb_pixel_add_to_cart", "omni_add_to_cart")
VIDEO_VIEW_ACTION_TYPES = ("video_view",)


def _num(value) -> float:
    if value is None:
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


def safe_div(numerator, denominator) -> float:
    d = _num(denominator)
    if d == 0:
        return 0.0
    result = _num(numerator) / d
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def ctr(clicks, impressions) -> float:
    return safe_div(clicks, impressions) * 100


def cpm(spend, impressions) -> float:
    return safe_div(spend, impressions) * 1000


def cpc(spend, clicks) -> float:
    return safe_div(spend, clicks)


def cpa(spend, purchases) -> float:
    return safe_div(spend, purchases)


def roas(purchase_value, spend) -> float:
    return safe_div(purchase_value, spend)


def cost_per_atc(spend, adds_to_cart) -> float:
    return safe_div(spend, adds_to_cart)


def hold_rate(thruplays, video_views) -> float:
    return safe_div(thruplays, video_views) * 100


def thumb_stop_rate(video_views, impressions) -> float:
    return safe_div(video_views, impressions) * 100


def cpmr(cpm_value, frequency) -> Optional[float]:
    """Frequency-adjusted CPM. None means "no data"."""
    c, f = _num(cpm_value), _num(frequency)
    if c == 0 or f == 0:
        return None
    return c * f


def compute_metrics(counters: Mapping) -> dict:
    """All derived ratios for one set of raw counters."""
    spend = counters.get("spend")
    impressions = counters.get("impressions")
    cpm_value = cpm(spend, impressions)
    return {
        "ctr": ctr(counters.get("clicks"), impressions),
        "cpm": cpm_value,
        "cpc": cpc(spend, counters.get("clicks")),
        "cpa": cpa(spend, counters.get("purchases")),
        "roas": roas(counters.get("purchase_value"), spend),
        "cost_per_atc": cost_per_atc(spend, counters.get("adds_to_cart")),
        "hold_rate": hold_rate(counters.get("thruplays"), counters.get("video_views")),
        "thumb_stop_rate": thumb_stop_rate(counters.get("video_views"), impressions),
        "cpmr": cpmr(cpm_value, counters.get("frequency")),
    }


def sum_counters(rows: Iterable[Mapping]) -> dict:
    """
    Sum raw counters across rows. Frequency isn't additive, so it is
    impression-weighted; average play time is view-weighted.
    """
    totals = {k: 0.0 for k in SUMMED_COUNTERS}
    freq_weighted = 0.0
    play_weighted = 0.0
    for row in rows:
        for key in SUMMED_COUNTERS:
            totals[key] += _num(row.get(key))
        freq_weighted += _num(row.get("frequency")) * _num(row.get("impressions"))
        play_weighted += _num(row.get("video_avg_play_time")) * _num(row.get("video_views"))
    totals["frequency"] = safe_div(freq_weighted, totals["impressions"])
    totals["video_avg_play_time"] = safe_div(play_weighted, totals["video_views"])
    return totals


def aggregate_metrics(rows: Iterable[Mapping]) -> dict:
    """Summed counters plus ratios recomputed from the sums."""
    totals = sum_counters(rows)
    return {**totals, **compute_metrics(totals)}


def naive_average(rows: Iterable[Mapping], metric: str) -> float:
    """Mean of per-row ratios. Incorrect for rollups; kept for comparison only."""
    values = [compute_metrics(row)[metric] or 0.0 for row in rows]
    if not values:
        return 0.0
    return sum(values) / len(values)


# ══════════════════════════════════════════════════════════════════════
#  GRAPH INSIGHTS ROWS
# ══════════════════════════════════════════════════════════════════════

def _sum_actions(actions, types: Iterable[str]) -> float:
    """Sum the first matching action type in priority order (types overlap in Meta's reporting)."""
    if not actions:
        return 0.0
    by_type = {}
    for action in actions:
        action_type = action.get("action_type")
        if action_type and action_type not in by_type:
            by_type[action_type] = to_float(action.get("value"))
    for action_type in types:
        if action_type in by_type:
            return by_type[action_type]
    return 0.0


def _first_value(entries) -> float:
    if not entries:
        return 0.0
    return to_float(entries[0].get("value"))


def parse_insight_row(row: Mapping) -> dict:
    """Raw counters from one Graph API insights row."""
    actions = row.get("actions") or []
    action_values = row.get("action_values") or []
    return {
        "spend": to_float(row.get("spend")),
        "impressions": to_int(row.get("impressions")),
        "clicks": to_int(row.get("clicks")),
        "purchases": _sum_actions(actions, PURCHASE_ACTION_TYPES),
        "purchase_value": _sum_actions(action_values, PURCHASE_ACTION_TYPES),
        "adds_to_cart": _sum_actions(actions, ATC_ACTION_TYPES),
        "video_views": int(_sum_actions(actions, VIDEO_VIEW_ACTION_TYPES)),
        "thruplays": int(_first_value(row.get("video_thruplay_watched_actions"))),
        "frequency": to_float(row.get("frequency")),
        "video_avg_play_time": _first_value(row.get("video_avg_time_watched_actions")),
    }
