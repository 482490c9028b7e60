"""
Kill / Scale classification of creatives against an account's winner KPI.

Creatives below the account's spend threshold don't have enough data and
land in "watch". Otherwise:
  gte (higher is better):  kpi >= scale → scale, kpi < kill → kill
  lte (lower is better):   0 < kpi <= scale → scale, kpi > kill → kill
When no kill threshold is configured it defaults to half (gte) or double
(lte) the scale threshold.
"""

from typing import Iterable, Optional

from adsync.models import Account, KpiDirection

DEFAULT_SCALE_THRESHOLD = 2.0
DEFAULT_SPEND_THRESHOLD = 50.0
SUPPORTED_KPIS = ("roas", "cpa", "ctr", "cpc", "cpm", "thumb_stop_rate", "hold_rate", "cost_per_atc")


def thresholds(account: Account) -> dict:
    direction = account.winner_kpi_direction or KpiDirection.GTE.value
    scale = account.scale_threshold or DEFAULT_SCALE_THRESHOLD
    kill = account.kill_threshold
    if kill is None:
        kill = scale * 0.5 if direction == KpiDirection.GTE.value else scale * 2
    return {
        "kpi": account.winner_kpi or "roas",
        "direction": direction,
        "scale": scale,
        "kill": kill,
        "spend": account.iteration_spend_threshold if account.iteration_spend_threshold is not None else DEFAULT_SPEND_THRESHOLD,
    }


def classify(kpi_value: float, spend: float, config: dict) -> str:
    if spend < config["spend"]:
        return "watch"
    if config["direction"] == KpiDirection.LTE.value:
        if 0 < kpi_value <= config["scale"]:
            return "scale"
        if kpi_value > config["kill"]:
            return "kill"
        return "watch"
    if kpi_value >= config["scale"]:
        return "scale"
    if kpi_value < config["kill"]:
        return "kill"
    return "watch"


def _reason(bucket: str, kpi: str, value: float, spend: float, config: dict) -> str:
    if spend < config["spend"]:
        return f"Insufficient spend (${spend:.0f} < ${config['spend']:.0f})"
    if bucket == "scale":
        return f"{kpi} {value:.2f} meets the {config['scale']} scale threshold"
    if bucket == "kill":
        return f"{kpi} {value:.2f} is past the {config['kill']} kill threshold with ${spend:.0f} spent"
    return f"{kpi} {value:.2f} is between thresholds"


def kill_scale(creatives: Iterable[dict], account: Account, top: Optional[int] = 10) -> dict:
    """
    Bucket creatives (dicts carrying derived metrics) into scale / watch / kill.
    Scale is sorted best-first, kill worst-first.
    """
    config = thresholds(account)
    kpi = config["kpi"]
    buckets = {"scale": [], "watch": [], "kill": []}
    for c in creatives:
        value = float(c.get(kpi) or 0)
        spend = float(c.get("spend") or 0)
        bucket = classify(value, spend, config)
        buckets[bucket].append({**c, "recommendation": bucket, "reason": _reason(bucket, kpi, value, spend, config)})

    higher_is_better = config["direction"] != KpiDirection.LTE.value
    buckets["scale"].sort(key=lambda c: float(c.get(kpi) or 0), reverse=higher_is_better)
    buckets["kill"].sort(key=lambda c: float(c.get(kpi) or 0), reverse=not higher_is_better)
    counts = {k: len(v) for k, v in buckets.items()}
    if top:
        buckets = {k: v[:top] for k, v in buckets.items()}
    return {"thresholds": config, "counts": counts, **buckets}
