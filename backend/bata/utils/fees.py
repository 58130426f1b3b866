from __future__ import annotations

import json
import os

from bata.utils.money import bps_minor_half_up

SNAPSHOT_VERSION = 1

FEE_RULE_CATEGORY_BPS_V1 = "CATEGORY_BPS_V1"
DELIVERY_SPLIT_RULE_V1 = "DELIVERY_FIXED_RIDER_PAYOUT_V1"

DEFAULT_PLATFORM_FEE_BPS = 500
DEFAULT_DELIVERY_FEE_MINOR = 80000
DEFAULT_RIDER_PAYOUT_MINOR = 56000

# High-margin campus categories.
DEFAULT_CATEGORY_FEE_BPS = {
    "SNACKS": 1000,
    "FOOD": 1000,
    "BEVERAGES": 1000,
}


def _env_minor(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except Exception:
        return int(default)
    return value if value >= 0 else int(default)


def default_fee_bps() -> int:
    value = _env_minor("DEFAULT_PLATFORM_FEE_BPS", DEFAULT_PLATFORM_FEE_BPS)
    return min(value, 10000)


def default_delivery_fee_minor() -> int:
    return _env_minor("DEFAULT_DELIVERY_FEE_MINOR", DEFAULT_DELIVERY_FEE_MINOR)


def rider_payout_minor() -> int:
    return _env_minor("RIDER_PAYOUT_MINOR", DEFAULT_RIDER_PAYOUT_MINOR)


def normalize_category(category: str | None) -> str:
    return (category or "").strip().upper()


def category_fee_overrides() -> dict[str, int]:
    raw = (os.getenv("CATEGORY_FEE_BPS") or "").strip()
    if not raw:
        return dict(DEFAULT_CATEGORY_FEE_BPS)
    try:
        parsed = json.loads(raw)
    except Exception:
        return dict(DEFAULT_CATEGORY_FEE_BPS)
    if not isinstance(parsed, dict):
        return dict(DEFAULT_CATEGORY_FEE_BPS)
    out: dict[str, int] = {}
    for key, value in parsed.items():
        try:
            bps = int(value)
        except Exception:
            continue
        if 0 <= bps <= 10000:
            out[normalize_category(key)] = bps
    return out


def resolve_fee_bps(category: str | None) -> int:
    """Resolve the platform fee rate for a category: DB rule -> env overrides -> default."""
    cat = normalize_category(category)
    if cat:
        from bata.models import CategoryFeeRate  # lazy import

        rule = CategoryFeeRate.query.filter_by(category=cat, is_active=True).first()
        if rule is not None:
            return int(rule.rate_bps or 0)
        overrides = category_fee_overrides()
        if cat in overrides:
            return int(overrides[cat])
    return default_fee_bps()


def compute_item_fee(line_total_minor: int, category: str | None) -> tuple[int, int]:
    bps = resolve_fee_bps(category)
    return bps, bps_minor_half_up(int(line_total_minor), bps)


def compute_order_split_minor(*, items: list[dict], delivery_fee_minor: int) -> dict:
    """Split one seller's order into seller escrow, rider payout and platform commission.

    ``items`` are dicts carrying ``line_total_minor`` and ``category``. The
    returned snapshot is stored on the order and never recomputed.
    """
    delivery_fee = max(0, int(delivery_fee_minor or 0))
    subtotal = 0
    platform_fee = 0
    lines = []
    for item in items:
        line_total = max(0, int(item.get("line_total_minor") or 0))
        bps, fee = compute_item_fee(line_total, item.get("category"))
        subtotal += line_total
        platform_fee += fee
        lines.append(
            {
                "product_id": item.get("product_id"),
                "category": normalize_category(item.get("category")),
                "line_total_minor": int(line_total),
                "fee_bps": int(bps),
                "fee_minor": int(fee),
            }
        )

    seller_escrow = subtotal - platform_fee
    if seller_escrow < 0:
        seller_escrow = 0
    rider_payout = min(rider_payout_minor(), delivery_fee)
    delivery_platform = delivery_fee - rider_payout
    platform_commission = platform_fee + delivery_platform

    return {
        "snapshot_version": SNAPSHOT_VERSION,
        "rules": {
            "fee": FEE_RULE_CATEGORY_BPS_V1,
            "delivery_split": DELIVERY_SPLIT_RULE_V1,
        },
        "items": lines,
        "subtotal_minor": int(subtotal),
        "platform_fee_minor": int(platform_fee),
        "seller_escrow_minor": int(seller_escrow),
        "delivery": {
            "fee_minor": int(delivery_fee),
            "rider_minor": int(rider_payout),
            "platform_minor": int(delivery_platform),
        },
        "rider_payout_minor": int(rider_payout),
        "platform_commission_minor": int(platform_commission),
        "total_minor": int(subtotal + delivery_fee),
    }


def snapshot_to_order_columns(snapshot: dict | None) -> dict:
    data = snapshot if isinstance(snapshot, dict) else {}
    delivery = data.get("delivery") if isinstance(data.get("delivery"), dict) else {}
    return {
        "product_price_minor": int(data.get("subtotal_minor") or 0),
        "delivery_fee_minor": int(delivery.get("fee_minor") or 0),
        "platform_fee_minor": int(data.get("platform_fee_minor") or 0),
        "platform_commission_minor": int(data.get("platform_commission_minor") or 0),
        "seller_escrow_minor": int(data.get("seller_escrow_minor") or 0),
        "rider_payout_minor": int(data.get("rider_payout_minor") or 0),
        "total_amount_minor": int(data.get("total_minor") or 0),
    }
