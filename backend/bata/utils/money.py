from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except Exception:
        parsed = 0
    return parsed if parsed > 0 else 0


def money_major_to_minor(amount: float | Decimal | int | str | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor: int | float | Decimal | None) -> float:
    # Signed on purpose: clawbacks can push a balance below zero.
    try:
        parsed = Decimal(int(minor or 0))
    except Exception:
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def parse_minor(payload: dict, minor_key: str, major_key: str | None = None) -> int | None:
    """Read an amount from a request body, preferring the integer minor field.

    Returns None when neither field is present. Raises ValueError when the
    minor field is not an integer.
    """
    if not isinstance(payload, dict):
        return None
    if payload.get(minor_key) is not None:
        raw = payload.get(minor_key)
        if isinstance(raw, bool):
            raise ValueError(f"{minor_key} must be an integer")
        try:
            value = int(raw)
        except Exception:
            raise ValueError(f"{minor_key} must be an integer")
        if str(raw).strip() != str(value) and not isinstance(raw, int):
            raise ValueError(f"{minor_key} must be an integer")
        return value
    if major_key and payload.get(major_key) is not None:
        return money_major_to_minor(payload.get(major_key))
    return None
