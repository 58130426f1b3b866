from __future__ import annotations

import json
import os

from bata.errors import InsufficientBalance, NotFound
from bata.extensions import db
from bata.models import LedgerEntry, User


class EntryType:
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    ESCROW = "ESCROW"
    WITHDRAWAL = "WITHDRAWAL"

    ALL = (CREDIT, DEBIT, ESCROW, WITHDRAWAL)


class Bucket:
    AVAILABLE = "available"
    PENDING = "pending"


_BALANCE_COLUMN = {
    Bucket.AVAILABLE: "available_balance_minor",
    Bucket.PENDING: "pending_balance_minor",
}


def signed_amount(entry_type: str, amount_minor: int) -> int:
    if entry_type in (EntryType.DEBIT, EntryType.WITHDRAWAL):
        return -abs(int(amount_minor))
    return abs(int(amount_minor))


def default_bucket(entry_type: str) -> str:
    if entry_type == EntryType.ESCROW:
        return Bucket.PENDING
    return Bucket.AVAILABLE


def platform_user_id() -> int:
    raw = (os.getenv("PLATFORM_USER_ID") or "").strip()
    if raw.isdigit():
        return int(raw)
    admin = User.query.filter_by(role="admin").order_by(User.id.asc()).first()
    if admin is None:
        raise RuntimeError("platform account missing: set PLATFORM_USER_ID or create an admin user")
    return int(admin.id)


def lock_user(user_id: int) -> User:
    """Load a user row with a row lock held until the surrounding commit."""
    user = (
        db.session.query(User)
        .filter(User.id == int(user_id))
        .with_for_update()
        .populate_existing()
        .first()
    )
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


def post_entry(
    user_id: int,
    entry_type: str,
    amount_minor: int,
    *,
    reference: str,
    description: str = "",
    order_id: int | None = None,
    bucket: str | None = None,
    allow_negative: bool = False,
    metadata: dict | None = None,
) -> LedgerEntry | None:
    """Stage one ledger entry and the matching balance change.

    Zero amounts are skipped. The caller owns the commit, so the entry and
    the balance move land (or roll back) together.
    """
    amount = int(amount_minor or 0)
    if amount == 0:
        return None
    if amount < 0:
        raise ValueError("ledger amount must be positive")
    if entry_type not in EntryType.ALL:
        raise ValueError(f"unknown ledger entry type {entry_type}")
    if entry_type == EntryType.ESCROW:
        target_bucket = Bucket.PENDING
    elif entry_type == EntryType.WITHDRAWAL:
        target_bucket = Bucket.AVAILABLE
    else:
        target_bucket = bucket or default_bucket(entry_type)
    column = _BALANCE_COLUMN[target_bucket]

    user = lock_user(user_id)
    before = int(getattr(user, column) or 0)
    after = before + signed_amount(entry_type, amount)
    if after < 0 and not allow_negative:
        raise InsufficientBalance(
            "Insufficient balance",
            reason=target_bucket,
            debug={"user_id": int(user_id), "balance_minor": before, "required_minor": amount},
        )
    setattr(user, column, after)

    entry = LedgerEntry(
        user_id=int(user_id),
        order_id=int(order_id) if order_id is not None else None,
        type=entry_type,
        bucket=target_bucket,
        amount_minor=amount,
        description=(description or "")[:255],
        reference=reference[:160],
        balance_before_minor=before,
        balance_after_minor=after,
        metadata_json=json.dumps(metadata) if metadata else None,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def replay_balances(user_id: int) -> dict:
    """Recompute both buckets for a user from ledger history alone."""
    totals = {Bucket.AVAILABLE: 0, Bucket.PENDING: 0}
    rows = (
        LedgerEntry.query.filter_by(user_id=int(user_id))
        .order_by(LedgerEntry.id.asc())
        .all()
    )
    for row in rows:
        bucket = row.bucket or default_bucket(row.type)
        totals[bucket] = totals.get(bucket, 0) + signed_amount(row.type, int(row.amount_minor or 0))
    return {
        "available_balance_minor": int(totals[Bucket.AVAILABLE]),
        "pending_balance_minor": int(totals[Bucket.PENDING]),
        "entry_count": len(rows),
    }


def entries_for_order(order_id: int) -> list[LedgerEntry]:
    return (
        LedgerEntry.query.filter_by(order_id=int(order_id))
        .order_by(LedgerEntry.id.asc())
        .all()
    )
