from __future__ import annotations

import logging
import os
import uuid

from bata.errors import InsufficientBalance, NotFound, ValidationError
from bata.extensions import db
from bata.models import LedgerEntry, User
from bata.services.ledger_service import EntryType, lock_user, post_entry, replay_balances
from bata.utils.events import log_event
from bata.utils.money import money_minor_to_major

logger = logging.getLogger(__name__)

DEFAULT_MIN_WITHDRAWAL_MINOR = 100000


def min_withdrawal_minor() -> int:
    raw = (os.getenv("MIN_WITHDRAWAL_MINOR") or "").strip()
    try:
        value = int(raw) if raw else DEFAULT_MIN_WITHDRAWAL_MINOR
    except Exception:
        value = DEFAULT_MIN_WITHDRAWAL_MINOR
    return max(1, value)


def wallet_summary(user: User) -> dict:
    available = int(user.available_balance_minor or 0)
    pending = int(user.pending_balance_minor or 0)
    return {
        "user_id": int(user.id),
        "available_balance_minor": available,
        "pending_balance_minor": pending,
        "available_balance": money_minor_to_major(available),
        "pending_balance": money_minor_to_major(pending),
    }


def list_transactions(user_id: int, *, limit: int = 50, offset: int = 0) -> list[dict]:
    rows = (
        LedgerEntry.query.filter_by(user_id=int(user_id))
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset(max(0, int(offset)))
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return [r.to_dict() for r in rows]


def get_wallet(user_id: int, *, recent: int = 20) -> dict:
    user = db.session.get(User, int(user_id))
    if user is None:
        raise NotFound(f"User {user_id} not found")
    payload = wallet_summary(user)
    payload["transactions"] = list_transactions(int(user_id), limit=recent)
    return payload


def withdraw(user_id: int, amount_minor: int, *, bank_name: str, account_number: str, account_name: str) -> dict:
    amount = int(amount_minor or 0)
    minimum = min_withdrawal_minor()
    if amount < minimum:
        raise ValidationError(
            f"Minimum withdrawal is {money_minor_to_major(minimum):,.2f}",
            reason="below_minimum",
            debug={"minimum_minor": minimum, "requested_minor": amount},
        )
    bank_name = (bank_name or "").strip()
    account_number = (account_number or "").strip()
    account_name = (account_name or "").strip()
    if not (bank_name and account_number and account_name):
        raise ValidationError("Bank details are required", reason="bank_details_required")

    try:
        user = lock_user(int(user_id))
        available = int(user.available_balance_minor or 0)
        if amount > available:
            raise InsufficientBalance(
                "Insufficient balance",
                reason="available",
                debug={"available_minor": available, "requested_minor": amount},
            )
        reference = f"WD-{int(user_id)}-{uuid.uuid4().hex[:12].upper()}"
        entry = post_entry(
            int(user_id),
            EntryType.WITHDRAWAL,
            amount,
            reference=reference,
            description=f"Withdrawal to {bank_name} - ****{account_number[-4:]}",
            metadata={"bank_name": bank_name, "account_name": account_name, "account_last4": account_number[-4:]},
        )
        log_event(
            "withdrawal_completed",
            actor_user_id=int(user_id),
            subject_type="wallet",
            subject_id=int(user_id),
            idempotency_key=f"withdrawal:{reference}",
            metadata={"amount_minor": amount, "reference": reference},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("withdrawal_completed user_id=%s amount_minor=%s reference=%s", user_id, amount, reference)
    return {"reference": reference, "entry": entry.to_dict(), "wallet": wallet_summary(user)}


def replay_user_balances(user_id: int) -> dict:
    return replay_balances(int(user_id))
