from __future__ import annotations

import hashlib
import json
import os
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.exc import IntegrityError

from bata.extensions import db
from bata.models import IdempotencyKey


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def idempotency_enforced() -> bool:
    return _env_bool("ENABLE_IDEMPOTENCY_ENFORCEMENT", False)


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, scope: str, user_id: int | None, payload: Any) -> str:
    raw = f"{scope.strip()}|{user_id or ''}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _error(code: str, message: str) -> dict:
    return {"ok": False, "error": code, "reason": None, "message": message}


def lookup_response(user_id: int | None, scope: str, payload: Any, *, require_header: bool | None = None):
    """Claim an idempotency key for ``scope`` or replay the stored response.

    Returns None when no key was sent and none is required, otherwise a tuple
    ``(state, body_or_row, status)`` with state in required|conflict|hit|miss.
    On ``miss`` the caller runs the operation, then calls ``store_response``
    (or ``release_key`` if the operation failed).
    """
    k = get_idempotency_key()
    should_require = idempotency_enforced() if require_header is None else bool(require_header)
    if not k:
        if should_require:
            return ("required", _error("IDEMPOTENCY_KEY_REQUIRED", f"Idempotency-Key header is required for {scope}."), 400)
        return None

    req_hash = _hash_request(scope=scope, user_id=user_id, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row is not None:
        if (row.request_hash or "") != req_hash:
            return ("conflict", _error("IDEMPOTENCY_KEY_REUSE", "This Idempotency-Key was already used with a different request payload."), 409)
        if not row.response_json:
            return ("conflict", _error("IDEMPOTENCY_IN_PROGRESS", "A request with this Idempotency-Key is still in progress."), 409)
        g.idempotent_replay = True
        return ("hit", json.loads(row.response_json), int(row.status_code or 200))

    row = IdempotencyKey(
        key=k,
        scope=scope,
        user_id=int(user_id) if user_id is not None else None,
        request_hash=req_hash,
        status_code=200,
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return ("conflict", _error("IDEMPOTENCY_IN_PROGRESS", "A request with this Idempotency-Key is still in progress."), 409)
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Forget a claimed key after the operation failed so the client may retry."""
    db.session.rollback()
    fresh = db.session.get(IdempotencyKey, int(row.id))
    if fresh is not None:
        db.session.delete(fresh)
        db.session.commit()
