from __future__ import annotations

import hashlib
import json
import logging
import os
import time
import uuid
from datetime import datetime

from flask import g, has_request_context, request

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "idempotency-key"})
# Withdrawal payloads carry bank details.
_SENSITIVE_FIELDS = frozenset({"account_number", "bank_account", "card_number", "pin"})


def get_request_id() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "request_id", "")


def _sentry_enabled() -> bool:
    return bool((os.getenv("SENTRY_DSN") or "").strip())


def _sample_rate() -> float:
    try:
        rate = float((os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0.0").strip())
    except Exception:
        rate = 0.0
    return max(0.0, min(rate, 1.0))


def init_sentry(app) -> None:
    if not _sentry_enabled():
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv("SENTRY_DSN").strip(),
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("BATA_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or "unknown"),
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=_sample_rate(),
            before_send=_before_send_scrub,
        )
        app.logger.info("sentry_enabled")
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def _before_send_scrub(event, hint):
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for key in list(headers):
        if key.lower() in _SENSITIVE_HEADERS:
            headers[key] = REDACTED
    body = req.get("data")
    if isinstance(body, dict):
        for key in list(body):
            if key.lower() in _SENSITIVE_FIELDS:
                body[key] = REDACTED
    req["headers"] = headers
    event["request"] = req
    return event


def set_sentry_user(user_id: int | None, role: str | None = None) -> None:
    if not _sentry_enabled():
        return
    try:
        import sentry_sdk

        sentry_sdk.set_user({"id": str(user_id)} if user_id is not None else None)
        if role:
            sentry_sdk.set_tag("auth_role", role)
    except Exception as e:
        logger.debug("sentry_set_user_failed err=%s", e)


def _client_fingerprint(salt: str) -> str:
    ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    return hashlib.sha256(f"{salt}:{ip or ''}".encode("utf-8")).hexdigest()[:16]


def install_request_observers(app) -> None:
    """Request-id propagation plus one JSON access line per request."""

    @app.before_request
    def _start_request_clock():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:80] or uuid.uuid4().hex
        g.request_started_at = time.perf_counter()

    @app.after_request
    def _write_access_line(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers["X-Request-Id"] = rid
        started = getattr(g, "request_started_at", None)
        entry = {
            "ts": datetime.utcnow().isoformat(),
            "request_id": rid,
            "method": request.method,
            "path": request.path,
            "status": int(response.status_code),
            "latency_ms": None if started is None else round((time.perf_counter() - started) * 1000.0, 2),
            "user_id": getattr(g, "auth_user_id", None),
            "role": getattr(g, "auth_role", None),
            "order_id": (request.view_args or {}).get("order_id"),
            "idempotent_replay": getattr(g, "idempotent_replay", None),
            "ip_hash": _client_fingerprint(app.config.get("SECRET_KEY", "bata")),
        }
        app.logger.info(json.dumps({k: v for k, v in entry.items() if v is not None or k == "latency_ms"}))
        return response
