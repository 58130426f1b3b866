from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


AUTO_CONFIRM_BEAT_KEY = "escrow-auto-confirm-runner"
LEDGER_RECONCILE_BEAT_KEY = "ledger-reconciliation"

_observers_installed = False


def _env_seconds(name: str, default: int, *, floor: int) -> int:
    try:
        value = int((os.getenv(name) or str(default)).strip())
    except Exception:
        value = default
    return max(floor, value)


def escrow_interval_seconds() -> int:
    return _env_seconds("ESCROW_SETTLEMENT_INTERVAL_SECONDS", 300, floor=30)


def reconcile_interval_seconds() -> int:
    return _env_seconds("LEDGER_RECONCILE_INTERVAL_SECONDS", 86400, floor=300)


def broker_settings() -> dict:
    redis_url = (os.getenv("REDIS_URL") or "").strip()
    broker = (os.getenv("CELERY_BROKER_URL") or "").strip() or redis_url or "redis://localhost:6379/0"
    backend = (os.getenv("CELERY_RESULT_BACKEND") or "").strip() or redis_url or broker
    return {"broker": broker, "backend": backend}


def beat_schedule() -> dict:
    """Periodic settlement work; both tasks tolerate overlapping runs."""
    return {
        AUTO_CONFIRM_BEAT_KEY: {
            "task": "bata.tasks.settlement_tasks.run_escrow_settlement",
            "schedule": float(escrow_interval_seconds()),
        },
        LEDGER_RECONCILE_BEAT_KEY: {
            "task": "bata.tasks.settlement_tasks.reconcile_ledger",
            "schedule": float(reconcile_interval_seconds()),
        },
    }


def _log_task_event(logger_fn, event: str, **fields) -> None:
    trace = fields.pop("task_kwargs", None)
    fields["trace_id"] = str(trace.get("trace_id") or "").strip() if isinstance(trace, dict) else ""
    fields["timestamp"] = datetime.utcnow().isoformat()
    logger_fn(json.dumps({"event": event, **fields}, default=str))


def _install_observers(flask_app) -> None:
    global _observers_installed
    if _observers_installed:
        return

    def on_failure(sender=None, task_id=None, exception=None, kwargs=None, einfo=None, **_):
        _log_task_event(
            flask_app.logger.error,
            "settlement_task_failure",
            task_name=getattr(sender, "name", "") or "",
            task_id=str(task_id or ""),
            task_kwargs=kwargs,
            exception=str(exception or ""),
            einfo=str(einfo) if einfo is not None else None,
        )

    def on_retry(request=None, reason=None, **_):
        _log_task_event(
            flask_app.logger.warning,
            "settlement_task_retry",
            task_name=str(getattr(request, "task", "") or ""),
            task_id=str(getattr(request, "id", "") or ""),
            task_kwargs=getattr(request, "kwargs", None),
            reason=str(reason or ""),
            retry_count=int(getattr(request, "retries", 0) or 0),
        )

    task_failure.connect(on_failure, weak=False)
    task_retry.connect(on_retry, weak=False)
    _observers_installed = True


def create_celery_app(flask_app) -> Celery:
    celery = Celery(flask_app.import_name, **broker_settings())
    celery.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        task_track_started=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        beat_schedule=beat_schedule(),
    )

    base = celery.Task

    class AppContextTask(base):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = AppContextTask
    celery.set_default()
    celery.autodiscover_tasks(["bata.tasks"], related_name="settlement_tasks")
    _install_observers(flask_app)
    return celery
