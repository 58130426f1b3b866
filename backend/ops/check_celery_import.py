"""Deploy smoke check: the worker entrypoint imports and carries its beat entries."""

from __future__ import annotations

import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))


def main() -> int:
    try:
        from bata.celery_app import AUTO_CONFIRM_BEAT_KEY, LEDGER_RECONCILE_BEAT_KEY
        from celery_app import celery
    except Exception as exc:
        print(f"error: worker entrypoint failed to import -> {exc}", file=sys.stderr)
        return 1

    scheduled = set((celery.conf.beat_schedule or {}).keys())
    missing = sorted({AUTO_CONFIRM_BEAT_KEY, LEDGER_RECONCILE_BEAT_KEY} - scheduled)
    if missing:
        print(f"error: beat schedule missing {', '.join(missing)}", file=sys.stderr)
        return 1
    print(f"ok: worker ready broker={celery.conf.broker_url} beat={','.join(sorted(scheduled))}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
