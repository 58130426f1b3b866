from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from bata import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Replay the ledger per user and report drift against stored balances.")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    args = parser.parse_args()

    _bootstrap_app()
    from bata.services.reconciliation_service import recompute_wallet_balances, persist_report

    summary = recompute_wallet_balances()
    if args.persist:
        row = persist_report(summary, created_by=None)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2))
    return 0 if int(summary.get("drift_count") or 0) == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
