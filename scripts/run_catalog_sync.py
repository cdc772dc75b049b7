"""
Run a catalog sync from CLI.
"""

from __future__ import annotations

import argparse
import json
import logging
import os

from app.services.sync_errors import SyncAlreadyRunningError
from app.services.sync_orchestrator import get_sync_orchestrator


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run or resume the catalog sync.")
    parser.add_argument(
        "action",
        choices=("full", "resume", "stop", "status"),
        help="full: start a new run; resume: continue the active run; stop: request a pause; "
        "status: print the active run status.",
    )
    parser.add_argument(
        "--sync-type",
        dest="sync_type",
        default="manual",
        help="Label recorded on a new run.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Resume even when a stop has been requested.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    orchestrator = get_sync_orchestrator()

    if args.action == "stop":
        print(json.dumps({"stop_requested": True, "active_run_id": orchestrator.request_stop()}, indent=2))
        return 0

    if args.action == "status":
        run_id = orchestrator.active_run_id()
        payload = orchestrator.get_run_status(run_id) if run_id else None
        print(json.dumps(payload or {"active_run_id": None}, indent=2))
        return 0

    try:
        if args.action == "full":
            run = orchestrator.run_full_sync(sync_type=args.sync_type)
        else:
            run = orchestrator.resume(force=args.force)
    except SyncAlreadyRunningError as exc:
        print(json.dumps({"error": str(exc)}, indent=2))
        return 2

    if run is None:
        print(json.dumps({"resumed": False, "reason": "nothing to resume"}, indent=2))
        return 0

    report = orchestrator.build_report(run.run_id) or {}
    report["metrics"] = orchestrator.client.metrics
    print(json.dumps(report, indent=2))
    return 1 if run.status.value == "failed" else 0


if __name__ == "__main__":
    raise SystemExit(main())
