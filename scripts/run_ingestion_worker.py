#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from caportal.bus import create_bus_from_env
from caportal.db.rls import PostgresRlsManager
from caportal.store import store
from caportal.worker_runtime import create_subscription_runtime_from_env

logger = logging.getLogger("run_ingestion_worker")


def _apply_rls(tables_csv: str) -> list[str]:
    dsn = os.environ.get("POSTGRES_DSN", "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required to apply organization isolation policies")
    tables = [x.strip() for x in tables_csv.split(",") if x.strip()] or None
    return PostgresRlsManager(dsn, tables=tables).apply()


def main() -> int:
    parser = argparse.ArgumentParser(description="Consume analysis:completed messages into the entity store.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run until SIGINT/SIGTERM).",
    )
    parser.add_argument(
        "--apply-rls",
        action="store_true",
        help="Apply PostgreSQL organization isolation policies before consuming.",
    )
    parser.add_argument(
        "--rls-only",
        action="store_true",
        help="Apply the policies and exit without consuming.",
    )
    parser.add_argument(
        "--rls-tables",
        default="",
        help="Comma-separated tables for the policies; default is analyses and documents.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    applied: list[str] = []
    if args.apply_rls or args.rls_only:
        applied = _apply_rls(args.rls_tables)
    if args.rls_only:
        print(json.dumps({"success": True, "applied_tables": applied}, ensure_ascii=True))
        return 0

    runtime = create_subscription_runtime_from_env(store=store, bus=create_bus_from_env())

    def _stop(signum, _frame) -> None:
        logger.info("worker_stop_requested signal=%s", signum)
        runtime.request_stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    stats = runtime.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    print(json.dumps({"success": True, "applied_tables": applied, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
