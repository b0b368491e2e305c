#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.db.postgres import PostgresTxRunner
from app.repositories.audit_logs import PostgresAuditLogsRepository
from app.repositories.upload_queue import PostgresUploadQueueRepository


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the upload_queue and audit_logs tables on PostgreSQL")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument("--queue-table", default=os.getenv("UPLOAD_QUEUE_TABLE", "upload_queue"))
    parser.add_argument("--audit-table", default=os.getenv("AUDIT_LOG_TABLE", "audit_logs"))
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    runner = PostgresTxRunner(dsn)
    PostgresUploadQueueRepository(tx_runner=runner, table_name=args.queue_table).ensure_schema()
    PostgresAuditLogsRepository(tx_runner=runner, table_name=args.audit_table).ensure_schema()
    print(json.dumps({"tables": [args.queue_table, args.audit_table]}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
