#!/usr/bin/env python3
"""
Long-running worker service.

Purchase uploads are normally parsed by a FastAPI background task scheduled by the
upload endpoint. If the API process dies (deploy, crash) before or during that
task, the upload would sit in UPLOADED forever. This service sweeps for such
uploads and runs the same parse job for them:

  - never claimed (parse_started_at IS NULL) and older than the grace period,
  - claimed, but the claim is older than UPLOAD_PARSE_STALE_SECONDS.
"""

import argparse
import json
import os
import time
import sys
import traceback
from datetime import datetime, timezone

import psycopg
from psycopg.rows import dict_row

from backend.app.config import settings
from backend.workers.purchase_upload_parse_job import run_purchase_upload_parse

DB_URL_DEFAULT = os.getenv("DATABASE_URL") or "postgresql://localhost/clinic_pharmacy"


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def release_stale_claims(db_url: str, stale_seconds: int) -> int:
    # Runs as the owner role (no clinic context): the sweep spans every clinic.
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE purchase_uploads
                    SET parse_started_at = NULL, updated_at = now()
                    WHERE status = 'UPLOADED'
                      AND parse_started_at IS NOT NULL
                      AND parse_started_at < now() - interval '1 second' * %s
                    RETURNING id, clinic_id
                    """,
                    (stale_seconds,),
                )
                rows = cur.fetchall()
    for r in rows:
        _json_log("warning", "purchase_upload.claim_released", clinic_id=str(r["clinic_id"]), upload_id=str(r["id"]))
    return len(rows)


def list_pending_uploads(db_url: str, grace_seconds: int, limit: int) -> list[dict]:
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, clinic_id
                FROM purchase_uploads
                WHERE status = 'UPLOADED'
                  AND parse_started_at IS NULL
                  AND created_at < now() - interval '1 second' * %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (grace_seconds, limit),
            )
            return cur.fetchall()


def sweep_once(db_url: str, *, stale_seconds: int, grace_seconds: int, limit: int) -> int:
    release_stale_claims(db_url, stale_seconds)
    ran = 0
    for r in list_pending_uploads(db_url, grace_seconds, limit):
        try:
            run_purchase_upload_parse(db_url, str(r["clinic_id"]), str(r["id"]))
            ran += 1
        except Exception as ex:
            # One bad upload must not stop the sweep.
            _json_log("error", "worker.upload_parse.error", clinic_id=str(r["clinic_id"]), upload_id=str(r["id"]), error=str(ex))
            traceback.print_exc(file=sys.stderr)
    return ran


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--sleep", type=float, default=float(settings.upload_parse_sweep_interval_seconds))
    parser.add_argument("--stale-seconds", type=int, default=settings.upload_parse_stale_seconds)
    parser.add_argument(
        "--grace-seconds",
        type=int,
        default=settings.upload_parse_sweep_interval_seconds,
        help="Leave fresh uploads to the API background task for this long",
    )
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    while True:
        did_work = False
        try:
            did_work = sweep_once(
                args.db,
                stale_seconds=args.stale_seconds,
                grace_seconds=args.grace_seconds,
                limit=args.limit,
            ) > 0
        except Exception as ex:
            # Never crash the worker loop; log so it shows up in container logs.
            _json_log("error", "worker.sweep.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)

        if args.once:
            break

        # If we processed anything, loop again quickly; otherwise back off.
        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
