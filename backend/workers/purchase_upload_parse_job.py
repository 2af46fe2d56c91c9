from __future__ import annotations

import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Optional

import psycopg
from psycopg.rows import dict_row

from backend.app.ai.policy import is_external_ai_allowed
from backend.app.ai.providers import get_ai_provider_config
from backend.app.importers.invoice_schema import normalize_invoice
from backend.app.importers.supplier_invoice_import import (
    create_draft_from_invoice,
    extract_purchase_invoice_with_fallback,
    find_or_create_supplier_by_tax_id,
)
from backend.app.storage.purchase_uploads import (
    StorageError,
    discard_stored_upload,
    discard_temp_upload,
    persist_purchase_upload,
)


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def _set_clinic_context_session(cur, clinic_id: str):
    """
    This job runs with `conn.autocommit = True` so no transaction is open during
    provider calls. A transaction-local set_config() would be lost between
    statements, so the RLS context is set at session level for this connection.
    """
    cur.execute("SELECT set_config('app.current_clinic_id', %s::text, false)", (clinic_id,))


def _error_text(ex: Exception) -> str:
    detail = getattr(ex, "detail", None)
    msg = detail if isinstance(detail, str) and detail else str(ex)
    return f"{type(ex).__name__}: {msg}"[:4000]


def _mark_failed(conn, clinic_id: str, upload_id: str, error: str) -> bool:
    # Guarded by status so a concurrent cancel is never overwritten.
    with conn.transaction():
        with conn.cursor() as cur:
            _set_clinic_context_session(cur, clinic_id)
            cur.execute(
                """
                UPDATE purchase_uploads
                SET status = 'FAILED', provider_meta = %s, parse_finished_at = now(), updated_at = now()
                WHERE clinic_id = %s AND id = %s AND status = 'UPLOADED'
                RETURNING id
                """,
                (error, clinic_id, upload_id),
            )
            return cur.fetchone() is not None


def run_purchase_upload_parse(db_url: str, clinic_id: str, upload_id: str) -> dict[str, Any]:
    """
    Background job for one purchase upload: UPLOADED -> PARSED | FAILED (or untouched
    when the user cancelled first).

    Cancellation is checked at three points: the claim, right after extraction, and
    under the row lock of the final write. Cancel takes the same row lock, so the
    final write and a cancel never interleave.
    """
    upload_id = str(upload_id)
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        # Avoid holding a transaction open during external AI calls.
        conn.autocommit = True

        with conn.transaction():
            with conn.cursor() as cur:
                _set_clinic_context_session(cur, clinic_id)
                cur.execute(
                    """
                    UPDATE purchase_uploads
                    SET parse_started_at = now(), updated_at = now()
                    WHERE clinic_id = %s AND id = %s
                      AND status = 'UPLOADED' AND parse_started_at IS NULL
                    RETURNING id, filename, stored_path, uploaded_by_user_id
                    """,
                    (clinic_id, upload_id),
                )
                claimed = cur.fetchone()
                if not claimed:
                    _json_log("info", "purchase_upload.skipped", clinic_id=clinic_id, upload_id=upload_id)
                    return {"upload_id": upload_id, "status": "skipped"}
                ai_config = get_ai_provider_config(cur, clinic_id)
                external_ai_allowed = is_external_ai_allowed(cur, clinic_id)

        _json_log("info", "purchase_upload.claimed", clinic_id=clinic_id, upload_id=upload_id)
        temp_path = claimed["stored_path"]
        user_id: Optional[str] = str(claimed["uploaded_by_user_id"]) if claimed.get("uploaded_by_user_id") else None
        stored: Optional[dict] = None

        try:
            provider, raw = extract_purchase_invoice_with_fallback(
                temp_path,
                ai_config=ai_config,
                external_ai_allowed=external_ai_allowed,
            )
            invoice = normalize_invoice(raw)
            _json_log(
                "info",
                "purchase_upload.extracted",
                clinic_id=clinic_id,
                upload_id=upload_id,
                provider=provider,
                items=len(invoice.items),
            )

            with conn.cursor() as cur:
                _set_clinic_context_session(cur, clinic_id)
                cur.execute(
                    "SELECT status FROM purchase_uploads WHERE clinic_id = %s AND id = %s",
                    (clinic_id, upload_id),
                )
                row = cur.fetchone()
            if not row or row["status"] != "UPLOADED":
                _json_log("info", "purchase_upload.cancelled", clinic_id=clinic_id, upload_id=upload_id, stage="extracted")
                return {"upload_id": upload_id, "status": row["status"] if row else "missing"}

            warnings = list(invoice.warnings)
            with conn.transaction():
                with conn.cursor() as cur:
                    _set_clinic_context_session(cur, clinic_id)
                    cur.execute(
                        """
                        SELECT status, linked_purchase_id, filename
                        FROM purchase_uploads
                        WHERE clinic_id = %s AND id = %s
                        FOR UPDATE
                        """,
                        (clinic_id, upload_id),
                    )
                    locked = cur.fetchone()
                    if not locked or locked["status"] != "UPLOADED":
                        _json_log("info", "purchase_upload.cancelled", clinic_id=clinic_id, upload_id=upload_id, stage="final")
                        return {"upload_id": upload_id, "status": locked["status"] if locked else "missing"}

                    supplier_id = find_or_create_supplier_by_tax_id(cur, clinic_id, invoice.seller)
                    if not supplier_id:
                        warnings.append("supplier tax id not found; supplier left unlinked")
                    purchase_id = locked.get("linked_purchase_id")
                    if not purchase_id:
                        purchase_id = create_draft_from_invoice(
                            cur,
                            clinic_id,
                            invoice,
                            supplier_id=supplier_id,
                            upload_id=upload_id,
                            user_id=user_id,
                            warnings=warnings,
                        )

                    meta: dict[str, Any] = {"provider": provider, "warnings": warnings}
                    stored_path, storage_provider = temp_path, "temp"
                    try:
                        stored = persist_purchase_upload(
                            temp_path,
                            clinic_id=clinic_id,
                            supplier_id=supplier_id,
                            invoice_date=invoice.invoice_date,
                            invoice_no=invoice.invoice_no,
                            original_name=locked.get("filename") or claimed.get("filename"),
                            upload_id=upload_id,
                        )
                        stored_path, storage_provider = stored["path"], stored["provider"]
                        meta["storage_key"] = stored["key"]
                    except StorageError as e:
                        meta["storage_error"] = str(e)
                        _json_log(
                            "warning",
                            "purchase_upload.storage_failed",
                            clinic_id=clinic_id,
                            upload_id=upload_id,
                            error=str(e),
                        )

                    cur.execute(
                        """
                        UPDATE purchase_uploads
                        SET status = 'PARSED',
                            provider = %s,
                            parsed_json = %s::jsonb,
                            linked_purchase_id = %s,
                            stored_path = %s,
                            storage_provider = %s,
                            provider_meta = %s,
                            parse_finished_at = now(),
                            updated_at = now()
                        WHERE clinic_id = %s AND id = %s
                        """,
                        (
                            provider,
                            json.dumps({"provider": provider, "invoice": invoice.model_dump(mode="json"), "raw": raw}, default=str),
                            purchase_id,
                            stored_path,
                            storage_provider,
                            json.dumps(meta, default=str),
                            clinic_id,
                            upload_id,
                        ),
                    )

            # The record now points at the durable copy.
            if stored:
                discard_temp_upload(temp_path)
            _json_log(
                "info",
                "purchase_upload.parsed",
                clinic_id=clinic_id,
                upload_id=upload_id,
                provider=provider,
                purchase_id=purchase_id,
                supplier_id=supplier_id,
            )
            return {"upload_id": upload_id, "status": "PARSED", "purchase_id": str(purchase_id), "provider": provider}
        except Exception as ex:
            error = _error_text(ex)
            _json_log("error", "purchase_upload.failed", clinic_id=clinic_id, upload_id=upload_id, error=error)
            traceback.print_exc(file=sys.stderr)
            # Rolled back: stored_path still names the temp file, so only the copy goes.
            discard_stored_upload(stored)
            marked = _mark_failed(conn, clinic_id, upload_id, error)
            return {"upload_id": upload_id, "status": "FAILED" if marked else "unchanged", "error": error}
