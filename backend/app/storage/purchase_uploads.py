from __future__ import annotations

import json
import os
import re
import shutil
import sys
import time
import uuid
from datetime import date, datetime, timezone
from typing import Optional

from ..config import settings
from . import s3

_UNSAFE_RE = re.compile(r"[^\w\-./]")

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


class StorageError(RuntimeError):
    """Durable storage failed; the temp file is left where it was."""


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def storage_mode() -> str:
    return "s3" if settings.upload_storage == "s3" else "local"


def temp_dir() -> str:
    d = os.path.join(settings.upload_base_dir, "_tmp")
    os.makedirs(d, exist_ok=True)
    return d


def temp_path_for(upload_id: str, filename: str) -> str:
    ext = os.path.splitext(filename or "")[1].lower() or ".bin"
    return os.path.join(temp_dir(), f"{upload_id}-{uuid.uuid4().hex[:8]}{ext}")


def sanitize_segment(value, fallback: str = "unknown") -> str:
    raw = str(value or "").strip()
    if not raw:
        return fallback
    t = _UNSAFE_RE.sub("_", raw)
    t = re.sub(r"_+", "_", t)
    # No path traversal through segments.
    while ".." in t:
        t = t.replace("..", ".")
    t = t.replace("/", "_").strip("._")
    return t[:120] or fallback


def _date_part(invoice_date) -> str:
    if isinstance(invoice_date, datetime):
        return invoice_date.date().isoformat()
    if isinstance(invoice_date, date):
        return invoice_date.isoformat()
    try:
        return date.fromisoformat(str(invoice_date)[:10]).isoformat()
    except (TypeError, ValueError):
        return date.today().isoformat()


def build_storage_key(
    *,
    clinic_id: str,
    supplier_id: Optional[str],
    invoice_date,
    invoice_no: Optional[str],
    original_name: Optional[str],
    upload_id: Optional[str] = None,
) -> str:
    """clinic/supplier/<date>-<invoice>/<name>-<ms timestamp><ext>"""
    ext = os.path.splitext(original_name or "")[1].lower() or ".bin"
    base = os.path.splitext(os.path.basename(original_name or ""))[0] or f"invoice-{upload_id or 'upload'}"
    file_name = f"{sanitize_segment(base, 'invoice')}-{int(time.time() * 1000)}{ext}"
    return "/".join(
        [
            sanitize_segment(clinic_id, "clinic"),
            sanitize_segment(supplier_id, "unknown-supplier"),
            f"{_date_part(invoice_date)}-{sanitize_segment(invoice_no, 'invoice')}",
            file_name,
        ]
    )


def persist_purchase_upload(
    temp_path: str,
    *,
    clinic_id: str,
    supplier_id: Optional[str],
    invoice_date,
    invoice_no: Optional[str],
    original_name: Optional[str],
    upload_id: Optional[str] = None,
) -> dict:
    """
    Copy a parsed upload from the temp area to its durable location.

    The temp file is always left in place: the caller removes it with
    discard_temp_upload() once the record pointing at the durable copy is
    committed, or drops the copy with discard_stored_upload() if that commit fails.
    Returns {provider, key, path}; raises StorageError on failure.
    """
    if not temp_path or not os.path.exists(temp_path):
        raise StorageError(f"temp upload not found: {temp_path}")
    key = build_storage_key(
        clinic_id=clinic_id,
        supplier_id=supplier_id,
        invoice_date=invoice_date,
        invoice_no=invoice_no,
        original_name=original_name,
        upload_id=upload_id,
    )

    if storage_mode() == "s3":
        if not s3.s3_enabled():
            raise StorageError("S3 storage selected but S3_BUCKET is not configured")
        ext = os.path.splitext(original_name or temp_path)[1].lower()
        try:
            s3.put_file(key=key, file_path=temp_path, content_type=CONTENT_TYPES.get(ext, "application/octet-stream"))
        except Exception as e:
            raise StorageError(f"S3 upload failed: {e}") from e
        return {"provider": "s3", "key": key, "path": s3.object_url(key)}

    target = os.path.join(settings.upload_base_dir, *key.split("/"))
    try:
        os.makedirs(os.path.dirname(target), exist_ok=True)
        shutil.copy2(temp_path, target)
    except OSError as e:
        raise StorageError(f"local copy failed: {e}") from e
    return {"provider": "local", "key": key, "path": target}


def discard_temp_upload(temp_path: Optional[str]) -> None:
    if not temp_path:
        return
    try:
        os.remove(temp_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        _json_log("warning", "purchase_upload.temp_cleanup_failed", path=temp_path, error=str(e))


def discard_stored_upload(stored: Optional[dict]) -> None:
    """Best-effort removal of a durable copy whose record was never committed."""
    if not stored:
        return
    try:
        if stored.get("provider") == "s3":
            s3.delete_object(key=stored["key"])
        elif stored.get("path"):
            os.remove(stored["path"])
    except Exception as e:
        _json_log("warning", "purchase_upload.orphan_cleanup_failed", key=stored.get("key"), error=str(e))
