from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, UploadFile, File, Query
from pydantic import BaseModel, Field
from typing import List, Optional
from decimal import Decimal
from datetime import date, datetime, timezone
import json
import os
import sys
import uuid

from ..config import settings
from ..db import DATABASE_URL, get_conn, set_clinic_context
from ..deps import get_clinic_id, require_permission, get_current_user
from ..validation import PaymentMethod, PurchaseStatus, UploadStatus
from ..storage.purchase_uploads import temp_path_for
from .. import purchasing
from backend.workers.purchase_upload_parse_job import run_purchase_upload_parse

router = APIRouter(prefix="/purchases", tags=["purchases"])

ALLOWED_UPLOAD_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".webp", ".txt", ".md", ".json"}


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


class PurchaseItemIn(BaseModel):
    product_id: Optional[str] = None
    name: str
    quantity: Decimal
    unit_price: Decimal = Decimal("0")
    gst_percent: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None


class PurchaseDraftIn(BaseModel):
    supplier_id: Optional[str] = None
    invoice_no: str
    invoice_date: Optional[date] = None
    round_off: Decimal = Decimal("0")
    notes: Optional[str] = None
    items: List[PurchaseItemIn] = Field(default_factory=list)


class PurchaseDraftPatchIn(BaseModel):
    supplier_id: Optional[str] = None
    invoice_no: Optional[str] = None
    invoice_date: Optional[date] = None
    round_off: Optional[Decimal] = None
    notes: Optional[str] = None
    items: Optional[List[PurchaseItemIn]] = None


class PurchaseFromUploadIn(BaseModel):
    supplier_id: Optional[str] = None
    invoice_no: Optional[str] = None
    invoice_date: Optional[date] = None
    round_off: Optional[Decimal] = None
    notes: Optional[str] = None
    items: Optional[List[PurchaseItemIn]] = None
    create_and_receive: bool = False


class ReturnLineIn(BaseModel):
    purchase_item_id: str
    quantity: Decimal


class PurchaseReturnIn(BaseModel):
    items: List[ReturnLineIn]
    note: Optional[str] = None


class ManualReturnIn(BaseModel):
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    invoice_no: Optional[str] = None
    invoice_date: Optional[date] = None
    note: Optional[str] = None
    items: List[PurchaseItemIn]


class SupplierPaymentIn(BaseModel):
    supplier_id: Optional[str] = None
    purchase_id: Optional[str] = None
    method: PaymentMethod
    amount: Decimal
    payment_date: Optional[date] = None
    note: Optional[str] = None


def _items_payload(items: Optional[List[PurchaseItemIn]]) -> Optional[list]:
    if items is None:
        return None
    return [it.model_dump() for it in items]


# ---------------------------------------------------------------------------
# Uploads


UPLOAD_CHUNK_BYTES = 1024 * 1024


def _stream_to_temp(src, temp_path: str, max_mb: int) -> int:
    """Copy the request body to temp_path in chunks; nothing is kept if it is empty or over the cap."""
    limit = max_mb * 1024 * 1024
    size = 0
    try:
        with open(temp_path, "wb") as out:
            while True:
                chunk = src.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if size > limit:
                    raise HTTPException(status_code=413, detail=f"file too large (max {max_mb}MB)")
                out.write(chunk)
        if size == 0:
            raise HTTPException(status_code=400, detail="empty file")
    except Exception:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise
    return size


@router.post("/uploads", dependencies=[Depends(require_permission("purchases:create"))])
def upload_purchase_invoice(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    clinic_id: str = Depends(get_clinic_id),
    user=Depends(get_current_user),
):
    """
    Accept a supplier invoice file and return immediately with an UPLOADED record.
    Parsing runs in a background task; poll GET /purchases/uploads/{id}.
    """
    filename = (file.filename or "purchase-invoice").strip() or "purchase-invoice"
    ext = os.path.splitext(filename)[1].lower()
    if ext not in ALLOWED_UPLOAD_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"unsupported file type {ext or '(none)'}")
    content_type = (file.content_type or "application/octet-stream").strip() or "application/octet-stream"

    upload_id = str(uuid.uuid4())
    temp_path = temp_path_for(upload_id, filename)
    size = _stream_to_temp(file.file, temp_path, max(1, min(settings.upload_max_mb, 100)))

    try:
        with get_conn() as conn:
            set_clinic_context(conn, clinic_id)
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO purchase_uploads
                          (id, clinic_id, filename, content_type, stored_path, storage_provider, status, uploaded_by_user_id)
                        VALUES
                          (%s, %s, %s, %s, %s, 'temp', 'UPLOADED', %s)
                        RETURNING id, filename, content_type, status, created_at
                        """,
                        (upload_id, clinic_id, filename, content_type, temp_path, user["user_id"]),
                    )
                    row = cur.fetchone()
    except Exception:
        os.remove(temp_path)
        raise

    background_tasks.add_task(run_purchase_upload_parse, DATABASE_URL, clinic_id, upload_id)
    _json_log("info", "purchase_upload.received", clinic_id=clinic_id, upload_id=upload_id, size=size)
    return row


@router.get("/uploads", dependencies=[Depends(require_permission("purchases:read"))])
def list_purchase_uploads(
    status: Optional[UploadStatus] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    clinic_id: str = Depends(get_clinic_id),
):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, filename, content_type, status, provider, linked_purchase_id, storage_provider,
                       provider_meta, parse_started_at, parse_finished_at, cancelled_at, created_at
                FROM purchase_uploads
                WHERE clinic_id = %s
                  AND (%s::purchase_upload_status IS NULL OR status = %s::purchase_upload_status)
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (clinic_id, status, status, limit),
            )
            return {"uploads": cur.fetchall()}


@router.get("/uploads/{upload_id}", dependencies=[Depends(require_permission("purchases:read"))])
def get_purchase_upload(upload_id: str, clinic_id: str = Depends(get_clinic_id)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, filename, content_type, stored_path, storage_provider, status, provider, parsed_json,
                       linked_purchase_id, uploaded_by_user_id, provider_meta, parse_started_at,
                       parse_finished_at, cancelled_at, created_at, updated_at
                FROM purchase_uploads
                WHERE clinic_id = %s AND id = %s
                """,
                (clinic_id, upload_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="upload not found")
            return row


@router.post("/uploads/{upload_id}/cancel", dependencies=[Depends(require_permission("purchases:create"))])
def cancel_purchase_upload(upload_id: str, clinic_id: str = Depends(get_clinic_id)):
    """Only an upload that is still being parsed (and has no purchase yet) can be cancelled."""
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, status, linked_purchase_id
                    FROM purchase_uploads
                    WHERE clinic_id = %s AND id = %s
                    FOR UPDATE
                    """,
                    (clinic_id, upload_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="upload not found")
                if row["status"] != "UPLOADED":
                    raise HTTPException(status_code=409, detail=f"upload is already {row['status']}")
                if row.get("linked_purchase_id"):
                    raise HTTPException(status_code=409, detail="upload already has a purchase")
                cur.execute(
                    """
                    UPDATE purchase_uploads
                    SET status = 'CANCELLED', cancelled_at = now(), updated_at = now()
                    WHERE clinic_id = %s AND id = %s
                    RETURNING id, status, cancelled_at
                    """,
                    (clinic_id, upload_id),
                )
                out = cur.fetchone()
    _json_log("info", "purchase_upload.cancel_requested", clinic_id=clinic_id, upload_id=upload_id)
    return out


@router.post("/from-upload/{upload_id}", dependencies=[Depends(require_permission("purchases:create"))])
def create_purchase_from_upload(
    upload_id: str,
    data: PurchaseFromUploadIn,
    clinic_id: str = Depends(get_clinic_id),
    user=Depends(get_current_user),
):
    overrides = data.model_dump(exclude_unset=True, exclude={"items", "create_and_receive"})
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return purchasing.create_purchase_from_upload(
                    cur,
                    clinic_id,
                    upload_id,
                    overrides,
                    items=_items_payload(data.items),
                    receive=data.create_and_receive,
                    user_id=user["user_id"],
                )


# ---------------------------------------------------------------------------
# Payments


@router.post("/payments", dependencies=[Depends(require_permission("ledger:create"))])
def create_supplier_payment(data: SupplierPaymentIn, clinic_id: str = Depends(get_clinic_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return purchasing.record_supplier_payment(
                    cur,
                    clinic_id,
                    method=data.method,
                    amount=data.amount,
                    supplier_id=data.supplier_id,
                    purchase_id=data.purchase_id,
                    payment_date=data.payment_date,
                    note=data.note,
                    user_id=user["user_id"],
                )


# ---------------------------------------------------------------------------
# Purchases


@router.get("", dependencies=[Depends(require_permission("purchases:read"))])
def list_purchases(
    status: Optional[PurchaseStatus] = Query(None),
    supplier_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    clinic_id: str = Depends(get_clinic_id),
):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            return {
                "purchases": purchasing.list_purchases(
                    cur, clinic_id, status=status, supplier_id=supplier_id, limit=limit, offset=offset
                )
            }


@router.post("/drafts", dependencies=[Depends(require_permission("purchases:create"))])
def create_purchase_draft(data: PurchaseDraftIn, clinic_id: str = Depends(get_clinic_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                purchase_id = purchasing.create_draft_purchase(
                    cur,
                    clinic_id,
                    invoice_no=data.invoice_no,
                    items=_items_payload(data.items),
                    supplier_id=data.supplier_id,
                    invoice_date=data.invoice_date,
                    round_off=data.round_off,
                    notes=data.notes,
                    user_id=user["user_id"],
                )
                return purchasing.get_purchase(cur, clinic_id, purchase_id)


@router.post("/manual-return", dependencies=[Depends(require_permission("purchases:create"))])
def create_manual_return(data: ManualReturnIn, clinic_id: str = Depends(get_clinic_id), user=Depends(get_current_user)):
    """Goods returned to a supplier outside any received purchase (stock out, payable debited)."""
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return purchasing.record_manual_return(
                    cur,
                    clinic_id,
                    _items_payload(data.items),
                    supplier_id=data.supplier_id,
                    supplier_name=data.supplier_name,
                    invoice_no=data.invoice_no,
                    invoice_date=data.invoice_date,
                    note=data.note,
                    user_id=user["user_id"],
                )


@router.get("/{purchase_id}", dependencies=[Depends(require_permission("purchases:read"))])
def get_purchase(purchase_id: str, clinic_id: str = Depends(get_clinic_id)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            return purchasing.get_purchase(cur, clinic_id, purchase_id)


@router.patch("/{purchase_id}/draft", dependencies=[Depends(require_permission("purchases:update"))])
def update_purchase_draft(purchase_id: str, data: PurchaseDraftPatchIn, clinic_id: str = Depends(get_clinic_id)):
    patch = data.model_dump(exclude_unset=True, exclude={"items"})
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                purchasing.update_draft_purchase(cur, clinic_id, purchase_id, patch, _items_payload(data.items))
                return purchasing.get_purchase(cur, clinic_id, purchase_id)


@router.delete("/{purchase_id}", dependencies=[Depends(require_permission("purchases:delete"))])
def delete_purchase_draft(purchase_id: str, clinic_id: str = Depends(get_clinic_id)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                purchasing.delete_draft_purchase(cur, clinic_id, purchase_id)
                return {"ok": True}


@router.post("/{purchase_id}/receive", dependencies=[Depends(require_permission("purchases:update"))])
def receive_purchase(purchase_id: str, clinic_id: str = Depends(get_clinic_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return purchasing.receive_purchase(cur, clinic_id, purchase_id, user_id=user["user_id"])


@router.post("/{purchase_id}/return", dependencies=[Depends(require_permission("purchases:update"))])
def return_purchase(
    purchase_id: str,
    data: PurchaseReturnIn,
    clinic_id: str = Depends(get_clinic_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return purchasing.return_purchase(
                    cur,
                    clinic_id,
                    purchase_id,
                    [ln.model_dump() for ln in data.items],
                    note=data.note,
                    user_id=user["user_id"],
                )
