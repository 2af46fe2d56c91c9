from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Optional
from ..db import get_conn, set_clinic_context
from ..deps import get_clinic_id, require_permission
from ..importers.invoice_schema import normalize_tax_id

router = APIRouter(prefix="/suppliers", tags=["suppliers"])


class SupplierIn(BaseModel):
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    tax_id: Optional[str] = None
    notes: Optional[str] = None


class SupplierUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    tax_id: Optional[str] = None
    notes: Optional[str] = None


@router.get("", dependencies=[Depends(require_permission("purchases:read"))])
def list_suppliers(
    q: str = Query(""),
    limit: int = Query(50, ge=1, le=500),
    clinic_id: str = Depends(get_clinic_id),
):
    needle = (q or "").strip()
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, phone, email, address, tax_id, notes, created_at
                FROM suppliers
                WHERE clinic_id = %s
                  AND (%s = '' OR name ILIKE %s OR tax_id_norm = %s)
                ORDER BY lower(name)
                LIMIT %s
                """,
                (clinic_id, needle, f"%{needle}%", normalize_tax_id(needle), limit),
            )
            return {"suppliers": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("purchases:create"))])
def create_supplier(data: SupplierIn, clinic_id: str = Depends(get_clinic_id)):
    name = " ".join((data.name or "").split())
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    tax_id = (data.tax_id or "").strip() or None
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO suppliers (id, clinic_id, name, phone, email, address, tax_id, tax_id_norm, notes)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    clinic_id,
                    name,
                    (data.phone or "").strip() or None,
                    (data.email or "").strip() or None,
                    (data.address or "").strip() or None,
                    tax_id,
                    normalize_tax_id(tax_id),
                    (data.notes or "").strip() or None,
                ),
            )
            return {"id": cur.fetchone()["id"]}


@router.patch("/{supplier_id}", dependencies=[Depends(require_permission("purchases:create"))])
def update_supplier(supplier_id: str, data: SupplierUpdate, clinic_id: str = Depends(get_clinic_id)):
    fields = []
    params = []
    payload = data.model_dump(exclude_none=True)
    if "tax_id" in payload:
        payload["tax_id"] = (payload.get("tax_id") or "").strip() or None
        payload["tax_id_norm"] = normalize_tax_id(payload["tax_id"])
    for k, v in payload.items():
        fields.append(f"{k} = %s")
        params.append(v)
    if not fields:
        return {"ok": True}
    params.extend([clinic_id, supplier_id])
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE suppliers
                SET {', '.join(fields)}
                WHERE clinic_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="supplier not found")
            return {"ok": True}
