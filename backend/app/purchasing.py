from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from fastapi import HTTPException

from . import accounts
from .config import settings
from .importers.invoice_schema import NormalizedInvoice, normalize_tax_id
from .journal_utils import q_amount, q_qty, to_decimal
from .ledger_posting import (
    effective_tax_rate,
    payment_postings,
    post_entries,
    prorate_return_tax,
    purchase_receipt_postings,
    purchase_return_postings,
)
from .payment_guards import assert_not_overpaid
from .stock import apply_stock_change, create_batch, lock_products

HEADER_FIELDS = ("supplier_id", "invoice_no", "invoice_date", "round_off", "notes")


def synthetic_batch_number() -> str:
    return f"AUTO-{uuid.uuid4().hex[:8].upper()}"


def price_items(items: Iterable[dict]) -> list[dict]:
    """
    Server-side pricing of purchase lines: amount = quantity x unit_price and, when a GST
    percent is present, tax_amount = amount x gst_percent / 100. Client amounts are ignored.
    """
    out = []
    for idx, it in enumerate(items):
        name = " ".join(str(it.get("name") or "").split())
        if not name:
            raise HTTPException(status_code=400, detail=f"items[{idx}]: name is required")
        qty = q_qty(it.get("quantity"))
        if qty <= 0:
            raise HTTPException(status_code=400, detail=f"items[{idx}]: quantity must be > 0")
        unit_price = q_amount(it.get("unit_price"))
        if unit_price < 0:
            raise HTTPException(status_code=400, detail=f"items[{idx}]: unit_price must be >= 0")
        gst = it.get("gst_percent")
        gst = None if gst is None else to_decimal(gst)
        if gst is not None and gst < 0:
            raise HTTPException(status_code=400, detail=f"items[{idx}]: gst_percent must be >= 0")
        amount = q_amount(qty * unit_price)
        if gst is not None:
            tax = q_amount(amount * gst / Decimal("100"))
        else:
            tax = q_amount(it.get("tax_amount"))
            if tax < 0:
                raise HTTPException(status_code=400, detail=f"items[{idx}]: tax_amount must be >= 0")
        out.append(
            {
                "product_id": str(it["product_id"]) if it.get("product_id") else None,
                "name": name,
                "quantity": qty,
                "unit_price": unit_price,
                "gst_percent": gst,
                "tax_amount": tax,
                "amount": amount,
                "batch_number": (it.get("batch_number") or None),
                "expiry_date": it.get("expiry_date"),
            }
        )
    return out


def compute_totals(items: Iterable[dict], round_off=0) -> dict:
    subtotal = Decimal("0")
    tax = Decimal("0")
    for it in items:
        subtotal += q_amount(it.get("amount"))
        tax += q_amount(it.get("tax_amount"))
    ro = q_amount(round_off)
    return {
        "subtotal": q_amount(subtotal),
        "tax_amount": q_amount(tax),
        "round_off": ro,
        "total_amount": q_amount(subtotal + tax + ro),
    }


def find_product_by_name(cur, clinic_id: str, name: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, name
        FROM pharmacy_products
        WHERE clinic_id = %s AND lower(name) = lower(%s)
        ORDER BY created_at ASC
        LIMIT 1
        """,
        (clinic_id, name),
    )
    return cur.fetchone()


def draft_items_from_invoice(cur, clinic_id: str, invoice: NormalizedInvoice, warnings: list[str]) -> list[dict]:
    items = []
    for idx, line in enumerate(invoice.items):
        qty = line.quantity
        if qty is None or qty <= 0:
            warnings.append(f"line {idx + 1} ({line.description}): missing quantity, defaulted to 1")
            qty = Decimal("1")
        unit_price = line.unit_price
        if unit_price is None or unit_price < 0:
            warnings.append(f"line {idx + 1} ({line.description}): missing unit price, defaulted to 0")
            unit_price = Decimal("0")
        product = find_product_by_name(cur, clinic_id, line.description)
        items.append(
            {
                "product_id": str(product["id"]) if product else None,
                "name": line.description,
                "quantity": qty,
                "unit_price": unit_price,
                "gst_percent": line.gst_percent,
                "tax_amount": line.tax_amount,
                "batch_number": line.batch_number or synthetic_batch_number(),
                "expiry_date": line.expiry_date,
            }
        )
    return items


def _insert_items(cur, clinic_id: str, purchase_id: str, priced: list[dict]) -> None:
    for it in priced:
        cur.execute(
            """
            INSERT INTO purchase_items
              (id, clinic_id, purchase_id, product_id, name, quantity, unit_price, gst_percent,
               tax_amount, amount, batch_number, expiry_date, return_of_item_id)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                clinic_id,
                purchase_id,
                it.get("product_id"),
                it["name"],
                it["quantity"],
                it["unit_price"],
                it.get("gst_percent"),
                it["tax_amount"],
                it["amount"],
                it.get("batch_number"),
                it.get("expiry_date"),
                it.get("return_of_item_id"),
            ),
        )


def load_items(cur, clinic_id: str, purchase_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT id, product_id, name, quantity, unit_price, gst_percent, tax_amount, amount,
               batch_number, expiry_date, return_of_item_id
        FROM purchase_items
        WHERE clinic_id = %s AND purchase_id = %s
        ORDER BY created_at ASC, id ASC
        """,
        (clinic_id, purchase_id),
    )
    return cur.fetchall()


def lock_purchase(cur, clinic_id: str, purchase_id: str) -> dict:
    cur.execute(
        """
        SELECT p.id, p.supplier_id, p.invoice_no, p.invoice_date, p.status, p.subtotal, p.tax_amount,
               p.round_off, p.total_amount, p.notes, p.return_of_purchase_id, p.source_upload_id,
               s.name AS supplier_name
        FROM purchases p
        LEFT JOIN suppliers s ON s.id = p.supplier_id
        WHERE p.clinic_id = %s AND p.id = %s
        FOR UPDATE OF p
        """,
        (clinic_id, purchase_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="purchase not found")
    return row


def get_purchase(cur, clinic_id: str, purchase_id: str) -> dict:
    cur.execute(
        """
        SELECT p.id, p.supplier_id, s.name AS supplier_name, p.invoice_no, p.invoice_date, p.status,
               p.subtotal, p.tax_amount, p.round_off, p.total_amount, p.notes, p.return_of_purchase_id,
               p.source_upload_id, p.received_at, p.created_at, p.updated_at
        FROM purchases p
        LEFT JOIN suppliers s ON s.id = p.supplier_id
        WHERE p.clinic_id = %s AND p.id = %s
        """,
        (clinic_id, purchase_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="purchase not found")
    return {**row, "items": load_items(cur, clinic_id, purchase_id)}


def list_purchases(
    cur,
    clinic_id: str,
    *,
    status: Optional[str] = None,
    supplier_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    sql = """
        SELECT p.id, p.supplier_id, s.name AS supplier_name, p.invoice_no, p.invoice_date, p.status,
               p.subtotal, p.tax_amount, p.round_off, p.total_amount, p.return_of_purchase_id,
               p.source_upload_id, p.received_at, p.created_at
        FROM purchases p
        LEFT JOIN suppliers s ON s.id = p.supplier_id
        WHERE p.clinic_id = %s
    """
    params: list[Any] = [clinic_id]
    if status:
        sql += " AND p.status = %s::purchase_status"
        params.append(status)
    if supplier_id:
        sql += " AND p.supplier_id = %s"
        params.append(supplier_id)
    sql += " ORDER BY p.created_at DESC, p.id DESC LIMIT %s OFFSET %s"
    params.extend([max(1, min(int(limit or 50), 500)), max(0, int(offset or 0))])
    cur.execute(sql, params)
    return cur.fetchall()


def create_draft_purchase(
    cur,
    clinic_id: str,
    *,
    invoice_no: str,
    items: Iterable[dict],
    supplier_id: Optional[str] = None,
    invoice_date: Optional[date] = None,
    round_off=0,
    notes: Optional[str] = None,
    source_upload_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    invoice_no = (invoice_no or "").strip()
    if not invoice_no:
        raise HTTPException(status_code=400, detail="invoice_no is required")
    priced = price_items(items)
    totals = compute_totals(priced, round_off)
    cur.execute(
        """
        INSERT INTO purchases
          (id, clinic_id, supplier_id, invoice_no, invoice_date, status, subtotal, tax_amount,
           round_off, total_amount, notes, source_upload_id, created_by_user_id)
        VALUES
          (gen_random_uuid(), %s, %s, %s, COALESCE(%s, current_date), 'DRAFT', %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            clinic_id,
            supplier_id,
            invoice_no,
            invoice_date,
            totals["subtotal"],
            totals["tax_amount"],
            totals["round_off"],
            totals["total_amount"],
            notes,
            source_upload_id,
            user_id,
        ),
    )
    purchase_id = str(cur.fetchone()["id"])
    _insert_items(cur, clinic_id, purchase_id, priced)
    return purchase_id


def update_draft_purchase(
    cur,
    clinic_id: str,
    purchase_id: str,
    patch: dict,
    items: Optional[Iterable[dict]] = None,
) -> None:
    """Patch header fields and/or replace all lines of a DRAFT; totals are recomputed from the lines."""
    p = lock_purchase(cur, clinic_id, purchase_id)
    if p["status"] != "DRAFT":
        raise HTTPException(status_code=409, detail="only draft purchases can be edited")

    sets = []
    params: list[Any] = []
    for k in HEADER_FIELDS:
        if k not in patch or k == "round_off":
            continue
        v = patch[k]
        if k == "invoice_no":
            v = (v or "").strip()
            if not v:
                raise HTTPException(status_code=400, detail="invoice_no is required")
        sets.append(f"{k} = %s")
        params.append(v)

    if items is not None:
        priced = price_items(items)
        cur.execute("DELETE FROM purchase_items WHERE clinic_id = %s AND purchase_id = %s", (clinic_id, purchase_id))
        _insert_items(cur, clinic_id, purchase_id, priced)
    else:
        priced = load_items(cur, clinic_id, purchase_id)

    round_off = patch["round_off"] if patch.get("round_off") is not None else p["round_off"]
    totals = compute_totals(priced, round_off)
    for k in ("subtotal", "tax_amount", "round_off", "total_amount"):
        sets.append(f"{k} = %s")
        params.append(totals[k])
    sets.append("updated_at = now()")
    cur.execute(
        f"UPDATE purchases SET {', '.join(sets)} WHERE clinic_id = %s AND id = %s",
        (*params, clinic_id, purchase_id),
    )


def delete_draft_purchase(cur, clinic_id: str, purchase_id: str) -> None:
    p = lock_purchase(cur, clinic_id, purchase_id)
    if p["status"] != "DRAFT":
        raise HTTPException(status_code=409, detail="only draft purchases can be deleted")
    cur.execute("DELETE FROM purchase_items WHERE clinic_id = %s AND purchase_id = %s", (clinic_id, purchase_id))
    cur.execute("DELETE FROM purchases WHERE clinic_id = %s AND id = %s", (clinic_id, purchase_id))


def receive_purchase(
    cur,
    clinic_id: str,
    purchase_id: str,
    *,
    user_id: Optional[str] = None,
    unlinked_policy: Optional[str] = None,
) -> dict:
    """
    DRAFT -> RECEIVED: batches, stock movements and the purchase journal in the caller's
    transaction. Every check runs before the first write, so a rejected receive leaves
    nothing behind.
    """
    p = lock_purchase(cur, clinic_id, purchase_id)
    if p["status"] == "RECEIVED":
        raise HTTPException(status_code=409, detail="purchase already received")
    if p["status"] != "DRAFT":
        raise HTTPException(status_code=409, detail="only draft purchases can be received")

    items = load_items(cur, clinic_id, purchase_id)
    if not items:
        raise HTTPException(status_code=400, detail="purchase has no items")
    for it in items:
        if q_qty(it["quantity"]) <= 0:
            raise HTTPException(status_code=400, detail=f"invalid quantity for {it['name']}")
        if q_amount(it["unit_price"]) < 0:
            raise HTTPException(status_code=400, detail=f"invalid unit price for {it['name']}")

    policy = (unlinked_policy or settings.unlinked_item_policy or "ledger_only").lower()
    unlinked = [it["name"] for it in items if not it.get("product_id")]
    if unlinked and policy == "reject":
        raise HTTPException(status_code=409, detail=f"items without a linked product: {', '.join(unlinked)}")

    totals = compute_totals(items, p["round_off"])
    products = lock_products(cur, clinic_id, [it["product_id"] for it in items if it.get("product_id")])

    touched: dict[str, dict] = {}
    for it in items:
        pid = it.get("product_id")
        if not pid:
            continue
        product = products[str(pid)]
        batch_id = create_batch(
            cur,
            clinic_id,
            pid,
            it["quantity"],
            it["unit_price"],
            it.get("batch_number") or synthetic_batch_number(),
            it.get("expiry_date"),
        )
        movement = apply_stock_change(
            cur,
            clinic_id,
            product,
            it["quantity"],
            "PURCHASE",
            batch_id=batch_id,
            reference=p["invoice_no"],
            ref_type="PURCHASE",
            ref_id=purchase_id,
            user_id=user_id,
            purchase_price=it["unit_price"],
        )
        touched[str(pid)] = movement["product"]

    entries: list[dict] = []
    postings = purchase_receipt_postings(
        totals["subtotal"],
        totals["tax_amount"],
        totals["round_off"],
        totals["total_amount"],
        accounts.payable_account_name(p.get("supplier_name")),
    )
    if postings:
        entries = post_entries(
            cur,
            clinic_id,
            postings,
            ref_type="PURCHASE",
            ref_id=purchase_id,
            note=f"Purchase {p['invoice_no']}",
            user_id=user_id,
        )

    cur.execute(
        """
        UPDATE purchases
        SET status = 'RECEIVED', subtotal = %s, tax_amount = %s, total_amount = %s,
            received_at = now(), updated_at = now()
        WHERE clinic_id = %s AND id = %s
        """,
        (totals["subtotal"], totals["tax_amount"], totals["total_amount"], clinic_id, purchase_id),
    )
    return {
        "id": purchase_id,
        "status": "RECEIVED",
        **totals,
        "products": list(touched.values()),
        "unlinked_items": unlinked,
        "ledger_entries": entries,
    }


def returned_quantities(cur, clinic_id: str, purchase_id: str) -> dict[str, Decimal]:
    cur.execute(
        """
        SELECT ri.return_of_item_id, COALESCE(SUM(ri.quantity), 0) AS qty
        FROM purchase_items ri
        JOIN purchases r ON r.id = ri.purchase_id
        WHERE r.clinic_id = %s AND r.return_of_purchase_id = %s AND ri.return_of_item_id IS NOT NULL
        GROUP BY ri.return_of_item_id
        """,
        (clinic_id, purchase_id),
    )
    return {str(r["return_of_item_id"]): q_qty(r["qty"]) for r in cur.fetchall()}


def return_purchase(
    cur,
    clinic_id: str,
    purchase_id: str,
    lines: Iterable[dict],
    *,
    note: Optional[str] = None,
    user_id: Optional[str] = None,
) -> dict:
    """
    Return part of a RECEIVED purchase. Tax is prorated at the original purchase's
    effective rate (tax / subtotal); stock never goes below zero.
    """
    p = lock_purchase(cur, clinic_id, purchase_id)
    if p["status"] != "RECEIVED":
        raise HTTPException(status_code=409, detail="only received purchases can be returned")

    requested: dict[str, Decimal] = {}
    for ln in lines:
        item_id = str(ln.get("purchase_item_id") or "").strip()
        qty = q_qty(ln.get("quantity"))
        if not item_id:
            raise HTTPException(status_code=400, detail="purchase_item_id is required")
        if qty <= 0:
            raise HTTPException(status_code=400, detail="return quantity must be > 0")
        requested[item_id] = requested.get(item_id, Decimal("0")) + qty
    if not requested:
        raise HTTPException(status_code=400, detail="no items to return")

    items = {str(it["id"]): it for it in load_items(cur, clinic_id, purchase_id)}
    already = returned_quantities(cur, clinic_id, purchase_id)
    for item_id, qty in requested.items():
        orig = items.get(item_id)
        if not orig:
            raise HTTPException(status_code=404, detail=f"purchase item not found: {item_id}")
        remaining = q_qty(orig["quantity"]) - already.get(item_id, Decimal("0"))
        if qty > remaining:
            raise HTTPException(
                status_code=409,
                detail=f"return quantity for {orig['name']} exceeds remaining {remaining}",
            )

    rate = effective_tax_rate(p["subtotal"], p["tax_amount"])
    ret_items = []
    for item_id, qty in requested.items():
        orig = items[item_id]
        base = q_amount(qty * q_amount(orig["unit_price"]))
        ret_items.append(
            {
                "product_id": str(orig["product_id"]) if orig.get("product_id") else None,
                "name": orig["name"],
                "quantity": qty,
                "unit_price": q_amount(orig["unit_price"]),
                "gst_percent": orig.get("gst_percent"),
                "tax_amount": prorate_return_tax(base, rate),
                "amount": base,
                "batch_number": orig.get("batch_number"),
                "expiry_date": orig.get("expiry_date"),
                "return_of_item_id": item_id,
            }
        )
    totals = compute_totals(ret_items)

    cur.execute(
        """
        INSERT INTO purchases
          (id, clinic_id, supplier_id, invoice_no, invoice_date, status, subtotal, tax_amount,
           round_off, total_amount, notes, return_of_purchase_id, created_by_user_id)
        VALUES
          (gen_random_uuid(), %s, %s, %s, current_date, 'RETURNED', %s, %s, 0, %s, %s, %s, %s)
        RETURNING id, invoice_no, invoice_date, status, created_at
        """,
        (
            clinic_id,
            p.get("supplier_id"),
            f"{p['invoice_no']}-RET",
            totals["subtotal"],
            totals["tax_amount"],
            totals["total_amount"],
            note,
            purchase_id,
            user_id,
        ),
    )
    ret = cur.fetchone()
    return_id = str(ret["id"])
    _insert_items(cur, clinic_id, return_id, ret_items)

    products = lock_products(cur, clinic_id, [it["product_id"] for it in ret_items if it.get("product_id")])
    touched: dict[str, dict] = {}
    for it in ret_items:
        pid = it.get("product_id")
        if not pid:
            continue
        movement = apply_stock_change(
            cur,
            clinic_id,
            products[pid],
            -it["quantity"],
            "RETURN",
            reference=f"{p['invoice_no']}-RET",
            ref_type="RETURN",
            ref_id=return_id,
            note=note,
            user_id=user_id,
            clamp=True,
        )
        touched[pid] = movement["product"]

    entries = post_entries(
        cur,
        clinic_id,
        purchase_return_postings(
            totals["subtotal"], totals["tax_amount"], accounts.payable_account_name(p.get("supplier_name"))
        ),
        ref_type="RETURN",
        ref_id=return_id,
        note=f"Return against {p['invoice_no']}",
        user_id=user_id,
    ) if totals["total_amount"] > 0 else []

    return {
        "id": return_id,
        "return_of_purchase_id": purchase_id,
        "status": "RETURNED",
        "invoice_no": ret["invoice_no"],
        **totals,
        "items": ret_items,
        "products": list(touched.values()),
        "ledger_entries": entries,
    }


def _supplier_for_manual_entry(cur, clinic_id: str, supplier_id: Optional[str], supplier_name: Optional[str]):
    """(supplier_id, name, name_to_create). A supplier given only by name is created on first use."""
    if supplier_id:
        cur.execute("SELECT id, name FROM suppliers WHERE clinic_id = %s AND id = %s", (clinic_id, supplier_id))
        s = cur.fetchone()
        if not s:
            raise HTTPException(status_code=404, detail="supplier not found")
        return str(s["id"]), s["name"], None
    name = " ".join(str(supplier_name or "").split())
    if not name:
        return None, None, None
    cur.execute(
        "SELECT id, name FROM suppliers WHERE clinic_id = %s AND lower(name) = lower(%s) ORDER BY created_at LIMIT 1",
        (clinic_id, name),
    )
    s = cur.fetchone()
    if s:
        return str(s["id"]), s["name"], None
    return None, name, name


def record_manual_return(
    cur,
    clinic_id: str,
    items: Iterable[dict],
    *,
    supplier_id: Optional[str] = None,
    supplier_name: Optional[str] = None,
    invoice_no: Optional[str] = None,
    invoice_date: Optional[date] = None,
    note: Optional[str] = None,
    user_id: Optional[str] = None,
    unlinked_policy: Optional[str] = None,
) -> dict:
    """
    Goods sent back to a supplier without a received purchase to return against.

    Lines are priced like a draft (tax from gst_percent), stock is reduced with a
    RETURN movement clamped at zero, and the payable is debited against Inventory
    and GST Input. All lookups and checks run before the first write.
    """
    priced = price_items(items)
    if not priced:
        raise HTTPException(status_code=400, detail="at least one item is required")

    for it in priced:
        if not it.get("product_id"):
            match = find_product_by_name(cur, clinic_id, it["name"])
            if match:
                it["product_id"] = str(match["id"])
    policy = (unlinked_policy or settings.unlinked_item_policy or "ledger_only").lower()
    unlinked = [it["name"] for it in priced if not it.get("product_id")]
    if unlinked and policy == "reject":
        raise HTTPException(status_code=409, detail=f"items without a linked product: {', '.join(unlinked)}")

    supplier_id, supplier_label, new_supplier = _supplier_for_manual_entry(cur, clinic_id, supplier_id, supplier_name)
    products = lock_products(cur, clinic_id, [it["product_id"] for it in priced if it.get("product_id")])
    totals = compute_totals(priced)

    if new_supplier:
        cur.execute(
            "INSERT INTO suppliers (id, clinic_id, name) VALUES (gen_random_uuid(), %s, %s) RETURNING id",
            (clinic_id, new_supplier),
        )
        supplier_id = str(cur.fetchone()["id"])

    invoice_no = (invoice_no or "").strip() or f"MAN-RET-{datetime.now(timezone.utc):%Y%m%d%H%M%S}"
    cur.execute(
        """
        INSERT INTO purchases
          (id, clinic_id, supplier_id, invoice_no, invoice_date, status, subtotal, tax_amount,
           round_off, total_amount, notes, created_by_user_id)
        VALUES
          (gen_random_uuid(), %s, %s, %s, COALESCE(%s, current_date), 'RETURNED', %s, %s, 0, %s, %s, %s)
        RETURNING id, invoice_no, invoice_date, status, created_at
        """,
        (
            clinic_id,
            supplier_id,
            invoice_no,
            invoice_date,
            totals["subtotal"],
            totals["tax_amount"],
            totals["total_amount"],
            note,
            user_id,
        ),
    )
    ret = cur.fetchone()
    return_id = str(ret["id"])
    _insert_items(cur, clinic_id, return_id, priced)

    touched: dict[str, dict] = {}
    for it in priced:
        pid = it.get("product_id")
        if not pid:
            continue
        movement = apply_stock_change(
            cur,
            clinic_id,
            products[pid],
            -it["quantity"],
            "RETURN",
            reference=f"Manual return {invoice_no}",
            ref_type="RETURN",
            ref_id=return_id,
            note=note,
            user_id=user_id,
            clamp=True,
        )
        touched[pid] = movement["product"]

    entries = post_entries(
        cur,
        clinic_id,
        purchase_return_postings(totals["subtotal"], totals["tax_amount"], accounts.payable_account_name(supplier_label)),
        ref_type="RETURN",
        ref_id=return_id,
        note=f"Manual return {invoice_no}",
        user_id=user_id,
    ) if totals["total_amount"] > 0 else []

    return {
        "id": return_id,
        "status": "RETURNED",
        "supplier_id": supplier_id,
        "invoice_no": ret["invoice_no"],
        **totals,
        "items": priced,
        "products": list(touched.values()),
        "unlinked_items": unlinked,
        "ledger_entries": entries,
    }


def record_supplier_payment(
    cur,
    clinic_id: str,
    *,
    method: str,
    amount,
    supplier_id: Optional[str] = None,
    purchase_id: Optional[str] = None,
    payment_date: Optional[date] = None,
    note: Optional[str] = None,
    user_id: Optional[str] = None,
) -> dict:
    amount = q_amount(amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")

    if purchase_id:
        p = lock_purchase(cur, clinic_id, purchase_id)
        if p["status"] != "RECEIVED":
            raise HTTPException(status_code=409, detail="payments can only be made against received purchases")
        if supplier_id and p.get("supplier_id") and str(p["supplier_id"]) != str(supplier_id):
            raise HTTPException(status_code=400, detail="supplier does not match purchase")
        supplier_id = str(p["supplier_id"]) if p.get("supplier_id") else supplier_id
        supplier_name = p.get("supplier_name")
        cur.execute(
            """
            SELECT
              (SELECT COALESCE(SUM(total_amount), 0) FROM purchases
               WHERE clinic_id = %s AND return_of_purchase_id = %s) AS returned,
              (SELECT COALESCE(SUM(amount), 0) FROM supplier_payments
               WHERE clinic_id = %s AND purchase_id = %s) AS paid
            """,
            (clinic_id, purchase_id, clinic_id, purchase_id),
        )
        sums = cur.fetchone() or {}
        assert_not_overpaid(
            total=to_decimal(p["total_amount"]),
            returned=to_decimal(sums.get("returned")),
            paid=to_decimal(sums.get("paid")),
            amount=amount,
        )
    elif supplier_id:
        cur.execute("SELECT id, name FROM suppliers WHERE clinic_id = %s AND id = %s", (clinic_id, supplier_id))
        s = cur.fetchone()
        if not s:
            raise HTTPException(status_code=404, detail="supplier not found")
        supplier_name = s["name"]
    else:
        raise HTTPException(status_code=400, detail="supplier_id or purchase_id is required")

    payable = accounts.payable_account_name(supplier_name)
    postings = payment_postings(amount, method, payable)
    cur.execute(
        """
        INSERT INTO supplier_payments
          (id, clinic_id, supplier_id, purchase_id, method, amount, payment_date, note, created_by_user_id)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, COALESCE(%s, current_date), %s, %s)
        RETURNING id, supplier_id, purchase_id, method, amount, payment_date, note, created_at
        """,
        (clinic_id, supplier_id, purchase_id, method, amount, payment_date, note, user_id),
    )
    payment = cur.fetchone()
    entries = post_entries(
        cur,
        clinic_id,
        postings,
        ref_type="PAYMENT",
        ref_id=str(payment["id"]),
        note=note or f"Payment to {supplier_name or 'supplier'}",
        user_id=user_id,
    )
    return {"payment": payment, "ledger_entries": entries}


def create_purchase_from_upload(
    cur,
    clinic_id: str,
    upload_id: str,
    overrides: dict,
    *,
    items: Optional[list[dict]] = None,
    receive: bool = False,
    user_id: Optional[str] = None,
) -> dict:
    """
    Confirm a parsed upload as a purchase draft (optionally receiving it in the same
    transaction). Reuses the draft the worker linked; a FAILED upload needs manual items.
    """
    cur.execute(
        """
        SELECT id, status, parsed_json, linked_purchase_id
        FROM purchase_uploads
        WHERE clinic_id = %s AND id = %s
        FOR UPDATE
        """,
        (clinic_id, upload_id),
    )
    up = cur.fetchone()
    if not up:
        raise HTTPException(status_code=404, detail="upload not found")
    if up["status"] == "CANCELLED":
        raise HTTPException(status_code=409, detail="upload was cancelled")
    if up["status"] == "UPLOADED":
        raise HTTPException(status_code=409, detail="upload is still being parsed")
    if up["status"] == "FAILED" and not items:
        raise HTTPException(status_code=409, detail="upload failed to parse; items are required")

    warnings: list[str] = []
    if up.get("linked_purchase_id"):
        purchase_id = str(up["linked_purchase_id"])
        existing = lock_purchase(cur, clinic_id, purchase_id)
        if existing["status"] != "DRAFT":
            raise HTTPException(status_code=409, detail="purchase already received")
        update_draft_purchase(cur, clinic_id, purchase_id, overrides, items)
    else:
        invoice = None
        payload = up.get("parsed_json") or {}
        if isinstance(payload, dict) and isinstance(payload.get("invoice"), dict):
            invoice = NormalizedInvoice.model_validate(payload["invoice"])
        if items is None:
            items = draft_items_from_invoice(cur, clinic_id, invoice, warnings) if invoice else []
        supplier_id = overrides.get("supplier_id")
        if not supplier_id and invoice is not None and normalize_tax_id(invoice.seller.tax_id):
            cur.execute(
                "SELECT id FROM suppliers WHERE clinic_id = %s AND tax_id_norm = %s",
                (clinic_id, normalize_tax_id(invoice.seller.tax_id)),
            )
            s = cur.fetchone()
            supplier_id = str(s["id"]) if s else None
        invoice_no = overrides.get("invoice_no") or (invoice.invoice_no if invoice else None)
        purchase_id = create_draft_purchase(
            cur,
            clinic_id,
            invoice_no=invoice_no or f"UPLOAD-{str(upload_id)[:8].upper()}",
            items=items,
            supplier_id=supplier_id,
            invoice_date=overrides.get("invoice_date") or (invoice.invoice_date if invoice else None),
            round_off=overrides.get("round_off") if overrides.get("round_off") is not None else (
                invoice.round_off if invoice else 0
            ),
            notes=overrides.get("notes"),
            source_upload_id=upload_id,
            user_id=user_id,
        )
        cur.execute(
            "UPDATE purchase_uploads SET linked_purchase_id = %s, updated_at = now() WHERE clinic_id = %s AND id = %s",
            (purchase_id, clinic_id, upload_id),
        )

    result: dict[str, Any] = {"id": purchase_id, "status": "DRAFT", "warnings": warnings}
    if receive:
        result = {**receive_purchase(cur, clinic_id, purchase_id, user_id=user_id), "warnings": warnings}
    return result
