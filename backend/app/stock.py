from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from fastapi import HTTPException

from .journal_utils import q_amount, q_qty, to_decimal
from .ledger_posting import post_entries, stock_adjustment_postings

INBOUND_ADJUSTMENT_TYPES = {"ADJUSTMENT", "PURCHASE"}
OUTBOUND_ADJUSTMENT_TYPES = {"ADJUSTMENT", "SALE", "EXPIRED", "DAMAGED"}


def lock_products(cur, clinic_id: str, product_ids: Iterable[str]) -> dict[str, dict]:
    """
    Lock every product an operation touches, in id order.

    One ordering for every writer means two receives over overlapping products
    queue behind each other instead of deadlocking.
    """
    ids = sorted({str(p) for p in product_ids if p})
    if not ids:
        return {}
    cur.execute(
        """
        SELECT id, name, quantity, purchase_price, selling_price
        FROM pharmacy_products
        WHERE clinic_id = %s AND id = ANY(%s::uuid[])
        ORDER BY id
        FOR UPDATE
        """,
        (clinic_id, ids),
    )
    rows = {str(r["id"]): r for r in cur.fetchall()}
    missing = [i for i in ids if i not in rows]
    if missing:
        raise HTTPException(status_code=404, detail=f"product not found: {missing[0]}")
    return rows


def create_batch(
    cur,
    clinic_id: str,
    product_id: str,
    quantity,
    cost_price,
    batch_number: Optional[str],
    expiry_date: Optional[date],
) -> str:
    cur.execute(
        """
        INSERT INTO stock_batches (id, clinic_id, product_id, quantity, cost_price, batch_number, expiry_date)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (clinic_id, product_id, q_qty(quantity), q_amount(cost_price), batch_number, expiry_date),
    )
    return str(cur.fetchone()["id"])


def apply_stock_change(
    cur,
    clinic_id: str,
    product: dict,
    change,
    movement_type: str,
    *,
    batch_id: Optional[str] = None,
    reference: Optional[str] = None,
    ref_type: Optional[str] = None,
    ref_id: Optional[str] = None,
    note: Optional[str] = None,
    user_id: Optional[str] = None,
    clamp: bool = False,
    purchase_price=None,
) -> dict:
    """
    Move a locked product's quantity and append the audit rows.

    The history row records the delta actually applied, so with `clamp=True`
    (returns) a change larger than the stock on hand still satisfies
    new_qty = previous_qty + quantity.
    """
    prev = q_qty(product["quantity"])
    new = prev + q_qty(change)
    if new < 0:
        if not clamp:
            raise HTTPException(status_code=409, detail=f"insufficient stock for {product.get('name') or product['id']}")
        new = Decimal("0.000")
    applied = new - prev

    cur.execute(
        """
        UPDATE pharmacy_products
        SET quantity = %s,
            purchase_price = COALESCE(%s, purchase_price),
            updated_at = now()
        WHERE clinic_id = %s AND id = %s
        RETURNING id, name, quantity, purchase_price, selling_price
        """,
        (new, None if purchase_price is None else q_amount(purchase_price), clinic_id, product["id"]),
    )
    updated = cur.fetchone()
    cur.execute(
        """
        INSERT INTO stock_history
          (id, clinic_id, product_id, batch_id, type, quantity, previous_qty, new_qty, reference, notes, created_by)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s::stock_movement_type, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (clinic_id, product["id"], batch_id, movement_type, applied, prev, new, reference, note, user_id),
    )
    history_id = str(cur.fetchone()["id"])
    cur.execute(
        """
        INSERT INTO stock_transactions (id, clinic_id, product_id, change_qty, type, ref_type, ref_id, note)
        VALUES (gen_random_uuid(), %s, %s, %s, %s::stock_movement_type, %s, %s, %s)
        """,
        (clinic_id, product["id"], applied, movement_type, ref_type, ref_id, note),
    )

    product["quantity"] = new
    return {
        "product_id": str(product["id"]),
        "history_id": history_id,
        "previous_qty": prev,
        "new_qty": new,
        "applied": applied,
        "product": updated or dict(product),
    }


def adjust_stock(
    cur,
    clinic_id: str,
    product_id: str,
    quantity,
    *,
    movement_type: str = "ADJUSTMENT",
    unit_cost=None,
    batch_number: Optional[str] = None,
    expiry_date: Optional[date] = None,
    note: Optional[str] = None,
    user_id: Optional[str] = None,
) -> dict:
    qty = q_qty(quantity)
    if qty == 0:
        raise HTTPException(status_code=400, detail="quantity must be non-zero")
    movement_type = (movement_type or "ADJUSTMENT").upper()
    allowed = INBOUND_ADJUSTMENT_TYPES if qty > 0 else OUTBOUND_ADJUSTMENT_TYPES
    if movement_type not in allowed:
        raise HTTPException(status_code=400, detail=f"{movement_type} cannot move stock in this direction")

    product = lock_products(cur, clinic_id, [product_id])[str(product_id)]
    cost = to_decimal(unit_cost) if unit_cost is not None else to_decimal(product.get("purchase_price"))
    if cost < 0:
        raise HTTPException(status_code=400, detail="unit_cost must be >= 0")

    batch_id = None
    if qty > 0:
        batch_id = create_batch(cur, clinic_id, product_id, qty, cost, batch_number, expiry_date)
    movement = apply_stock_change(
        cur,
        clinic_id,
        product,
        qty,
        movement_type,
        batch_id=batch_id,
        reference=note,
        ref_type="ADJUSTMENT",
        note=note,
        user_id=user_id,
    )

    entries = []
    postings = stock_adjustment_postings(q_amount(movement["applied"] * cost))
    if postings:
        entries = post_entries(
            cur,
            clinic_id,
            postings,
            ref_type="ADJUSTMENT",
            ref_id=movement["history_id"],
            note=note or f"Stock {movement_type.lower()}: {product.get('name')}",
            user_id=user_id,
        )
    return {"product": movement["product"], "movement": movement, "ledger_entries": entries}


def list_stock_history(cur, clinic_id: str, product_id: Optional[str] = None, limit: int = 100) -> list[dict]:
    cur.execute(
        """
        SELECT h.id, h.product_id, p.name AS product_name, h.batch_id, h.type, h.quantity,
               h.previous_qty, h.new_qty, h.reference, h.notes, h.created_by, h.created_at
        FROM stock_history h
        JOIN pharmacy_products p ON p.id = h.product_id
        WHERE h.clinic_id = %s
          AND (%s::uuid IS NULL OR h.product_id = %s::uuid)
        ORDER BY h.created_at DESC, h.id DESC
        LIMIT %s
        """,
        (clinic_id, product_id, product_id, max(1, min(int(limit or 100), 1000))),
    )
    return cur.fetchall()
