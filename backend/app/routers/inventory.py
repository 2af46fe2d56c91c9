from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from datetime import date
from decimal import Decimal
from typing import Optional
from ..db import get_conn, set_clinic_context
from ..deps import get_clinic_id, require_permission, get_current_user
from ..validation import StockMovementType
from ..stock import adjust_stock, list_stock_history

router = APIRouter(prefix="/inventory", tags=["inventory"])


class StockAdjustIn(BaseModel):
    quantity: Decimal
    type: StockMovementType = "ADJUSTMENT"
    unit_cost: Optional[Decimal] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    note: Optional[str] = None


@router.post("/products/{product_id}/adjust", dependencies=[Depends(require_permission("pharmacy:update"))])
def adjust_product_stock(
    product_id: str,
    data: StockAdjustIn,
    clinic_id: str = Depends(get_clinic_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return adjust_stock(
                    cur,
                    clinic_id,
                    product_id,
                    data.quantity,
                    movement_type=data.type,
                    unit_cost=data.unit_cost,
                    batch_number=(data.batch_number or "").strip() or None,
                    expiry_date=data.expiry_date,
                    note=(data.note or "").strip() or None,
                    user_id=user["user_id"],
                )


@router.get("/stock-history", dependencies=[Depends(require_permission("pharmacy:read"))])
def stock_history(
    product_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    clinic_id: str = Depends(get_clinic_id),
):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            return {"history": list_stock_history(cur, clinic_id, product_id, limit)}
