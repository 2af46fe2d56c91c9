from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional
from ..db import get_conn, set_clinic_context
from ..deps import get_clinic_id, require_permission, get_current_user
from ..validation import AccountName, AccountType
from .. import accounts

router = APIRouter(prefix="/accounts", tags=["accounts"])


class AccountIn(BaseModel):
    name: AccountName
    type: Optional[AccountType] = None


@router.get("", dependencies=[Depends(require_permission("ledger:read"))])
def list_accounts(
    q: str = Query(""),
    limit: int = Query(50, ge=1, le=500),
    clinic_id: str = Depends(get_clinic_id),
):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            return {"accounts": accounts.search_accounts(cur, clinic_id, q, limit)}


@router.post("", dependencies=[Depends(require_permission("ledger:create"))])
def create_account(data: AccountIn, clinic_id: str = Depends(get_clinic_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return accounts.create_account(cur, clinic_id, data.name, data.type, user["user_id"])
