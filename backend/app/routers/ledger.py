from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel
from datetime import date
from decimal import Decimal
from typing import Optional
from ..db import get_conn, set_clinic_context
from ..deps import get_clinic_id, require_permission, get_current_user
from ..validation import EntryType
from ..ledger_posting import post_manual_journal
from ..ledger_reports import fetch_ledger_rows, get_entry_detail, ledger_rows_to_csv, summarize_entries

router = APIRouter(prefix="/ledger", tags=["ledger"])


class ManualJournalIn(BaseModel):
    amount: Decimal
    debit_account_id: Optional[str] = None
    debit_account: Optional[str] = None
    credit_account_id: Optional[str] = None
    credit_account: Optional[str] = None
    note: Optional[str] = None


def _filters(account, account_id, entry_type, start_date, end_date, ref_type) -> dict:
    return {
        "account": (account or "").strip() or None,
        "account_id": account_id,
        "entry_type": entry_type,
        "start_date": start_date,
        "end_date": end_date,
        "ref_type": (ref_type or "").strip().upper() or None,
    }


@router.get("", dependencies=[Depends(require_permission("ledger:read"))])
def list_entries(
    account: Optional[str] = None,
    account_id: Optional[str] = None,
    type: Optional[EntryType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    ref_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    clinic_id: str = Depends(get_clinic_id),
):
    filters = _filters(account, account_id, type, start_date, end_date, ref_type)
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            rows = fetch_ledger_rows(cur, clinic_id, limit=limit, offset=offset, **filters)
            return {"entries": rows, "limit": limit, "offset": offset}


@router.get("/summary", dependencies=[Depends(require_permission("ledger:read"))])
def ledger_summary(
    account: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    ref_type: Optional[str] = None,
    clinic_id: str = Depends(get_clinic_id),
):
    filters = _filters(account, None, None, start_date, end_date, ref_type)
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            return summarize_entries(fetch_ledger_rows(cur, clinic_id, **filters))


@router.get("/export", dependencies=[Depends(require_permission("ledger:read"))])
def export_ledger(
    account: Optional[str] = None,
    type: Optional[EntryType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    ref_type: Optional[str] = None,
    clinic_id: str = Depends(get_clinic_id),
):
    filters = _filters(account, None, type, start_date, end_date, ref_type)
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            rows = fetch_ledger_rows(cur, clinic_id, **filters)
    filename = f"ledger-{date.today().isoformat()}.csv"
    return Response(
        content=ledger_rows_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/manual", dependencies=[Depends(require_permission("ledger:create"))])
def create_manual_journal(data: ManualJournalIn, clinic_id: str = Depends(get_clinic_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.transaction():
            with conn.cursor() as cur:
                return post_manual_journal(
                    cur,
                    clinic_id,
                    amount=data.amount,
                    debit_account_id=data.debit_account_id,
                    debit_account=data.debit_account,
                    credit_account_id=data.credit_account_id,
                    credit_account=data.credit_account,
                    note=data.note,
                    user_id=user["user_id"],
                )


@router.get("/{entry_id}", dependencies=[Depends(require_permission("ledger:read"))])
def get_entry(entry_id: str, clinic_id: str = Depends(get_clinic_id)):
    with get_conn() as conn:
        set_clinic_context(conn, clinic_id)
        with conn.cursor() as cur:
            return get_entry_detail(cur, clinic_id, entry_id)
