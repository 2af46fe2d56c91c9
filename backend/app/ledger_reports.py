from __future__ import annotations

import csv
import io
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from fastapi import HTTPException

from .journal_utils import q_display, to_decimal

CSV_COLUMNS = ["EntryID", "Date", "Account", "AccountID", "Type", "Amount", "RefType", "RefID", "Note", "TenantID"]


def ledger_filters_sql(
    clinic_id: str,
    *,
    account: Optional[str] = None,
    account_id: Optional[str] = None,
    entry_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    ref_type: Optional[str] = None,
) -> tuple[str, list[Any]]:
    where = ["e.clinic_id = %s"]
    params: list[Any] = [clinic_id]
    if account_id:
        where.append("e.account_id = %s")
        params.append(account_id)
    if account:
        where.append("lower(COALESCE(a.name, e.account)) = lower(%s)")
        params.append(" ".join(account.split()))
    if entry_type:
        where.append("e.type = %s::ledger_entry_type")
        params.append(entry_type)
    if ref_type:
        where.append("e.ref_type = %s")
        params.append(ref_type)
    if start_date:
        where.append("e.created_at >= %s::date")
        params.append(start_date)
    if end_date:
        where.append("e.created_at < (%s::date + 1)")
        params.append(end_date)
    return " AND ".join(where), params


def fetch_ledger_rows(cur, clinic_id: str, *, limit: Optional[int] = None, offset: int = 0, **filters) -> list[dict]:
    where, params = ledger_filters_sql(clinic_id, **filters)
    sql = f"""
        SELECT e.id, e.clinic_id, e.account_id, e.account, a.name AS account_name, e.type, e.amount,
               e.ref_type, e.ref_id, e.note, e.created_by_user_id, e.created_at
        FROM ledger_entries e
        LEFT JOIN accounts a ON a.id = e.account_id
        WHERE {where}
        ORDER BY e.created_at DESC, e.id DESC
    """
    if limit is not None:
        sql += " LIMIT %s OFFSET %s"
        params.extend([max(1, min(int(limit), 1000)), max(0, int(offset or 0))])
    cur.execute(sql, params)
    return cur.fetchall()


def _account_label(row: dict) -> str:
    # Joined account name wins; legacy rows only carry the denormalized name.
    return " ".join(str(row.get("account_name") or row.get("account") or "").split())


def summarize_entries(rows: Iterable[dict]) -> dict:
    """
    Per-account debit/credit totals grouped by case-insensitive account name,
    with balance = debit - credit per account and overall.
    """
    groups: dict[str, dict] = {}
    total_debit = Decimal("0")
    total_credit = Decimal("0")
    for r in rows:
        label = _account_label(r)
        key = label.lower()
        g = groups.get(key)
        if g is None:
            g = {"account": label, "account_id": r.get("account_id"), "debit": Decimal("0"), "credit": Decimal("0")}
            groups[key] = g
        elif g["account_id"] is None and r.get("account_id") is not None:
            g["account_id"] = r["account_id"]
        amt = to_decimal(r.get("amount"))
        if r.get("type") == "DEBIT":
            g["debit"] += amt
            total_debit += amt
        else:
            g["credit"] += amt
            total_credit += amt

    accounts = []
    for g in sorted(groups.values(), key=lambda x: x["account"].lower()):
        accounts.append({**g, "balance": g["debit"] - g["credit"]})
    return {
        "accounts": accounts,
        "totals": {"debit": total_debit, "credit": total_credit, "balance": total_debit - total_credit},
    }


def _iso(v) -> str:
    if v is None:
        return ""
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return str(v)


def ledger_rows_to_csv(rows: Iterable[dict]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(CSV_COLUMNS)
    for r in rows:
        w.writerow(
            [
                str(r.get("id") or ""),
                _iso(r.get("created_at")),
                _account_label(r),
                str(r.get("account_id") or ""),
                r.get("type") or "",
                str(q_display(r.get("amount"))),
                r.get("ref_type") or "",
                str(r.get("ref_id") or ""),
                r.get("note") or "",
                str(r.get("clinic_id") or ""),
            ]
        )
    return buf.getvalue()


def read_ledger_csv(text: str) -> list[dict]:
    """Parse an export back into rows keyed by the CSV header."""
    reader = csv.DictReader(io.StringIO(text))
    if reader.fieldnames != CSV_COLUMNS:
        raise ValueError(f"unexpected ledger CSV header: {reader.fieldnames}")
    return [dict(r) for r in reader]


def get_entry_detail(cur, clinic_id: str, entry_id: str) -> dict:
    cur.execute(
        """
        SELECT e.id, e.clinic_id, e.account_id, e.account, a.name AS account_name, e.type, e.amount,
               e.ref_type, e.ref_id, e.note, e.created_by_user_id, e.created_at
        FROM ledger_entries e
        LEFT JOIN accounts a ON a.id = e.account_id
        WHERE e.clinic_id = %s AND e.id = %s
        """,
        (clinic_id, entry_id),
    )
    entry = cur.fetchone()
    if not entry:
        raise HTTPException(status_code=404, detail="ledger entry not found")

    related: list[dict] = []
    purchase = None
    if entry.get("ref_id"):
        cur.execute(
            """
            SELECT e.id, e.account_id, e.account, a.name AS account_name, e.type, e.amount, e.note, e.created_at
            FROM ledger_entries e
            LEFT JOIN accounts a ON a.id = e.account_id
            WHERE e.clinic_id = %s AND e.ref_id = %s AND e.id <> %s
            ORDER BY e.created_at ASC, e.id ASC
            """,
            (clinic_id, entry["ref_id"], entry_id),
        )
        related = cur.fetchall()
        if entry.get("ref_type") in {"PURCHASE", "RETURN"}:
            cur.execute(
                """
                SELECT p.id, p.invoice_no, p.invoice_date, p.status, p.subtotal, p.tax_amount, p.round_off,
                       p.total_amount, p.return_of_purchase_id, s.name AS supplier_name
                FROM purchases p
                LEFT JOIN suppliers s ON s.id = p.supplier_id
                WHERE p.clinic_id = %s AND p.id = %s
                """,
                (clinic_id, entry["ref_id"]),
            )
            purchase = cur.fetchone()
    return {"entry": entry, "related": related, "purchase": purchase}
