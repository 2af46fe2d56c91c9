"""
Double-entry postings for the pharmacy purchasing cycle.

The `*_postings` builders are pure: they turn amounts into a balanced list of
Posting lines. `post_entries` resolves account names and writes the lines inside
the caller's transaction; it refuses to write an unbalanced set.
"""
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Iterable, Optional

from fastapi import HTTPException

from . import accounts
from .journal_utils import Posting, assert_balanced, credit, debit, drop_zero_lines, q_amount


def purchase_receipt_postings(subtotal, tax_amount, round_off, total_amount, payable_account: str) -> list[Posting]:
    subtotal = q_amount(subtotal)
    tax_amount = q_amount(tax_amount)
    round_off = q_amount(round_off)
    total_amount = q_amount(total_amount)
    lines = [debit(accounts.INVENTORY, subtotal)]
    if tax_amount > 0:
        lines.append(debit(accounts.GST_INPUT, tax_amount))
    if round_off > 0:
        lines.append(debit(accounts.ROUND_OFF, round_off))
    elif round_off < 0:
        lines.append(credit(accounts.ROUND_OFF, -round_off))
    lines.append(credit(payable_account, total_amount))
    return drop_zero_lines(lines)


def effective_tax_rate(subtotal, tax_amount) -> Decimal:
    """Tax as a fraction of the taxable base of the original purchase (0 when there is no base)."""
    subtotal = Decimal(str(subtotal or 0))
    if subtotal <= 0:
        return Decimal("0")
    return Decimal(str(tax_amount or 0)) / subtotal


def prorate_return_tax(base, rate: Decimal) -> Decimal:
    return q_amount(Decimal(str(base)) * rate)


def purchase_return_postings(base_amount, tax_amount, payable_account: str) -> list[Posting]:
    base_amount = q_amount(base_amount)
    tax_amount = q_amount(tax_amount)
    lines = [
        debit(payable_account, base_amount + tax_amount),
        credit(accounts.INVENTORY, base_amount),
    ]
    if tax_amount > 0:
        lines.append(credit(accounts.GST_INPUT, tax_amount))
    return drop_zero_lines(lines)


def payment_postings(amount, method: str, payable_account: str) -> list[Posting]:
    cash_account = accounts.PAYMENT_ACCOUNTS.get((method or "").lower())
    if not cash_account:
        raise HTTPException(status_code=400, detail="invalid payment method")
    return [debit(payable_account, amount), credit(cash_account, amount)]


def stock_adjustment_postings(value) -> list[Posting]:
    """Positive value books stock in, negative writes it off."""
    value = q_amount(value)
    if value > 0:
        return [debit(accounts.INVENTORY, value), credit(accounts.INVENTORY_ADJUSTMENT, value)]
    if value < 0:
        return [debit(accounts.INVENTORY_ADJUSTMENT, -value), credit(accounts.INVENTORY, -value)]
    return []


def post_entries(
    cur,
    clinic_id: str,
    postings: Iterable[Posting],
    *,
    ref_type: str,
    ref_id: Optional[str],
    note: Optional[str] = None,
    user_id: Optional[str] = None,
) -> list[dict]:
    postings = list(postings)
    try:
        assert_balanced(postings)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    written: list[dict] = []
    for p in postings:
        acc = accounts.resolve_account(
            cur,
            clinic_id,
            p.account,
            account_type=p.account_type or accounts.default_account_type(p.account),
            user_id=user_id,
        )
        cur.execute(
            """
            INSERT INTO ledger_entries
              (id, clinic_id, account_id, account, type, amount, ref_type, ref_id, note, created_by_user_id)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s::ledger_entry_type, %s, %s, %s, %s, %s)
            RETURNING id, account_id, account, type, amount, ref_type, ref_id, note, created_at
            """,
            (clinic_id, acc["id"], acc["name"], p.type, p.amount, ref_type, ref_id, note, user_id),
        )
        written.append(cur.fetchone())
    return written


def post_manual_journal(
    cur,
    clinic_id: str,
    *,
    amount,
    debit_account_id: Optional[str] = None,
    debit_account: Optional[str] = None,
    credit_account_id: Optional[str] = None,
    credit_account: Optional[str] = None,
    note: Optional[str] = None,
    user_id: Optional[str] = None,
) -> dict:
    amount = q_amount(amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")

    def _side(account_id: Optional[str], name: Optional[str]) -> dict:
        if account_id:
            return accounts.get_account(cur, clinic_id, account_id)
        return accounts.resolve_account(cur, clinic_id, name, user_id=user_id)

    for label, account_id, name in (
        ("debit", debit_account_id, debit_account),
        ("credit", credit_account_id, credit_account),
    ):
        if not account_id and not accounts.normalize_account_name(name):
            raise HTTPException(status_code=400, detail=f"{label} account is required")

    if debit_account_id and debit_account_id == credit_account_id:
        raise HTTPException(status_code=400, detail="debit and credit accounts must differ")
    if not debit_account_id and not credit_account_id:
        dr_name = accounts.normalize_account_name(debit_account).lower()
        if dr_name and dr_name == accounts.normalize_account_name(credit_account).lower():
            raise HTTPException(status_code=400, detail="debit and credit accounts must differ")

    dr = _side(debit_account_id, debit_account)
    cr = _side(credit_account_id, credit_account)
    if str(dr["id"]) == str(cr["id"]):
        raise HTTPException(status_code=400, detail="debit and credit accounts must differ")

    ref_id = str(uuid.uuid4())
    entries = post_entries(
        cur,
        clinic_id,
        [debit(dr["name"], amount), credit(cr["name"], amount)],
        ref_type="MANUAL",
        ref_id=ref_id,
        note=(note or "").strip() or None,
        user_id=user_id,
    )
    return {"ref_id": ref_id, "entries": entries}
