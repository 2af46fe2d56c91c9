from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

AMOUNT_Q = Decimal("0.0001")
DISPLAY_Q = Decimal("0.01")
QTY_Q = Decimal("0.001")


def to_decimal(v) -> Decimal:
    if v is None or v == "":
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def q_amount(v) -> Decimal:
    """Storage precision for money columns (numeric(18,4))."""
    return to_decimal(v).quantize(AMOUNT_Q, rounding=ROUND_HALF_UP)


def q_display(v) -> Decimal:
    return to_decimal(v).quantize(DISPLAY_Q, rounding=ROUND_HALF_UP)


def q_qty(v) -> Decimal:
    return to_decimal(v).quantize(QTY_Q, rounding=ROUND_HALF_UP)


class Posting:
    """One side of a journal: an account name and a positive amount."""

    __slots__ = ("account", "type", "amount", "account_type")

    def __init__(self, account: str, type: str, amount, account_type: Optional[str] = None):
        self.account = account
        self.type = type
        self.amount = q_amount(amount)
        self.account_type = account_type

    def __repr__(self) -> str:
        return f"Posting({self.account!r}, {self.type}, {self.amount})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Posting):
            return NotImplemented
        return (self.account, self.type, self.amount) == (other.account, other.type, other.amount)


def debit(account: str, amount, account_type: Optional[str] = None) -> Posting:
    return Posting(account, "DEBIT", amount, account_type)


def credit(account: str, amount, account_type: Optional[str] = None) -> Posting:
    return Posting(account, "CREDIT", amount, account_type)


def drop_zero_lines(postings: Iterable[Posting]) -> List[Posting]:
    return [p for p in postings if p.amount != 0]


def assert_balanced(postings: Iterable[Posting]) -> None:
    """
    Every posting set must balance exactly at storage precision and carry strictly positive amounts.
    Raises ValueError otherwise; callers post nothing in that case.
    """
    total_debit = Decimal("0")
    total_credit = Decimal("0")
    count = 0
    for p in postings:
        count += 1
        if p.amount <= 0:
            raise ValueError(f"posting amount must be > 0 ({p.account})")
        if p.type == "DEBIT":
            total_debit += p.amount
        elif p.type == "CREDIT":
            total_credit += p.amount
        else:
            raise ValueError(f"invalid posting type {p.type!r}")
    if count == 0:
        raise ValueError("journal has no lines")
    if total_debit != total_credit:
        raise ValueError(f"journal is imbalanced (debit {total_debit} != credit {total_credit})")
