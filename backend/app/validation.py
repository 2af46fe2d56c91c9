from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror Postgres enums in `backend/db/migrations/001_init.sql`.
PurchaseStatus = Annotated[Literal["DRAFT", "RECEIVED", "RETURNED"], BeforeValidator(_to_upper_str)]
UploadStatus = Annotated[Literal["UPLOADED", "PARSED", "FAILED", "CANCELLED"], BeforeValidator(_to_upper_str)]
EntryType = Annotated[Literal["DEBIT", "CREDIT"], BeforeValidator(_to_upper_str)]
AccountType = Annotated[
    Literal["ASSET", "LIABILITY", "EQUITY", "INCOME", "EXPENSE"], BeforeValidator(_to_upper_str)
]
StockMovementType = Annotated[
    Literal["PURCHASE", "RETURN", "SALE", "ADJUSTMENT", "EXPIRED", "DAMAGED"], BeforeValidator(_to_upper_str)
]

# Supplier payments settle the payable against one of these cash accounts.
PaymentMethod = Annotated[Literal["cash", "bank", "upi"], BeforeValidator(_to_lower_str)]


# Account names are case-insensitive identifiers; keep them printable and bounded.
AccountName = Annotated[
    str,
    BeforeValidator(lambda v: v if v is None else " ".join(str(v).split())),
    StringConstraints(min_length=1, max_length=120),
]
