from decimal import Decimal
from typing import Optional

import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import (
    AccountName,
    AccountType,
    EntryType,
    PaymentMethod,
    PurchaseStatus,
    StockMovementType,
    UploadStatus,
)


class _M(BaseModel):
    purchase_status: PurchaseStatus
    upload_status: UploadStatus
    entry_type: EntryType
    movement: StockMovementType
    method: PaymentMethod
    account_type: Optional[AccountType] = None


def test_validation_types_normalize_case():
    m = _M(
        purchase_status="received",
        upload_status=" Parsed ",
        entry_type="debit",
        movement="Expired",
        method=" UPI ",
        account_type="liability",
    )
    assert m.purchase_status == "RECEIVED"
    assert m.upload_status == "PARSED"
    assert m.entry_type == "DEBIT"
    assert m.movement == "EXPIRED"
    assert m.method == "upi"
    assert m.account_type == "LIABILITY"


def test_payment_method_rejects_unknown_methods():
    with pytest.raises(ValidationError):
        _M(purchase_status="DRAFT", upload_status="UPLOADED", entry_type="CREDIT", movement="SALE", method="cheque")


class _Acc(BaseModel):
    name: AccountName
    amount: Decimal = Decimal("0")


def test_account_name_collapses_whitespace():
    assert _Acc(name="  Payable   -  MedSupply ").name == "Payable - MedSupply"


def test_account_name_rejects_blank():
    with pytest.raises(ValidationError):
        _Acc(name="   ")
