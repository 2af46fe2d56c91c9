from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.payment_guards import assert_not_overpaid


def test_assert_not_overpaid_allows_small_rounding_tolerance():
    assert_not_overpaid(
        total=Decimal("56.00"),
        returned=Decimal("22.40"),
        paid=Decimal("0"),
        amount=Decimal("33.609"),
    )


def test_assert_not_overpaid_accepts_exact_outstanding():
    assert_not_overpaid(
        total=Decimal("56.00"),
        returned=Decimal("0"),
        paid=Decimal("20.00"),
        amount=Decimal("36.00"),
    )


def test_assert_not_overpaid_rejects_overage_after_returns():
    with pytest.raises(HTTPException) as exc_info:
        assert_not_overpaid(
            total=Decimal("56.00"),
            returned=Decimal("22.40"),
            paid=Decimal("0"),
            amount=Decimal("33.62"),
            detail="payment exceeds purchase outstanding",
        )
    exc = exc_info.value
    assert exc.status_code == 400
    assert "payment exceeds purchase outstanding" in str(exc.detail)


def test_assert_not_overpaid_rejects_payment_on_settled_purchase():
    with pytest.raises(HTTPException) as exc_info:
        assert_not_overpaid(
            total=Decimal("56.00"),
            returned=Decimal("0"),
            paid=Decimal("56.00"),
            amount=Decimal("1.00"),
        )
    exc = exc_info.value
    assert exc.status_code == 400
    assert "outstanding" in str(exc.detail)
