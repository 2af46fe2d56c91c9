from decimal import Decimal

from fastapi import HTTPException


def assert_not_overpaid(
    total: Decimal,
    returned: Decimal,
    paid: Decimal,
    amount: Decimal,
    detail: str = "payment exceeds outstanding amount",
):
    eps = Decimal("0.01")
    outstanding = total - returned - paid
    if amount > (outstanding + eps):
        raise HTTPException(status_code=400, detail=detail)
