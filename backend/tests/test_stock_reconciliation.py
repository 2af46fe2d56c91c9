from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.stock import adjust_stock, apply_stock_change, lock_products
from backend.tests.fakes import FakeCursor, account_handlers, entry_lines, ledger_handler, product_update_handler


def _history(cur):
    # (applied quantity, previous_qty, new_qty) per stock_history insert
    return [(p[4], p[5], p[6]) for _, p in cur.statements("INSERT INTO stock_history")]


def _cursor(product=None):
    return FakeCursor(
        [
            product_update_handler(),
            ("INSERT INTO stock_history", {"id": "h1"}),
            ("INSERT INTO stock_transactions", None),
            ("INSERT INTO stock_batches", {"id": "b1"}),
            ("FROM pharmacy_products", [product] if product else []),
            *account_handlers(),
            ledger_handler(),
        ]
    )


def test_history_rows_chain_previous_and_new_quantities():
    cur = _cursor()
    product = {"id": "p1", "name": "Paracetamol", "quantity": Decimal("0")}
    for change in (Decimal("10"), Decimal("-4"), Decimal("2.5")):
        apply_stock_change(cur, "c1", product, change, "ADJUSTMENT")
    rows = _history(cur)
    assert rows == [
        (Decimal("10"), Decimal("0"), Decimal("10")),
        (Decimal("-4"), Decimal("10"), Decimal("6")),
        (Decimal("2.5"), Decimal("6"), Decimal("8.5")),
    ]
    for applied, prev, new in rows:
        assert new == prev + applied
    for (_, _, new), (_, prev, _) in zip(rows, rows[1:]):
        assert prev == new
    assert product["quantity"] == Decimal("8.5")


def test_outbound_change_beyond_stock_is_rejected_without_writes():
    cur = _cursor()
    product = {"id": "p1", "name": "Paracetamol", "quantity": Decimal("3")}
    with pytest.raises(HTTPException) as exc_info:
        apply_stock_change(cur, "c1", product, Decimal("-5"), "SALE")
    assert exc_info.value.status_code == 409
    assert cur.executed == []
    assert product["quantity"] == Decimal("3")


def test_clamped_change_records_the_applied_delta():
    cur = _cursor()
    product = {"id": "p1", "name": "Paracetamol", "quantity": Decimal("1")}
    out = apply_stock_change(cur, "c1", product, Decimal("-3"), "RETURN", clamp=True)
    assert out["new_qty"] == Decimal("0")
    assert out["applied"] == Decimal("-1")
    assert _history(cur) == [(Decimal("-1"), Decimal("1"), Decimal("0"))]
    tx = cur.statements("INSERT INTO stock_transactions")[0][1]
    assert tx[2] == Decimal("-1")


def test_lock_products_sorts_ids_and_reports_missing():
    cur = FakeCursor([("FROM pharmacy_products", [{"id": "a", "name": "A", "quantity": 1}])])
    with pytest.raises(HTTPException) as exc_info:
        lock_products(cur, "c1", ["b", "a", None, "a"])
    assert exc_info.value.status_code == 404
    sql, params = cur.executed[0]
    assert "ORDER BY id FOR UPDATE" in sql
    assert params == ("c1", ["a", "b"])


def test_positive_adjustment_creates_batch_and_books_inventory():
    product = {"id": "p1", "name": "Cetirizine", "quantity": Decimal("2"), "purchase_price": Decimal("4")}
    cur = _cursor(product)
    out = adjust_stock(cur, "c1", "p1", Decimal("5"), unit_cost=Decimal("3"), batch_number="B-77", user_id="u1")
    assert out["movement"]["new_qty"] == Decimal("7")
    batch = cur.statements("INSERT INTO stock_batches")[0][1]
    assert batch[2] == Decimal("5") and batch[4] == "B-77"
    assert entry_lines(out["ledger_entries"]) == {
        ("Inventory", "DEBIT", Decimal("15")),
        ("Inventory Adjustment", "CREDIT", Decimal("15")),
    }
    assert {e["ref_id"] for e in out["ledger_entries"]} == {"h1"}


def test_damaged_write_off_uses_product_cost():
    product = {"id": "p1", "name": "Cetirizine", "quantity": Decimal("7"), "purchase_price": Decimal("4")}
    cur = _cursor(product)
    out = adjust_stock(cur, "c1", "p1", Decimal("-2"), movement_type="damaged")
    assert out["movement"]["new_qty"] == Decimal("5")
    assert cur.statements("INSERT INTO stock_batches") == []
    assert entry_lines(out["ledger_entries"]) == {
        ("Inventory Adjustment", "DEBIT", Decimal("8")),
        ("Inventory", "CREDIT", Decimal("8")),
    }


@pytest.mark.parametrize("qty,movement_type", [(Decimal("0"), "ADJUSTMENT"), (Decimal("-1"), "PURCHASE"), (Decimal("1"), "SALE")])
def test_invalid_adjustments_are_rejected(qty, movement_type):
    cur = _cursor({"id": "p1", "name": "X", "quantity": Decimal("5"), "purchase_price": Decimal("1")})
    with pytest.raises(HTTPException) as exc_info:
        adjust_stock(cur, "c1", "p1", qty, movement_type=movement_type)
    assert exc_info.value.status_code == 400
    assert cur.writes() == []
