from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app import purchasing
from backend.tests.fakes import FakeCursor, account_handlers, entry_lines, ledger_handler, product_update_handler

PURCHASE = {
    "id": "pur-1",
    "supplier_id": "sup-1",
    "supplier_name": "MedSupply",
    "invoice_no": "MS/2291",
    "invoice_date": None,
    "status": "DRAFT",
    "subtotal": Decimal("50"),
    "tax_amount": Decimal("6"),
    "round_off": Decimal("0"),
    "total_amount": Decimal("56"),
    "notes": None,
    "return_of_purchase_id": None,
    "source_upload_id": None,
}

ITEM = {
    "id": "item-1",
    "product_id": "prod-1",
    "name": "Paracetamol 500mg",
    "quantity": Decimal("10"),
    "unit_price": Decimal("5"),
    "gst_percent": Decimal("12"),
    "tax_amount": Decimal("6"),
    "amount": Decimal("50"),
    "batch_number": "B-1",
    "expiry_date": None,
    "return_of_item_id": None,
}


def _cursor(purchase, items, *, product_qty=Decimal("0"), returned=None):
    product = {"id": "prod-1", "name": "Paracetamol 500mg", "quantity": product_qty, "purchase_price": None}
    return FakeCursor(
        [
            ("FOR UPDATE OF p", purchase),
            ("FROM purchase_items ri", returned or []),
            ("FROM purchase_items WHERE", items),
            ("INSERT INTO purchase_items", None),
            ("INSERT INTO purchases", lambda p: {"id": "ret-1", "invoice_no": p[2], "status": "RETURNED"}),
            ("UPDATE purchases", None),
            product_update_handler({"prod-1": "Paracetamol 500mg"}),
            ("FROM pharmacy_products", [product]),
            ("INSERT INTO stock_batches", {"id": "batch-1"}),
            ("INSERT INTO stock_history", {"id": "hist-1"}),
            ("INSERT INTO stock_transactions", None),
            *account_handlers(),
            ledger_handler(),
        ]
    )


def test_receive_moves_stock_and_posts_the_purchase_journal():
    cur = _cursor(dict(PURCHASE), [dict(ITEM)])
    out = purchasing.receive_purchase(cur, "c1", "pur-1", user_id="u1", unlinked_policy="ledger_only")

    assert out["status"] == "RECEIVED"
    assert out["total_amount"] == Decimal("56")
    assert [p["quantity"] for p in out["products"]] == [Decimal("10")]
    assert entry_lines(out["ledger_entries"]) == {
        ("Inventory", "DEBIT", Decimal("50")),
        ("GST Input", "DEBIT", Decimal("6")),
        ("Payable - MedSupply", "CREDIT", Decimal("56")),
    }
    history = cur.statements("INSERT INTO stock_history")[0][1]
    assert history[3] == "PURCHASE" and history[4:7] == (Decimal("10"), Decimal("0"), Decimal("10"))
    batch = cur.statements("INSERT INTO stock_batches")[0][1]
    assert batch[4] == "B-1"
    status_update = cur.statements("UPDATE purchases")[0][0]
    assert "status = 'RECEIVED'" in status_update


def test_second_receive_conflicts_before_any_write():
    cur = _cursor({**PURCHASE, "status": "RECEIVED"}, [dict(ITEM)])
    with pytest.raises(HTTPException) as exc_info:
        purchasing.receive_purchase(cur, "c1", "pur-1")
    assert exc_info.value.status_code == 409
    assert cur.writes() == []


def test_receive_without_items_is_rejected():
    cur = _cursor(dict(PURCHASE), [])
    with pytest.raises(HTTPException) as exc_info:
        purchasing.receive_purchase(cur, "c1", "pur-1")
    assert exc_info.value.status_code == 400
    assert cur.writes() == []


def test_unlinked_line_rejected_under_reject_policy():
    cur = _cursor(dict(PURCHASE), [{**ITEM, "product_id": None}])
    with pytest.raises(HTTPException) as exc_info:
        purchasing.receive_purchase(cur, "c1", "pur-1", unlinked_policy="reject")
    assert exc_info.value.status_code == 409
    assert cur.writes() == []


def test_unlinked_line_posts_ledger_only_by_default():
    cur = _cursor(dict(PURCHASE), [{**ITEM, "product_id": None}])
    out = purchasing.receive_purchase(cur, "c1", "pur-1", unlinked_policy="ledger_only")
    assert out["unlinked_items"] == ["Paracetamol 500mg"]
    assert out["products"] == []
    assert cur.statements("INSERT INTO stock_history") == []
    assert ("Payable - MedSupply", "CREDIT", Decimal("56")) in entry_lines(out["ledger_entries"])


def test_supplierless_purchase_posts_to_generic_payable():
    cur = _cursor({**PURCHASE, "supplier_id": None, "supplier_name": None}, [dict(ITEM)])
    out = purchasing.receive_purchase(cur, "c1", "pur-1", unlinked_policy="ledger_only")
    assert ("Accounts Payable", "CREDIT", Decimal("56")) in entry_lines(out["ledger_entries"])


def test_partial_return_prorates_tax_and_reduces_stock():
    cur = _cursor({**PURCHASE, "status": "RECEIVED"}, [dict(ITEM)], product_qty=Decimal("10"))
    out = purchasing.return_purchase(
        cur, "c1", "pur-1", [{"purchase_item_id": "item-1", "quantity": 4}], note="damaged strips", user_id="u1"
    )
    assert out["invoice_no"] == "MS/2291-RET"
    assert out["subtotal"] == Decimal("20")
    assert out["tax_amount"] == Decimal("2.4")
    assert out["total_amount"] == Decimal("22.4")
    assert [p["quantity"] for p in out["products"]] == [Decimal("6")]
    assert entry_lines(out["ledger_entries"]) == {
        ("Payable - MedSupply", "DEBIT", Decimal("22.4")),
        ("Inventory", "CREDIT", Decimal("20")),
        ("GST Input", "CREDIT", Decimal("2.4")),
    }
    ret_item = cur.statements("INSERT INTO purchase_items")[0][1]
    assert ret_item[1] == "ret-1" and ret_item[-1] == "item-1"
    header = cur.statements("INSERT INTO purchases")[0][1]
    assert header[-2] == "pur-1"


def test_return_beyond_remaining_quantity_conflicts_before_any_write():
    cur = _cursor(
        {**PURCHASE, "status": "RECEIVED"},
        [dict(ITEM)],
        product_qty=Decimal("6"),
        returned=[{"return_of_item_id": "item-1", "qty": Decimal("4")}],
    )
    with pytest.raises(HTTPException) as exc_info:
        purchasing.return_purchase(
            cur,
            "c1",
            "pur-1",
            [{"purchase_item_id": "item-1", "quantity": 4}, {"purchase_item_id": "item-1", "quantity": 3}],
        )
    assert exc_info.value.status_code == 409
    assert cur.writes() == []


def test_return_of_unknown_item_is_not_found():
    cur = _cursor({**PURCHASE, "status": "RECEIVED"}, [dict(ITEM)])
    with pytest.raises(HTTPException) as exc_info:
        purchasing.return_purchase(cur, "c1", "pur-1", [{"purchase_item_id": "nope", "quantity": 1}])
    assert exc_info.value.status_code == 404


def test_draft_cannot_be_returned():
    cur = _cursor(dict(PURCHASE), [dict(ITEM)])
    with pytest.raises(HTTPException) as exc_info:
        purchasing.return_purchase(cur, "c1", "pur-1", [{"purchase_item_id": "item-1", "quantity": 1}])
    assert exc_info.value.status_code == 409


def test_payment_beyond_outstanding_is_rejected():
    cur = FakeCursor(
        [
            ("FOR UPDATE OF p", {**PURCHASE, "status": "RECEIVED"}),
            ("AS paid", {"returned": Decimal("22.4"), "paid": Decimal("0")}),
        ]
    )
    with pytest.raises(HTTPException) as exc_info:
        purchasing.record_supplier_payment(cur, "c1", method="cash", amount="40", purchase_id="pur-1")
    assert exc_info.value.status_code == 400
    assert cur.writes() == []


def test_payment_settles_the_supplier_payable():
    cur = FakeCursor(
        [
            ("FOR UPDATE OF p", {**PURCHASE, "status": "RECEIVED"}),
            ("INSERT INTO supplier_payments", lambda p: {"id": "pay-1", "supplier_id": p[1], "amount": p[4]}),
            ("AS paid", {"returned": Decimal("22.4"), "paid": Decimal("0")}),
            *account_handlers(),
            ledger_handler(),
        ]
    )
    out = purchasing.record_supplier_payment(cur, "c1", method="upi", amount="33.60", purchase_id="pur-1")
    assert out["payment"]["supplier_id"] == "sup-1"
    assert entry_lines(out["ledger_entries"]) == {
        ("Payable - MedSupply", "DEBIT", Decimal("33.6")),
        ("UPI", "CREDIT", Decimal("33.6")),
    }
    assert {e["ref_type"] for e in out["ledger_entries"]} == {"PAYMENT"}


def test_draft_items_from_invoice_fill_gaps_with_warnings():
    from backend.app.importers.invoice_schema import normalize_invoice

    invoice = normalize_invoice({"items": [{"description": "Cough Syrup"}]})
    cur = FakeCursor([("FROM pharmacy_products", {"id": "prod-9", "name": "cough syrup"})])
    warnings = []
    items = purchasing.draft_items_from_invoice(cur, "c1", invoice, warnings)
    assert items[0]["product_id"] == "prod-9"
    assert items[0]["quantity"] == Decimal("1")
    assert items[0]["unit_price"] == Decimal("0")
    assert items[0]["batch_number"].startswith("AUTO-")
    assert len(warnings) == 2


def test_price_items_ignores_client_amounts():
    priced = purchasing.price_items(
        [{"name": "Paracetamol", "quantity": 10, "unit_price": "5", "gst_percent": 12, "amount": 999}]
    )
    assert priced[0]["amount"] == Decimal("50")
    assert priced[0]["tax_amount"] == Decimal("6")
    assert purchasing.compute_totals(priced, "-0.5")["total_amount"] == Decimal("55.5")


@pytest.mark.parametrize(
    "item",
    [
        {"name": "", "quantity": 1, "unit_price": 1},
        {"name": "X", "quantity": 0, "unit_price": 1},
        {"name": "X", "quantity": 1, "unit_price": -1},
        {"name": "X", "quantity": 1, "unit_price": 1, "gst_percent": -5},
    ],
)
def test_price_items_rejects_invalid_lines(item):
    with pytest.raises(HTTPException) as exc_info:
        purchasing.price_items([item])
    assert exc_info.value.status_code == 400
