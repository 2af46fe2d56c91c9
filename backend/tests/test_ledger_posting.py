from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.journal_utils import assert_balanced, credit, debit
from backend.app.ledger_posting import (
    effective_tax_rate,
    payment_postings,
    post_entries,
    post_manual_journal,
    prorate_return_tax,
    purchase_receipt_postings,
    purchase_return_postings,
    stock_adjustment_postings,
)
from backend.tests.fakes import FakeCursor, account_handlers, entry_lines, ledger_handler


def _lines(postings):
    return [(p.account, p.type, p.amount) for p in postings]


def test_receipt_postings_for_a_taxed_purchase():
    postings = purchase_receipt_postings(50, 6, 0, 56, "Payable - MedSupply")
    assert _lines(postings) == [
        ("Inventory", "DEBIT", Decimal("50")),
        ("GST Input", "DEBIT", Decimal("6")),
        ("Payable - MedSupply", "CREDIT", Decimal("56")),
    ]
    assert_balanced(postings)


def test_receipt_postings_book_round_off_on_the_right_side():
    up = purchase_receipt_postings("99.60", "0", "0.40", "100.00", "Accounts Payable")
    assert ("Round Off", "DEBIT", Decimal("0.4")) in _lines(up)
    assert_balanced(up)

    down = purchase_receipt_postings("100.40", "0", "-0.40", "100.00", "Accounts Payable")
    assert ("Round Off", "CREDIT", Decimal("0.4")) in _lines(down)
    assert_balanced(down)


def test_receipt_without_tax_has_no_gst_line():
    postings = purchase_receipt_postings(80, 0, 0, 80, "Accounts Payable")
    assert [p.account for p in postings] == ["Inventory", "Accounts Payable"]


def test_return_tax_is_prorated_at_the_original_effective_rate():
    rate = effective_tax_rate(Decimal("50"), Decimal("6"))
    assert rate == Decimal("0.12")
    tax = prorate_return_tax(Decimal("20"), rate)
    assert tax == Decimal("2.4")
    postings = purchase_return_postings(Decimal("20"), tax, "Payable - MedSupply")
    assert _lines(postings) == [
        ("Payable - MedSupply", "DEBIT", Decimal("22.4")),
        ("Inventory", "CREDIT", Decimal("20")),
        ("GST Input", "CREDIT", Decimal("2.4")),
    ]
    assert_balanced(postings)


def test_effective_rate_is_zero_without_a_base():
    assert effective_tax_rate(0, 5) == Decimal("0")


def test_prorated_tax_is_quantized_to_storage_precision():
    rate = effective_tax_rate(Decimal("30"), Decimal("1"))
    assert prorate_return_tax(Decimal("10"), rate) == Decimal("0.3333")


@pytest.mark.parametrize("method,account", [("cash", "Cash"), ("BANK", "Bank"), ("upi", "UPI")])
def test_payment_postings_credit_the_method_account(method, account):
    postings = payment_postings(Decimal("25"), method, "Payable - MedSupply")
    assert _lines(postings) == [
        ("Payable - MedSupply", "DEBIT", Decimal("25")),
        (account, "CREDIT", Decimal("25")),
    ]


def test_payment_postings_reject_unknown_method():
    with pytest.raises(HTTPException) as exc_info:
        payment_postings(Decimal("25"), "cheque", "Accounts Payable")
    assert exc_info.value.status_code == 400


def test_stock_adjustment_postings_follow_direction():
    assert _lines(stock_adjustment_postings(Decimal("12.5"))) == [
        ("Inventory", "DEBIT", Decimal("12.5")),
        ("Inventory Adjustment", "CREDIT", Decimal("12.5")),
    ]
    assert _lines(stock_adjustment_postings(Decimal("-3"))) == [
        ("Inventory Adjustment", "DEBIT", Decimal("3")),
        ("Inventory", "CREDIT", Decimal("3")),
    ]
    assert stock_adjustment_postings(0) == []


def test_assert_balanced_rejects_bad_sets():
    with pytest.raises(ValueError):
        assert_balanced([])
    with pytest.raises(ValueError):
        assert_balanced([debit("Inventory", 10), credit("Accounts Payable", "9.99")])
    with pytest.raises(ValueError):
        assert_balanced([debit("Inventory", 0), credit("Accounts Payable", 0)])


def test_post_entries_refuses_unbalanced_set_before_writing():
    cur = FakeCursor([*account_handlers(), ledger_handler()])
    with pytest.raises(HTTPException) as exc_info:
        post_entries(cur, "c1", [debit("Inventory", 10)], ref_type="PURCHASE", ref_id="p1")
    assert exc_info.value.status_code == 400
    assert cur.executed == []


def test_post_entries_resolves_accounts_and_writes_each_line():
    cur = FakeCursor([*account_handlers(), ledger_handler()])
    entries = post_entries(
        cur,
        "c1",
        purchase_receipt_postings(50, 6, 0, 56, "Payable - MedSupply"),
        ref_type="PURCHASE",
        ref_id="p1",
        user_id="u1",
    )
    assert entry_lines(entries) == {
        ("Inventory", "DEBIT", Decimal("50")),
        ("GST Input", "DEBIT", Decimal("6")),
        ("Payable - MedSupply", "CREDIT", Decimal("56")),
    }
    assert {e["ref_id"] for e in entries} == {"p1"}
    assert all(e["account_id"] for e in entries)
    created = [p for _, p in cur.statements("INSERT INTO accounts")]
    assert ("c1", "Payable - MedSupply", "LIABILITY", "u1") in created


def test_manual_journal_posts_one_debit_and_one_credit():
    cur = FakeCursor([*account_handlers(), ledger_handler()])
    out = post_manual_journal(
        cur, "c1", amount="150", debit_account="Rent", credit_account="Cash", note=" March rent ", user_id="u1"
    )
    assert entry_lines(out["entries"]) == {("Rent", "DEBIT", Decimal("150")), ("Cash", "CREDIT", Decimal("150"))}
    assert {e["ref_type"] for e in out["entries"]} == {"MANUAL"}
    assert {e["ref_id"] for e in out["entries"]} == {out["ref_id"]}
    assert {e["note"] for e in out["entries"]} == {"March rent"}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": 0, "debit_account": "Rent", "credit_account": "Cash"},
        {"amount": -5, "debit_account": "Rent", "credit_account": "Cash"},
        {"amount": 10, "debit_account": "Cash", "credit_account": "  cash "},
        {"amount": 10, "debit_account_id": "a1", "credit_account_id": "a1"},
        {"amount": 10, "debit_account": "Rent"},
    ],
)
def test_manual_journal_validation_writes_nothing(kwargs):
    cur = FakeCursor([*account_handlers(), ledger_handler()])
    with pytest.raises(HTTPException) as exc_info:
        post_manual_journal(cur, "c1", **kwargs)
    assert exc_info.value.status_code == 400
    assert cur.writes() == []


def test_manual_journal_rejects_two_ids_for_the_same_account():
    cur = FakeCursor([("FROM accounts", {"id": "a1", "name": "Cash", "type": "ASSET"})])
    with pytest.raises(HTTPException) as exc_info:
        post_manual_journal(cur, "c1", amount=10, debit_account_id="a1", credit_account="cash")
    assert exc_info.value.status_code == 400
    assert cur.writes() == []
