from datetime import date
from decimal import Decimal

import pytest

from backend.app.importers.invoice_schema import (
    normalize_invoice,
    normalize_tax_id,
    parse_invoice_date,
    parse_nullable_number,
)


def test_single_line_invoice_derives_header_totals():
    inv = normalize_invoice(
        {
            "invoiceNo": "MS/2291",
            "invoiceDate": "12/03/2026",
            "pharmacy_details": {"name": "  MedSupply   Distributors ", "gstin": "27-aabcm 1234f1z5"},
            "items": [{"description": "Paracetamol 500mg", "qty": 10, "unitPrice": 5, "gstPercent": 12}],
        }
    )
    assert inv.invoice_no == "MS/2291"
    assert inv.invoice_date == date(2026, 3, 12)
    assert inv.seller.name == "MedSupply Distributors"
    assert inv.seller.tax_id_norm == "27AABCM1234F1Z5"
    line = inv.items[0]
    assert line.amount == Decimal("50")
    assert line.tax_amount == Decimal("6")
    assert inv.subtotal == Decimal("50")
    assert inv.tax_amount == Decimal("6")
    assert inv.round_off == Decimal("0")
    assert inv.total_amount == Decimal("56")
    assert inv.warnings == []


def test_unit_price_is_derived_from_amount_and_quantity():
    inv = normalize_invoice({"items": [{"name": "Amoxicillin", "quantity": "4", "amount": "₹1,000.00"}]})
    assert inv.items[0].unit_price == Decimal("250")
    assert inv.subtotal == Decimal("1000")


@pytest.mark.parametrize(
    "raw",
    [
        {"roundOff": "-0.40"},
        {"round_off": -0.4},
        {"totals": {"roundOff": "-0.4"}},
        {"totals": {"round_off": "-0.40"}},
        {"totals": {"roundoff": -0.4}},
    ],
)
def test_round_off_is_read_from_every_known_location(raw):
    inv = normalize_invoice({"items": [{"description": "X", "qty": 1, "unitPrice": 100}], **raw})
    assert inv.round_off == Decimal("-0.4")
    assert inv.total_amount == Decimal("99.6")


def test_mismatched_total_is_kept_with_a_warning():
    inv = normalize_invoice({"items": [{"description": "X", "qty": 2, "unitPrice": 10}], "totalAmount": 25})
    assert inv.total_amount == Decimal("25")
    assert any("differs" in w for w in inv.warnings)


def test_tax_summary_used_when_lines_carry_no_tax():
    inv = normalize_invoice(
        {
            "items": [{"description": "X", "qty": 1, "unitPrice": 100}],
            "tax_summary": [{"gst_percent": 5, "taxable_amount": 100, "tax_amount": "5.00"}],
        }
    )
    assert inv.tax_amount == Decimal("5")
    assert inv.total_amount == Decimal("105")


def test_blank_lines_are_dropped_and_nameless_lines_get_a_placeholder():
    inv = normalize_invoice({"items": [{}, {"qty": 3, "unitPrice": 2}, "junk"]})
    assert len(inv.items) == 1
    assert inv.items[0].description == "Item 2"


def test_unreadable_dates_become_warnings():
    inv = normalize_invoice(
        {"invoiceDate": "sometime in march", "items": [{"description": "X", "qty": 1, "expiry": "soon"}]}
    )
    assert inv.invoice_date is None
    assert inv.items[0].expiry_date is None
    assert len(inv.warnings) == 2


def test_non_object_payload_is_rejected():
    with pytest.raises(ValueError):
        normalize_invoice(["not", "an", "invoice"])


@pytest.mark.parametrize(
    "value,expected",
    [
        ("₹1,234.50", Decimal("1234.50")),
        (" 12 ", Decimal("12")),
        (7, Decimal("7")),
        (2.5, Decimal("2.5")),
        ("", None),
        ("n/a", None),
        (None, None),
        (True, None),
        (float("nan"), None),
        ("Infinity", None),
    ],
)
def test_parse_nullable_number(value, expected):
    assert parse_nullable_number(value) == expected


def test_expiry_month_year_maps_to_month_end():
    assert parse_invoice_date("02/2028") == date(2028, 2, 29)
    assert parse_invoice_date("Nov-27") == date(2027, 11, 30)
    assert parse_invoice_date("2026-01-05T10:00:00Z") == date(2026, 1, 5)


def test_normalize_tax_id():
    assert normalize_tax_id(" 27aab-cm 12 ") == "27AABCM12"
    assert normalize_tax_id("--") is None
    assert normalize_tax_id(None) is None


def test_extracted_zero_totals_are_not_replaced_by_the_totals_block():
    inv = normalize_invoice(
        {
            "subtotal": 0,
            "tax_amount": 0,
            "total": "0.00",
            "totals": {"sub_total": 50, "net_amount": 56},
            "items": [{"description": "Free sample strip", "qty": 1, "unitPrice": 0}],
        }
    )
    assert inv.subtotal == Decimal("0")
    assert inv.total_amount == Decimal("0")
    assert inv.warnings == []


def test_totals_block_fills_missing_header_values():
    inv = normalize_invoice(
        {
            "tax_amount": 6,
            "totals": {"sub_total": "50", "net_amount": "56"},
            "items": [{"description": "Paracetamol 500mg", "qty": 10, "unitPrice": 5}],
        }
    )
    assert inv.subtotal == Decimal("50")
    assert inv.total_amount == Decimal("56")
    assert inv.warnings == []
