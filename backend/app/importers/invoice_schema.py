from __future__ import annotations

import calendar
import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..journal_utils import q_amount


class InvoiceParty(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    tax_id: Optional[str] = None
    dl_no: Optional[str] = None

    @property
    def tax_id_norm(self) -> Optional[str]:
        return normalize_tax_id(self.tax_id)


class InvoiceLine(BaseModel):
    description: str
    hsn_code: Optional[str] = None
    pack: Optional[str] = None
    manufacturer: Optional[str] = None
    quantity: Optional[Decimal] = None
    free_quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    mrp: Optional[Decimal] = None
    discount_percent: Optional[Decimal] = None
    gst_percent: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None


class TaxSummaryRow(BaseModel):
    gst_percent: Optional[Decimal] = None
    taxable_amount: Optional[Decimal] = None
    cgst_amount: Optional[Decimal] = None
    sgst_amount: Optional[Decimal] = None
    igst_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None


class LedgerSuggestion(BaseModel):
    debit_account: Optional[str] = None
    credit_account: Optional[str] = None
    amount: Optional[Decimal] = None
    narration: Optional[str] = None


class NormalizedInvoice(BaseModel):
    """Provider-independent invoice shape; the only thing downstream code reads."""

    invoice_no: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    ref_no: Optional[str] = None
    seller: InvoiceParty = Field(default_factory=InvoiceParty)
    buyer: InvoiceParty = Field(default_factory=InvoiceParty)
    items: list[InvoiceLine] = Field(default_factory=list)
    tax_summary: list[TaxSummaryRow] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    round_off: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    ledger: Optional[LedgerSuggestion] = None
    warnings: list[str] = Field(default_factory=list)


def normalize_tax_id(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    t = re.sub(r"[^A-Za-z0-9]", "", str(raw)).upper()
    return t or None


def parse_nullable_number(value: Any) -> Optional[Decimal]:
    """
    Lenient number parsing for model output: "₹1,234.50" -> 1234.50.
    Anything unparsable or non-finite becomes None (never 0).
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        try:
            d = Decimal(str(value))
        except InvalidOperation:
            return None
        return d if d.is_finite() else None
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"[^\d.+-]", "", value.replace(",", ""))
    if not cleaned:
        return None
    try:
        d = Decimal(cleaned)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


_DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%d.%m.%Y", "%Y/%m/%d", "%d-%b-%Y", "%d %b %Y", "%b %d, %Y")
_MONTH_YEAR_FORMATS = ("%m/%Y", "%m-%Y", "%m/%y", "%m-%y", "%b-%y", "%b-%Y", "%b %Y")


def parse_invoice_date(value: Any) -> Optional[date]:
    """Full dates in common invoice layouts; month/year (expiry style) maps to the last day of that month."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    if "T" in s:
        s = s.split("T", 1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    for fmt in _MONTH_YEAR_FORMATS:
        try:
            d = datetime.strptime(s, fmt).date()
        except ValueError:
            continue
        return d.replace(day=calendar.monthrange(d.year, d.month)[1])
    return None


def _clean_text(v: Any, limit: int = 200) -> Optional[str]:
    if v is None:
        return None
    t = re.sub(r"\s+", " ", str(v)).strip()
    return t[:limit] if t else None


def _first(d: dict, *keys: str) -> Any:
    for k in keys:
        v = d.get(k)
        if v is not None and v != "":
            return v
    return None


def _party(raw: Any) -> InvoiceParty:
    if not isinstance(raw, dict):
        return InvoiceParty()
    return InvoiceParty(
        name=_clean_text(_first(raw, "name", "supplier_name")),
        address=_clean_text(raw.get("address"), 500),
        phone=_clean_text(raw.get("phone")),
        email=_clean_text(raw.get("email")),
        tax_id=_clean_text(_first(raw, "gstin", "tax_id", "vat_no", "gst_no")),
        dl_no=_clean_text(_first(raw, "dl_no", "dl_number")),
    )


def _line(raw: dict, idx: int, warnings: list[str]) -> Optional[InvoiceLine]:
    description = _clean_text(_first(raw, "description", "name", "item_name", "product"))
    qty = parse_nullable_number(_first(raw, "qty", "quantity"))
    unit_price = parse_nullable_number(_first(raw, "unitPrice", "unit_price", "rate", "price"))
    amount = parse_nullable_number(_first(raw, "amount", "lineTotal", "line_total", "taxable_amount"))
    gst_percent = parse_nullable_number(_first(raw, "gst_percent", "gstPercent", "gst", "tax_percent"))
    tax_amount = parse_nullable_number(_first(raw, "tax_amount", "taxAmount", "gst_amount"))

    if not description and qty is None and unit_price is None and amount is None:
        return None
    if not description:
        description = f"Item {idx + 1}"

    if unit_price is None and amount is not None and qty:
        unit_price = q_amount(amount / qty)
    if amount is None and qty is not None and unit_price is not None:
        amount = q_amount(qty * unit_price)
    if tax_amount is None and amount is not None and gst_percent is not None:
        tax_amount = q_amount(amount * gst_percent / Decimal("100"))

    expiry_raw = _first(raw, "expiryDate", "expiry_date", "expiry")
    expiry = parse_invoice_date(expiry_raw)
    if expiry_raw and expiry is None:
        warnings.append(f"line {idx + 1}: unreadable expiry date {expiry_raw!r}")

    return InvoiceLine(
        description=description,
        hsn_code=_clean_text(_first(raw, "hsn_code", "hsn")),
        pack=_clean_text(raw.get("pack")),
        manufacturer=_clean_text(_first(raw, "manufacturer", "mfr")),
        quantity=qty,
        free_quantity=parse_nullable_number(_first(raw, "free", "free_qty", "free_quantity")),
        unit_price=unit_price,
        mrp=parse_nullable_number(raw.get("mrp")),
        discount_percent=parse_nullable_number(_first(raw, "discount_percent", "discountPercent", "discount")),
        gst_percent=gst_percent,
        tax_amount=tax_amount,
        amount=amount,
        batch_number=_clean_text(_first(raw, "batchNumber", "batch_number", "batch"), 64),
        expiry_date=expiry,
    )


def _round_off(raw: dict) -> Optional[Decimal]:
    totals = raw.get("totals") if isinstance(raw.get("totals"), dict) else {}
    for candidate in (
        raw.get("roundOff"),
        raw.get("round_off"),
        totals.get("roundOff"),
        totals.get("round_off"),
        totals.get("roundoff"),
    ):
        v = parse_nullable_number(candidate)
        if v is not None:
            return v
    return None


def _ledger(raw: Any) -> Optional[LedgerSuggestion]:
    if not isinstance(raw, dict):
        return None
    amount = parse_nullable_number(_first(raw, "debitAmount", "creditAmount", "amount"))
    s = LedgerSuggestion(
        debit_account=_clean_text(_first(raw, "debitAccount", "debit_account")),
        credit_account=_clean_text(_first(raw, "creditAccount", "credit_account")),
        amount=amount,
        narration=_clean_text(raw.get("narration"), 500),
    )
    if not any([s.debit_account, s.credit_account, s.amount, s.narration]):
        return None
    return s


def normalize_invoice(raw: dict[str, Any]) -> NormalizedInvoice:
    """
    Turn loose provider JSON into a NormalizedInvoice.

    Missing header totals are derived from the lines:
      subtotal = sum(line amount), tax = sum(line tax), total = subtotal + tax + round_off.
    """
    if not isinstance(raw, dict):
        raise ValueError("invoice payload must be a JSON object")
    warnings: list[str] = [str(w) for w in (raw.get("warnings") or []) if w]
    totals = raw.get("totals") if isinstance(raw.get("totals"), dict) else {}

    items: list[InvoiceLine] = []
    for idx, r in enumerate(raw.get("items") or raw.get("lines") or []):
        if not isinstance(r, dict):
            continue
        line = _line(r, idx, warnings)
        if line is not None:
            items.append(line)

    tax_summary = []
    for r in raw.get("tax_summary") or []:
        if not isinstance(r, dict):
            continue
        tax_summary.append(
            TaxSummaryRow(
                gst_percent=parse_nullable_number(r.get("gst_percent")),
                taxable_amount=parse_nullable_number(r.get("taxable_amount")),
                cgst_amount=parse_nullable_number(r.get("cgst_amount")),
                sgst_amount=parse_nullable_number(r.get("sgst_amount")),
                igst_amount=parse_nullable_number(r.get("igst_amount")),
                tax_amount=parse_nullable_number(r.get("tax_amount")),
            )
        )

    subtotal = parse_nullable_number(_first(raw, "subtotal", "sub_total"))
    if subtotal is None:
        subtotal = parse_nullable_number(totals.get("sub_total"))
    if subtotal is None:
        subtotal = sum((ln.amount or Decimal("0") for ln in items), Decimal("0"))

    tax = parse_nullable_number(_first(raw, "taxAmount", "tax_amount", "tax"))
    if tax is None:
        line_taxes = [ln.tax_amount for ln in items if ln.tax_amount is not None]
        summary_taxes = [r.tax_amount for r in tax_summary if r.tax_amount is not None]
        if line_taxes:
            tax = sum(line_taxes, Decimal("0"))
        elif summary_taxes:
            tax = sum(summary_taxes, Decimal("0"))
        else:
            tax = Decimal("0")

    round_off = _round_off(raw) or Decimal("0")

    total = parse_nullable_number(_first(raw, "totalAmount", "total_amount", "total"))
    if total is None:
        total = parse_nullable_number(totals.get("net_amount"))
    derived_total = subtotal + tax + round_off
    if total is None:
        total = derived_total
    elif q_amount(total) != q_amount(derived_total):
        warnings.append(f"invoice total {total} differs from subtotal + tax + round off ({derived_total})")

    invoice_date_raw = raw.get("invoiceDate") or raw.get("invoice_date")
    invoice_date = parse_invoice_date(invoice_date_raw)
    if invoice_date_raw and invoice_date is None:
        warnings.append(f"unreadable invoice date {invoice_date_raw!r}")

    return NormalizedInvoice(
        invoice_no=_clean_text(_first(raw, "invoiceNo", "invoice_no", "invoice_number"), 64),
        invoice_date=invoice_date,
        due_date=parse_invoice_date(_first(raw, "dueDate", "due_date")),
        ref_no=_clean_text(_first(raw, "refNo", "ref_no"), 64),
        seller=_party(_first(raw, "pharmacy_details", "seller_details", "supplier")),
        buyer=_party(raw.get("buyer_details")),
        items=items,
        tax_summary=tax_summary,
        subtotal=q_amount(subtotal),
        tax_amount=q_amount(tax),
        round_off=q_amount(round_off),
        total_amount=q_amount(total),
        ledger=_ledger(raw.get("ledgerEntry") or raw.get("ledger_entry")),
        warnings=warnings,
    )
