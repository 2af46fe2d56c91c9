from __future__ import annotations

import re
from typing import Any, Callable, Optional

from ..ai.gemini_invoice_import import gemini_extract_purchase_invoice
from ..ai.purchase_invoice_import import openai_extract_purchase_invoice
from ..purchasing import create_draft_purchase, draft_items_from_invoice
from .invoice_schema import InvoiceParty, NormalizedInvoice, normalize_tax_id

# Provider name -> extractor(file_path, **provider kwargs) -> raw invoice dict.
EXTRACTORS: dict[str, Callable[..., dict[str, Any]]] = {
    "openai": openai_extract_purchase_invoice,
    "gemini": gemini_extract_purchase_invoice,
}


class ExtractionError(RuntimeError):
    """Every configured provider failed; `errors` holds one "provider: message" line each."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "no extraction provider configured")


def extract_purchase_invoice_with_fallback(
    file_path: str,
    *,
    ai_config: dict,
    external_ai_allowed: bool = True,
) -> tuple[str, dict[str, Any]]:
    """
    Try each configured provider once, in order, and return (provider name, raw JSON)
    from the first that succeeds. Any exception moves on to the next provider.
    """
    errors: list[str] = []
    if not external_ai_allowed:
        raise ExtractionError(["policy: external AI processing is disabled for this clinic"])

    for prov in ai_config.get("providers") or []:
        name = prov.get("name") or "?"
        fn = EXTRACTORS.get(name)
        if fn is None:
            errors.append(f"{name}: unknown provider")
            continue
        if not prov.get("api_key"):
            errors.append(f"{name}: API key is not configured")
            continue
        try:
            raw = fn(
                file_path,
                model=prov.get("model"),
                base_url=prov.get("base_url"),
                api_key=prov.get("api_key"),
                max_output_tokens=ai_config.get("max_output_tokens") or 4000,
                retry_max_output_tokens=ai_config.get("retry_max_output_tokens") or 7000,
                timeout=ai_config.get("timeout") or 60,
            )
        except Exception as e:
            errors.append(f"{name}: {type(e).__name__}: {e}"[:2000])
            continue
        return name, raw
    raise ExtractionError(errors)


def _norm_name(s: Optional[str]) -> Optional[str]:
    if not s:
        return None
    t = re.sub(r"\s+", " ", s).strip()
    return t[:200] or None


def find_or_create_supplier_by_tax_id(cur, clinic_id: str, party: InvoiceParty) -> Optional[str]:
    """
    Link the seller to a supplier by normalized tax id only. Names are too noisy to
    match on, so a seller without a tax id stays unlinked.
    """
    tax_norm = normalize_tax_id(party.tax_id)
    if not tax_norm:
        return None
    cur.execute(
        """
        SELECT id
        FROM suppliers
        WHERE clinic_id = %s AND tax_id_norm = %s
        """,
        (clinic_id, tax_norm),
    )
    row = cur.fetchone()
    if row:
        return str(row["id"])
    cur.execute(
        """
        INSERT INTO suppliers (id, clinic_id, name, phone, email, address, tax_id, tax_id_norm)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (clinic_id, tax_id_norm) WHERE tax_id_norm IS NOT NULL DO NOTHING
        RETURNING id
        """,
        (
            clinic_id,
            _norm_name(party.name) or f"Supplier {party.tax_id}",
            party.phone,
            party.email,
            party.address,
            party.tax_id,
            tax_norm,
        ),
    )
    row = cur.fetchone()
    if row:
        return str(row["id"])
    # Lost a concurrent insert; read the winner.
    cur.execute(
        "SELECT id FROM suppliers WHERE clinic_id = %s AND tax_id_norm = %s",
        (clinic_id, tax_norm),
    )
    row = cur.fetchone()
    return str(row["id"]) if row else None


def create_draft_from_invoice(
    cur,
    clinic_id: str,
    invoice: NormalizedInvoice,
    *,
    supplier_id: Optional[str],
    upload_id: str,
    user_id: Optional[str],
    warnings: list[str],
) -> str:
    items = draft_items_from_invoice(cur, clinic_id, invoice, warnings)
    invoice_no = invoice.invoice_no or f"UPLOAD-{str(upload_id)[:8].upper()}"
    if not invoice.invoice_no:
        warnings.append(f"invoice number not found; using {invoice_no}")
    return create_draft_purchase(
        cur,
        clinic_id,
        invoice_no=invoice_no,
        items=items,
        supplier_id=supplier_id,
        invoice_date=invoice.invoice_date,
        round_off=invoice.round_off,
        notes=(invoice.ledger.narration if invoice.ledger else None),
        source_upload_id=upload_id,
        user_id=user_id,
    )
