import base64
import json
import os
import urllib.request
import urllib.error
from typing import Any, Optional

from .json_text import ModelOutputError, parse_model_json

TEXT_EXTENSIONS = {".txt", ".md", ".json"}

MIME_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
}

COMPACT_RETRY_INSTRUCTION = "Return compact minified JSON in a single line and ensure it is complete and valid."

INVOICE_JSON_SHAPE = """{
  invoiceNo: string|null,
  invoiceDate: ISO yyyy-mm-dd|null,
  dueDate: ISO yyyy-mm-dd|null,
  refNo: string|null,
  pharmacy_details: { name, address, phone, email, gstin, dl_no },
  buyer_details: { name, address, phone, email, gstin, dl_no },
  items: [{
    sr_no: integer|null,
    hsn_code: string|null,
    description: string,
    pack: string|null,
    manufacturer: string|null,
    qty: number,
    free: number|null,
    mrp: number|null,
    rate: number|null,
    unitPrice: number|null,
    discount_percent: number|null,
    gst_percent: number|null,
    lineTotal: number|null,
    amount: number|null,
    batchNumber: string|null,
    expiryDate: ISO yyyy-mm-dd|null
  }],
  tax_summary: [{ gst_percent, taxable_amount, sgst_amount, cgst_amount, igst_amount, tax_amount }],
  subtotal: number|null,
  taxAmount: number|null,
  roundOff: number|null,
  totalAmount: number|null,
  totals: { sub_total, discount, cgst_igst, sgst, round_off, net_amount, total_quantity },
  ledgerEntry: { debitAccount, creditAccount, debitAmount, creditAmount, narration }
}"""


def extraction_prompt(*, invoice_text: Optional[str] = None) -> str:
    """Prompt shared by every extraction provider (pharmacy_details = seller, buyer_details = clinic)."""
    head = (
        "You are an assistant that extracts pharmacy purchase invoice data and prepares a ledger review entry.\n"
        "Return JSON only with this structure:\n"
        f"{INVOICE_JSON_SHAPE}\n"
        "If a field is not present, return null (or [] for arrays).\n"
        "If any item does not have a batchNumber or expiryDate, return null for those fields.\n"
    )
    if invoice_text is None:
        return head + "Do not include markdown, prose, or code fences."
    return head + "\nInput text:\n\n" + invoice_text[:20000] + "\n\nRespond with JSON only."


def file_mime_type(file_path: str) -> str:
    ext = os.path.splitext(file_path)[1].lower()
    return MIME_BY_EXT.get(ext, "image/png")


def is_text_invoice(file_path: str) -> bool:
    return os.path.splitext(file_path)[1].lower() in TEXT_EXTENSIONS


def _b64_data_url(content_type: str, raw: bytes) -> str:
    ct = (content_type or "application/octet-stream").strip() or "application/octet-stream"
    b64 = base64.b64encode(raw).decode("ascii")
    return f"data:{ct};base64,{b64}"


def _responses_api_call(
    payload: dict[str, Any],
    *,
    base_url: str | None = None,
    api_key: str | None = None,
    timeout: int = 60,
) -> dict[str, Any]:
    use_base = (base_url or os.environ.get("OPENAI_BASE_URL") or "https://api.openai.com").rstrip("/")
    use_key = (api_key or os.environ.get("OPENAI_API_KEY") or "").strip()
    if not use_key:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    url = f"{use_base}/v1/responses"
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Authorization": f"Bearer {use_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
            return json.loads(raw.decode("utf-8"))
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else str(e)
        raise RuntimeError(f"OpenAI HTTP {getattr(e, 'code', '?')}: {body}") from e


def _extract_output_text(res: dict[str, Any]) -> str:
    # Responses API can return multiple output items; we want the first output_text content.
    for out in (res.get("output") or []):
        if out.get("type") == "message":
            for c in (out.get("content") or []):
                if c.get("type") in {"output_text", "text"} and isinstance(c.get("text"), str):
                    return c["text"]
    if isinstance(res.get("output_text"), str):
        return res["output_text"]
    raise RuntimeError("OpenAI response did not contain output_text")


def _file_part(file_path: str, raw: bytes) -> dict[str, Any]:
    mime = file_mime_type(file_path)
    data_url = _b64_data_url(mime, raw)
    if mime == "application/pdf":
        return {"type": "input_file", "filename": os.path.basename(file_path), "file_data": data_url}
    return {"type": "input_image", "image_url": data_url}


def _call(
    content: list[dict[str, Any]],
    *,
    model: str,
    max_output_tokens: int,
    base_url: Optional[str],
    api_key: Optional[str],
    timeout: int,
) -> str:
    payload = {
        "model": model,
        "input": [{"role": "user", "content": content}],
        "max_output_tokens": max_output_tokens,
        "temperature": 0,
        "text": {"format": {"type": "json_object"}},
    }
    res = _responses_api_call(payload, base_url=base_url, api_key=api_key, timeout=timeout)
    return _extract_output_text(res)


def openai_extract_purchase_invoice(
    file_path: str,
    *,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
    max_output_tokens: int = 4000,
    retry_max_output_tokens: int = 7000,
    timeout: int = 60,
) -> dict[str, Any]:
    """
    Extract a supplier invoice file with the OpenAI Responses API.

    Text files (.txt/.md/.json) are sent as prompt text. Images and PDFs are sent
    base64-encoded; if the first answer is not valid JSON (usually truncated output)
    the call is retried once asking for compact JSON with a larger token budget.
    Raises on any failure; callers fall back to the next provider.
    """
    use_model = (model or os.environ.get("OPENAI_INVOICE_MODEL") or "gpt-4.1-mini").strip()
    call_kw = {"model": use_model, "base_url": base_url, "api_key": api_key, "timeout": timeout}

    if is_text_invoice(file_path):
        with open(file_path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
        prompt = extraction_prompt(invoice_text=text)
        out = _call([{"type": "input_text", "text": prompt}], max_output_tokens=max_output_tokens, **call_kw)
        return _as_invoice_dict(parse_model_json(out))

    with open(file_path, "rb") as f:
        raw = f.read()
    prompt = extraction_prompt()
    part = _file_part(file_path, raw)
    out = _call([{"type": "input_text", "text": prompt}, part], max_output_tokens=max_output_tokens, **call_kw)
    try:
        return _as_invoice_dict(parse_model_json(out))
    except ModelOutputError:
        compact = f"{prompt}\n{COMPACT_RETRY_INSTRUCTION}"
        retry_out = _call(
            [{"type": "input_text", "text": compact}, part],
            max_output_tokens=retry_max_output_tokens,
            **call_kw,
        )
        return _as_invoice_dict(parse_model_json(retry_out))


def _as_invoice_dict(parsed: Any) -> dict[str, Any]:
    # Some models answer with a one-element array around the invoice object.
    if isinstance(parsed, list) and len(parsed) == 1 and isinstance(parsed[0], dict):
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        raise ModelOutputError("model JSON is not an invoice object")
    return parsed
