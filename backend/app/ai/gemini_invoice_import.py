import base64
import json
import os
import urllib.parse
import urllib.request
import urllib.error
from typing import Any, Optional

from .json_text import ModelOutputError, parse_model_json
from .purchase_invoice_import import (
    COMPACT_RETRY_INSTRUCTION,
    _as_invoice_dict,
    extraction_prompt,
    file_mime_type,
    is_text_invoice,
)


def _generate_content_call(
    payload: dict[str, Any],
    *,
    model: str,
    base_url: str | None = None,
    api_key: str | None = None,
    timeout: int = 60,
) -> dict[str, Any]:
    use_base = (base_url or os.environ.get("GEMINI_BASE_URL") or "https://generativelanguage.googleapis.com").rstrip("/")
    use_key = (api_key or os.environ.get("GEMINI_API_KEY") or "").strip()
    if not use_key:
        raise RuntimeError("GEMINI_API_KEY is not configured")
    url = f"{use_base}/v1beta/models/{urllib.parse.quote(model, safe='')}:generateContent"
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "x-goog-api-key": use_key,
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
        raise RuntimeError(f"Gemini HTTP {getattr(e, 'code', '?')}: {body}") from e


def _extract_candidate_text(res: dict[str, Any]) -> str:
    for cand in (res.get("candidates") or []):
        parts = ((cand.get("content") or {}).get("parts")) or []
        text = "".join(p.get("text") or "" for p in parts if isinstance(p, dict))
        if text:
            return text
    feedback = res.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise RuntimeError(f"Gemini blocked the request: {feedback['blockReason']}")
    raise RuntimeError("Gemini response did not contain text")


def _call(parts: list[dict[str, Any]], *, model: str, max_output_tokens: int, base_url, api_key, timeout: int) -> str:
    payload = {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {
            "temperature": 0,
            "maxOutputTokens": max_output_tokens,
            "responseMimeType": "application/json",
        },
    }
    res = _generate_content_call(payload, model=model, base_url=base_url, api_key=api_key, timeout=timeout)
    return _extract_candidate_text(res)


def gemini_extract_purchase_invoice(
    file_path: str,
    *,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
    max_output_tokens: int = 4000,
    retry_max_output_tokens: int = 7000,
    timeout: int = 60,
) -> dict[str, Any]:
    """Gemini counterpart of `openai_extract_purchase_invoice` (same prompt, same retry rule)."""
    use_model = (model or os.environ.get("GEMINI_MODEL") or "gemini-2.5-flash").strip()
    call_kw = {"model": use_model, "base_url": base_url, "api_key": api_key, "timeout": timeout}

    if is_text_invoice(file_path):
        with open(file_path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
        out = _call([{"text": extraction_prompt(invoice_text=text)}], max_output_tokens=max_output_tokens, **call_kw)
        return _as_invoice_dict(parse_model_json(out))

    with open(file_path, "rb") as f:
        raw = f.read()
    inline = {"inline_data": {"mime_type": file_mime_type(file_path), "data": base64.b64encode(raw).decode("ascii")}}
    prompt = extraction_prompt()
    out = _call([{"text": prompt}, inline], max_output_tokens=max_output_tokens, **call_kw)
    try:
        return _as_invoice_dict(parse_model_json(out))
    except ModelOutputError:
        retry_out = _call(
            [{"text": f"{prompt}\n{COMPACT_RETRY_INSTRUCTION}"}, inline],
            max_output_tokens=retry_max_output_tokens,
            **call_kw,
        )
        return _as_invoice_dict(parse_model_json(retry_out))
