from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


class ModelOutputError(ValueError):
    """Model text that does not contain a parseable JSON payload."""


def sanitize_model_output(out: Any) -> str:
    """
    Extract the JSON payload from free-form model text.

    Providers wrap JSON in code fences or prose even when asked not to:
      1) a fenced block (```json ... ```) wins,
      2) otherwise the span from the first '{' to the last '}',
      3) otherwise the span from the first '[' to the last ']',
      4) otherwise the trimmed text (which may not parse).
    """
    if not out or not isinstance(out, str):
        return ""
    m = _FENCE_RE.search(out)
    if m and m.group(1).strip():
        return m.group(1).strip()
    first_obj, last_obj = out.find("{"), out.rfind("}")
    if first_obj != -1 and last_obj > first_obj:
        return out[first_obj : last_obj + 1].strip()
    first_arr, last_arr = out.find("["), out.rfind("]")
    if first_arr != -1 and last_arr > first_arr:
        return out[first_arr : last_arr + 1].strip()
    return out.strip()


def parse_model_json(out: Any) -> Any:
    cleaned = sanitize_model_output(out)
    if not cleaned:
        raise ModelOutputError("model returned empty output")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        preview = cleaned[:500]
        raise ModelOutputError(f"model returned invalid JSON ({e.msg}): {preview}") from e
