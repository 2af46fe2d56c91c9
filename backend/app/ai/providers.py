from __future__ import annotations

import os

from ..config import settings

KNOWN_PROVIDERS = ("openai", "gemini")


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def get_ai_provider_config(cur, clinic_id: str) -> dict:
    """
    Resolve invoice-extraction provider config for a clinic, with env fallbacks.

    Config location:
      clinic_settings.key = 'ai'
      value_json can include:
        invoice_providers: ['openai', 'gemini']  (order = fallback order)
        openai_api_key, openai_base_url, openai_invoice_model
        gemini_api_key, gemini_base_url, gemini_model
    """
    order = list(settings.ai_invoice_providers)
    openai = {
        "name": "openai",
        "api_key": _env("OPENAI_API_KEY"),
        "base_url": _env("OPENAI_BASE_URL", "https://api.openai.com").rstrip("/"),
        "model": _env("OPENAI_INVOICE_MODEL", "gpt-4.1-mini"),
    }
    gemini = {
        "name": "gemini",
        "api_key": _env("GEMINI_API_KEY"),
        "base_url": _env("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com").rstrip("/"),
        "model": _env("GEMINI_MODEL", "gemini-2.5-flash"),
    }

    try:
        cur.execute(
            """
            SELECT value_json
            FROM clinic_settings
            WHERE clinic_id = %s AND key = 'ai'
            LIMIT 1
            """,
            (clinic_id,),
        )
        row = cur.fetchone()
        if row:
            v = row.get("value_json") or {}
            if isinstance(v.get("invoice_providers"), list) and v["invoice_providers"]:
                order = [str(p).strip().lower() for p in v["invoice_providers"] if str(p).strip()]
            openai["api_key"] = (v.get("openai_api_key") or openai["api_key"]).strip()
            openai["base_url"] = (v.get("openai_base_url") or openai["base_url"]).strip().rstrip("/")
            openai["model"] = (v.get("openai_invoice_model") or openai["model"]).strip()
            gemini["api_key"] = (v.get("gemini_api_key") or gemini["api_key"]).strip()
            gemini["base_url"] = (v.get("gemini_base_url") or gemini["base_url"]).strip().rstrip("/")
            gemini["model"] = (v.get("gemini_model") or gemini["model"]).strip()
    except Exception:
        # Never break intake if settings are malformed or the read fails.
        pass

    by_name = {"openai": openai, "gemini": gemini}
    providers = []
    for name in order:
        if name in by_name and by_name[name] not in providers:
            providers.append(by_name[name])
    if not providers:
        providers = [openai, gemini]

    return {
        "providers": providers,
        "max_output_tokens": settings.ai_max_output_tokens,
        "retry_max_output_tokens": settings.ai_retry_max_output_tokens,
        "timeout": settings.ai_http_timeout_seconds,
    }
