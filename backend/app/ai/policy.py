from __future__ import annotations

from typing import Any

_FALSE_WORDS = {"false", "0", "no", "off", "deny"}


def _opt_out(flag: Any) -> bool:
    if isinstance(flag, str):
        return flag.strip().lower() in _FALSE_WORDS
    return flag is not None and not bool(flag)


def is_external_ai_allowed(cur, clinic_id: str) -> bool:
    """
    Whether this clinic lets uploaded supplier invoices leave the building for
    OpenAI/Gemini extraction.

    Clinics opt out with clinic_settings(key='ai').value_json.allow_external_processing
    set to false (or "false"/"no"/"0", as settings screens tend to store it). With no
    row or no flag, extraction is allowed so a fresh clinic can parse invoices as
    soon as a provider key exists. Uploads from an opted-out clinic end FAILED
    with a policy error instead of reaching any provider.
    """
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
    except Exception:
        # An unreadable settings row must not block invoice intake.
        return True
    settings_json = (row or {}).get("value_json") or {}
    if not isinstance(settings_json, dict):
        return True
    return not _opt_out(settings_json.get("allow_external_processing"))
