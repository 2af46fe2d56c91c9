from backend.app.ai.providers import get_ai_provider_config
from backend.app.config import settings
from backend.tests.fakes import FakeCursor


def test_env_keys_and_default_order(monkeypatch):
    monkeypatch.setattr(settings, "ai_invoice_providers", ["openai", "gemini"])
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_INVOICE_MODEL", raising=False)
    cfg = get_ai_provider_config(FakeCursor([]), "clinic-1")
    assert [p["name"] for p in cfg["providers"]] == ["openai", "gemini"]
    assert cfg["providers"][0]["api_key"] == "sk-env"
    assert cfg["providers"][0]["model"] == "gpt-4.1-mini"
    assert cfg["providers"][1]["api_key"] == ""
    assert cfg["retry_max_output_tokens"] > cfg["max_output_tokens"]


def test_clinic_settings_override_order_and_keys(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    cur = FakeCursor(
        [
            (
                "FROM clinic_settings",
                {"value_json": {"invoice_providers": ["Gemini"], "gemini_api_key": " g-key ", "gemini_model": "gemini-x"}},
            )
        ]
    )
    cfg = get_ai_provider_config(cur, "clinic-1")
    assert [p["name"] for p in cfg["providers"]] == ["gemini"]
    assert cfg["providers"][0]["api_key"] == "g-key"
    assert cfg["providers"][0]["model"] == "gemini-x"


def test_unknown_provider_names_fall_back_to_both(monkeypatch):
    cur = FakeCursor([("FROM clinic_settings", {"value_json": {"invoice_providers": ["claude-vision"]}})])
    cfg = get_ai_provider_config(cur, "clinic-1")
    assert [p["name"] for p in cfg["providers"]] == ["openai", "gemini"]
