import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/clinic_pharmacy')
        # Comma-separated list of allowed CORS origins for the clinic web app.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Purchase invoice uploads.
        self.upload_storage = (os.getenv("PURCHASE_UPLOAD_STORAGE") or "local").strip().lower()
        self.upload_base_dir = (os.getenv("PURCHASE_UPLOAD_BASE_DIR") or "").strip() or os.path.join(
            os.getcwd(), "uploads", "purchases"
        )
        self.upload_max_mb = _env_int("PURCHASE_UPLOAD_MAX_MB", 15)

        # Extraction providers, tried in order.
        self.ai_invoice_providers = [
            p.lower()
            for p in self._split_csv(os.getenv("AI_INVOICE_PROVIDERS", "").strip(), default=["openai", "gemini"])
        ]
        self.ai_max_output_tokens = _env_int("AI_MAX_OUTPUT_TOKENS", 4000)
        self.ai_retry_max_output_tokens = _env_int("AI_RETRY_MAX_OUTPUT_TOKENS", 7000)
        self.ai_http_timeout_seconds = _env_int("AI_HTTP_TIMEOUT_SECONDS", 60)

        # ledger_only | reject
        policy = (os.getenv("UNLINKED_ITEM_POLICY") or "ledger_only").strip().lower()
        self.unlinked_item_policy = policy if policy in {"ledger_only", "reject"} else "ledger_only"

        self.upload_parse_stale_seconds = _env_int("UPLOAD_PARSE_STALE_SECONDS", 600)
        self.upload_parse_sweep_interval_seconds = _env_int("UPLOAD_PARSE_SWEEP_INTERVAL_SECONDS", 30)


settings = Settings()
