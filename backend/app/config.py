import os
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/posledger')
        # Comma-separated list of allowed CORS origins for the admin UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Business-day timezone: receipt dates and end-of-day windows are computed here.
        self.ledger_timezone = os.getenv("LEDGER_TIMEZONE", "").strip() or "America/Los_Angeles"
        # Courtesy delay between ledger calls in batches (rate limiting).
        self.ledger_sync_delay_ms = self._int("LEDGER_SYNC_DELAY_MS", 100)
        self.ledger_sync_chunk_size = max(1, self._int("LEDGER_SYNC_CHUNK_SIZE", 25))
        self.ledger_http_timeout = self._int("LEDGER_HTTP_TIMEOUT", 30)
        # Shared key for the sync HTTP API (admin actions + cron trigger).
        self.ledger_sync_api_key = (os.getenv("LEDGER_SYNC_API_KEY") or "").strip()

settings = Settings()
