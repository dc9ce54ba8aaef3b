"""
config.py — Box Scan application settings.

Usage:
    from boxscan.config import settings
    print(settings.redis_url)

Never use FastAPI Depends() for settings — import directly as a module-level singleton.
"""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Silently ignore any extra env vars
    )

    # --- Redis ---
    redis_url: str = "redis://localhost:6379"

    # --- Public scanner URL (scan links handed to the bot) ---
    app_url: str = "http://localhost:3000"

    # --- Downstream bot webhook ---
    # Base URL only; /webhook/scan-complete is appended by the dispatcher.
    bot_webhook_url: str = ""
    # Below the session lock TTL (10s); finalize holds the lock across this call
    webhook_timeout_seconds: float = 8.0

    # --- OCR (Mistral vision) ---
    mistral_api_key: str = ""
    ocr_model: str = "pixtral-12b-latest"
    ocr_timeout_seconds: float = 30.0

    # --- CORS ---
    # Comma-separated list of allowed frontend origins
    cors_origins: str = "http://localhost:3000"

    # --- Application ---
    debug: bool = True
    app_version: str = "0.1.0"

    @property
    def cors_origins_list(self) -> List[str]:
        """Split comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton: import this throughout the codebase
settings = Settings()
