from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv


load_dotenv()


def _split_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings:
    """Application settings loaded from environment variables.

    Keep endpoint, decoding and storage config centralized here.
    """

    app_env: str = os.getenv("APP_ENV", "development")

    # Completion endpoint
    completion_url: str = os.getenv(
        "COMPLETION_URL", "https://api.groq.com/openai/v1/chat/completions"
    )
    completion_model: str = os.getenv("COMPLETION_MODEL", "llama-3.1-8b-instant")
    temperature: float = float(os.getenv("MODEL_TEMPERATURE", "0.6"))
    top_p: float = float(os.getenv("MODEL_TOP_P", "0.9"))
    max_tokens: int = int(os.getenv("MODEL_MAX_TOKENS", "128"))
    request_timeout: float = float(os.getenv("COMPLETION_TIMEOUT", "30.0"))
    credential_prefix: str = os.getenv("CREDENTIAL_PREFIX", "gsk_")

    # Conversation
    assistant_name: str = os.getenv("ASSISTANT_NAME", "Baymax")
    history_window: int = int(os.getenv("HISTORY_WINDOW", "6"))
    context_char_limit: int = int(os.getenv("CONTEXT_CHAR_LIMIT", "3500"))
    context_fetch_timeout: Optional[float] = (
        float(os.environ["CONTEXT_FETCH_TIMEOUT"]) if os.getenv("CONTEXT_FETCH_TIMEOUT") else None
    )
    blocked_page_schemes: List[str] = _split_env("BLOCKED_PAGE_SCHEMES", "chrome://,edge://")
    # Server-side fetching of client-supplied URLs stays off unless asked for
    allow_page_fetch: bool = os.getenv("ALLOW_PAGE_FETCH", "false").lower() in ("1", "true", "yes")
    page_fetch_timeout: float = float(os.getenv("PAGE_FETCH_TIMEOUT", "10.0"))

    # Storage
    storage_path: str = os.getenv("COMPANION_STORAGE_PATH", ".companion/storage.json")

    # Logging and server
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_format: str = os.getenv("LOG_FORMAT", "json")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
