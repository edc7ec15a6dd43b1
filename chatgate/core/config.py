import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Optional[str] = None  # "json" | "pretty"; default depends on ENV

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity (sessions are issued elsewhere; we only verify them)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: List[str] = ["HS256"]
    ALLOW_HEADER_AUTH: bool = True  # X-User-Id fallback for dev/tests

    # Hosted model backend (Groq)
    GROQ_API_KEY: Optional[str] = None
    HOSTED_MODEL: str = "llama-3.1-8b-instant"
    HOSTED_BASE_URL: Optional[str] = None

    # Self-hosted inference endpoint (Ollama-compatible /api/chat)
    SELF_HOSTED_URL: str = "http://localhost:11434"
    SELF_HOSTED_MODEL: str = "llama3.1"
    SELF_HOSTED_API_KEY: Optional[str] = None

    MODEL_TIMEOUT_SECONDS: float = 60.0

    # Response governance
    LENGTH_MAX_ATTEMPTS: int = 3
    LENGTH_FALLBACK_MESSAGE: str = (
        "Sorry, I couldn't produce an answer short enough for your plan. "
        "Try asking for a shorter or more focused reply."
    )
    SYSTEM_PROMPT_LANGUAGE: Optional[str] = None
    FORBIDDEN_BACKEND_POLICY: str = "reject"  # "reject" | "downgrade"
    TITLE_MAX_CHARS: int = 50

    # Plan overrides (None keeps the built-in default)
    PLAN_FREE_DAILY_MESSAGES: Optional[int] = None
    PLAN_FREE_MAX_ACTIVE_CONVERSATIONS: Optional[int] = None
    PLAN_FREE_MAX_RESPONSE_LENGTH: Optional[int] = None
    PLAN_PRO_DAILY_MESSAGES: Optional[int] = None
    PLAN_PRO_MAX_ACTIVE_CONVERSATIONS: Optional[int] = None
    PLAN_PRO_MAX_RESPONSE_LENGTH: Optional[int] = None
    PLAN_BUSINESS_DAILY_MESSAGES: Optional[int] = None
    PLAN_BUSINESS_MAX_ACTIVE_CONVERSATIONS: Optional[int] = None
    PLAN_BUSINESS_MAX_RESPONSE_LENGTH: Optional[int] = None

    # App
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("chatgate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "GROQ_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    policy = getattr(cfg, "FORBIDDEN_BACKEND_POLICY", "reject")
    if policy not in ("reject", "downgrade"):
        message = f"FORBIDDEN_BACKEND_POLICY must be 'reject' or 'downgrade', got {policy!r}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
