import os
import tempfile

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Insight Engine API"
    ENVIRONMENT: str = "production"  # "development" skips CAPTCHA verification

    # ─── LLM Providers ───────────────────────────────────────────────────
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None  # OpenAI-compatible gateway (e.g. OpenRouter)
    PROMPT_MODEL: str = "gpt-4o-mini"
    RESEARCH_MODEL: str = "gpt-4o"
    STRUCTURING_MODEL: str = "gpt-4o-mini"
    PROMPT_INPUT_CHAR_LIMIT: int = 12000
    LLM_TIMEOUT_SECONDS: float = 600.0
    LLM_MAX_RETRIES: int = 3
    STAGE_TIMEOUT_SECONDS: float = 900.0

    # ─── Job Store ───────────────────────────────────────────────────────
    DATABASE_URL: str = ""  # Logic: If set, use Postgres. Else, use SQLite.
    SQLITE_PATH: str = "jobs.db"
    STORE_CONNECT_TIMEOUT_SECONDS: float = 30.0
    STORE_COMMAND_TIMEOUT_SECONDS: float = 45.0

    # ─── Background Execution ────────────────────────────────────────────
    REDIS_URL: str = ""  # e.g. redis://localhost:6379/0
    TASK_QUEUE: str = "inline"  # "inline" (asyncio) or "celery"
    BASE_URL: str = "http://localhost:8000"
    RECONCILE_VIA_WEBHOOK: bool = False

    # ─── Deduplication ───────────────────────────────────────────────────
    DEDUP_SAME_EMAIL_WINDOW_SECONDS: float = 60.0
    DEDUP_TEXT_WINDOW_SECONDS: float = 30.0

    # ─── CAPTCHA ─────────────────────────────────────────────────────────
    RECAPTCHA_SECRET_KEY: str = ""
    RECAPTCHA_VERIFY_URL: str = "https://www.google.com/recaptcha/api/siteverify"

    # ─── Email ───────────────────────────────────────────────────────────
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "Insight Engine <no-reply@insight-engine.local>"

    # ─── Storage ─────────────────────────────────────────────────────────
    UPLOAD_DIR: str = os.path.join(tempfile.gettempdir(), "insight-engine-uploads")
    UPLOAD_MAX_AGE_SECONDS: int = 86400
    MAX_UPLOAD_SIZE_MB: int = 50

    # ─── API ─────────────────────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"

    # ⚠ SECURITY WARNING: These defaults are for local development ONLY.
    # In production, you MUST override CORS_ORIGINS via environment variable to restrict access.
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    LOG_LEVEL: str = "INFO"
    NOISY_LOG_LEVEL: str = "WARNING"

    class Config:
        env_file = ".env"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

settings = Settings()
