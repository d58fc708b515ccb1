from typing import Literal

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Beyanname AI API"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str = "" # Logic: If set, use Postgres. Else, use SQLite.
    SQLITE_PATH: str = "beyanname_jobs.db"
    REDIS_URL: str = "redis://localhost:6379/0" # Default local Redis
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"

    # ⚠ SECURITY WARNING: These defaults are for local development ONLY.
    # In production, you MUST override CORS_ORIGINS via environment variable to restrict access.
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000,http://localhost:8080"

    # ─── Authentication ──────────────────────────────────────────────────
    # Access tokens are issued by the auth provider (Supabase signs HS256 with the project JWT secret).
    AUTH_JWT_SECRET: str = "change-me"
    AUTH_JWT_ALGORITHM: str = "HS256"
    AUTH_JWT_AUDIENCE: str | None = None
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ─── Analysis Provider ───────────────────────────────────────────────
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None  # e.g. https://openrouter.ai/api/v1
    ANALYSIS_MODEL: str = "gpt-4o-mini"
    ANALYSIS_MAX_OUTPUT_TOKENS: int = 8192
    ANALYSIS_TEMPERATURE: float = 0.2
    ANALYSIS_TIMEOUT_SECONDS: float = 120.0

    # ─── Job Pipeline ────────────────────────────────────────────────────
    CHUNK_TOKEN_BUDGET: int = 50000
    BATCH_MODE: Literal["individual", "provider_batch"] = "individual"
    BATCH_POLL_INTERVAL_SECONDS: float = 60.0
    BATCH_DEADLINE_SECONDS: float = 1800.0
    STALE_PROCESSING_SECONDS: int = 3600
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_BATCH_SIZE: int = 20

    # ─── Storage ─────────────────────────────────────────────────────────
    STORAGE_TYPE: str = "local" # "local" or "s3"
    ARTIFACT_DIR: str = "artifacts"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "eu-central-1"
    AWS_BUCKET_NAME: str = "beyanname-analyses"
    ARTIFACT_URL_TTL_SECONDS: int = 3600

    # ─── PDF ─────────────────────────────────────────────────────────────
    PDF_FONT_PATH: str | None = None  # TTF with Turkish glyphs (ş, ğ, ı, İ); Helvetica if unset

    class Config:
        env_file = ".env"

settings = Settings()
