from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    DATABASE_URL: str = Field(..., description="Async SQLAlchemy connection string (postgresql+asyncpg://...)")

    # Redis
    REDIS_URL: str = Field("redis://localhost:6379/0")
    SESSION_LOCK_TTL_SECONDS: int = 10

    # Auth
    AUTH_SECRET: str = Field("", description="HMAC secret shared with the host app that issues candidate tokens")
    TOKEN_TTL_SECONDS: int = 86400  # 1 day

    # Timer & Autosave
    TICK_INTERVAL_SECONDS: float = 1.0
    AUTOSAVE_INTERVAL_SECONDS: int = 30
    TIMER_WARNING_PERCENT: int = 25
    TIMER_CRITICAL_PERCENT: int = 10
    ALLOW_CANDIDATE_PAUSE: bool = Field(False, description="Expose pause/resume to candidates (non-compliant deployments only)")

    # Submission retries
    SUBMIT_MAX_ATTEMPTS: int = 8
    SUBMIT_RETRY_BASE_SECONDS: float = 0.5
    SUBMIT_RETRY_MAX_SECONDS: float = 30.0

    # Session Monitor
    SESSION_MONITOR_INTERVAL_SECONDS: int = 60
    SESSION_MONITOR_JOB_ID: str = "session_monitor"
    INACTIVITY_MULTIPLIER: int = 2  # no activity for N x duration => expire

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    CORS_ORIGINS: List[str] = Field(default_factory=list)

    # Environment
    ENV: str = "production"  # development, staging, production
    DEBUG: bool = False

settings = Settings()
