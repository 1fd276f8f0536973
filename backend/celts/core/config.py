import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):

    port: int = 8000
    environment: str = "development"

    postgres_user: str = os.getenv("POSTGRES_USER", "user")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "password")
    postgres_db: str = os.getenv("POSTGRES_DB", "celts_db")
    postgres_host: str = os.getenv("POSTGRES_HOST", "db")
    postgres_port: int = 5432

    # Full URL wins over the postgres parts (sqlite:// in tests)
    database_url_override: Optional[str] = os.getenv("DATABASE_URL")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    azure_openai_endpoint: Optional[str] = ""
    azure_openai_api_key: Optional[str] = ""
    azure_openai_deployment: str = "gpt-4o-mini"
    azure_openai_api_version: str = "2024-03-01-preview"

    azure_openai_endpoint_audio: Optional[str] = ""
    azure_openai_api_key_audio: Optional[str] = ""
    azure_openai_transcribe_deployment: str = "gpt-4o-mini-transcribe"
    azure_openai_audio_api_version: str = "2025-03-01-preview"

    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 8
    refresh_token_expire_minutes: int = 10080

    cors_origins_str: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_str.split(",")]

    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_default_ttl: int = 600

    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

    # Security endpoints rate limit, per client IP
    security_rate_limit_requests: int = 10
    security_rate_limit_window_seconds: int = 60

    session_inactivity_minutes: int = 30
    exam_session_inactivity_minutes: int = 120
    exam_session_max_hours: int = 4
    exam_context_grace_seconds: int = 30

    default_exam_time_limit_minutes: int = 120
    stale_attempt_hours: int = 6
    # late uploads accepted after a time-expired auto-submit
    submission_grace_seconds: int = 120
    timer_cleanup_interval_seconds: int = 60

    # Termination thresholds
    max_critical_violations: int = 2
    max_high_violations: int = 3
    min_security_score: int = 30
    # high-severity violations shown as the remaining warning budget
    violation_warning_budget: int = 5

    minio_endpoint: Optional[str] = ""
    minio_access_key: Optional[str] = ""
    minio_secret_key: Optional[str] = ""
    minio_bucket: str = "celts-student-media"
    minio_use_ssl: bool = False

    upload_base_dir: str = os.getenv("UPLOAD_BASE_DIR", "/app")
    max_media_upload_size: int = 50 * 1024 * 1024
    delete_media_after_grading: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
