import os
import logging
from pydantic import BaseModel, Field
from typing import List
from dotenv import load_dotenv

load_dotenv()


class ReviewWorkflowSettings(BaseModel):
    reopen_reason_min_length: int = int(os.getenv("REOPEN_REASON_MIN_LENGTH", "10"))
    in_review_note_max_length: int = int(os.getenv("IN_REVIEW_NOTE_MAX_LENGTH", "2000"))
    # Saga retries for the response write after a concurrency conflict
    review_edit_max_attempts: int = int(os.getenv("REVIEW_EDIT_MAX_ATTEMPTS", "3"))
    review_edit_retry_wait_seconds: float = float(os.getenv("REVIEW_EDIT_RETRY_WAIT_SECONDS", "0.05"))
    default_requires_manager_review: bool = os.getenv("DEFAULT_REQUIRES_MANAGER_REVIEW", "true").lower() == "true"


class Config(BaseModel):
    app_name: str = "Performance Review Workflow"
    environment: str = os.getenv("APP_ENV", "development")
    api_prefix: str = "/api"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./perfreview.db")
    database_echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Workflow rules
    workflow: ReviewWorkflowSettings = ReviewWorkflowSettings()

    version: str = "1.0.0"
    build_id: str = os.getenv("BUILD_ID", "local")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    request_id_header: str = "X-Request-ID"

    # Caller identity headers, populated by the upstream gateway
    employee_id_header: str = "X-Employee-Id"
    employee_role_header: str = "X-Employee-Role"

    cors_origins: List[str] = Field(
        default_factory=lambda: [
            o.strip()
            for o in os.getenv(
                "CORS_ORIGINS",
                "http://localhost:3000,http://127.0.0.1:3000",
            ).split(",")
            if o.strip()
        ]
    )

    rate_limit_enabled: bool = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
    rate_limit_per_minute: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "120"))


settings = Config()

# --- Startup Validation for Production ---
_logger = logging.getLogger(__name__)
if settings.environment not in ("development", "testing"):
    if settings.database_url.startswith("sqlite"):
        raise RuntimeError(
            "FATAL: DATABASE_URL must point at a shared database outside development. "
            "Set it as an environment variable."
        )
else:
    if settings.database_url.startswith("sqlite:///./"):
        _logger.warning("Using local SQLite database; only acceptable in development.")
