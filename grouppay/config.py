"""Application configuration via environment variables."""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./grouppay.db"
    log_level: str = "INFO"

    # Bank API
    bank_base_url: str = "https://gsb.TourismBank.ir"
    access_token_url: str = "https://sso.TourismBank.ir/oauth/token"
    api_version: str = "7"
    http_timeout_seconds: float = 120.0
    token_cache_enabled: bool = False

    # Workflow
    max_execution_attempts: int = 3
    retry_delay_seconds: float = 5.0  # Hint returned to the scheduler after a retryable DoPayment failure
    inquiry_refresh_minutes: float = 5.0  # Settled orders are not re-polled more often than this
    retryable_status_codes: set[int] = {408, 500, 502, 503, 504}
    read_retry_attempts: int = 2  # In-process retries for read-only inquiries only

    # Mock bank (demo / tests)
    use_mock_gateway: bool = True
    mock_latency_ms: int = 0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator("bank_base_url", "access_token_url", "api_version")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.rstrip("/")

    @field_validator("http_timeout_seconds", "max_execution_attempts", "retry_delay_seconds", "inquiry_refresh_minutes")
    @classmethod
    def _positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("read_retry_attempts", "mock_latency_ms")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


settings = Settings()
