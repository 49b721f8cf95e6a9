import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Remote API
    api_base_url: str = Field(default="http://localhost:5000/api/v1", alias="API_BASE_URL")
    request_timeout: float = Field(default=10.0, gt=0, alias="REQUEST_TIMEOUT")
    overall_timeout: float | None = Field(
        default=30.0, gt=0, alias="REQUEST_OVERALL_TIMEOUT"
    )

    # Cache Configuration
    cache_ttl_seconds: float = Field(default=300.0, gt=0, alias="CACHE_TTL_SECONDS")
    cache_max_size: int = Field(default=500, ge=1, alias="CACHE_MAX_SIZE")
    cache_sweep_interval_seconds: float = Field(
        default=300.0, gt=0, alias="CACHE_SWEEP_INTERVAL"
    )

    # Retry Configuration
    retry_max_attempts: int = Field(default=3, ge=1, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, ge=0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=10.0, ge=0, alias="RETRY_MAX_DELAY")

    # Rate Limit Configuration
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_max_requests: int = Field(default=60, ge=1, alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: float = Field(
        default=60.0, gt=0, alias="RATE_LIMIT_WINDOW_SECONDS"
    )
    rate_limit_max_requeues: int = Field(default=3, ge=0, alias="RATE_LIMIT_MAX_REQUEUES")
    rate_limit_retry_delay: float = Field(default=1.0, ge=0, alias="RATE_LIMIT_RETRY_DELAY")
    rate_limit_max_retry_delay: float = Field(
        default=30.0, ge=0, alias="RATE_LIMIT_MAX_RETRY_DELAY"
    )

    debug: bool = Field(default=False, alias="DEBUG")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after .env loading)."""
        return cls.model_validate(dict(os.environ))


global_settings = Settings.from_env()
