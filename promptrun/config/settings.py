"""Client settings using Pydantic BaseSettings."""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Run client configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PROMPTRUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)

    # Execution service
    execution_base_url: str = Field(default="http://127.0.0.1:54321")
    run_path: str = Field(default="/functions/v1/conversation-run")
    cancel_path: str = Field(default="/functions/v1/conversation-cancel")
    # Sent as the `apikey` header when set (gateway routing key, not a secret)
    publishable_key: str = Field(default="")

    # Transport timeouts. Read timeout bounds the gap between two chunks,
    # heartbeats keep it from firing on slow generations.
    connect_timeout_seconds: float = Field(default=10.0)
    read_timeout_seconds: float = Field(default=300.0)

    # Thread/prompt persistence
    database_url: str = Field(default="sqlite+aiosqlite:///./promptrun.db")

    # Error display
    error_display_seconds: int = Field(default=5)
    quota_error_display_seconds: int = Field(default=10)

    # Run telemetry (metadata-only log records)
    telemetry_enabled: bool = Field(default=True)
    telemetry_sample_rate: float = Field(default=1.0)
    telemetry_sampling_mode: str = Field(default="hash")

    @property
    def run_url(self) -> str:
        return f"{self.execution_base_url.rstrip('/')}{self.run_path}"

    @property
    def cancel_url(self) -> str:
        return f"{self.execution_base_url.rstrip('/')}{self.cancel_path}"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.environment == "test"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production", "test"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production, test")
        return vv

    @field_validator("telemetry_sampling_mode")
    @classmethod
    def validate_telemetry_sampling_mode(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"hash", "random"}:
            raise ValueError("TELEMETRY_SAMPLING_MODE must be one of: hash, random")
        return vv

    @model_validator(mode="after")
    def validate_cross_field_constraints(self) -> "Settings":
        if not (0.0 <= self.telemetry_sample_rate <= 1.0):
            raise ValueError("TELEMETRY_SAMPLE_RATE must be between 0 and 1")
        if self.is_production and self.execution_base_url.startswith("http://"):
            raise ValueError("In production, EXECUTION_BASE_URL must use https")
        if self.connect_timeout_seconds <= 0 or self.read_timeout_seconds <= 0:
            raise ValueError("Timeouts must be positive")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
