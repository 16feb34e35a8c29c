"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = Field(default=False)
    environment: Literal["development", "production", "test"] = Field(default="development")
    cors_origins: List[str] = Field(default=["http://localhost:5173"])

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/worklog.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=5, ge=1, le=100)
    database_max_overflow: int = Field(default=10, ge=0, le=100)

    # Connection management
    database_max_retries: int = Field(default=3, ge=0, le=10)
    database_retry_delay: float = Field(default=0.5, ge=0.0, le=10.0)
    database_operation_retry_delay: float = Field(default=0.2, ge=0.0, le=10.0)
    database_connect_wait_polls: int = Field(default=30, ge=1)
    database_connect_wait_interval: float = Field(default=0.1, ge=0.0)
    database_short_timeout: float = Field(default=5.0, gt=0)      # point operations
    database_medium_timeout: float = Field(default=15.0, gt=0)    # dashboard aggregates
    database_long_timeout: float = Field(default=30.0, gt=0)      # export / generation
    database_health_check_ttl: float = Field(default=10.0, ge=0.0)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    cache_default_ttl: int = Field(default=3600, ge=1)
    cache_count_ttl: int = Field(default=300, ge=1)
    cache_user_data_ttl: int = Field(default=600, ge=1)
    cache_dashboard_ttl: int = Field(default=600, ge=1)
    cache_entries_ttl: int = Field(default=300, ge=1)
    cache_extraction_ttl: int = Field(default=604800, ge=1)  # 7 days
    cache_insights_ttl: int = Field(default=3600, ge=1)

    # Analysis job queue
    job_poll_interval: float = Field(default=5.0, gt=0)
    job_status_ttl: int = Field(default=3600, ge=1)
    job_batch_status_ttl: int = Field(default=7200, ge=1)
    job_default_retries: int = Field(default=2, ge=1, le=10)
    job_batch_default_retries: int = Field(default=1, ge=1, le=10)
    job_default_timeout_ms: int = Field(default=60000, ge=1000)
    job_default_batch_size: int = Field(default=5, ge=1, le=50)
    job_batch_delay: float = Field(default=2.0, ge=0.0)
    job_retry_base_delay: float = Field(default=1.0, ge=0.0)
    job_retry_max_delay: float = Field(default=60.0, ge=0.0)

    # LLM analysis
    anthropic_api_key: Optional[str] = Field(default=None)
    analysis_model: str = Field(default="claude-3-haiku-20240307")
    analysis_max_tokens: int = Field(default=4000, ge=256)
    analysis_temperature: float = Field(default=0.1, ge=0.0, le=1.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return not self.is_production

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def cache_namespace(self) -> str:
        """Key prefix separating dev and prod data in a shared cache."""
        return "prod:" if self.is_production else "dev:"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
