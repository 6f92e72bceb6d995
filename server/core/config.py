"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from constants import DEFAULT_QUEUE


class Settings(BaseSettings):
    """Worker settings driven entirely by environment variables (DAG_ prefix)."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3020, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Redis Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)

    # Execution Engine
    default_queue: str = Field(default=DEFAULT_QUEUE, min_length=1)
    polling_interval: float = Field(default=0.3, gt=0, le=10.0)
    locking_duration: float = Field(default=2.0, gt=0, le=300.0)
    lock_wait_timeout: float = Field(default=2.0, gt=0, le=300.0)
    advancement_retry_delay: float = Field(default=2.0, ge=0, le=3600.0)

    # Worker
    worker_enabled: bool = Field(default=True)
    worker_queues: List[str] = Field(default_factory=lambda: [DEFAULT_QUEUE])
    worker_concurrency: int = Field(default=5, ge=1, le=256)
    dequeue_timeout: float = Field(default=1.0, gt=0, le=60.0)

    # Modules imported at startup to register job handlers
    job_modules: List[str] = Field(default_factory=list)

    # Redelivery policy for failed executions
    max_attempts: int = Field(default=3, ge=1, le=100)
    retry_initial_delay: float = Field(default=1.0, ge=0, le=3600.0)
    retry_max_delay: float = Field(default=60.0, ge=0, le=86400.0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    dlq_enabled: bool = Field(default=False)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept lower-case level names from the environment."""
        return v.upper() if isinstance(v, str) else v

    @field_validator("worker_queues")
    @classmethod
    def validate_worker_queues(cls, v):
        """A worker must listen on at least one queue."""
        if not v:
            raise ValueError("worker_queues must not be empty")
        return v

    @model_validator(mode="after")
    def validate_redis(self):
        """Redis mode needs a URL to connect to."""
        if self.redis_enabled and not self.redis_url:
            raise ValueError("redis_url is required when redis_enabled is true")
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_prefix": "DAG_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "frozen": True,
        "env_parse_none_str": "none",
    }
