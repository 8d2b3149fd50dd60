"""
Engine Configuration

Environment variable management using Pydantic Settings.
"""

from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables

    All settings can be overridden via .env file or environment variables.
    """

    # Application
    APP_NAME: str = "nodeflow"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development | staging | production

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Interactions (pause/resume)
    INTERACTION_BACKEND: Literal["memory", "redis"] = "memory"
    INTERACTION_TTL_SECONDS: int = 3600  # 1 hour
    INTERACTION_SWEEP_INTERVAL: int = 60  # seconds

    # Workflow Execution
    WORKFLOW_RUN_TIMEOUT: float = 300.0  # 5 minutes
    NODE_EXECUTION_TIMEOUT: float = 120.0
    MAX_NODE_RUNS: int = 1000  # Per node, per run
    MAX_CONCURRENT_RUNS: int = 100
    DEFAULT_LOOP_MAX_ITERATIONS: int = 100

    # Code Execution
    CODE_EXECUTION_TIMEOUT_MS: int = 10000
    CODE_MAX_MEMORY_MB: int = 100  # Advisory only
    CODE_STARTUP_TIMEOUT_MS: int = 30000  # Child interpreter start, before the script clock

    # HTTP Requests
    HTTP_REQUEST_TIMEOUT_MS: int = 30000
    HTTP_MAX_RESPONSE_SIZE: int = 1024 * 1024  # 1 MiB

    # Streaming
    STREAM_HEARTBEAT_INTERVAL: float = 10.0  # seconds

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL
    LOG_FORMAT: str = "json"  # json | text

    @field_validator("MAX_NODE_RUNS", "MAX_CONCURRENT_RUNS", "DEFAULT_LOOP_MAX_ITERATIONS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Execution bounds must always allow at least one step."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return settings
