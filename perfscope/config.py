import sys
from typing import Annotated, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration, read once from `PERFSCOPE_*` environment
    variables and `.env`.
    """
    model_config = SettingsConfigDict(env_prefix="PERFSCOPE_", env_file=".env", extra="ignore")

    log_level: str = "INFO"

    # Default wall-clock bounds per language, in seconds
    python_timeout: float = 10.0
    javascript_timeout: float = 5.0

    python_executable: str = sys.executable
    node_executable: str = "node"

    # Sandbox limits
    memory_limit_mb: int = 512
    file_size_limit_mb: int = 8
    kill_grace: float = 0.5
    max_line_bytes: int = 64 * 1024 * 1024

    # Events buffered between a sandbox and its orchestrator
    channel_size: int = 1024

    # HTTP layer
    cors_origins: Annotated[List[str], NoDecode] = ["*"]
    feed_retention: int = 100

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        # comma separated in the environment
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


settings = Settings()
