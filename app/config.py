"""Application settings loaded from environment variables and .env."""
import logging
from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Runtime configuration for the assistant chat backend.

    Every field can be overridden by an environment variable of the same name.
    """

    # Remote assistant service
    OPENAI_API_KEY: str = ""
    ASSISTANT_ID: str = ""
    OPENAI_TIMEOUT: float = 60.0
    RUN_POLL_INTERVAL_MS: int = 500

    # Upper bound on pause/resume cycles within one run
    MAX_TOOL_CYCLES: int = 10

    DATABASE_URL: str = "sqlite+aiosqlite:///./chat.db"

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level and format to the root logger."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
    )
