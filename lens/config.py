"""Settings via pydantic-settings with LENS_ env prefix.

Memory thresholds and CUSTOMER tool defaults live here so a single .env
file can tune an agent without code changes.
"""

import logging

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LENS_", env_file=".env", extra="ignore")

    log_level: str = "info"  # Read by configure_logging()

    # LLM
    model: str = "gpt-5.2"
    provider: str = "openai"
    max_turns: int = Field(10, ge=1)  # Max model calls per execute()

    # Memory compaction
    memory_max_messages: int = 20  # Hard ceiling, always compacts above this
    memory_compact_threshold: int = 15  # Soft threshold, compacts if over token budget
    memory_keep_recent: int = 10
    memory_max_tokens_estimate: int = 8000
    chars_per_token: float = 2.5
    image_token_cost: int = 85
    summary_words: int = 300
    summary_merge_words: int = 400

    # CUSTOMER mode tools
    customer_tool_timeout_ms: int = 20000
    customer_tool_max_retries: int = 1
    customer_backoff_base: float = 1.0  # seconds, multiplied by 2**attempt

    @model_validator(mode="after")
    def _validate_memory(self) -> "Settings":
        if self.memory_keep_recent >= self.memory_compact_threshold:
            raise ValueError(
                f"memory_keep_recent ({self.memory_keep_recent}) must be < "
                f"memory_compact_threshold ({self.memory_compact_threshold})"
            )
        if self.memory_compact_threshold > self.memory_max_messages:
            raise ValueError(
                f"memory_compact_threshold ({self.memory_compact_threshold}) must be <= "
                f"memory_max_messages ({self.memory_max_messages})"
            )
        return self


def configure_logging(settings: Settings | None = None) -> None:
    """Install a root handler at settings.log_level. For host applications."""
    settings = settings or Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
