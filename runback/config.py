"""Settings via pydantic-settings with RUNBACK_ env prefix.

Provider credentials use validation_alias so the same unprefixed env vars
the provider SDKs read (OPENROUTER_API_KEY, FAL_KEY) configure the engine.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RUNBACK_", env_file=".env", populate_by_name=True)

    log_level: str = "info"

    # Durable store (SQLite file, ":memory:" for tests)
    db_path: str = "runback.db"

    # Provider credentials
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")
    fal_api_key: str = Field("", validation_alias="FAL_KEY")
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    fal_queue_base_url: str = "https://queue.fal.run"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Helper models (summarizer + topic classifier run on OpenRouter)
    helper_model: str = "openai/gpt-4o-mini"
    classifier_model: str = "microsoft/phi-3-mini-128k-instruct"

    # Generation jobs
    poll_interval: float = 10.0  # seconds between queued-job status polls
    poll_when_unknown_visibility: bool = True

    # Checkpoints
    checkpoint_threshold: float = 0.6  # fraction of the context window
    default_context_length: int = 8192
    topic_detection_enabled: bool = True
    topic_window: int = 5  # turns sent to the topic classifier
    checkpoint_command: str = "/checkpoint"

    # Sessions
    max_open_sessions: int = 5

    # Event Bus
    event_bus_enabled: bool = True

    # Runtime
    host: str = "127.0.0.1"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not 0 < self.checkpoint_threshold <= 1:
            raise ValueError(
                f"checkpoint_threshold ({self.checkpoint_threshold}) must be in (0, 1]"
            )
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if self.max_open_sessions < 1:
            raise ValueError("max_open_sessions must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path}"
