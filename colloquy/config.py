"""Settings via pydantic-settings with COLLOQUY_ env prefix.

Secrets and DB connection fields use validation_alias to read the same
unprefixed env vars (DB_PASSWORD, ANTHROPIC_API_KEY, etc.) that
docker-compose uses, so a single .env file drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COLLOQUY_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("colloquy", validation_alias="DB_USER")
    db_password: str = Field("colloquy_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("colloquy", validation_alias="DB_NAME")
    # Full SQLAlchemy async URL; overrides the db_* fields when set
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Completion service
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 1024
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    system_prompt: str = (
        "You are a helpful assistant in a group chat. Keep answers concise "
        "and conversational."
    )

    # Action executor
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    search_result_count: int = 5
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    image_model: str = "dall-e-3"
    image_size: str = "1024x1024"

    # Telegram surface
    telegram_bot_token: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_allowed_users: list[int] = []

    # Context window
    context_window_size: int = 20
    summary_trigger: int = 30
    reply_excerpt_length: int = 50

    # Delivery
    chunk_max_length: int = 1900
    delivery_mode: Literal["channel", "session"] = "channel"
    session_name_template: str = "Chat with {author}"
    max_utterance_length: int = 4000

    # Action approval
    require_action_approval: bool = True
    approval_exempt_channels: list[str] = []
    approval_timeout: float = 300.0  # seconds
    max_pending_actions: int = 1000
    max_cached_results: int = 1000
    result_retention: float = 3600.0
    result_pressure_retention: float = 1800.0
    result_sweep_interval: float = 3600.0

    # Persistence
    transaction_timeout: float = 30.0

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.context_window_size < 1:
            raise ValueError("context_window_size must be >= 1")
        if self.summary_trigger < 1:
            raise ValueError("summary_trigger must be >= 1")
        if self.chunk_max_length < 100:
            raise ValueError("chunk_max_length must be >= 100")
        if self.result_pressure_retention > self.result_retention:
            raise ValueError(
                f"result_pressure_retention ({self.result_pressure_retention}) must be <= "
                f"result_retention ({self.result_retention})"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def requires_approval(self, channel_key: str) -> bool:
        """Whether actions requested on ``channel_key`` need a human decision."""
        return self.require_action_approval and channel_key not in self.approval_exempt_channels
