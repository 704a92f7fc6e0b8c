"""Settings via pydantic-settings.

Server settings use the COACH_ env prefix. DB connection fields use
validation_alias to read the same unprefixed env vars (DB_PASSWORD,
DB_PORT, etc.) that docker-compose uses, and DATABASE_URL overrides the
assembled Postgres URL entirely (tests point it at sqlite+aiosqlite).

Client settings use COACH_CLIENT_ so a terminal client and a server can
share one .env file.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="COACH_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # DB connection - unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("coach", validation_alias="DB_USER")
    db_password: str = Field("coach_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("coach", validation_alias="DB_NAME")
    database_url: str = Field("", validation_alias="DATABASE_URL")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 3000

    # Auth: comma-separated "token:user_id" pairs. dev_user_id lets
    # unauthenticated requests through as that user (local development only).
    api_tokens: str = ""
    dev_user_id: str = ""

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Bearer auth_token takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 2048
    max_turns: int = 4  # Max tool use iterations per reply
    history_messages: int = 20
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Event bus + side effects
    event_bus_enabled: bool = True
    title_generation_enabled: bool = True
    title_model: str = Field(
        default="claude-haiku-4-5-20251001",
        validation_alias="COACH_TITLE_MODEL",
    )

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def token_map(self) -> dict[str, str]:
        """Parse api_tokens into {token: user_id}."""
        tokens: dict[str, str] = {}
        for pair in self.api_tokens.split(","):
            token, sep, user_id = pair.strip().partition(":")
            if sep and token and user_id:
                tokens[token] = user_id
        return tokens


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COACH_CLIENT_", env_file=".env", extra="ignore")

    api_url: str = "http://localhost:3000"
    token_file: str = "~/.config/coach/token"

    # Seconds without a single SSE record before a reply is treated as stalled
    stream_idle_timeout: float = 120.0
    message_retries: int = 3
    retry_delay: float = 0.5
