"""Settings via pydantic-settings with TANDEM_ env prefix.

Credentials use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN, BRAVE_SEARCH_API_KEY) other
Anthropic tooling uses, so one .env file works for all of them.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TANDEM_", env_file=".env")

    log_level: str = "info"

    # Provider
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds; the watchdog handles stalls
    max_tokens: int = 16000

    # Models (tier names or concrete ids)
    director_model: str = "opus"
    actor_model: str = "sonnet"
    compaction_model: str = "sonnet"
    refresh_models: bool = True

    # Director reasoning (0 disables extended thinking)
    director_thinking_budget: int = 10000

    # Turn loop limits
    director_max_tool_iterations: int = 10
    actor_max_tool_iterations: int = 50
    max_rounds: int = 0  # 0 = unlimited
    max_correction_attempts: int = 3

    # Provider retries
    provider_max_retries: int = 3
    provider_backoff_base: float = 1.0  # seconds, doubled per attempt
    provider_backoff_max: float = 30.0

    # Inactivity watchdog
    actor_inactivity_timeout: float = 120.0  # seconds
    director_inactivity_timeout: float = 300.0
    watchdog_tick: float = 1.0

    # Tool dispatch
    tool_timeout_default: float = 30.0
    tool_timeouts: dict[str, float] = Field(
        default_factory=lambda: {"bash_command": 120.0, "web_search": 20.0}
    )
    tool_result_max_chars: int = 30000
    workspace_dir: str = "."

    # Context budget / compaction
    context_window: int = 200000
    compaction_threshold: float = 0.25  # fraction of context_window
    compaction_enabled: bool = True
    compaction_max_tokens: int = 8000

    # Transcript persistence ("" disables)
    transcript_db_url: str = "sqlite+aiosqlite:///.tandem/transcripts.db"

    # Web tools
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    web_search_daily_limit: int = 100

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.director_thinking_budget:
            if self.director_thinking_budget < 1024:
                raise ValueError("director_thinking_budget must be >= 1024 (API minimum) or 0")
            if self.director_thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"director_thinking_budget ({self.director_thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        if not 0 < self.compaction_threshold <= 1:
            raise ValueError("compaction_threshold must be in (0, 1]")
        if self.watchdog_tick <= 0:
            raise ValueError("watchdog_tick must be > 0")
        return self

    @property
    def compaction_ceiling(self) -> int:
        """Estimated token count at which a session history is compacted."""
        return int(self.context_window * self.compaction_threshold)

    def tool_timeout(self, name: str) -> float:
        return self.tool_timeouts.get(name, self.tool_timeout_default)
