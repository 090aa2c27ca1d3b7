"""Pydantic models for configuration schema."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SlackConfig(BaseModel):
    """Slack-specific configuration."""

    bot_token: str
    app_token: str
    bot_user_id: str | None = None  # Resolved via auth.test when omitted
    channels: list[str] = []
    bot_names: list[str] = ["night-watch", "nw"]
    post_rate_per_channel: float = Field(1.0, gt=0.0, le=10.0)

    @field_validator("bot_token")
    @classmethod
    def validate_bot_token(cls, v: str) -> str:
        """Validate Slack bot token format."""
        if not v.startswith("xoxb-"):
            raise ValueError("Bot token must start with xoxb-")
        return v

    @field_validator("app_token")
    @classmethod
    def validate_app_token(cls, v: str) -> str:
        """Validate Slack app token format."""
        if not v.startswith("xapp-"):
            raise ValueError("App token must start with xapp-")
        return v


class AnthropicConfig(BaseModel):
    """Anthropic-specific configuration."""

    api_key: str
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = Field(512, ge=16, le=8192)
    temperature: float = Field(0.7, ge=0.0, le=1.0)
    timeout: float = Field(60.0, gt=0.0)


class ChatConfig(BaseModel):
    """Chat provider configuration."""

    provider: Literal["slack"] = "slack"
    slack: SlackConfig | None = None


class LLMConfig(BaseModel):
    """AI completion provider configuration."""

    provider: Literal["anthropic"] = "anthropic"
    anthropic: AnthropicConfig | None = None


class PersonaConfig(BaseModel):
    """One persona in the discussion panel."""

    id: str
    name: str
    role: str
    expertise: list[str] = []
    is_active: bool = True
    avatar_url: str | None = None


class ProjectConfig(BaseModel):
    """A project the job CLI can operate on."""

    name: str
    path: Path
    channel_id: str | None = None


def default_personas() -> list[PersonaConfig]:
    return [
        PersonaConfig(
            id="dev",
            name="Dev",
            role="Implementer",
            expertise=["typescript", "python", "implementation", "debugging", "ci"],
        ),
        PersonaConfig(
            id="carlos",
            name="Carlos",
            role="Tech Lead",
            expertise=["architecture", "code review", "scope", "tradeoffs"],
        ),
        PersonaConfig(
            id="maya",
            name="Maya",
            role="Security Reviewer",
            expertise=["security", "auth", "secrets", "injection", "permissions"],
        ),
        PersonaConfig(
            id="priya",
            name="Priya",
            role="QA Engineer",
            expertise=["testing", "edge cases", "regression", "coverage"],
        ),
    ]


class DeliberationConfig(BaseModel):
    """Bounds on multi-persona discussions."""

    max_rounds: int = Field(2, ge=1, le=2)
    max_contributions_per_round: int = Field(2, ge=1, le=4)
    max_thread_replies: int = Field(6, ge=2, le=20)
    reply_delay_min: float = Field(20.0, ge=0.0)
    reply_delay_max: float = Field(60.0, ge=0.0)
    replay_guard_seconds: int = Field(1800, ge=0)
    context_char_limit: int = Field(2000, ge=200)
    # Open pr_review / build_failure discussions when a run finishes
    discuss_job_outcomes: bool = True

    @model_validator(mode="after")
    def check_delay_range(self) -> "DeliberationConfig":
        if self.reply_delay_min > self.reply_delay_max:
            raise ValueError("reply_delay_min must not exceed reply_delay_max")
        return self


class TimingConfig(BaseModel):
    """Human-like pacing of scripted replies, in seconds."""

    response_delay_min: float = Field(0.7, ge=0.0)
    response_delay_max: float = Field(3.4, ge=0.0)
    reaction_probability: float = Field(0.65, ge=0.0, le=1.0)
    reaction_delay_min: float = Field(0.18, ge=0.0)
    reaction_delay_max: float = Field(1.2, ge=0.0)
    piggyback_probability: float = Field(0.4, ge=0.0, le=1.0)
    piggyback_delay_min: float = Field(4.0, ge=0.0)
    piggyback_delay_max: float = Field(15.0, ge=0.0)

    @model_validator(mode="after")
    def check_ranges(self) -> "TimingConfig":
        for low, high in (
            ("response_delay_min", "response_delay_max"),
            ("reaction_delay_min", "reaction_delay_max"),
            ("piggyback_delay_min", "piggyback_delay_max"),
        ):
            if getattr(self, low) > getattr(self, high):
                raise ValueError(f"{low} must not exceed {high}")
        return self


class StateConfig(BaseModel):
    """Cooldowns and memory limits for in-memory thread state, in seconds."""

    issue_review_cooldown: int = Field(1800, ge=0)
    persona_reply_cooldown: int = Field(45, ge=0)
    ad_hoc_thread_ttl: int = Field(3600, ge=1)
    max_processed_keys: int = Field(2000, ge=100)
    max_tracked_threads: int = Field(1000, ge=10)


class ProactiveConfig(BaseModel):
    """Unprompted messages in quiet channels and periodic code audits, in seconds."""

    enabled: bool = True
    code_watch: bool = True
    idle_after: int = Field(1200, ge=60)
    min_interval: int = Field(5400, ge=60)
    sweep_interval: int = Field(60, ge=5)
    code_watch_interval: int = Field(10800, ge=600)


class JobsConfig(BaseModel):
    """How background jobs are launched."""

    cli_command: list[str] = ["night-watch"]
    max_output_chars: int = Field(12000, ge=1000)
    board_move_timeout: int = Field(15, ge=1, le=120)
    extra_env: dict[str, str] = {}

    @field_validator("cli_command")
    @classmethod
    def validate_cli_command(cls, v: list[str]) -> list[str]:
        if not v or not v[0].strip():
            raise ValueError("cli_command must name an executable")
        return v


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path("/var/log/agent-huddle/huddle.log")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "json"
    file: FileLoggingConfig = FileLoggingConfig()


class RuntimeConfig(BaseModel):
    """Runtime configuration."""

    shutdown_timeout: int = Field(30, ge=1, le=600, description="Seconds to drain tasks on stop")


class HuddleConfig(BaseSettings):
    """Root configuration for agent-huddle."""

    chat: ChatConfig = ChatConfig()
    llm: LLMConfig = LLMConfig()
    personas: list[PersonaConfig] = Field(default_factory=default_personas)
    projects: list[ProjectConfig] = []
    deliberation: DeliberationConfig = DeliberationConfig()
    timing: TimingConfig = TimingConfig()
    state: StateConfig = StateConfig()
    proactive: ProactiveConfig = ProactiveConfig()
    jobs: JobsConfig = JobsConfig()
    logging: LoggingConfig = LoggingConfig()
    runtime: RuntimeConfig = RuntimeConfig()

    model_config = SettingsConfigDict(
        env_prefix="HUDDLE_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @field_validator("personas")
    @classmethod
    def validate_unique_persona_ids(cls, v: list[PersonaConfig]) -> list[PersonaConfig]:
        ids = [p.id for p in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Persona ids must be unique")
        return v
