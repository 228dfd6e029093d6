"""Configuration for Projectize."""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

# Load .env from current working directory
load_dotenv(os.path.join(os.getcwd(), ".env"))

DEFAULT_MOTION_BASE_URL = "https://api.usemotion.com/v1"


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass
class SlackConfig:
    """Slack integration configuration."""

    bot_token: str = field(default_factory=lambda: os.getenv("SLACK_BOT_TOKEN", ""))
    app_token: str = field(default_factory=lambda: os.getenv("SLACK_APP_TOKEN", ""))
    bot_user_id: str = field(
        default_factory=lambda: os.getenv("SLACK_BOT_USER_ID", "")
    )
    # Messages older than this are ignored by the message listener
    max_message_age_seconds: int = 300


@dataclass
class LLMConfig:
    """LLM backend used for task extraction."""

    base_url: str = field(
        default_factory=lambda: os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    )
    api_key: str = field(default_factory=lambda: os.getenv("LLM_API_KEY", ""))
    model: str = field(default_factory=lambda: os.getenv("LLM_MODEL", "gpt-4o-mini"))
    timeout: float = field(
        default_factory=lambda: float(os.getenv("LLM_TIMEOUT", "30.0"))
    )
    temperature: float = 0.1
    max_tokens: int = 1000


@dataclass
class DestinationConfig:
    """Task-management service (Motion) configuration."""

    api_key: str = field(default_factory=lambda: os.getenv("MOTION_API_KEY", ""))
    base_url: str = field(
        default_factory=lambda: os.getenv("MOTION_BASE_URL", DEFAULT_MOTION_BASE_URL)
    )
    workspace_id: str = field(
        default_factory=lambda: os.getenv("MOTION_WORKSPACE_ID", "")
    )
    timeout: float = 30.0
    request_delay: float = field(
        default_factory=lambda: float(os.getenv("SYNC_REQUEST_DELAY", "1.0"))
    )
    stagger_delay: float = 0.1
    batch_delay: float = field(
        default_factory=lambda: float(os.getenv("SYNC_BATCH_DELAY", "2.0"))
    )
    batch_size: int = 10


@dataclass
class StoreConfig:
    """Queue store backend selection."""

    backend: str = field(
        default_factory=lambda: os.getenv("STORE_BACKEND", "json").lower()
    )
    path: str = field(default_factory=lambda: os.getenv("STORE_PATH", "./data"))


@dataclass
class SweepConfig:
    """Background retry sweep configuration."""

    interval_seconds: int = field(
        default_factory=lambda: int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
    )
    batch_size: int = field(
        default_factory=lambda: int(os.getenv("SWEEP_BATCH_SIZE", "5"))
    )
    # Pause between entries within one sweep
    entry_delay: float = 2.0


@dataclass
class LoggingConfig:
    """Log output settings."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    # "json" for structured output, anything else for the console format
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "console"))
    file: str = field(default_factory=lambda: os.getenv("LOG_FILE", ""))

    @property
    def json_output(self) -> bool:
        return self.format.lower() == "json"


@dataclass
class ProjectizeConfig:
    """Main configuration for Projectize."""

    slack: SlackConfig = field(default_factory=SlackConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    health_port: int = field(
        default_factory=lambda: int(os.getenv("HEALTH_PORT", "3000"))
    )
    # Per-user extraction requests allowed per minute
    extraction_rate_limit: int = 10

    @classmethod
    def from_env(cls) -> "ProjectizeConfig":
        """Create config from environment variables."""
        return cls()

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.slack.bot_token:
            errors.append("SLACK_BOT_TOKEN is required")
        if not self.slack.app_token:
            errors.append("SLACK_APP_TOKEN is required (for Socket Mode)")
        if not self.llm.api_key:
            errors.append("LLM_API_KEY is required")
        if self.store.backend not in ("json", "sqlite"):
            errors.append(
                f"STORE_BACKEND must be 'json' or 'sqlite', got {self.store.backend!r}"
            )

        return errors

    def require_valid(self) -> None:
        """Raise ConfigError if validate() reports anything."""
        errors = self.validate()
        if errors:
            raise ConfigError(errors)

    def warnings(self) -> List[str]:
        """Non-fatal configuration problems."""
        warnings = []

        if not self.destination.api_key:
            warnings.append("MOTION_API_KEY not set - Motion integration will not work")
        if not self.destination.workspace_id:
            warnings.append("MOTION_WORKSPACE_ID not set - using default workspace")
        if not self.slack.bot_user_id:
            warnings.append(
                "SLACK_BOT_USER_ID not set - conversation history cannot find "
                "previous mentions"
            )

        return warnings
