"""Service settings loaded from the environment."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration.

    Values come from environment variables (case-insensitive field names) and
    an optional ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"

    # Anthropic
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = 1024
    anthropic_temperature: float = 0.2

    # Telnyx (SMS)
    telnyx_api_key: str | None = None
    telnyx_from_number: str | None = None
    # Base64 ed25519 key from the Telnyx portal; inbound webhooks are verified when set
    telnyx_public_key: str | None = None
    telnyx_webhook_tolerance_seconds: int = 300

    # Persistence; in-memory stores when unset
    database_url: str | None = None

    # Reminder delivery
    scheduler_enabled: bool = True
    reminder_check_interval_seconds: int = 60
    reminder_claim_lease_seconds: int = 300
    reminder_batch_size: int = 100
    reminder_send_timeout_seconds: float = 30.0

    # Agent loop
    agent_max_iterations: int = 5
    agent_timeout_seconds: float = 120.0
    max_message_chars: int = 4000

    @property
    def sms_enabled(self) -> bool:
        return bool(self.telnyx_api_key and self.telnyx_from_number)
