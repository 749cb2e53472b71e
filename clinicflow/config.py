from enum import Enum

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TransportAdapter(Enum):
    HTTP = "http"
    FAKE = "fake"


class TransportConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONFIRMED_", env_file=".env", extra="ignore")

    api_url: str = "https://api.1confirmed.com/v1"
    api_key: str = ""
    timeout: float = 30.0
    adapter: TransportAdapter = TransportAdapter.HTTP


class ReminderConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REMINDER_", env_file=".env", extra="ignore")

    enabled: bool = True
    sweep_interval_seconds: float = 60.0
    workers: int = Field(default=4, ge=1)
    queue_size: int = Field(default=100, ge=1)


class WebhookConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_", env_file=".env", extra="ignore", populate_by_name=True
    )

    verify_token: str = Field(
        default="",
        validation_alias=AliasChoices(
            "WEBHOOK_VERIFY_TOKEN",
            "WHATSAPP_VERIFY_TOKEN",
        ),
    )


class ServerConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SERVER_", env_file=".env", extra="ignore")

    host: str = "0.0.0.0"
    port: int = 5000


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    clinic_timezone: str = "America/New_York"
    # Prefixed to patient numbers written without an international prefix.
    default_country_code: str = Field(default="1", pattern=r"^\d{1,3}$")
    correlation_window_days: int = Field(default=7, ge=1)
    transport: TransportConfig = Field(default_factory=lambda: TransportConfig())
    reminders: ReminderConfig = Field(default_factory=lambda: ReminderConfig())
    webhook: WebhookConfig = Field(default_factory=lambda: WebhookConfig())
    server: ServerConfig = Field(default_factory=lambda: ServerConfig())
