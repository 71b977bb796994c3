"""
Telephony provider configuration.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported telephony provider types."""

    TWILIO = "twilio"
    MOCK = "mock"


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider_type: ProviderType = Field(default=ProviderType.TWILIO)

    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_from_number: str = Field(default="")

    # Public base URL Twilio calls back into (status callbacks, TwiML)
    webhook_base_url: str = Field(default="http://localhost:8000")

    # Public WSS base for the duplex media stream, e.g. wss://xyz.ngrok.app
    media_stream_public_url: str = Field(default="")
    media_stream_path: str = Field(
        default="/webhooks/telephony/stream",
        description="WebSocket path the provider streams call audio to.",
    )

    call_timeout_seconds: int = Field(default=60, ge=10, le=300)
    http_timeout_seconds: float = Field(default=15.0, gt=0)

    def get_webhook_url(self, path: str = "/webhooks/telephony/status") -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"

    def get_media_stream_url(self) -> str:
        base = self.media_stream_public_url.rstrip("/")
        if not base:
            base = self.webhook_base_url.rstrip("/").replace("https://", "wss://").replace("http://", "ws://")
        return f"{base}{self.media_stream_path}"


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
