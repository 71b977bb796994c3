"""
Telephony provider factory.

Configuration comes only from TelephonyConfig (env + .env).
"""

from functools import lru_cache

from voicejournal.shared.logging import get_logger
from voicejournal.telephony.config import ProviderType, TelephonyConfig, get_telephony_config
from voicejournal.telephony.interface import TelephonyProvider
from voicejournal.telephony.mock_adapter import MockTelephonyAdapter
from voicejournal.telephony.twilio_adapter import TwilioAdapter

logger = get_logger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


def create_telephony_provider(cfg: TelephonyConfig) -> TelephonyProvider:
    logger.info(
        "Telephony config resolved",
        extra={
            "provider_type": cfg.provider_type.value,
            "twilio_account_sid": _mask(cfg.twilio_account_sid),
            "twilio_from_number": cfg.twilio_from_number,
            "webhook_base_url": cfg.webhook_base_url,
        },
    )

    if cfg.provider_type == ProviderType.TWILIO:
        return TwilioAdapter(cfg)
    if cfg.provider_type == ProviderType.MOCK:
        return MockTelephonyAdapter()
    raise ValueError(f"Unsupported telephony provider_type: {cfg.provider_type}")


@lru_cache(maxsize=1)
def get_telephony_provider() -> TelephonyProvider:
    """Create and cache the process-wide telephony provider."""
    return create_telephony_provider(get_telephony_config())
