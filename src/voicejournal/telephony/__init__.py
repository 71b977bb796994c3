"""
Telephony package.

Do not import factory/adapters here to keep import side-effects minimal.
"""

__all__ = [
    "interface",
    "config",
    "factory",
    "twilio_adapter",
    "mock_adapter",
    "events",
    "media_stream",
    "router",
]
