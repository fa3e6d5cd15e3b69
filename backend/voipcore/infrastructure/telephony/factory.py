"""
Telephony Provider Factory
"""
from typing import Callable, Dict, Optional

from voipcore.core.config import ConfigManager, Settings
from voipcore.domain.interfaces.telephony_provider import TelephonyProvider


def _create_twilio(settings: Settings, config: ConfigManager) -> TelephonyProvider:
    from voipcore.infrastructure.telephony.twilio_provider import TwilioProvider
    return TwilioProvider(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        webhook_base_url=f"{settings.api_base_url}{settings.api_prefix}",
        recording_channels=config.get("telephony.recording_channels", "dual"),
    )


def _create_telnyx(settings: Settings, config: ConfigManager) -> TelephonyProvider:
    from voipcore.infrastructure.telephony.telnyx_provider import TelnyxProvider
    return TelnyxProvider(
        api_key=settings.telnyx_api_key,
        connection_id=settings.telnyx_connection_id,
        webhook_base_url=f"{settings.api_base_url}{settings.api_prefix}",
        default_country_code=str(config.get("telephony.default_country_code", "55")),
    )


class TelephonyFactory:
    """Factory for creating Telephony provider instances"""

    _providers: Dict[str, Callable[[Settings, ConfigManager], TelephonyProvider]] = {
        "twilio": _create_twilio,
        "telnyx": _create_telnyx,
    }

    @classmethod
    def create(
        cls,
        provider_name: str,
        settings: Settings,
        config: Optional[ConfigManager] = None
    ) -> TelephonyProvider:
        """Create Telephony provider instance"""
        if provider_name not in cls._providers:
            available = ", ".join(cls._providers.keys()) if cls._providers else "None"
            raise ValueError(f"Unknown Telephony provider: {provider_name}. Available: {available}")

        config = config or ConfigManager(settings.environment)
        return cls._providers[provider_name](settings, config)

    @classmethod
    def register(cls, name: str, builder: Callable[[Settings, ConfigManager], TelephonyProvider]) -> None:
        """Register a provider"""
        cls._providers[name] = builder

    @classmethod
    def list_providers(cls) -> list[str]:
        """List available providers"""
        return list(cls._providers.keys())
