"""
Telephony Provider Interface
Abstract base class for call-placement providers (Twilio, Telnyx)
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any


@dataclass
class TenantContext:
    """Who is placing the call; forwarded to the provider as callback metadata"""
    tenant_id: str
    call_id: str
    user_id: Optional[str] = None
    campaign_id: Optional[str] = None


@dataclass
class PlacementResult:
    """Provider answer to a placement request"""
    provider_call_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


class TelephonyError(Exception):
    """Raised when the provider rejects or cannot be reached for a request."""
    def __init__(self, message: str, provider: Optional[str] = None):
        self.message = message
        self.provider = provider
        super().__init__(self.message)


class TelephonyProvider(ABC):
    """Abstract base class for telephony providers"""

    @abstractmethod
    async def place_call(
        self,
        from_number: str,
        to_number: str,
        tenant_context: TenantContext
    ) -> PlacementResult:
        """
        Request an outbound call.

        Args:
            from_number: Caller ID number
            to_number: Destination phone number
            tenant_context: Tenant and internal call identifiers

        Returns:
            PlacementResult with the provider call id

        Raises:
            TelephonyError: If the provider rejects the request
        """
        pass

    @abstractmethod
    async def hangup(self, provider_call_id: str) -> bool:
        """Terminate a live call. Returns False if the provider refused."""
        pass

    async def cleanup(self) -> None:
        """Release resources"""
        return None

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
