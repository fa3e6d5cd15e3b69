"""
Telnyx Call Placement
Outbound calls via Telnyx Call Control v2
"""
import base64
import json
import logging
import re
import uuid
from typing import Optional

import httpx

from voipcore.domain.interfaces.telephony_provider import (
    PlacementResult,
    TelephonyError,
    TelephonyProvider,
    TenantContext,
)

logger = logging.getLogger(__name__)

TELNYX_API_URL = "https://api.telnyx.com/v2/calls"


def to_e164(number: str, default_country_code: str = "55") -> str:
    """'(11) 99999-0000' -> '+5511999990000'"""
    digits = re.sub(r"\D", "", number or "")
    if not digits.startswith(default_country_code):
        digits = f"{default_country_code}{digits}"
    return f"+{digits}"


class TelnyxProvider(TelephonyProvider):
    """
    Telnyx adapter.

    The provider call id is the Call Control id. Tenant context travels in
    client_state (base64 JSON) and comes back on every webhook.
    """

    def __init__(
        self,
        api_key: Optional[str],
        connection_id: Optional[str],
        webhook_base_url: str,
        default_country_code: str = "55",
        timeout: float = 10.0
    ):
        self._api_key = api_key
        self._connection_id = connection_id
        self._webhook_url = f"{webhook_base_url.rstrip('/')}/webhooks/telnyx/event"
        self._default_country_code = default_country_code
        self._timeout = timeout

        if not api_key:
            logger.warning("Telnyx API key not configured - calls will be simulated")

    @property
    def name(self) -> str:
        return "telnyx"

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    async def place_call(
        self,
        from_number: str,
        to_number: str,
        tenant_context: TenantContext
    ) -> PlacementResult:
        if not self._api_key:
            call_control_id = f"v3:{uuid.uuid4().hex}"
            logger.warning(f"Telnyx not configured - simulating call {call_control_id}")
            return PlacementResult(provider_call_id=call_control_id, raw={"simulated": True})

        client_state = base64.b64encode(json.dumps({
            "tenant_id": tenant_context.tenant_id,
            "call_id": tenant_context.call_id,
        }).encode()).decode()

        body = {
            "connection_id": self._connection_id,
            "to": to_e164(to_number, self._default_country_code),
            "from": to_e164(from_number, self._default_country_code),
            "webhook_url": self._webhook_url,
            "client_state": client_state,
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(TELNYX_API_URL, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise TelephonyError(f"Telnyx unreachable: {e}", provider=self.name) from e

        if response.status_code >= 400:
            logger.error(f"Telnyx API error {response.status_code}: {response.text}")
            raise TelephonyError(
                f"Telnyx rejected call ({response.status_code}): {response.text}",
                provider=self.name,
            )

        data = response.json().get("data", {})
        call_control_id = data.get("call_control_id")
        if not call_control_id:
            raise TelephonyError("No call_control_id returned from Telnyx", provider=self.name)

        logger.info(f"Telnyx call created: {call_control_id} -> {body['to']}")
        return PlacementResult(provider_call_id=call_control_id, raw=data)

    async def hangup(self, provider_call_id: str) -> bool:
        if not self._api_key:
            logger.warning(f"Telnyx not configured - simulating hangup for {provider_call_id}")
            return True

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{TELNYX_API_URL}/{provider_call_id}/actions/hangup",
                    json={},
                    headers=self._headers(),
                )
            response.raise_for_status()
            logger.info(f"Call hung up: {provider_call_id}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to hang up call {provider_call_id}: {e}")
            return False
