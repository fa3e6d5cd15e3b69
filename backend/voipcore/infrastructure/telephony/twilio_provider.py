"""
Twilio Call Placement
Outbound calls via the Twilio Programmable Voice REST API
"""
import asyncio
import logging
import uuid
from functools import partial
from typing import Optional
from urllib.parse import urlencode

from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse, Dial

from voipcore.domain.interfaces.telephony_provider import (
    PlacementResult,
    TelephonyError,
    TelephonyProvider,
    TenantContext,
)

logger = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TwilioProvider(TelephonyProvider):
    """
    Twilio adapter.

    Each call asks for status callbacks on every lifecycle event and a
    dual-channel recording whose readiness is reported to the recording
    webhook. The outbound leg is bridged to the agent's browser client.

    Without credentials the adapter simulates placement (development).
    """

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        webhook_base_url: str,
        recording_channels: str = "dual"
    ):
        self._webhook_base_url = webhook_base_url.rstrip("/")
        self._recording_channels = recording_channels
        self._client: Optional[Client] = None

        if account_sid and auth_token:
            self._client = Client(account_sid, auth_token)
        else:
            logger.warning("Twilio credentials not configured - calls will be simulated")

    @property
    def name(self) -> str:
        return "twilio"

    def _callback_url(self, path: str, context: TenantContext) -> str:
        params = {"tenant_id": context.tenant_id, "call_id": context.call_id}
        return f"{self._webhook_base_url}{path}?{urlencode(params)}"

    def _bridge_twiml(self, context: TenantContext) -> str:
        response = VoiceResponse()
        dial = Dial()
        dial.client(context.user_id or context.tenant_id)
        response.append(dial)
        return str(response)

    async def place_call(
        self,
        from_number: str,
        to_number: str,
        tenant_context: TenantContext
    ) -> PlacementResult:
        if self._client is None:
            call_sid = f"CA{uuid.uuid4().hex}"
            logger.warning(f"Twilio not configured - simulating call with SID: {call_sid}")
            return PlacementResult(provider_call_id=call_sid, raw={"simulated": True})

        create = partial(
            self._client.calls.create,
            to=to_number,
            from_=from_number,
            twiml=self._bridge_twiml(tenant_context),
            status_callback=self._callback_url("/webhooks/twilio/status", tenant_context),
            status_callback_event=STATUS_CALLBACK_EVENTS,
            status_callback_method="POST",
            record=True,
            recording_channels=self._recording_channels,
            recording_status_callback=self._callback_url("/webhooks/twilio/recording", tenant_context),
            recording_status_callback_method="POST",
        )

        try:
            loop = asyncio.get_running_loop()
            call = await loop.run_in_executor(None, create)
        except Exception as e:
            logger.error(f"Twilio rejected call to {to_number}: {e}")
            raise TelephonyError(str(e), provider=self.name) from e

        logger.info(f"Twilio call created: CallSid={call.sid} -> {to_number}")
        return PlacementResult(provider_call_id=call.sid, raw={"status": call.status})

    async def hangup(self, provider_call_id: str) -> bool:
        if self._client is None:
            logger.warning(f"Twilio not configured - simulating hangup for {provider_call_id}")
            return True

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                partial(self._client.calls(provider_call_id).update, status="completed")
            )
            logger.info(f"Call hung up: {provider_call_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to hang up call {provider_call_id}: {e}")
            return False

    async def cleanup(self) -> None:
        self._client = None
