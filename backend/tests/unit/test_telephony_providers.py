"""
Unit Tests for Telephony Adapters
Twilio and Telnyx placement, hangup and the provider factory
"""
import base64
import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from voipcore.core.config import ConfigManager, Settings
from voipcore.domain.interfaces.telephony_provider import TelephonyError, TenantContext
from voipcore.infrastructure.telephony.factory import TelephonyFactory
from voipcore.infrastructure.telephony.telnyx_provider import TELNYX_API_URL, TelnyxProvider, to_e164
from voipcore.infrastructure.telephony.twilio_provider import TwilioProvider

CONTEXT = TenantContext(tenant_id="tenant-1", call_id="call-1", user_id="agent-1", campaign_id="campaign-1")


class TestToE164:

    def test_adds_country_code(self):
        assert to_e164("(11) 99999-0000") == "+5511999990000"

    def test_keeps_existing_country_code(self):
        assert to_e164("+55 11 99999-0000") == "+5511999990000"

    def test_other_default(self):
        assert to_e164("4155550100", default_country_code="1") == "+14155550100"


class TestTwilioProvider:
    """Tests for the Twilio adapter with a mocked REST client"""

    @pytest.fixture
    def provider(self):
        provider = TwilioProvider(None, None, "https://voip.example.com/api/v1")
        provider._client = MagicMock()
        provider._client.calls.create.return_value = MagicMock(sid="CA123", status="queued")
        return provider

    @pytest.mark.asyncio
    async def test_place_call_requests_callbacks_and_recording(self, provider):
        result = await provider.place_call("+5511300000000", "+5511999990000", CONTEXT)

        assert result.provider_call_id == "CA123"
        kwargs = provider._client.calls.create.call_args.kwargs
        assert kwargs["to"] == "+5511999990000"
        assert kwargs["from_"] == "+5511300000000"
        assert kwargs["status_callback"].startswith("https://voip.example.com/api/v1/webhooks/twilio/status?")
        assert "tenant_id=tenant-1" in kwargs["status_callback"]
        assert "call_id=call-1" in kwargs["status_callback"]
        assert kwargs["status_callback_event"] == ["initiated", "ringing", "answered", "completed"]
        assert kwargs["record"] is True
        assert kwargs["recording_channels"] == "dual"
        assert "/webhooks/twilio/recording?" in kwargs["recording_status_callback"]
        assert "<Client>agent-1</Client>" in kwargs["twiml"]

    @pytest.mark.asyncio
    async def test_rejection_raises_telephony_error(self, provider):
        provider._client.calls.create.side_effect = RuntimeError("invalid number")

        with pytest.raises(TelephonyError) as exc_info:
            await provider.place_call("+5511300000000", "+1", CONTEXT)

        assert exc_info.value.provider == "twilio"

    @pytest.mark.asyncio
    async def test_hangup_completes_call(self, provider):
        assert await provider.hangup("CA123") is True

        provider._client.calls.assert_called_with("CA123")
        provider._client.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_simulated_without_credentials(self):
        provider = TwilioProvider(None, None, "http://localhost:8000/api/v1")

        result = await provider.place_call("+5511300000000", "+5511999990000", CONTEXT)

        assert result.provider_call_id.startswith("CA")
        assert result.raw["simulated"] is True


class TestTelnyxProvider:
    """Tests for the Telnyx adapter with a mocked HTTP client"""

    @pytest.fixture
    def provider(self):
        return TelnyxProvider("KEY123", "conn-1", "https://voip.example.com/api/v1")

    @pytest.mark.asyncio
    async def test_place_call(self, provider):
        response = httpx.Response(200, json={"data": {"call_control_id": "v3:abc"}})

        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)) as post:
            result = await provider.place_call("11 3000-0000", "11 99999-0000", CONTEXT)

        assert result.provider_call_id == "v3:abc"
        url = post.await_args.args[0]
        body = post.await_args.kwargs["json"]
        assert url == TELNYX_API_URL
        assert body["to"] == "+5511999990000"
        assert body["connection_id"] == "conn-1"
        assert body["webhook_url"] == "https://voip.example.com/api/v1/webhooks/telnyx/event"
        state = json.loads(base64.b64decode(body["client_state"]))
        assert state == {"tenant_id": "tenant-1", "call_id": "call-1"}
        assert post.await_args.kwargs["headers"]["Authorization"] == "Bearer KEY123"

    @pytest.mark.asyncio
    async def test_rejected_call(self, provider):
        response = httpx.Response(422, json={"errors": [{"detail": "invalid to"}]})

        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)):
            with pytest.raises(TelephonyError):
                await provider.place_call("+5511300000000", "+1", CONTEXT)

    @pytest.mark.asyncio
    async def test_unreachable(self, provider):
        with patch("httpx.AsyncClient.post", new=AsyncMock(side_effect=httpx.ConnectError("down"))):
            with pytest.raises(TelephonyError):
                await provider.place_call("+5511300000000", "+5511999990000", CONTEXT)

    @pytest.mark.asyncio
    async def test_hangup(self, provider):
        request = httpx.Request("POST", f"{TELNYX_API_URL}/v3:abc/actions/hangup")
        response = httpx.Response(200, json={"data": {}}, request=request)

        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)) as post:
            assert await provider.hangup("v3:abc") is True

        assert post.await_args.args[0].endswith("/v3:abc/actions/hangup")

    @pytest.mark.asyncio
    async def test_hangup_failure_returns_false(self, provider):
        request = httpx.Request("POST", f"{TELNYX_API_URL}/v3:abc/actions/hangup")
        response = httpx.Response(404, json={}, request=request)

        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)):
            assert await provider.hangup("v3:abc") is False


class TestTelephonyFactory:

    def test_creates_configured_provider(self):
        settings = Settings(telephony_provider="telnyx")
        config = ConfigManager("development")

        assert TelephonyFactory.create("twilio", settings, config).name == "twilio"
        assert TelephonyFactory.create("telnyx", settings, config).name == "telnyx"

    def test_unknown_provider(self):
        with pytest.raises(ValueError) as exc_info:
            TelephonyFactory.create("vonage", Settings())

        assert "Available" in str(exc_info.value)

    def test_list_providers(self):
        assert set(TelephonyFactory.list_providers()) >= {"twilio", "telnyx"}
