"""
Webhook Ingress
Translates provider webhook payloads into normalized CallEvents and feeds
them to the CallStateMachine.

Providers retry on non-2xx answers, which would only duplicate events, so
ingestion never raises: every failure becomes a dead-letter entry and the
endpoint acknowledges.
"""
import asyncio
import base64
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

from voipcore.domain.models.call import CallEvent, CallEventType, CallStatus
from voipcore.domain.models.dead_letter import TaskType
from voipcore.domain.models.recording import RecordingReady
from voipcore.domain.services.call_state_machine import CallNotFound, CallStateMachine
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.domain.services.recording_service import RecordingService

logger = logging.getLogger(__name__)


# Twilio CallStatus -> event. "queued" carries no information the core lacks.
TWILIO_STATUS_MAP: Dict[str, Optional[CallEventType]] = {
    "queued": None,
    "initiated": CallEventType.INITIATED,
    "ringing": CallEventType.RINGING,
    "in-progress": CallEventType.ANSWERED,
    "answered": CallEventType.ANSWERED,
    "completed": CallEventType.COMPLETED,
    "busy": CallEventType.BUSY,
    "no-answer": CallEventType.NO_ANSWER,
    "canceled": CallEventType.CANCELED,
    "failed": CallEventType.FAILED,
}

TELNYX_EVENT_MAP: Dict[str, CallEventType] = {
    "call.initiated": CallEventType.INITIATED,
    "call.answered": CallEventType.ANSWERED,
    "call.hangup": CallEventType.COMPLETED,
    "call.failed": CallEventType.FAILED,
}

TELNYX_HANGUP_CAUSES: Dict[str, CallEventType] = {
    "normal_clearing": CallEventType.COMPLETED,
    "user_busy": CallEventType.BUSY,
    "no_answer": CallEventType.NO_ANSWER,
    "timeout": CallEventType.NO_ANSWER,
    "originator_cancel": CallEventType.CANCELED,
    "call_rejected": CallEventType.FAILED,
}


class WebhookPayloadError(Exception):
    """Raised when a provider payload cannot be normalized."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


def _text(value: Any) -> Optional[str]:
    """Form/JSON field as text; anything that is not a string counts as missing."""
    return value if isinstance(value, str) and value else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not _text(value):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_rfc2822(value: Any) -> Optional[datetime]:
    if not _text(value):
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _as_int(value: Any) -> Optional[int]:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None


def _raw_payload(raw: Any) -> Any:
    """Webhook body as stored in a dead-letter entry (JSON-safe)."""
    if not isinstance(raw, Mapping):
        return str(raw)
    return {
        str(key): value if isinstance(value, (str, int, float, bool, dict, list, type(None))) else str(value)
        for key, value in raw.items()
    }


def decode_client_state(value: Any) -> Dict[str, Any]:
    """
    Telnyx client_state (base64 JSON set at placement) -> dict.

    Returns {} when absent or not ours.
    """
    if not _text(value):
        return {}
    try:
        decoded = json.loads(base64.b64decode(value, validate=True))
    except ValueError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def normalize_twilio_status(form: Mapping[str, Any]) -> Optional[CallEvent]:
    """
    Twilio status callback (form-encoded) -> CallEvent.

    Returns:
        None for statuses the core ignores ("queued")

    Raises:
        WebhookPayloadError: Missing CallSid or unknown CallStatus
    """
    call_sid = _text(form.get("CallSid"))
    status = (_text(form.get("CallStatus")) or "").lower()
    if not call_sid:
        raise WebhookPayloadError("Twilio callback without CallSid")
    if status not in TWILIO_STATUS_MAP:
        raise WebhookPayloadError(f"Unknown Twilio CallStatus: {status!r}")

    event_type = TWILIO_STATUS_MAP[status]
    if event_type is None:
        return None

    extra: Dict[str, Any] = {}
    if _text(form.get("SequenceNumber")):
        extra["sequence_number"] = form["SequenceNumber"]
    if (_text(form.get("Direction")) or "").lower() == "inbound":
        extra["direction"] = "inbound"
        extra["from_number"] = _text(form.get("From")) or ""
        extra["to_number"] = _text(form.get("To")) or ""

    return CallEvent(
        provider_call_id=call_sid,
        event_type=event_type,
        occurred_at=_parse_rfc2822(form.get("Timestamp")) or datetime.utcnow(),
        duration_seconds=_as_int(form.get("CallDuration")),
        provider="twilio",
        extra=extra,
    )


def normalize_telnyx_event(body: Mapping[str, Any]) -> Optional[CallEvent]:
    """
    Telnyx Call Control webhook (JSON) -> CallEvent.

    Hangups are refined by hangup_cause; duration is derived from the
    payload's start_time/end_time when both are present. The tenant and
    internal call id from client_state, and the direction of incoming
    calls, are carried in the event's extra.

    Returns:
        None for event types the core ignores

    Raises:
        WebhookPayloadError: Malformed envelope or missing call_control_id
    """
    data = body.get("data")
    if not isinstance(data, Mapping):
        raise WebhookPayloadError("Telnyx webhook without a data object")

    event_name = data.get("event_type")
    if event_name is not None and not isinstance(event_name, str):
        raise WebhookPayloadError(f"Telnyx event_type is not a string: {event_name!r}")
    if event_name not in TELNYX_EVENT_MAP:
        return None

    payload = data.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise WebhookPayloadError(f"Telnyx {event_name} payload is not an object")

    call_control_id = _text(payload.get("call_control_id"))
    if not call_control_id:
        raise WebhookPayloadError(f"Telnyx {event_name} without call_control_id")

    event_type = TELNYX_EVENT_MAP[event_name]
    hangup_cause = _text(payload.get("hangup_cause"))
    duration = None

    if event_name == "call.hangup":
        event_type = TELNYX_HANGUP_CAUSES.get(hangup_cause, CallEventType.COMPLETED)
        started = _parse_iso(payload.get("start_time"))
        ended = _parse_iso(payload.get("end_time"))
        if started and ended:
            duration = max(0, int((ended - started).total_seconds()))

    extra: Dict[str, Any] = {}
    state = decode_client_state(payload.get("client_state"))
    for key in ("tenant_id", "call_id"):
        if _text(state.get(key)):
            extra[key] = state[key]
    if payload.get("direction") == "incoming":
        extra["direction"] = "inbound"
        extra["from_number"] = _text(payload.get("from")) or ""
        extra["to_number"] = _text(payload.get("to")) or ""

    return CallEvent(
        provider_call_id=call_control_id,
        event_type=event_type,
        occurred_at=_parse_iso(data.get("occurred_at")) or datetime.utcnow(),
        duration_seconds=duration,
        hangup_cause=hangup_cause,
        provider="telnyx",
        extra=extra,
    )


def normalize_twilio_recording(form: Mapping[str, Any]) -> RecordingReady:
    call_sid = _text(form.get("CallSid"))
    recording_url = _text(form.get("RecordingUrl"))
    if not call_sid or not recording_url:
        raise WebhookPayloadError("Twilio recording callback without CallSid/RecordingUrl")

    return RecordingReady(
        provider_call_id=call_sid,
        recording_ref=recording_url,
        recording_sid=_text(form.get("RecordingSid")),
        duration_seconds=_as_int(form.get("RecordingDuration")) or 0,
        channels=_as_int(form.get("RecordingChannels")) or 2,
    )


class WebhookIngress:
    """
    Applies normalized events with the unknown-call policy.

    An event for a call the core has not recorded yet (the webhook raced the
    placement write) is retried a bounded number of times with a short
    backoff before it is dead-lettered as status_update.
    """

    def __init__(
        self,
        state_machine: CallStateMachine,
        dead_letters: DeadLetterService,
        recordings: RecordingService,
        unknown_call_attempts: int = 3,
        unknown_call_backoff_seconds: float = 0.5
    ):
        self._state_machine = state_machine
        self._dead_letters = dead_letters
        self._recordings = recordings
        self._attempts = max(1, unknown_call_attempts)
        self._backoff = unknown_call_backoff_seconds

    async def ingest(self, event: CallEvent, tenant_id: Optional[str] = None) -> bool:
        """
        Returns:
            True if the event was applied (or was a no-op), False if dead-lettered
        """
        try:
            await self._apply_with_retry(event, tenant_id)
            return True
        except Exception as e:
            logger.error(
                f"Failed to apply {event.event_type.value} for {event.provider_call_id}: {e}",
                exc_info=not isinstance(e, CallNotFound)
            )
            await self._dead_letters.record(
                TaskType.STATUS_UPDATE,
                event.model_dump(mode="json"),
                e,
                tenant_id=tenant_id,
            )
            return False

    async def _apply_with_retry(self, event: CallEvent, tenant_id: Optional[str]) -> None:
        for attempt in range(1, self._attempts + 1):
            try:
                await self._state_machine.apply(event)
                return
            except CallNotFound:
                if await self._resolve_unknown(event, tenant_id):
                    await self._state_machine.apply(event)
                    return
                if attempt == self._attempts:
                    raise
                logger.info(
                    f"Call {event.provider_call_id} not recorded yet "
                    f"(attempt {attempt}/{self._attempts}), retrying"
                )
                await asyncio.sleep(self._backoff)

    async def _resolve_unknown(self, event: CallEvent, tenant_id: Optional[str]) -> bool:
        """
        Create or link the call row an unknown event refers to, when the event
        itself says which one.

        An outbound call that carries its internal id (Telnyx client_state,
        Twilio callback URL) and is still waiting for its provider id is linked
        right away. An inbound call with a known tenant is registered.

        Returns:
            True if the event can now be applied
        """
        call_id = event.extra.get("call_id")
        if call_id:
            call = await self._state_machine.get_call(call_id)
            if (call is not None
                    and call.status == CallStatus.QUEUED
                    and call.provider_call_id is None
                    and (tenant_id is None or call.tenant_id == tenant_id)):
                logger.info(f"Linking {event.provider_call_id} to placed call {call_id}")
                await self._state_machine.attach_provider_call(call_id, event.provider_call_id)
                return True

        if event.extra.get("direction") == "inbound" and tenant_id:
            await self._state_machine.register_inbound(
                tenant_id=tenant_id,
                provider_call_id=event.provider_call_id,
                from_number=event.extra.get("from_number", ""),
                to_number=event.extra.get("to_number", ""),
            )
            return True
        return False

    async def _record_unparseable(self, provider: str, raw: Any, error: Exception) -> None:
        logger.warning(f"Unparseable {provider} webhook: {error}")
        await self._dead_letters.record(
            TaskType.STATUS_UPDATE,
            {"provider": provider, "raw": _raw_payload(raw)},
            error,
        )

    async def ingest_twilio_status(
        self,
        form: Mapping[str, Any],
        tenant_id: Optional[str] = None,
        call_id: Optional[str] = None
    ) -> bool:
        """
        Args:
            form: Callback form fields
            tenant_id, call_id: From the status callback URL set at placement
        """
        try:
            event = normalize_twilio_status(form)
        except Exception as e:
            await self._record_unparseable("twilio", form, e)
            return False
        if event is None:
            return True
        if call_id:
            event.extra["call_id"] = call_id
        return await self.ingest(event, tenant_id=tenant_id)

    async def ingest_telnyx_event(self, body: Mapping[str, Any], tenant_id: Optional[str] = None) -> bool:
        """
        Args:
            body: Webhook JSON body
            tenant_id: From the webhook URL; client_state takes precedence
        """
        try:
            event = normalize_telnyx_event(body)
        except Exception as e:
            await self._record_unparseable("telnyx", body, e)
            return False
        if event is None:
            return True
        return await self.ingest(event, tenant_id=event.extra.get("tenant_id") or tenant_id)

    async def ingest_twilio_recording(self, form: Mapping[str, Any]) -> bool:
        try:
            event = normalize_twilio_recording(form)
        except Exception as e:
            logger.warning(f"Unparseable Twilio recording callback: {e}")
            await self._dead_letters.record(TaskType.RECORDING_DOWNLOAD, {"raw": _raw_payload(form)}, e)
            return False
        recording = await self._recordings.handle_recording_ready(event)
        return recording is not None
