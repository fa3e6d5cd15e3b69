"""
Webhooks API Endpoints
Handles incoming call-status and recording webhooks from telephony providers
(Twilio, Telnyx)

Every request is acknowledged with 200 once it passes signature checks:
processing failures are dead-lettered, never reported to the provider.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from voipcore.api.v1.dependencies import get_ingress, verify_twilio_signature
from voipcore.domain.services.webhook_ingress import WebhookIngress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/twilio/status", dependencies=[Depends(verify_twilio_signature)])
async def twilio_status(
    request: Request,
    tenant_id: Optional[str] = None,
    call_id: Optional[str] = None,
    ingress: WebhookIngress = Depends(get_ingress)
):
    """
    Twilio status callback (form-encoded).

    tenant_id and call_id come from the callback URL's query string: tenant_id
    registers inbound calls, call_id links an outbound call whose placement
    write has not recorded the CallSid yet.
    """
    form = dict(await request.form())
    logger.info(
        f"Twilio status: CallSid={form.get('CallSid')}, "
        f"CallStatus={form.get('CallStatus')}, CallDuration={form.get('CallDuration')}"
    )
    applied = await ingress.ingest_twilio_status(form, tenant_id=tenant_id, call_id=call_id)
    return {"status": "ok", "applied": applied}


@router.post("/telnyx/event")
async def telnyx_event(
    request: Request,
    tenant_id: Optional[str] = None,
    ingress: WebhookIngress = Depends(get_ingress)
):
    """
    Telnyx Call Control webhook (JSON).

    tenant_id (query string of the connection's webhook URL) registers
    inbound calls that carry no client_state.
    """
    try:
        body = await request.json()
    except ValueError as e:
        logger.warning(f"Telnyx webhook with invalid JSON: {e}")
        return {"status": "ok", "applied": False}

    if not isinstance(body, dict):
        logger.warning("Telnyx webhook body is not an object")
        return {"status": "ok", "applied": False}

    data = body.get("data")
    event_name = data.get("event_type") if isinstance(data, dict) else None
    logger.info(f"Telnyx event: {event_name}")
    applied = await ingress.ingest_telnyx_event(body, tenant_id=tenant_id)
    return {"status": "ok", "applied": applied}


@router.post("/twilio/recording", dependencies=[Depends(verify_twilio_signature)])
async def twilio_recording(
    request: Request,
    ingress: WebhookIngress = Depends(get_ingress)
):
    """Twilio recording status callback (form-encoded)."""
    form = dict(await request.form())
    logger.info(
        f"Twilio recording: CallSid={form.get('CallSid')}, "
        f"RecordingSid={form.get('RecordingSid')}"
    )
    stored = await ingress.ingest_twilio_recording(form)
    return {"status": "ok", "applied": stored}
