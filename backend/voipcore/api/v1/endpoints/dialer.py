"""
Dialer API Endpoints
Operator controls for the power dialer of a campaign
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel

from voipcore.api.v1.dependencies import get_dialers
from voipcore.domain.models.dial_queue import DialerSnapshot
from voipcore.domain.services.power_dialer import DialerRegistry, DialerStateError, PowerDialer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dialer", tags=["dialer"])


# ============================================
# Request Models
# ============================================

class LoadCampaignRequest(BaseModel):
    """Start a dialer run for a campaign"""
    tenant_id: str
    from_number: str
    user_id: Optional[str] = None


class WrapUpRequest(BaseModel):
    notes: Optional[str] = None


# ============================================
# Helpers
# ============================================

def _require_dialer(dialers: DialerRegistry, campaign_id: str) -> PowerDialer:
    dialer = dialers.get(campaign_id)
    if dialer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No dialer loaded for campaign {campaign_id}"
        )
    return dialer


def _conflict(e: DialerStateError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)


# ============================================
# Endpoints
# ============================================

@router.post("/campaigns/{campaign_id}/load", response_model=DialerSnapshot)
async def load_campaign(
    campaign_id: str,
    body: LoadCampaignRequest,
    dialers: DialerRegistry = Depends(get_dialers)
):
    """Build the dial queue from the campaign's pending and callback contacts."""
    try:
        dialer = dialers.create(
            campaign_id=campaign_id,
            tenant_id=body.tenant_id,
            from_number=body.from_number,
            user_id=body.user_id,
        )
        await dialer.load_campaign()
    except DialerStateError as e:
        raise _conflict(e)
    return dialer.snapshot()


@router.get("/campaigns/{campaign_id}", response_model=DialerSnapshot)
async def get_dialer(campaign_id: str, dialers: DialerRegistry = Depends(get_dialers)):
    return _require_dialer(dialers, campaign_id).snapshot()


@router.post("/campaigns/{campaign_id}/start", response_model=DialerSnapshot)
async def start_dialer(campaign_id: str, dialers: DialerRegistry = Depends(get_dialers)):
    dialer = _require_dialer(dialers, campaign_id)
    await dialer.start()
    return dialer.snapshot()


@router.post("/campaigns/{campaign_id}/pause", response_model=DialerSnapshot)
async def pause_dialer(campaign_id: str, dialers: DialerRegistry = Depends(get_dialers)):
    dialer = _require_dialer(dialers, campaign_id)
    await dialer.pause()
    return dialer.snapshot()


@router.post("/campaigns/{campaign_id}/resume", response_model=DialerSnapshot)
async def resume_dialer(campaign_id: str, dialers: DialerRegistry = Depends(get_dialers)):
    dialer = _require_dialer(dialers, campaign_id)
    await dialer.resume()
    return dialer.snapshot()


@router.post("/campaigns/{campaign_id}/skip", response_model=DialerSnapshot)
async def skip_contact(campaign_id: str, dialers: DialerRegistry = Depends(get_dialers)):
    dialer = _require_dialer(dialers, campaign_id)
    await dialer.skip()
    return dialer.snapshot()


@router.post("/campaigns/{campaign_id}/wrap-up", response_model=DialerSnapshot)
async def complete_wrap_up(
    campaign_id: str,
    body: WrapUpRequest,
    dialers: DialerRegistry = Depends(get_dialers)
):
    dialer = _require_dialer(dialers, campaign_id)
    try:
        await dialer.complete_wrap_up(notes=body.notes)
    except DialerStateError as e:
        raise _conflict(e)
    return dialer.snapshot()


@router.post("/campaigns/{campaign_id}/stop", response_model=DialerSnapshot)
async def stop_dialer(campaign_id: str, dialers: DialerRegistry = Depends(get_dialers)):
    """Stop dialing and discard the campaign's dialer."""
    dialer = _require_dialer(dialers, campaign_id)
    await dialer.stop()
    snapshot = dialer.snapshot()
    await dialers.discard(campaign_id)
    return snapshot
