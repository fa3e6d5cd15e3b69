"""
Voice Token Endpoint
Access tokens for the browser softphone
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel

from voipcore.api.v1.dependencies import get_token_service
from voipcore.domain.services.token_service import (
    TokenConfigurationError,
    VoiceTokenService,
    build_identity,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tokens", tags=["tokens"])


class VoiceTokenRequest(BaseModel):
    """Caller identity is established upstream; tenant and user are trusted here"""
    tenant_id: str
    user_id: str
    identity: Optional[str] = None


class VoiceTokenResponse(BaseModel):
    token: str
    identity: str
    ttl: int


@router.post("/voice", response_model=VoiceTokenResponse)
async def create_voice_token(
    body: VoiceTokenRequest,
    tokens: VoiceTokenService = Depends(get_token_service)
):
    identity = body.identity or build_identity(body.tenant_id, body.user_id)
    try:
        token = tokens.create_token(identity)
    except TokenConfigurationError as e:
        logger.error(f"Voice token requested but not configured: {e.message}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return VoiceTokenResponse(token=token, identity=identity, ttl=tokens.default_ttl)
