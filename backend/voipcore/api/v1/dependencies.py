"""
API Dependencies
Shared dependencies resolving pipeline services from the application container
"""
import logging

from fastapi import Depends, HTTPException, Request, status
from twilio.request_validator import RequestValidator

from voipcore.core.container import ServiceContainer
from voipcore.domain.services.billing_service import BillingLedger
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.domain.services.power_dialer import DialerRegistry
from voipcore.domain.services.token_service import VoiceTokenService
from voipcore.domain.services.webhook_ingress import WebhookIngress
from voipcore.workers.dead_letter_worker import DeadLetterSweeper

logger = logging.getLogger(__name__)


def get_container(request: Request) -> ServiceContainer:
    """
    Services built in the application lifespan.

    Raises:
        RuntimeError: If the application was started without its lifespan
    """
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Service container not initialized")
    return container


def get_ingress(container: ServiceContainer = Depends(get_container)) -> WebhookIngress:
    return container.ingress


def get_ledger(container: ServiceContainer = Depends(get_container)) -> BillingLedger:
    return container.ledger


def get_dialers(container: ServiceContainer = Depends(get_container)) -> DialerRegistry:
    return container.dialers


def get_dead_letters(container: ServiceContainer = Depends(get_container)) -> DeadLetterService:
    return container.dead_letters


def get_sweeper(container: ServiceContainer = Depends(get_container)) -> DeadLetterSweeper:
    return container.sweeper


def get_token_service(container: ServiceContainer = Depends(get_container)) -> VoiceTokenService:
    return container.tokens


async def verify_twilio_signature(
    request: Request,
    container: ServiceContainer = Depends(get_container)
) -> None:
    """
    Reject forged Twilio callbacks when signature validation is enabled.

    Raises:
        HTTPException: 403 if the X-Twilio-Signature header does not match
    """
    settings = container.settings
    if not settings.twilio_validate_signature:
        return

    signature = request.headers.get("X-Twilio-Signature", "")
    if not settings.twilio_auth_token or not signature:
        logger.warning("Twilio callback without signature or auth token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    form = await request.form()
    params = {str(k): str(v) for k, v in form.items()}
    validator = RequestValidator(settings.twilio_auth_token)

    if not validator.validate(str(request.url), params, signature):
        logger.warning(f"Invalid Twilio signature for {request.url.path}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
