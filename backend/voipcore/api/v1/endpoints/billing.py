"""
Billing API Endpoints
Manual settlement and tenant balance lookup
"""
import logging
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel

from voipcore.api.v1.dependencies import get_ledger
from voipcore.domain.models.billing import SettlementResult
from voipcore.domain.services.billing_service import (
    BillingAccountNotFound,
    BillingLedger,
    SettlementError,
)
from voipcore.domain.services.rate_resolver import RateConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ============================================
# Response Models
# ============================================

class AccountResponse(BaseModel):
    """Tenant balance"""
    tenant_id: str
    balance_minutes: Decimal
    balance_currency: Decimal
    credit_limit_minutes: Decimal
    version: int
    ledger_consistent: bool


# ============================================
# Endpoints
# ============================================

@router.post("/settle/{provider_call_id}", response_model=SettlementResult)
async def settle_call(
    provider_call_id: str,
    ledger: BillingLedger = Depends(get_ledger)
):
    """
    Settle a finished call. Idempotent: a settled call reports already_settled.
    """
    try:
        return await ledger.settle(provider_call_id)
    except SettlementError as e:
        cause = e.cause
        if isinstance(cause, LookupError):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(cause))
        if isinstance(cause, (BillingAccountNotFound, RateConfigurationError)):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=cause.message)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)


@router.get("/accounts/{tenant_id}", response_model=AccountResponse)
async def get_account(
    tenant_id: str,
    ledger: BillingLedger = Depends(get_ledger)
):
    try:
        account = await ledger.get_account(tenant_id)
    except BillingAccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    return AccountResponse(
        tenant_id=account.tenant_id,
        balance_minutes=account.balance_minutes,
        balance_currency=account.balance_currency,
        credit_limit_minutes=account.credit_limit_minutes,
        version=account.version,
        ledger_consistent=await ledger.audit(tenant_id),
    )
