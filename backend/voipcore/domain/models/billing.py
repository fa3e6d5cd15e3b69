"""
Billing Domain Models
Tariffs, tenant billing accounts and the append-only transaction ledger
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum


class RateCard(BaseModel):
    """Tariff definition for a destination prefix (read-only to the core)"""
    id: Optional[str] = None
    prefix: str
    rate_per_minute: Decimal
    billing_increment: int = Field(default=6, gt=0, description="Rounding granularity in seconds")
    connection_fee: Decimal = Decimal("0")
    is_active: bool = True
    destination_type: str = "unknown"


class Tariff(BaseModel):
    """Resolved rate for one destination"""
    rate_per_minute: Decimal
    increment_seconds: int = Field(gt=0)
    connection_fee: Decimal = Decimal("0")
    destination_type: str = "unknown"
    prefix: Optional[str] = None

    @classmethod
    def from_rate_card(cls, card: RateCard) -> "Tariff":
        return cls(
            rate_per_minute=card.rate_per_minute,
            increment_seconds=card.billing_increment,
            connection_fee=card.connection_fee,
            destination_type=card.destination_type,
            prefix=card.prefix,
        )


class BillingAccount(BaseModel):
    """
    One account per tenant.

    `version` is bumped on every debit and is the compare-and-set token
    that serializes concurrent settlements for the same tenant.
    """
    id: str
    tenant_id: str
    balance_minutes: Decimal = Decimal("0")
    balance_currency: Decimal = Decimal("0")
    credit_limit_minutes: Decimal = Decimal("0")
    version: int = 0
    updated_at: Optional[datetime] = None

    def would_exceed_credit(self, minutes: Decimal) -> bool:
        return self.balance_minutes - minutes < -self.credit_limit_minutes


class TransactionType(str, Enum):
    CALL_DEBIT = "call_debit"
    CREDIT = "credit"
    ADJUSTMENT = "adjustment"


class BillingTransaction(BaseModel):
    """Immutable ledger entry. Exactly one per settled call."""
    id: Optional[str] = None
    tenant_id: str
    billing_account_id: str
    type: TransactionType = TransactionType.CALL_DEBIT
    amount_minutes: Decimal
    amount_currency: Decimal
    balance_after_minutes: Decimal
    balance_after_currency: Decimal
    reference_id: str
    reference_type: str = "call"
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"frozen": True}


class DebitOutcome(str, Enum):
    """Result of one compare-and-set debit attempt"""
    APPLIED = "applied"
    CONFLICT = "conflict"      # account version moved, re-read and retry
    DUPLICATE = "duplicate"    # a debit already exists for this call


class SettlementStatus(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    SKIPPED = "skipped"


class SettlementResult(BaseModel):
    """Outcome of BillingLedger.settle"""
    provider_call_id: str
    status: SettlementStatus
    billable_minutes: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    balance_after: Optional[Decimal] = None
    reason: Optional[str] = None
