"""
Shared fixtures: in-memory store seeded with one tenant, a scriptable
telephony provider and the services wired on top of them.
"""
import asyncio
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import pytest

from voipcore.domain.interfaces.telephony_provider import (
    PlacementResult,
    TelephonyError,
    TelephonyProvider,
    TenantContext,
)
from voipcore.domain.models.billing import BillingAccount, RateCard
from voipcore.domain.models.call import Call, CallStatus
from voipcore.domain.models.dial_queue import CampaignContact
from voipcore.domain.services.billing_service import BillingLedger
from voipcore.domain.services.call_state_machine import CallStateMachine
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.domain.services.rate_resolver import RateResolver
from voipcore.infrastructure.realtime.redis_publisher import InMemoryRealtimePublisher
from voipcore.infrastructure.storage.memory_store import InMemoryStore

TENANT_ID = "tenant-1"
CAMPAIGN_ID = "campaign-1"


class FakeTelephony(TelephonyProvider):
    """Accepts every call except numbers listed in fail_numbers."""

    def __init__(self, fail_numbers=()):
        self.fail_numbers = set(fail_numbers)
        self.placed: List[dict] = []
        self.hung_up: List[str] = []
        self._seq = 0

    @property
    def name(self) -> str:
        return "fake"

    async def place_call(self, from_number: str, to_number: str, tenant_context: TenantContext) -> PlacementResult:
        if to_number in self.fail_numbers:
            raise TelephonyError(f"Number {to_number} rejected", provider=self.name)
        self._seq += 1
        sid = f"CA{self._seq:04d}"
        self.placed.append({"sid": sid, "to": to_number, "context": tenant_context})
        return PlacementResult(provider_call_id=sid)

    async def hangup(self, provider_call_id: str) -> bool:
        self.hung_up.append(provider_call_id)
        return True

    @property
    def last_sid(self) -> Optional[str]:
        return self.placed[-1]["sid"] if self.placed else None


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true (timers and background tasks)."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


def make_call(
    call_id: str = "call-1",
    provider_call_id: Optional[str] = "CA-test-1",
    status: CallStatus = CallStatus.COMPLETED,
    billable_seconds: int = 61,
    to_number: str = "+5511999990000",
    tenant_id: str = TENANT_ID,
) -> Call:
    return Call(
        id=call_id,
        tenant_id=tenant_id,
        provider_call_id=provider_call_id,
        status=status,
        from_number="+5511300000000",
        to_number=to_number,
        duration_seconds=billable_seconds,
        billable_seconds=billable_seconds,
    )


def seed_contacts(store: InMemoryStore, count: int, campaign_id: str = CAMPAIGN_ID) -> List[CampaignContact]:
    base = datetime(2024, 1, 1, 12, 0, 0)
    contacts = []
    for i in range(1, count + 1):
        contact = CampaignContact(
            id=f"contact-{i}",
            campaign_id=campaign_id,
            phone_number=f"+55119000000{i:02d}",
            created_at=base + timedelta(minutes=i),
        )
        store.add_contact(contact)
        contacts.append(contact)
    return contacts


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_account(BillingAccount(
        id="account-1",
        tenant_id=TENANT_ID,
        balance_minutes=Decimal("100"),
        balance_currency=Decimal("50.00"),
        credit_limit_minutes=Decimal("10"),
    ))
    store.add_rate_card(RateCard(prefix="+55", rate_per_minute=Decimal("0.20"), destination_type="national"))
    store.add_rate_card(RateCard(prefix="+5511", rate_per_minute=Decimal("0.10"), destination_type="local"))
    return store


@pytest.fixture
def telephony():
    return FakeTelephony()


@pytest.fixture
def publisher():
    return InMemoryRealtimePublisher()


@pytest.fixture
def dead_letters(store):
    return DeadLetterService(store)


@pytest.fixture
def ledger(store, dead_letters):
    return BillingLedger(
        calls=store,
        billing=store,
        rate_resolver=RateResolver(store),
        dead_letters=dead_letters,
    )


@pytest.fixture
def state_machine(store, telephony, dead_letters, ledger, publisher):
    return CallStateMachine(
        calls=store,
        telephony=telephony,
        dead_letters=dead_letters,
        ledger=ledger,
        publisher=publisher,
    )
