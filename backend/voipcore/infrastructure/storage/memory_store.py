"""
In-Memory Store
Process-local implementation of every repository interface.

Used for local development (STORAGE_BACKEND=memory) and tests. A single
asyncio.Lock serializes mutations, which gives the same compare-and-set
guarantees the database provides with conditional updates and the
apply_billing_debit function.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Any

from voipcore.domain.interfaces.repositories import (
    BillingRepository,
    CallRepository,
    ContactRepository,
    DeadLetterRepository,
    DialQueueRepository,
    RateCardRepository,
    RecordingRepository,
)
from voipcore.domain.models.billing import (
    BillingAccount,
    BillingTransaction,
    DebitOutcome,
    RateCard,
    TransactionType,
)
from voipcore.domain.models.call import Call, CallStatus
from voipcore.domain.models.dead_letter import DeadLetterEntry, DeadLetterStatus
from voipcore.domain.models.dial_queue import (
    CampaignContact,
    DialQueueItem,
    DIALABLE_CONTACT_STATUSES,
)
from voipcore.domain.models.recording import CallRecording

logger = logging.getLogger(__name__)

# Metadata keys searched when a provider id is not (yet) on the call row
_CORRELATION_KEYS = (Call.CORRELATION_KEY, "provider_call_id", "call_control_id")


class InMemoryStore(
    CallRepository,
    BillingRepository,
    RateCardRepository,
    DeadLetterRepository,
    DialQueueRepository,
    ContactRepository,
    RecordingRepository,
):
    """All tables in dictionaries. Returned models are copies."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.calls: Dict[str, Call] = {}
        self.accounts: Dict[str, BillingAccount] = {}
        self.transactions: List[BillingTransaction] = []
        self.rate_cards: List[RateCard] = []
        self.dead_letters: Dict[str, DeadLetterEntry] = {}
        self.queue_items: Dict[str, DialQueueItem] = {}
        self.contacts: Dict[str, CampaignContact] = {}
        self.recordings: List[CallRecording] = []

    # =========================================================================
    # Seeding (dev and tests)
    # =========================================================================

    def add_account(self, account: BillingAccount) -> None:
        self.accounts[account.tenant_id] = account

    def add_rate_card(self, card: RateCard) -> None:
        self.rate_cards.append(card)

    def add_contact(self, contact: CampaignContact) -> None:
        self.contacts[contact.id] = contact

    # =========================================================================
    # Calls
    # =========================================================================

    async def create(self, call: Call) -> Call:
        async with self._lock:
            if call.id in self.calls:
                raise ValueError(f"Call {call.id} already exists")
            self.calls[call.id] = call.model_copy(deep=True)
            return call.model_copy(deep=True)

    async def get(self, call_id: str) -> Optional[Call]:
        call = self.calls.get(call_id)
        return call.model_copy(deep=True) if call else None

    async def get_by_provider_call_id(self, provider_call_id: str) -> Optional[Call]:
        for call in self.calls.values():
            if call.provider_call_id == provider_call_id:
                return call.model_copy(deep=True)
        for call in self.calls.values():
            if any(call.metadata.get(key) == provider_call_id for key in _CORRELATION_KEYS):
                return call.model_copy(deep=True)
        return None

    async def update_if_status(
        self,
        call_id: str,
        expected_status: CallStatus,
        changes: Dict[str, Any]
    ) -> Optional[Call]:
        async with self._lock:
            call = self.calls.get(call_id)
            if call is None or call.status != expected_status:
                return None
            updated = call.model_copy(update=changes, deep=True)
            self.calls[call_id] = updated
            return updated.model_copy(deep=True)

    async def update_cost(self, call_id: str, cost_per_minute, total_cost) -> None:
        async with self._lock:
            call = self.calls.get(call_id)
            if call is None:
                raise LookupError(f"Call not found: {call_id}")
            self.calls[call_id] = call.model_copy(update={
                "cost_per_minute": cost_per_minute,
                "total_cost": total_cost,
            })

    # =========================================================================
    # Billing
    # =========================================================================

    async def get_account(self, tenant_id: str) -> Optional[BillingAccount]:
        account = self.accounts.get(tenant_id)
        return account.model_copy() if account else None

    async def get_transaction_for_call(self, call_id: str) -> Optional[BillingTransaction]:
        for transaction in self.transactions:
            if (transaction.reference_id == call_id
                    and transaction.type == TransactionType.CALL_DEBIT):
                return transaction
        return None

    async def apply_debit(
        self,
        account: BillingAccount,
        transaction: BillingTransaction
    ) -> DebitOutcome:
        async with self._lock:
            for existing in self.transactions:
                if (existing.reference_id == transaction.reference_id
                        and existing.type == TransactionType.CALL_DEBIT):
                    return DebitOutcome.DUPLICATE

            current = self.accounts.get(account.tenant_id)
            if current is None or current.version != account.version:
                return DebitOutcome.CONFLICT

            self.accounts[account.tenant_id] = current.model_copy(update={
                "balance_minutes": transaction.balance_after_minutes,
                "balance_currency": transaction.balance_after_currency,
                "version": current.version + 1,
                "updated_at": datetime.utcnow(),
            })
            self.transactions.append(
                transaction.model_copy(update={"id": transaction.id or str(uuid.uuid4())})
            )
            return DebitOutcome.APPLIED

    async def list_transactions(self, tenant_id: str) -> List[BillingTransaction]:
        return [t for t in self.transactions if t.tenant_id == tenant_id]

    async def list_active(self) -> List[RateCard]:
        return [card for card in self.rate_cards if card.is_active]

    # =========================================================================
    # Dead letters
    # =========================================================================

    async def insert(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        async with self._lock:
            stored = entry.model_copy(update={"id": entry.id or str(uuid.uuid4())}, deep=True)
            self.dead_letters[stored.id] = stored
            return stored.model_copy(deep=True)

    async def list_by_status(
        self,
        status: DeadLetterStatus,
        limit: int = 50
    ) -> List[DeadLetterEntry]:
        entries = [e for e in self.dead_letters.values() if e.status == status]
        entries.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in entries[:limit]]

    async def update(self, entry_id: str, changes: Dict[str, Any]) -> None:
        async with self._lock:
            entry = self.dead_letters.get(entry_id)
            if entry is None:
                raise LookupError(f"Dead letter not found: {entry_id}")
            # Changes arrive in wire form (isoformat, enum values)
            merged = {**entry.model_dump(), **changes}
            self.dead_letters[entry_id] = DeadLetterEntry.model_validate(merged)

    # =========================================================================
    # Dial queue and contacts
    # =========================================================================

    async def save_items(self, items: List[DialQueueItem]) -> None:
        async with self._lock:
            for item in items:
                self.queue_items[item.id] = item.model_copy()

    async def update_item(self, item: DialQueueItem) -> None:
        async with self._lock:
            self.queue_items[item.id] = item.model_copy()

    async def list_items(self, campaign_id: str) -> List[DialQueueItem]:
        items = [i for i in self.queue_items.values() if i.campaign_id == campaign_id]
        return sorted(items, key=lambda i: i.sort_key)

    async def list_dialable(self, campaign_id: str) -> List[CampaignContact]:
        contacts = [
            c for c in self.contacts.values()
            if c.campaign_id == campaign_id and c.status in DIALABLE_CONTACT_STATUSES
        ]
        contacts.sort(key=lambda c: (-c.priority, c.created_at))
        return [c.model_copy() for c in contacts]

    async def save_notes(self, contact_id: str, notes: str) -> None:
        async with self._lock:
            contact = self.contacts.get(contact_id)
            if contact is None:
                raise LookupError(f"Contact not found: {contact_id}")
            self.contacts[contact_id] = contact.model_copy(update={"notes": notes})

    # =========================================================================
    # Recordings
    # =========================================================================

    async def insert_recording(self, recording: CallRecording) -> CallRecording:
        async with self._lock:
            stored = recording.model_copy(update={"id": recording.id or str(uuid.uuid4())})
            self.recordings.append(stored)
            return stored
