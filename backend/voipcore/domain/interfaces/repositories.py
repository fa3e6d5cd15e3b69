"""
Repository Interfaces
Durable-store contracts used by the settlement pipeline.

Implementations:
- SupabaseStore (infrastructure/storage/supabase_store.py)
- InMemoryStore (infrastructure/storage/memory_store.py)
"""
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any

from voipcore.domain.models.call import Call, CallStatus
from voipcore.domain.models.billing import (
    BillingAccount,
    BillingTransaction,
    DebitOutcome,
    RateCard,
)
from voipcore.domain.models.dead_letter import DeadLetterEntry, DeadLetterStatus
from voipcore.domain.models.dial_queue import CampaignContact, DialQueueItem
from voipcore.domain.models.recording import CallRecording


class CallRepository(ABC):
    """calls table"""

    @abstractmethod
    async def create(self, call: Call) -> Call:
        pass

    @abstractmethod
    async def get(self, call_id: str) -> Optional[Call]:
        pass

    @abstractmethod
    async def get_by_provider_call_id(self, provider_call_id: str) -> Optional[Call]:
        """Match on provider_call_id, falling back to metadata correlation ids."""
        pass

    @abstractmethod
    async def update_if_status(
        self,
        call_id: str,
        expected_status: CallStatus,
        changes: Dict[str, Any]
    ) -> Optional[Call]:
        """
        Compare-and-set update: apply `changes` only if the row still has
        `expected_status`. Returns the updated call, or None if the status moved.
        """
        pass

    @abstractmethod
    async def update_cost(self, call_id: str, cost_per_minute, total_cost) -> None:
        pass


class BillingRepository(ABC):
    """billing_accounts and billing_transactions tables"""

    @abstractmethod
    async def get_account(self, tenant_id: str) -> Optional[BillingAccount]:
        pass

    @abstractmethod
    async def get_transaction_for_call(self, call_id: str) -> Optional[BillingTransaction]:
        pass

    @abstractmethod
    async def apply_debit(
        self,
        account: BillingAccount,
        transaction: BillingTransaction
    ) -> DebitOutcome:
        """
        Atomically move the account to the transaction's balance_after values
        and append the transaction, provided the account version still equals
        `account.version` and no debit exists for the same reference.
        """
        pass

    @abstractmethod
    async def list_transactions(self, tenant_id: str) -> List[BillingTransaction]:
        """Ledger order (oldest first)."""
        pass


class RateCardRepository(ABC):
    """rate_cards table (read-only to the core)"""

    @abstractmethod
    async def list_active(self) -> List[RateCard]:
        pass


class DeadLetterRepository(ABC):
    """dead_letter_queue table"""

    @abstractmethod
    async def insert(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: DeadLetterStatus,
        limit: int = 50
    ) -> List[DeadLetterEntry]:
        """Oldest first."""
        pass

    @abstractmethod
    async def update(self, entry_id: str, changes: Dict[str, Any]) -> None:
        pass


class DialQueueRepository(ABC):
    """dial_queue_items table"""

    @abstractmethod
    async def save_items(self, items: List[DialQueueItem]) -> None:
        pass

    @abstractmethod
    async def update_item(self, item: DialQueueItem) -> None:
        pass

    @abstractmethod
    async def list_items(self, campaign_id: str) -> List[DialQueueItem]:
        pass


class ContactRepository(ABC):
    """campaign_contacts table (managed outside the core)"""

    @abstractmethod
    async def list_dialable(self, campaign_id: str) -> List[CampaignContact]:
        """Contacts in pending/callback status, priority desc then created_at asc."""
        pass

    @abstractmethod
    async def save_notes(self, contact_id: str, notes: str) -> None:
        pass


class RecordingRepository(ABC):
    """call_recordings table"""

    @abstractmethod
    async def insert_recording(self, recording: CallRecording) -> CallRecording:
        pass
