"""
Supabase Store
Repository implementations on Supabase (PostgreSQL via PostgREST).

Compare-and-set writes are conditional updates (`.eq("status", ...)`) whose
empty result means the row moved. The balance debit runs in the
apply_billing_debit database function (database/schema.sql) so the version
check, the balance update and the transaction insert commit together.
"""
import logging
from typing import Dict, List, Optional, Any

from pydantic import TypeAdapter
from supabase import Client

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

_CORRELATION_KEYS = (Call.CORRELATION_KEY, "provider_call_id", "call_control_id")
_ROW_ADAPTER = TypeAdapter(Dict[str, Any])


def _row(values: Dict[str, Any]) -> Dict[str, Any]:
    """Enums, datetimes and decimals to their JSON wire form."""
    return _ROW_ADAPTER.dump_python(values, mode="json")


class SupabaseStore(
    CallRepository,
    BillingRepository,
    RateCardRepository,
    DeadLetterRepository,
    DialQueueRepository,
    ContactRepository,
    RecordingRepository,
):
    """All repositories over one Supabase client (service role)."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    # =========================================================================
    # Calls
    # =========================================================================

    async def create(self, call: Call) -> Call:
        response = self.supabase.table("calls").insert(call.to_record()).execute()
        return Call.from_record(response.data[0]) if response.data else call

    async def get(self, call_id: str) -> Optional[Call]:
        response = self.supabase.table("calls").select("*").eq("id", call_id).limit(1).execute()
        return Call.from_record(response.data[0]) if response.data else None

    async def get_by_provider_call_id(self, provider_call_id: str) -> Optional[Call]:
        response = self.supabase.table("calls").select("*").eq(
            "provider_call_id", provider_call_id
        ).limit(1).execute()
        if response.data:
            return Call.from_record(response.data[0])

        # Placement may not have written the provider id yet
        for key in _CORRELATION_KEYS:
            response = self.supabase.table("calls").select("*").contains(
                "metadata", {key: provider_call_id}
            ).limit(1).execute()
            if response.data:
                return Call.from_record(response.data[0])

        return None

    async def update_if_status(
        self,
        call_id: str,
        expected_status: CallStatus,
        changes: Dict[str, Any]
    ) -> Optional[Call]:
        response = self.supabase.table("calls").update(_row(changes)).eq(
            "id", call_id
        ).eq("status", expected_status.value).execute()
        if not response.data:
            return None
        return Call.from_record(response.data[0])

    async def update_cost(self, call_id: str, cost_per_minute, total_cost) -> None:
        self.supabase.table("calls").update(_row({
            "cost_per_minute": cost_per_minute,
            "total_cost": total_cost,
        })).eq("id", call_id).execute()

    # =========================================================================
    # Billing
    # =========================================================================

    async def get_account(self, tenant_id: str) -> Optional[BillingAccount]:
        response = self.supabase.table("billing_accounts").select("*").eq(
            "tenant_id", tenant_id
        ).limit(1).execute()
        return BillingAccount.model_validate(response.data[0]) if response.data else None

    async def get_transaction_for_call(self, call_id: str) -> Optional[BillingTransaction]:
        response = self.supabase.table("billing_transactions").select("*").eq(
            "reference_id", call_id
        ).eq("type", TransactionType.CALL_DEBIT.value).limit(1).execute()
        return BillingTransaction.model_validate(response.data[0]) if response.data else None

    async def apply_debit(
        self,
        account: BillingAccount,
        transaction: BillingTransaction
    ) -> DebitOutcome:
        params = _row({
            "p_account_id": account.id,
            "p_expected_version": account.version,
            "p_tenant_id": transaction.tenant_id,
            "p_amount_minutes": transaction.amount_minutes,
            "p_amount_currency": transaction.amount_currency,
            "p_balance_after_minutes": transaction.balance_after_minutes,
            "p_balance_after_currency": transaction.balance_after_currency,
            "p_reference_id": transaction.reference_id,
            "p_reference_type": transaction.reference_type,
            "p_description": transaction.description,
            "p_metadata": transaction.metadata,
        })
        response = self.supabase.rpc("apply_billing_debit", params).execute()
        return DebitOutcome(response.data)

    async def list_transactions(self, tenant_id: str) -> List[BillingTransaction]:
        response = self.supabase.table("billing_transactions").select("*").eq(
            "tenant_id", tenant_id
        ).order("created_at").order("id").execute()
        return [BillingTransaction.model_validate(row) for row in response.data or []]

    async def list_active(self) -> List[RateCard]:
        response = self.supabase.table("rate_cards").select("*").eq("is_active", True).execute()
        return [RateCard.model_validate(row) for row in response.data or []]

    # =========================================================================
    # Dead letters
    # =========================================================================

    async def insert(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        response = self.supabase.table("dead_letter_queue").insert(entry.to_record()).execute()
        return DeadLetterEntry.model_validate(response.data[0]) if response.data else entry

    async def list_by_status(
        self,
        status: DeadLetterStatus,
        limit: int = 50
    ) -> List[DeadLetterEntry]:
        response = self.supabase.table("dead_letter_queue").select("*").eq(
            "status", status.value
        ).order("created_at").limit(limit).execute()
        return [DeadLetterEntry.model_validate(row) for row in response.data or []]

    async def update(self, entry_id: str, changes: Dict[str, Any]) -> None:
        self.supabase.table("dead_letter_queue").update(_row(changes)).eq("id", entry_id).execute()

    # =========================================================================
    # Dial queue and contacts
    # =========================================================================

    async def save_items(self, items: List[DialQueueItem]) -> None:
        if not items:
            return
        self.supabase.table("dial_queue_items").upsert([i.to_record() for i in items]).execute()

    async def update_item(self, item: DialQueueItem) -> None:
        self.supabase.table("dial_queue_items").upsert(item.to_record()).execute()

    async def list_items(self, campaign_id: str) -> List[DialQueueItem]:
        response = self.supabase.table("dial_queue_items").select("*").eq(
            "campaign_id", campaign_id
        ).order("position").execute()
        return [DialQueueItem.model_validate(row) for row in response.data or []]

    async def list_dialable(self, campaign_id: str) -> List[CampaignContact]:
        response = self.supabase.table("campaign_contacts").select("*").eq(
            "campaign_id", campaign_id
        ).in_("status", list(DIALABLE_CONTACT_STATUSES)).order(
            "priority", desc=True
        ).order("created_at").execute()
        return [CampaignContact.model_validate(row) for row in response.data or []]

    async def save_notes(self, contact_id: str, notes: str) -> None:
        self.supabase.table("campaign_contacts").update({"notes": notes}).eq("id", contact_id).execute()

    # =========================================================================
    # Recordings
    # =========================================================================

    async def insert_recording(self, recording: CallRecording) -> CallRecording:
        record = recording.model_dump(mode="json", exclude_none=True)
        response = self.supabase.table("call_recordings").insert(record).execute()
        return CallRecording.model_validate(response.data[0]) if response.data else recording
