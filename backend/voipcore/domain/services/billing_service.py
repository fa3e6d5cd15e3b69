"""
Billing Ledger
Per-call settlement: rate lookup, increment rounding, atomic balance debit
and one immutable transaction per call.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Dict, Any

from voipcore.domain.interfaces.repositories import BillingRepository, CallRepository
from voipcore.domain.models.billing import (
    BillingAccount,
    BillingTransaction,
    DebitOutcome,
    SettlementResult,
    SettlementStatus,
    Tariff,
    TransactionType,
)
from voipcore.domain.models.call import Call, CallStatus
from voipcore.domain.models.dead_letter import TaskType
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.domain.services.rate_resolver import RateResolver, RateConfigurationError

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = Decimal(60)
AMOUNT_QUANTUM = Decimal("0.0001")


class BillingAccountNotFound(Exception):
    """Raised when a tenant has no billing account (tenant provisioning issue)."""
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self.message = f"Billing account not found for tenant {tenant_id}"
        super().__init__(self.message)


class BalanceConflictError(Exception):
    """Raised when a capped compare-and-set debit runs out of attempts."""
    def __init__(self, tenant_id: str, attempts: int):
        self.message = f"Balance update for tenant {tenant_id} conflicted {attempts} times"
        super().__init__(self.message)


class SettlementError(Exception):
    """Raised by settle() after the failure has been dead-lettered."""
    def __init__(self, provider_call_id: str, cause: Exception):
        self.provider_call_id = provider_call_id
        self.cause = cause
        self.message = f"Settlement failed for {provider_call_id}: {cause}"
        super().__init__(self.message)


def compute_charge(billable_seconds: int, tariff: Tariff) -> Tuple[Decimal, Decimal]:
    """
    Round billable seconds up to the billing increment and price them.

    61s at a 6s increment -> 11 increments -> 66s -> 1.1 minutes.

    Returns:
        (billable_minutes, total_cost), both quantized to 4 decimal places
    """
    increment = tariff.increment_seconds
    increments = -(-billable_seconds // increment)
    minutes = Decimal(increments * increment) / SECONDS_PER_MINUTE
    total = minutes * tariff.rate_per_minute + tariff.connection_fee
    return (
        minutes.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP),
        total.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP),
    )


class BillingLedger:
    """
    Applies call charges to tenant balances.

    Debits are serialized per tenant through a compare-and-set on the account
    version; a losing writer re-reads the account and recomputes its snapshot.
    settle() is idempotent per call: a call that already has a debit
    transaction is reported as already settled and never charged twice.
    """

    def __init__(
        self,
        calls: CallRepository,
        billing: BillingRepository,
        rate_resolver: RateResolver,
        dead_letters: DeadLetterService,
        max_cas_attempts: Optional[int] = None
    ):
        self._calls = calls
        self._billing = billing
        self._rates = rate_resolver
        self._dead_letters = dead_letters
        self._max_cas_attempts = max_cas_attempts

    async def settle(
        self,
        provider_call_id: str,
        record_failure: bool = True
    ) -> SettlementResult:
        """
        Settle one call.

        Args:
            provider_call_id: Provider call id of a finished call
            record_failure: Dead-letter failures (disabled when replaying a
                dead-letter entry, which tracks its own attempts)

        Returns:
            SettlementResult

        Raises:
            SettlementError: Any failure, after it has been dead-lettered
        """
        call: Optional[Call] = None
        try:
            call = await self._calls.get_by_provider_call_id(provider_call_id)
            if call is None:
                raise LookupError(f"Call not found: {provider_call_id}")
            return await self._settle_call(provider_call_id, call)

        except Exception as e:
            logger.error(f"Billing failed for call {provider_call_id}: {e}", exc_info=True)
            if record_failure:
                await self._dead_letters.record(
                    TaskType.BILLING_DEBIT,
                    self._dead_letter_payload(provider_call_id, call, e),
                    e,
                    tenant_id=call.tenant_id if call else None,
                )
            raise SettlementError(provider_call_id, e) from e

    async def _settle_call(self, provider_call_id: str, call: Call) -> SettlementResult:
        if call.status != CallStatus.COMPLETED:
            logger.info(f"Call {provider_call_id} is {call.status.value}, nothing to bill")
            return SettlementResult(
                provider_call_id=provider_call_id,
                status=SettlementStatus.SKIPPED,
                reason="not_completed",
            )

        if call.billable_seconds == 0:
            logger.info(f"Call {provider_call_id} has no billable duration")
            return SettlementResult(
                provider_call_id=provider_call_id,
                status=SettlementStatus.SKIPPED,
                reason="no_billable_seconds",
            )

        existing = await self._billing.get_transaction_for_call(call.id)
        if existing is not None:
            return await self._already_settled(provider_call_id, call, existing)

        tariff = await self._rates.resolve_rate(call.to_number)
        billable_minutes, total_cost = compute_charge(call.billable_seconds, tariff)

        transaction = await self._debit(call, tariff, billable_minutes, total_cost)
        if transaction is None:
            # Lost the race to another settlement of the same call
            existing = await self._billing.get_transaction_for_call(call.id)
            return await self._already_settled(provider_call_id, call, existing)

        await self._calls.update_cost(call.id, tariff.rate_per_minute, total_cost)

        logger.info(
            f"Billing: {billable_minutes} min = {total_cost} for call {provider_call_id} "
            f"(tenant={call.tenant_id}, balance_after={transaction.balance_after_currency})"
        )

        return SettlementResult(
            provider_call_id=provider_call_id,
            status=SettlementStatus.SETTLED,
            billable_minutes=billable_minutes,
            total_cost=total_cost,
            balance_after=transaction.balance_after_currency,
        )

    async def _debit(
        self,
        call: Call,
        tariff: Tariff,
        billable_minutes: Decimal,
        total_cost: Decimal
    ) -> Optional[BillingTransaction]:
        """
        Compare-and-set loop on the tenant account.

        A conflict means another debit for the tenant committed in between,
        so every retry is made against a newer version and the loop always
        makes progress. Without a cap it runs until the debit is applied.

        Returns:
            The applied transaction, or None if a debit for this call already exists
        """
        attempt = 0
        while self._max_cas_attempts is None or attempt < self._max_cas_attempts:
            attempt += 1
            account = await self._billing.get_account(call.tenant_id)
            if account is None:
                raise BillingAccountNotFound(call.tenant_id)

            transaction = self._build_transaction(call, account, tariff, billable_minutes, total_cost)
            outcome = await self._billing.apply_debit(account, transaction)

            if outcome == DebitOutcome.APPLIED:
                if attempt > 1:
                    logger.info(f"Debit for call {call.id} applied after {attempt} attempts")
                return transaction
            if outcome == DebitOutcome.DUPLICATE:
                return None

            logger.debug(
                f"Balance conflict for tenant {call.tenant_id} "
                f"(attempt {attempt}), retrying against version > {account.version}"
            )

        raise BalanceConflictError(call.tenant_id, attempt)

    def _build_transaction(
        self,
        call: Call,
        account: BillingAccount,
        tariff: Tariff,
        billable_minutes: Decimal,
        total_cost: Decimal
    ) -> BillingTransaction:
        over_limit = account.would_exceed_credit(billable_minutes)
        if over_limit:
            logger.warning(
                f"Tenant {call.tenant_id} exceeds credit limit "
                f"({account.balance_minutes} - {billable_minutes} min "
                f"< -{account.credit_limit_minutes})"
            )

        return BillingTransaction(
            tenant_id=call.tenant_id,
            billing_account_id=account.id,
            type=TransactionType.CALL_DEBIT,
            amount_minutes=-billable_minutes,
            amount_currency=-total_cost,
            balance_after_minutes=account.balance_minutes - billable_minutes,
            balance_after_currency=account.balance_currency - total_cost,
            reference_id=call.id,
            reference_type="call",
            description=f"Call to {call.to_number} - {call.billable_seconds}s",
            metadata={
                "provider_call_id": call.provider_call_id,
                "rate_per_minute": str(tariff.rate_per_minute),
                "billing_increment": tariff.increment_seconds,
                "connection_fee": str(tariff.connection_fee),
                "destination_type": tariff.destination_type,
                "over_credit_limit": over_limit,
            },
        )

    async def _already_settled(
        self,
        provider_call_id: str,
        call: Call,
        transaction: BillingTransaction
    ) -> SettlementResult:
        """Nothing to debit; make sure the call carries its cost fields."""
        total_cost = -transaction.amount_currency
        if not call.is_settled:
            rate = Decimal(str(transaction.metadata.get("rate_per_minute", "0")))
            await self._calls.update_cost(call.id, rate, total_cost)

        logger.info(f"Call {provider_call_id} already settled, nothing to do")
        return SettlementResult(
            provider_call_id=provider_call_id,
            status=SettlementStatus.ALREADY_SETTLED,
            billable_minutes=-transaction.amount_minutes,
            total_cost=total_cost,
            balance_after=transaction.balance_after_currency,
        )

    def _dead_letter_payload(
        self,
        provider_call_id: str,
        call: Optional[Call],
        error: Exception
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"provider_call_id": provider_call_id}
        if call is not None:
            payload["call_id"] = call.id
            payload["tenant_id"] = call.tenant_id
        if isinstance(error, (BillingAccountNotFound, RateConfigurationError)):
            payload["remediation"] = "tenant_configuration"
        return payload

    # =========================================================================
    # Reporting
    # =========================================================================

    async def get_account(self, tenant_id: str) -> BillingAccount:
        account = await self._billing.get_account(tenant_id)
        if account is None:
            raise BillingAccountNotFound(tenant_id)
        return account

    async def audit(self, tenant_id: str) -> bool:
        """True when the account balance equals the last transaction's balance_after."""
        account = await self.get_account(tenant_id)
        transactions = await self._billing.list_transactions(tenant_id)
        if not transactions:
            return True
        last = transactions[-1]
        return (
            last.balance_after_currency == account.balance_currency
            and last.balance_after_minutes == account.balance_minutes
        )
