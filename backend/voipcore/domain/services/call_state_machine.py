"""
Call State Machine
Owns a call's status transitions, driven by normalized provider events.

    queued -> initiated -> ringing -> in-progress -> {completed | busy | no-answer | canceled | failed}

Any forward transition is accepted (initiated/ringing may be skipped); stale or
duplicate events that would not move the call forward are no-ops. Each
transition is committed with a compare-and-set on the current status, so
concurrent deliveries for the same call cannot move it backwards.

Answered calls always end as completed (or failed): a busy, no-answer or
canceled ending is recorded as completed once the call was answered,
whichever of the two events is delivered first.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Set, Union

from voipcore.domain.interfaces.realtime import RealtimePublisher, calls_channel
from voipcore.domain.interfaces.repositories import CallRepository
from voipcore.domain.interfaces.telephony_provider import TelephonyProvider, TenantContext
from voipcore.domain.models.call import (
    Call,
    CallDirection,
    CallEvent,
    CallEventType,
    CallStatus,
    CallTransition,
    STATUS_RANK,
)
from voipcore.domain.models.dead_letter import TaskType
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.domain.services.event_bus import EventBus, Listener, Subscription

logger = logging.getLogger(__name__)

# A committed CAS loss means the status moved forward (or an unanswered ending
# was upgraded to completed), so retries are bounded by the number of ranks.
_MAX_CAS_ATTEMPTS = len(set(STATUS_RANK.values())) + 2

# Once answered, a call can only end as completed or failed
_ANSWERED_TERMINALS = {CallStatus.COMPLETED, CallStatus.FAILED}

# Endings that a later answered (or completed) event upgrades to completed
_UNANSWERED_TERMINALS = {CallStatus.BUSY, CallStatus.NO_ANSWER, CallStatus.CANCELED}


class CallNotFound(Exception):
    """
    Raised when an event references a call the core has not recorded yet.

    Expected when a webhook races the placement write; callers retry after
    a short backoff.
    """
    def __init__(self, provider_call_id: str):
        self.provider_call_id = provider_call_id
        self.message = f"Call not found: {provider_call_id}"
        super().__init__(self.message)


class CallPlacementError(Exception):
    """
    Raised when a placement request fails.

    provider_call_id is set when the provider accepted the call but the core
    could not record it; the live call should be terminated by the caller.
    """
    def __init__(self, message: str, provider_call_id: Optional[str] = None):
        self.message = message
        self.provider_call_id = provider_call_id
        super().__init__(self.message)


def _as_utc(value: Optional[datetime]) -> datetime:
    """Naive UTC, matching the rest of the records."""
    if value is None:
        return datetime.utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    """Forward-only reachability; equal rank (duplicates, terminal->terminal) is rejected."""
    return target.rank > current.rank


class CallStateMachine:
    """
    Applies provider events to call records and places outbound calls.

    Collaborators are injected; one instance serves any number of calls and
    tenants. Committed transitions are published to in-process subscribers
    and to the realtime fan-out, and a completed call with billable time is
    handed to the billing ledger in the background.
    """

    def __init__(
        self,
        calls: CallRepository,
        telephony: TelephonyProvider,
        dead_letters: DeadLetterService,
        ledger=None,
        publisher: Optional[RealtimePublisher] = None
    ):
        self._calls = calls
        self._telephony = telephony
        self._dead_letters = dead_letters
        self._ledger = ledger
        self._publisher = publisher
        self._events: EventBus[CallTransition] = EventBus("call-transitions")
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # Events
    # =========================================================================

    async def apply_event(
        self,
        provider_call_id: str,
        event_type: Union[CallEventType, str],
        occurred_at: Optional[datetime] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> Optional[CallTransition]:
        """
        Apply one provider event.

        Args:
            provider_call_id: Provider call id (or correlation id)
            event_type: Normalized event type
            occurred_at: Provider timestamp (advisory only)
            extra: duration_seconds, non_billable_seconds, hangup_cause

        Returns:
            The committed transition, or None if the event was stale/duplicate

        Raises:
            CallNotFound: No call matches provider_call_id yet
        """
        event_type = CallEventType(event_type)
        target = event_type.to_status()
        occurred_at = _as_utc(occurred_at)
        extra = extra or {}

        for _ in range(_MAX_CAS_ATTEMPTS):
            call = await self._calls.get_by_provider_call_id(provider_call_id)
            if call is None:
                raise CallNotFound(provider_call_id)

            effective = self._effective_target(call, target)
            if not self._accepts(call.status, effective):
                logger.debug(
                    f"Ignoring {event_type.value} for {provider_call_id}: "
                    f"call already {call.status.value}"
                )
                return None

            changes = self._transition_changes(
                call, effective, occurred_at, extra,
                answered=target == CallStatus.IN_PROGRESS,
            )
            updated = await self._calls.update_if_status(call.id, call.status, changes)
            if updated is None:
                logger.debug(f"Concurrent update on call {call.id}, re-reading")
                continue

            transition = CallTransition(
                call=updated,
                previous_status=call.status,
                status=effective,
                occurred_at=occurred_at,
            )
            logger.info(
                f"Call {provider_call_id}: {call.status.value} -> {effective.value}"
            )
            await self._after_commit(transition)
            return transition

        raise RuntimeError(f"Call {provider_call_id} kept changing during update")

    async def apply(self, event: CallEvent) -> Optional[CallTransition]:
        """Apply a normalized CallEvent."""
        extra = dict(event.extra)
        if event.duration_seconds is not None:
            extra["duration_seconds"] = event.duration_seconds
        if event.non_billable_seconds is not None:
            extra["non_billable_seconds"] = event.non_billable_seconds
        if event.hangup_cause:
            extra["hangup_cause"] = event.hangup_cause
        return await self.apply_event(
            event.provider_call_id,
            event.event_type,
            event.occurred_at,
            extra,
        )

    def _effective_target(self, call: Call, target: CallStatus) -> CallStatus:
        # Keeps answered_at => status in {in-progress, completed, failed}
        if call.answered_at is not None and target.is_terminal and target not in _ANSWERED_TERMINALS:
            logger.info(f"Call {call.id} was answered; recording {target.value} as completed")
            return CallStatus.COMPLETED
        # Same outcome when the answer is delivered after the unanswered ending
        if target == CallStatus.IN_PROGRESS and call.status in _UNANSWERED_TERMINALS:
            logger.info(f"Call {call.id} answered after {call.status.value}; recording completed")
            return CallStatus.COMPLETED
        return target

    @staticmethod
    def _accepts(current: CallStatus, target: CallStatus) -> bool:
        if current in _UNANSWERED_TERMINALS and target == CallStatus.COMPLETED:
            return True
        return can_transition(current, target)

    def _transition_changes(
        self,
        call: Call,
        target: CallStatus,
        occurred_at: datetime,
        extra: Dict[str, Any],
        answered: bool = False
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"status": target}

        if call.started_at is None:
            changes["started_at"] = occurred_at

        if (answered or target == CallStatus.IN_PROGRESS) and call.answered_at is None:
            changes["answered_at"] = occurred_at

        if target.is_terminal:
            if not call.status.is_terminal:
                changes["ended_at"] = occurred_at

            duration = extra.get("duration_seconds")
            if duration is not None:
                duration = max(0, int(duration))
                non_billable = max(0, int(extra.get("non_billable_seconds") or 0))
                changes["duration_seconds"] = duration
                changes["billable_seconds"] = max(0, duration - non_billable)

            if extra.get("hangup_cause"):
                changes["hangup_cause"] = extra["hangup_cause"]

        return changes

    async def _after_commit(self, transition: CallTransition) -> None:
        await self._events.publish(transition)
        await self._publish_realtime(transition)

        call = transition.call
        if transition.status == CallStatus.COMPLETED and call.billable_seconds > 0:
            self._schedule_settlement(call.provider_call_id or call.id)

    # =========================================================================
    # Settlement handoff
    # =========================================================================

    def _schedule_settlement(self, provider_call_id: str) -> None:
        if self._ledger is None:
            logger.warning(f"No billing ledger configured, call {provider_call_id} not settled")
            return
        task = asyncio.create_task(self._settle(provider_call_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _settle(self, provider_call_id: str) -> None:
        # The ledger dead-letters its own failures
        try:
            await self._ledger.settle(provider_call_id)
        except Exception as e:
            logger.error(f"Settlement for {provider_call_id} failed: {e}")

    async def drain(self) -> None:
        """Wait for background settlements (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Placement
    # =========================================================================

    async def place_call(
        self,
        tenant_id: str,
        from_number: str,
        to_number: str,
        call_id: Optional[str] = None,
        user_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Call:
        """
        Place an outbound call and record it.

        The call row is written as `queued` before the provider is asked, with
        the internal id as correlation id, then moved to `initiated` once the
        provider call id is known.

        Raises:
            CallPlacementError: Provider rejected the call, or the accepted
                call could not be recorded (dead-lettered as call_placement)
        """
        call_id = call_id or str(uuid.uuid4())
        call = Call(
            id=call_id,
            tenant_id=tenant_id,
            direction=CallDirection.OUTBOUND,
            status=CallStatus.QUEUED,
            from_number=from_number,
            to_number=to_number,
            user_id=user_id,
            campaign_id=campaign_id,
            metadata={
                **(metadata or {}),
                Call.CORRELATION_KEY: call_id,
                "provider": self._telephony.name,
            },
        )
        call = await self._calls.create(call)

        context = TenantContext(
            tenant_id=tenant_id,
            call_id=call_id,
            user_id=user_id,
            campaign_id=campaign_id,
        )

        try:
            placement = await self._telephony.place_call(from_number, to_number, context)
        except Exception as e:
            logger.error(f"Placement failed for call {call_id} to {to_number}: {e}")
            await self._mark_unplaced(call, str(e))
            raise CallPlacementError(f"Placement failed: {e}") from e

        try:
            return await self.attach_provider_call(call_id, placement.provider_call_id)
        except Exception as e:
            await self._dead_letters.record(
                TaskType.CALL_PLACEMENT,
                {
                    "call_id": call_id,
                    "provider_call_id": placement.provider_call_id,
                    "tenant_id": tenant_id,
                },
                e,
                tenant_id=tenant_id,
            )
            raise CallPlacementError(
                f"Call {placement.provider_call_id} placed but not recorded: {e}",
                provider_call_id=placement.provider_call_id,
            ) from e

    async def attach_provider_call(self, call_id: str, provider_call_id: str) -> Call:
        """
        Record the provider call id on a placed call (queued -> initiated).

        Idempotent; also used to reconcile call_placement dead letters.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            call = await self._calls.get(call_id)
            if call is None:
                raise CallNotFound(call_id)

            if call.provider_call_id == provider_call_id and call.status != CallStatus.QUEUED:
                return call

            changes: Dict[str, Any] = {
                "provider_call_id": provider_call_id,
                "metadata": {**call.metadata, "provider_call_id": provider_call_id},
            }
            if call.status == CallStatus.QUEUED:
                changes["status"] = CallStatus.INITIATED

            updated = await self._calls.update_if_status(call.id, call.status, changes)
            if updated is None:
                continue

            if updated.status != call.status:
                await self._after_commit(CallTransition(
                    call=updated,
                    previous_status=call.status,
                    status=updated.status,
                    occurred_at=datetime.utcnow(),
                ))
            return updated

        raise RuntimeError(f"Call {call_id} kept changing during update")

    async def _mark_unplaced(self, call: Call, reason: str) -> None:
        now = datetime.utcnow()
        try:
            updated = await self._calls.update_if_status(call.id, CallStatus.QUEUED, {
                "status": CallStatus.FAILED,
                "ended_at": now,
                "hangup_cause": "placement_failed",
                "metadata": {**call.metadata, "placement_error": reason},
            })
            if updated is not None:
                await self._after_commit(CallTransition(
                    call=updated,
                    previous_status=CallStatus.QUEUED,
                    status=CallStatus.FAILED,
                    occurred_at=now,
                ))
        except Exception as e:
            logger.error(f"Failed to mark call {call.id} as failed: {e}", exc_info=True)

    async def register_inbound(
        self,
        tenant_id: str,
        provider_call_id: str,
        from_number: str,
        to_number: str,
        user_id: Optional[str] = None
    ) -> Call:
        """Create the call row on the first event of an inbound call (idempotent)."""
        existing = await self._calls.get_by_provider_call_id(provider_call_id)
        if existing is not None:
            return existing

        call = await self._calls.create(Call(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            provider_call_id=provider_call_id,
            direction=CallDirection.INBOUND,
            status=CallStatus.INITIATED,
            from_number=from_number,
            to_number=to_number,
            user_id=user_id,
            started_at=datetime.utcnow(),
            metadata={"provider": self._telephony.name},
        ))
        await self._after_commit(CallTransition(
            call=call,
            previous_status=CallStatus.QUEUED,
            status=CallStatus.INITIATED,
            occurred_at=call.started_at,
        ))
        return call

    async def hangup(self, call: Call) -> bool:
        """Ask the provider to terminate a live call."""
        if not call.provider_call_id or call.status.is_terminal:
            return False
        try:
            return await self._telephony.hangup(call.provider_call_id)
        except Exception as e:
            logger.error(f"Hangup failed for {call.provider_call_id}: {e}")
            return False

    async def hangup_provider_call(self, provider_call_id: str) -> bool:
        """Terminate a provider call the core may not have recorded."""
        try:
            return await self._telephony.hangup(provider_call_id)
        except Exception as e:
            logger.error(f"Hangup failed for {provider_call_id}: {e}")
            return False

    async def get_call(self, call_id: str) -> Optional[Call]:
        return await self._calls.get(call_id)

    # =========================================================================
    # Observation
    # =========================================================================

    def subscribe(self, listener: Listener, call_id: Optional[str] = None) -> Subscription:
        """
        Observe committed transitions, optionally for one internal call id.
        The returned handle must be unsubscribed by the caller.
        """
        predicate = (lambda t: t.call.id == call_id) if call_id else None
        return self._events.subscribe(listener, predicate)

    async def _publish_realtime(self, transition: CallTransition) -> None:
        if self._publisher is None:
            return
        call = transition.call
        try:
            await self._publisher.publish(calls_channel(call.tenant_id), {
                "type": "call.status",
                "call_id": call.id,
                "provider_call_id": call.provider_call_id,
                "status": transition.status.value,
                "previous_status": transition.previous_status.value,
                "occurred_at": transition.occurred_at.isoformat(),
                "duration_seconds": call.duration_seconds,
                "campaign_id": call.campaign_id,
            })
        except Exception as e:
            logger.error(f"Failed to publish call event for {call.id}: {e}")
