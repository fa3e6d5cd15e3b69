"""
Power Dialer
Sequential outbound dialing against a campaign's contact list.

    idle -> running <-> paused, with a transient wrap_up after each call

One PowerDialer instance serves one campaign run. It places calls through
the CallStateMachine, follows each call through a per-call subscription and
advances after a wrap-up cool-down. At most one queue item is ever dialing,
active or in wrap-up: a single line sustains one conversation.

Wrap-up and inter-call delays are asyncio timers; pause/skip/stop cancel them.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, List, Optional

from voipcore.domain.interfaces.realtime import RealtimePublisher, dialer_channel
from voipcore.domain.interfaces.repositories import ContactRepository, DialQueueRepository
from voipcore.domain.models.call import CallStatus, CallTransition
from voipcore.domain.models.dial_queue import (
    DialerSnapshot,
    DialerStats,
    DialerStatus,
    DialQueueItem,
    QueueItemStatus,
    PLACEMENT_FAILED,
)
from voipcore.domain.services.call_state_machine import CallPlacementError, CallStateMachine
from voipcore.domain.services.event_bus import EventBus, Listener, Subscription

logger = logging.getLogger(__name__)

# Defaults (overridable via config/default.yaml -> dialer.*)
WRAP_UP_SECONDS = 15.0
INTER_CALL_DELAY_SECONDS = 3.0


class DialerStateError(Exception):
    """Raised when an operation is not allowed in the dialer's current state."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class PowerDialer:
    """
    Autodialer queue for one campaign run.

    Usage:
        dialer = PowerDialer(campaign_id, tenant_id, from_number, state_machine, queue_repo, contacts)
        await dialer.load_campaign()
        await dialer.start()
        ...
        await dialer.stop()
    """

    def __init__(
        self,
        campaign_id: str,
        tenant_id: str,
        from_number: str,
        state_machine: CallStateMachine,
        queue_repository: DialQueueRepository,
        contacts: ContactRepository,
        user_id: Optional[str] = None,
        publisher: Optional[RealtimePublisher] = None,
        wrap_up_seconds: float = WRAP_UP_SECONDS,
        inter_call_delay_seconds: float = INTER_CALL_DELAY_SECONDS
    ):
        self.campaign_id = campaign_id
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.from_number = from_number

        self._state_machine = state_machine
        self._queue = queue_repository
        self._contacts = contacts
        self._publisher = publisher

        self.wrap_up_seconds = wrap_up_seconds
        self.inter_call_delay_seconds = inter_call_delay_seconds

        self._status = DialerStatus.IDLE
        self._items: List[DialQueueItem] = []
        self._current: Optional[DialQueueItem] = None
        self._call_subscription: Optional[Subscription] = None
        self._timer: Optional[asyncio.Task] = None
        self._observers: EventBus[DialerSnapshot] = EventBus("dialer-snapshots")

    @property
    def status(self) -> DialerStatus:
        return self._status

    @property
    def current_item(self) -> Optional[DialQueueItem]:
        return self._current

    @property
    def items(self) -> List[DialQueueItem]:
        return list(self._items)

    @property
    def in_flight_count(self) -> int:
        return len([i for i in self._items if i.in_flight])

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def stats(self) -> DialerStats:
        return DialerStats.from_items(self._items)

    def snapshot(self, error: Optional[str] = None) -> DialerSnapshot:
        return DialerSnapshot(
            campaign_id=self.campaign_id,
            tenant_id=self.tenant_id,
            status=self._status,
            current_item=self._current,
            stats=self.stats(),
            error=error,
        )

    def subscribe(self, listener: Listener) -> Subscription:
        """Observe DialerSnapshot changes; unsubscribe() the returned handle when done."""
        return self._observers.subscribe(listener)

    # =========================================================================
    # Operator commands
    # =========================================================================

    async def load_campaign(self) -> List[DialQueueItem]:
        """
        Materialize the queue from all pending/callback contacts,
        priority descending then creation time ascending.
        """
        if self._status != DialerStatus.IDLE or self._current is not None:
            raise DialerStateError(f"Cannot load campaign while {self._status.value}")

        contacts = await self._contacts.list_dialable(self.campaign_id)
        contacts.sort(key=lambda c: (-c.priority, c.created_at))

        self._items = [
            DialQueueItem(
                tenant_id=self.tenant_id,
                campaign_id=self.campaign_id,
                contact_id=contact.id,
                phone_number=contact.phone_number,
                position=index,
            )
            for index, contact in enumerate(contacts)
        ]

        try:
            await self._queue.save_items(self._items)
        except Exception as e:
            logger.error(f"Failed to persist queue for campaign {self.campaign_id}: {e}")

        logger.info(f"Loaded {len(self._items)} contacts for campaign {self.campaign_id}")
        await self._notify()
        return self.items

    async def start(self) -> None:
        """Start dialing, or continue after pause."""
        if self._status in (DialerStatus.RUNNING, DialerStatus.WRAP_UP):
            return

        self._set_status(DialerStatus.RUNNING)
        current = self._current

        if current is not None and current.status in (QueueItemStatus.DIALING, QueueItemStatus.ACTIVE):
            # Mid-call: keep following it, advance when it ends
            await self._notify()
            return

        if current is not None and current.status == QueueItemStatus.WRAP_UP:
            await self._finish_wrap_up(current)

        await self._dial_next()

    async def resume(self) -> None:
        """Continue from the same contact if mid-call, otherwise the next waiting one."""
        await self.start()

    async def pause(self) -> None:
        """Freeze progression. An in-flight call is left running."""
        if self._status == DialerStatus.IDLE:
            return
        self._cancel_timer()
        self._set_status(DialerStatus.PAUSED)
        await self._notify()

    async def skip(self) -> None:
        """Terminate the current item and move on immediately."""
        self._cancel_timer()
        item = self._current

        if item is not None and item.status in (QueueItemStatus.DIALING, QueueItemStatus.ACTIVE):
            self._release_call()
            item.status = QueueItemStatus.SKIPPED
            item.outcome = "skipped"
            await self._save(item)
            await self._hangup(item)
        elif item is not None and item.status == QueueItemStatus.WRAP_UP:
            await self._finish_wrap_up(item)

        self._current = None

        if self._status in (DialerStatus.RUNNING, DialerStatus.WRAP_UP):
            self._set_status(DialerStatus.RUNNING)
            await self._dial_next()
        else:
            await self._notify()

    async def complete_wrap_up(self, notes: Optional[str] = None) -> None:
        """Operator finished wrap-up; advance now unless paused."""
        item = self._current
        if item is None or item.status != QueueItemStatus.WRAP_UP:
            raise DialerStateError("No call in wrap-up")

        self._cancel_timer()

        if notes:
            try:
                await self._contacts.save_notes(item.contact_id, notes)
            except Exception as e:
                logger.error(f"Failed to save wrap-up notes for contact {item.contact_id}: {e}")

        await self._finish_wrap_up(item)

        if self._status == DialerStatus.WRAP_UP:
            self._set_status(DialerStatus.RUNNING)
            await self._dial_next()
        else:
            await self._notify()

    async def stop(self) -> None:
        """
        Return to idle. A live call is hung up; completed/skipped items
        are kept for reporting.
        """
        self._cancel_timer()
        item = self._current

        if item is not None and item.status in (QueueItemStatus.DIALING, QueueItemStatus.ACTIVE):
            self._release_call()
            item.status = QueueItemStatus.SKIPPED
            item.outcome = "stopped"
            await self._save(item)
            await self._hangup(item)
        elif item is not None and item.status == QueueItemStatus.WRAP_UP:
            await self._finish_wrap_up(item)

        self._current = None
        self._set_status(DialerStatus.IDLE)
        logger.info(f"Dialer for campaign {self.campaign_id} stopped: {self.stats()}")
        await self._notify()

    # =========================================================================
    # Dialing
    # =========================================================================

    async def _dial_next(self) -> None:
        if self._status != DialerStatus.RUNNING:
            return
        if self.in_flight_count > 0:
            logger.debug("Dial requested while a call is in flight, ignoring")
            return

        waiting = sorted(
            (i for i in self._items if i.status == QueueItemStatus.WAITING),
            key=lambda i: i.sort_key
        )
        if not waiting:
            self._current = None
            self._set_status(DialerStatus.IDLE)
            logger.info(f"Campaign {self.campaign_id} queue exhausted: {self.stats()}")
            await self._notify()
            return

        # Check-and-claim happens without yielding to the loop
        item = waiting[0]
        item.status = QueueItemStatus.DIALING
        item.call_id = str(uuid.uuid4())
        self._current = item
        self._call_subscription = self._state_machine.subscribe(
            partial(self._on_call_transition, item),
            call_id=item.call_id,
        )

        await self._save(item)
        await self._notify()

        try:
            await self._state_machine.place_call(
                tenant_id=self.tenant_id,
                from_number=self.from_number,
                to_number=item.phone_number,
                call_id=item.call_id,
                user_id=self.user_id,
                campaign_id=self.campaign_id,
                metadata={"dial_queue_item_id": item.id, "contact_id": item.contact_id},
            )
        except Exception as e:
            if isinstance(e, CallPlacementError) and e.provider_call_id:
                await self._state_machine.hangup_provider_call(e.provider_call_id)
            await self._on_placement_failed(item, e)
            return

        if item.status == QueueItemStatus.SKIPPED:
            # Skipped or stopped while the placement request was in flight
            await self._hangup(item)
            return

        logger.info(f"Dialing {item.phone_number} (position {item.position}, call {item.call_id})")

    async def _on_placement_failed(self, item: DialQueueItem, error: Exception) -> None:
        logger.warning(f"Placement failed for contact {item.contact_id}: {error}")

        if self._current is item:
            self._release_call()
            self._current = None

        if item.status == QueueItemStatus.SKIPPED:
            return

        item.status = QueueItemStatus.COMPLETED
        item.outcome = PLACEMENT_FAILED
        item.last_error = str(error)
        await self._save(item)
        await self._notify(error=str(error))

        if self._status == DialerStatus.RUNNING:
            self._start_timer(self.inter_call_delay_seconds, self._dial_next)

    async def _on_call_transition(self, item: DialQueueItem, transition: CallTransition) -> None:
        if item.status not in (QueueItemStatus.DIALING, QueueItemStatus.ACTIVE):
            return
        if transition.previous_status == CallStatus.QUEUED and transition.is_terminal:
            # Never reached the provider; _dial_next handles the placement failure
            return

        if transition.status == CallStatus.IN_PROGRESS:
            item.status = QueueItemStatus.ACTIVE
            await self._save(item)
            await self._notify()
        elif transition.is_terminal:
            await self._handle_call_end(item, transition.status)

    async def _handle_call_end(self, item: DialQueueItem, call_status: CallStatus) -> None:
        if self._current is item:
            self._release_call()

        item.status = QueueItemStatus.WRAP_UP
        item.call_status = call_status
        item.outcome = call_status.value
        await self._save(item)

        if self._status == DialerStatus.RUNNING:
            self._set_status(DialerStatus.WRAP_UP)
            self._start_timer(self.wrap_up_seconds, self._on_wrap_up_elapsed)
        elif self._status == DialerStatus.IDLE:
            await self._finish_wrap_up(item)
            self._current = None
        # Paused: wrap-up resumes on resume()

        await self._notify()

    async def _on_wrap_up_elapsed(self) -> None:
        if self._status != DialerStatus.WRAP_UP:
            return
        item = self._current
        if item is not None and item.status == QueueItemStatus.WRAP_UP:
            await self._finish_wrap_up(item)
        self._set_status(DialerStatus.RUNNING)
        await self._dial_next()

    async def _finish_wrap_up(self, item: DialQueueItem) -> None:
        item.status = QueueItemStatus.COMPLETED
        await self._save(item)
        if self._current is item:
            self._current = None

    async def _hangup(self, item: DialQueueItem) -> None:
        if not item.call_id:
            return
        call = await self._state_machine.get_call(item.call_id)
        if call is not None:
            await self._state_machine.hangup(call)

    def _release_call(self) -> None:
        if self._call_subscription is not None:
            self._call_subscription.unsubscribe()
            self._call_subscription = None

    # =========================================================================
    # Timers
    # =========================================================================

    def _start_timer(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._run_timer(delay, callback))

    async def _run_timer(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(delay)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Dialer timer callback failed: {e}", exc_info=True)

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        # A timer may cancel its successor but never itself
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    # =========================================================================
    # Persistence and fan-out
    # =========================================================================

    def _set_status(self, status: DialerStatus) -> None:
        if status != self._status:
            logger.info(f"Dialer {self.campaign_id}: {self._status.value} -> {status.value}")
            self._status = status

    async def _save(self, item: DialQueueItem) -> None:
        item.updated_at = datetime.utcnow()
        try:
            await self._queue.update_item(item)
        except Exception as e:
            logger.error(f"Failed to update queue item {item.id}: {e}")

    async def _notify(self, error: Optional[str] = None) -> None:
        snapshot = self.snapshot(error=error)
        await self._observers.publish(snapshot)
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(
                dialer_channel(self.tenant_id),
                {"type": "dialer.state", **snapshot.model_dump(mode="json")},
            )
        except Exception as e:
            logger.error(f"Failed to publish dialer state: {e}")


class DialerRegistry:
    """
    Explicitly constructed dialers, one per running campaign.

    Dialers are created at campaign load and discarded at stop.
    """

    def __init__(self, factory: Callable[..., PowerDialer]):
        self._factory = factory
        self._dialers = {}

    def create(self, campaign_id: str, tenant_id: str, from_number: str, user_id: Optional[str] = None) -> PowerDialer:
        existing = self._dialers.get(campaign_id)
        if existing is not None and existing.status != DialerStatus.IDLE:
            raise DialerStateError(f"Campaign {campaign_id} already has an active dialer")
        dialer = self._factory(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            from_number=from_number,
            user_id=user_id,
        )
        self._dialers[campaign_id] = dialer
        return dialer

    def get(self, campaign_id: str) -> Optional[PowerDialer]:
        return self._dialers.get(campaign_id)

    async def discard(self, campaign_id: str) -> None:
        dialer = self._dialers.pop(campaign_id, None)
        if dialer is not None and dialer.status != DialerStatus.IDLE:
            await dialer.stop()

    async def shutdown(self) -> None:
        for campaign_id in list(self._dialers):
            await self.discard(campaign_id)
