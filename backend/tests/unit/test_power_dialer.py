"""
Unit Tests for the Power Dialer
Sequential dialing, wrap-up, pause/resume, skip and stop
"""
import asyncio
import pytest

from conftest import CAMPAIGN_ID, TENANT_ID, FakeTelephony, seed_contacts, wait_for
from voipcore.domain.models.call import CallStatus
from voipcore.domain.models.dial_queue import (
    DialerStatus,
    PLACEMENT_FAILED,
    QueueItemStatus,
)
from voipcore.domain.services.call_state_machine import CallStateMachine
from voipcore.domain.services.power_dialer import DialerRegistry, DialerStateError, PowerDialer


def build_dialer(state_machine, store, publisher=None, wrap_up=0.01, delay=0.01) -> PowerDialer:
    return PowerDialer(
        campaign_id=CAMPAIGN_ID,
        tenant_id=TENANT_ID,
        from_number="+5511300000000",
        state_machine=state_machine,
        queue_repository=store,
        contacts=store,
        user_id="agent-1",
        publisher=publisher,
        wrap_up_seconds=wrap_up,
        inter_call_delay_seconds=delay,
    )


async def finish_call(state_machine, provider_call_id, status="completed", duration=30):
    await state_machine.apply_event(provider_call_id, "answered")
    await state_machine.apply_event(provider_call_id, status, extra={"duration_seconds": duration})


@pytest.fixture
def dialer(state_machine, store, publisher):
    seed_contacts(store, 3)
    return build_dialer(state_machine, store, publisher)


class TestLoadCampaign:
    """Tests for queue materialization"""

    @pytest.mark.asyncio
    async def test_orders_by_priority_then_creation(self, state_machine, store):
        contacts = seed_contacts(store, 3)
        store.contacts["contact-3"] = contacts[2].model_copy(update={"priority": 5})
        store.contacts["contact-2"] = contacts[1].model_copy(update={"status": "completed"})
        dialer = build_dialer(state_machine, store)

        items = await dialer.load_campaign()

        assert [i.contact_id for i in items] == ["contact-3", "contact-1"]
        assert [i.position for i in items] == [0, 1]
        assert all(i.status == QueueItemStatus.WAITING for i in items)
        assert len(store.queue_items) == 2

    @pytest.mark.asyncio
    async def test_load_rejected_while_running(self, dialer):
        await dialer.load_campaign()
        await dialer.start()

        with pytest.raises(DialerStateError):
            await dialer.load_campaign()

    @pytest.mark.asyncio
    async def test_empty_campaign_returns_to_idle(self, state_machine, store, telephony):
        dialer = build_dialer(state_machine, store)
        await dialer.load_campaign()

        await dialer.start()

        assert dialer.status == DialerStatus.IDLE
        assert telephony.placed == []


class TestSequentialDialing:
    """Tests for the dial loop"""

    @pytest.mark.asyncio
    async def test_start_dials_first_contact(self, dialer, telephony):
        await dialer.load_campaign()
        await dialer.start()

        item = dialer.current_item
        assert dialer.status == DialerStatus.RUNNING
        assert item.status == QueueItemStatus.DIALING
        assert item.call_id is not None
        assert telephony.placed[0]["to"] == item.phone_number
        assert telephony.placed[0]["context"].campaign_id == CAMPAIGN_ID
        assert telephony.placed[0]["context"].call_id == item.call_id

    @pytest.mark.asyncio
    async def test_answer_marks_item_active(self, dialer, state_machine, telephony):
        await dialer.load_campaign()
        await dialer.start()

        await state_machine.apply_event(telephony.last_sid, "answered")

        assert dialer.current_item.status == QueueItemStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_call_end_enters_wrap_up_then_advances(self, state_machine, store, telephony):
        seed_contacts(store, 2)
        dialer = build_dialer(state_machine, store, wrap_up=0.05)
        await dialer.load_campaign()
        await dialer.start()
        first = dialer.current_item

        await finish_call(state_machine, telephony.last_sid)

        assert dialer.status == DialerStatus.WRAP_UP
        assert first.status == QueueItemStatus.WRAP_UP
        assert first.call_status == CallStatus.COMPLETED
        assert dialer.has_pending_timer

        await wait_for(lambda: len(telephony.placed) == 2)

        assert first.status == QueueItemStatus.COMPLETED
        assert dialer.status == DialerStatus.RUNNING
        assert dialer.current_item.contact_id == "contact-2"

    @pytest.mark.asyncio
    async def test_campaign_with_placement_failure(self, store, dead_letters, ledger):
        contacts = seed_contacts(store, 5)
        telephony = FakeTelephony(fail_numbers={contacts[2].phone_number})
        machine = CallStateMachine(store, telephony, dead_letters, ledger)
        dialer = build_dialer(machine, store)

        max_in_flight = []

        async def observe(snapshot):
            max_in_flight.append(dialer.in_flight_count)

        dialer.subscribe(observe)
        await dialer.load_campaign()
        await dialer.start()

        for expected in range(1, 5):
            await wait_for(lambda: len(telephony.placed) == expected)
            await finish_call(machine, telephony.last_sid)

        await wait_for(lambda: dialer.status == DialerStatus.IDLE)
        await machine.drain()

        stats = dialer.stats()
        assert stats.total == 5
        assert stats.completed == 4
        assert stats.connected == 4
        assert stats.failed == 1
        assert stats.remaining == 0
        assert max(max_in_flight) <= 1

        failed = [i for i in dialer.items if i.outcome == PLACEMENT_FAILED]
        assert [i.contact_id for i in failed] == ["contact-3"]
        assert failed[0].status == QueueItemStatus.COMPLETED
        assert len(store.transactions) == 4

    @pytest.mark.asyncio
    async def test_no_answer_outcome(self, dialer, state_machine, telephony):
        await dialer.load_campaign()
        await dialer.start()
        first = dialer.current_item

        await state_machine.apply_event(telephony.last_sid, "no_answer")

        assert first.outcome == "no-answer"
        await wait_for(lambda: len(telephony.placed) == 2)
        assert dialer.stats().no_answer == 1


class TestPauseResume:
    """Tests for pause and resume"""

    @pytest.mark.asyncio
    async def test_pause_stops_auto_advance(self, dialer, state_machine, telephony):
        await dialer.load_campaign()
        await dialer.start()
        await dialer.pause()

        await finish_call(state_machine, telephony.last_sid)
        await asyncio.sleep(0.05)

        assert dialer.status == DialerStatus.PAUSED
        assert dialer.current_item.status == QueueItemStatus.WRAP_UP
        assert not dialer.has_pending_timer
        assert len(telephony.placed) == 1

        await dialer.resume()

        assert len(telephony.placed) == 2
        assert dialer.items[0].status == QueueItemStatus.COMPLETED
        assert dialer.current_item.contact_id == "contact-2"

    @pytest.mark.asyncio
    async def test_pause_during_wrap_up_cancels_timer(self, state_machine, store, telephony):
        seed_contacts(store, 2)
        dialer = build_dialer(state_machine, store, wrap_up=0.05)
        await dialer.load_campaign()
        await dialer.start()
        await finish_call(state_machine, telephony.last_sid)

        await dialer.pause()

        assert not dialer.has_pending_timer
        await asyncio.sleep(0.15)
        assert len(telephony.placed) == 1

    @pytest.mark.asyncio
    async def test_resume_mid_call_keeps_current_contact(self, dialer, state_machine, telephony):
        await dialer.load_campaign()
        await dialer.start()
        first = dialer.current_item
        await dialer.pause()

        await dialer.resume()

        assert dialer.status == DialerStatus.RUNNING
        assert dialer.current_item is first
        assert len(telephony.placed) == 1

        await finish_call(state_machine, telephony.last_sid)
        await wait_for(lambda: len(telephony.placed) == 2)


class TestSkipStop:
    """Tests for skip and stop"""

    @pytest.mark.asyncio
    async def test_skip_hangs_up_and_dials_next(self, dialer, telephony):
        await dialer.load_campaign()
        await dialer.start()
        first = dialer.current_item
        first_sid = telephony.last_sid

        await dialer.skip()

        assert first.status == QueueItemStatus.SKIPPED
        assert telephony.hung_up == [first_sid]
        assert len(telephony.placed) == 2
        assert dialer.current_item.contact_id == "contact-2"
        assert dialer.stats().skipped == 1

    @pytest.mark.asyncio
    async def test_events_after_skip_are_ignored(self, dialer, state_machine, telephony):
        await dialer.load_campaign()
        await dialer.start()
        first = dialer.current_item
        first_sid = telephony.last_sid
        await dialer.skip()

        await state_machine.apply_event(first_sid, "completed", extra={"duration_seconds": 3})
        await state_machine.drain()

        assert first.status == QueueItemStatus.SKIPPED
        assert dialer.status == DialerStatus.RUNNING
        assert dialer.current_item.contact_id == "contact-2"

    @pytest.mark.asyncio
    async def test_skip_while_paused_does_not_dial(self, dialer, telephony):
        await dialer.load_campaign()
        await dialer.start()
        await dialer.pause()

        await dialer.skip()

        assert dialer.status == DialerStatus.PAUSED
        assert dialer.current_item is None
        assert len(telephony.placed) == 1

    @pytest.mark.asyncio
    async def test_stop_hangs_up_and_returns_to_idle(self, dialer, telephony):
        await dialer.load_campaign()
        await dialer.start()
        first = dialer.current_item

        await dialer.stop()

        assert dialer.status == DialerStatus.IDLE
        assert dialer.current_item is None
        assert first.status == QueueItemStatus.SKIPPED
        assert first.outcome == "stopped"
        assert telephony.hung_up == [telephony.last_sid]
        assert dialer.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_stop_during_wrap_up_cancels_timer(self, state_machine, store, telephony):
        seed_contacts(store, 2)
        dialer = build_dialer(state_machine, store, wrap_up=0.05)
        await dialer.load_campaign()
        await dialer.start()
        await finish_call(state_machine, telephony.last_sid)

        await dialer.stop()

        assert not dialer.has_pending_timer
        assert dialer.items[0].status == QueueItemStatus.COMPLETED
        await asyncio.sleep(0.15)
        assert len(telephony.placed) == 1


class TestWrapUp:
    """Tests for operator wrap-up"""

    @pytest.mark.asyncio
    async def test_complete_wrap_up_saves_notes_and_advances(self, state_machine, store, telephony):
        seed_contacts(store, 2)
        dialer = build_dialer(state_machine, store, wrap_up=10)
        await dialer.load_campaign()
        await dialer.start()
        await finish_call(state_machine, telephony.last_sid)

        await dialer.complete_wrap_up(notes="Call back on Monday")

        await state_machine.drain()

        assert store.contacts["contact-1"].notes == "Call back on Monday"
        assert dialer.items[0].status == QueueItemStatus.COMPLETED
        assert len(telephony.placed) == 2
        assert dialer.status == DialerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_complete_wrap_up_without_call_rejected(self, dialer):
        await dialer.load_campaign()

        with pytest.raises(DialerStateError):
            await dialer.complete_wrap_up()


class TestObservers:
    """Tests for snapshot subscriptions and realtime fan-out"""

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, dialer):
        snapshots = []

        async def listener(snapshot):
            snapshots.append(snapshot)

        subscription = dialer.subscribe(listener)
        await dialer.load_campaign()
        assert snapshots[-1].stats.total == 3

        subscription.unsubscribe()
        count = len(snapshots)
        await dialer.start()
        assert len(snapshots) == count

    @pytest.mark.asyncio
    async def test_state_published_to_dialer_channel(self, dialer, publisher):
        await dialer.load_campaign()

        events = publisher.on_channel(f"realtime:{TENANT_ID}:dialer")

        assert events[-1]["type"] == "dialer.state"
        assert events[-1]["campaign_id"] == CAMPAIGN_ID


class TestDialerRegistry:
    """Tests for DialerRegistry"""

    @pytest.mark.asyncio
    async def test_one_active_dialer_per_campaign(self, state_machine, store):
        seed_contacts(store, 1)
        registry = DialerRegistry(
            lambda **kwargs: PowerDialer(
                state_machine=state_machine,
                queue_repository=store,
                contacts=store,
                **kwargs,
            )
        )

        dialer = registry.create(CAMPAIGN_ID, TENANT_ID, "+5511300000000")
        await dialer.load_campaign()
        await dialer.start()

        with pytest.raises(DialerStateError):
            registry.create(CAMPAIGN_ID, TENANT_ID, "+5511300000000")

        await registry.shutdown()

        assert registry.get(CAMPAIGN_ID) is None
        assert dialer.status == DialerStatus.IDLE
