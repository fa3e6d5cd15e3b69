"""
Unit Tests for Recording Handoff
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import TENANT_ID, make_call
from voipcore.domain.models.dead_letter import TaskType
from voipcore.domain.models.recording import RecordingReady
from voipcore.domain.services.recording_service import RecordingService


@pytest.fixture
def analysis():
    pipeline = MagicMock()
    pipeline.submit = AsyncMock()
    return pipeline


@pytest.fixture
def recordings(store, analysis, dead_letters):
    return RecordingService(store, store, analysis, dead_letters)


def ready(provider_call_id: str = "CA-test-1") -> RecordingReady:
    return RecordingReady(
        provider_call_id=provider_call_id,
        recording_ref="https://api.twilio.com/Recordings/RE123",
        recording_sid="RE123",
        duration_seconds=58,
    )


class TestRecordingService:
    """Tests for handle_recording_ready"""

    @pytest.mark.asyncio
    async def test_stores_recording_and_requests_analysis(self, recordings, store, analysis):
        store.calls["call-1"] = make_call()

        recording = await recordings.handle_recording_ready(ready())
        await recordings.drain()

        assert recording.call_id == "call-1"
        assert recording.tenant_id == TENANT_ID
        assert recording.channels == 2
        assert recording.retention_until > recording.created_at
        assert store.recordings == [recording]

        job = analysis.submit.await_args.args[0]
        assert job["recording_id"] == recording.id
        assert job["recording_ref"] == "https://api.twilio.com/Recordings/RE123"

    @pytest.mark.asyncio
    async def test_unknown_call_is_dead_lettered(self, recordings, store, analysis):
        result = await recordings.handle_recording_ready(ready("CA-unknown"))

        assert result is None
        [entry] = store.dead_letters.values()
        assert entry.task_type == TaskType.RECORDING_DOWNLOAD.value
        assert entry.payload["recording_sid"] == "RE123"
        analysis.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_analysis_failure_is_dead_lettered(self, recordings, store, analysis):
        store.calls["call-1"] = make_call()
        analysis.submit.side_effect = ConnectionError("analysis unavailable")

        recording = await recordings.handle_recording_ready(ready())
        await recordings.drain()

        assert recording is not None
        [entry] = store.dead_letters.values()
        assert entry.task_type == TaskType.AI_ANALYSIS.value
        assert entry.tenant_id == TENANT_ID
        assert entry.payload["recording_id"] == recording.id

    @pytest.mark.asyncio
    async def test_resubmit_raises_on_failure(self, recordings, analysis):
        analysis.submit.side_effect = ConnectionError("still down")

        with pytest.raises(ConnectionError):
            await recordings.resubmit({"recording_id": "rec-1"})
