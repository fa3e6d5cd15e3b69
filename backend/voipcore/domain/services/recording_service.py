"""
Recording Service
Stores recording-ready notifications and hands recordings to AI analysis.
Provider-agnostic - works with any normalized RecordingReady event.
"""
import asyncio
import logging
from typing import Dict, Any, Optional, Set

from voipcore.domain.interfaces.analysis_pipeline import AnalysisPipeline
from voipcore.domain.interfaces.repositories import CallRepository, RecordingRepository
from voipcore.domain.models.dead_letter import TaskType
from voipcore.domain.models.recording import CallRecording, RecordingReady
from voipcore.domain.services.call_state_machine import CallNotFound
from voipcore.domain.services.dead_letter_service import DeadLetterService

logger = logging.getLogger(__name__)


class RecordingService:
    """
    Handles recording-ready events.

    Responsibilities:
    - Link the provider recording to its call (call_recordings row)
    - Request analysis without blocking the webhook acknowledgement
    - Dead-letter failed steps (recording_download, ai_analysis)
    """

    def __init__(
        self,
        calls: CallRepository,
        recordings: RecordingRepository,
        analysis: AnalysisPipeline,
        dead_letters: DeadLetterService
    ):
        self._calls = calls
        self._recordings = recordings
        self._analysis = analysis
        self._dead_letters = dead_letters
        self._background: Set[asyncio.Task] = set()

    async def handle_recording_ready(self, event: RecordingReady) -> Optional[CallRecording]:
        """
        Record the recording and schedule its analysis.

        Returns:
            The stored recording, or None if the step was dead-lettered
        """
        try:
            call = await self._calls.get_by_provider_call_id(event.provider_call_id)
            if call is None:
                raise CallNotFound(event.provider_call_id)

            recording = await self._recordings.insert_recording(CallRecording(
                call_id=call.id,
                tenant_id=call.tenant_id,
                provider_recording_id=event.recording_sid,
                recording_ref=event.recording_ref,
                duration_seconds=event.duration_seconds,
                channels=event.channels,
            ))
        except Exception as e:
            logger.error(f"Failed to store recording for {event.provider_call_id}: {e}", exc_info=True)
            await self._dead_letters.record(
                TaskType.RECORDING_DOWNLOAD,
                event.model_dump(mode="json"),
                e,
            )
            return None

        logger.info(
            f"Recording {recording.id} stored for call {recording.call_id} "
            f"({recording.duration_seconds}s, {recording.channels} channels)"
        )

        task = asyncio.create_task(self.request_analysis(recording))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return recording

    def _analysis_job(self, recording: CallRecording) -> Dict[str, Any]:
        return {
            "recording_id": recording.id,
            "call_id": recording.call_id,
            "tenant_id": recording.tenant_id,
            "recording_ref": recording.recording_ref,
        }

    async def request_analysis(self, recording: CallRecording) -> bool:
        """Submit one analysis job; a failure is dead-lettered as ai_analysis."""
        job = self._analysis_job(recording)
        try:
            await self._analysis.submit(job)
            return True
        except Exception as e:
            logger.error(f"Analysis handoff failed for recording {recording.id}: {e}")
            await self._dead_letters.record(
                TaskType.AI_ANALYSIS,
                job,
                e,
                tenant_id=recording.tenant_id,
            )
            return False

    async def resubmit(self, job: Dict[str, Any]) -> None:
        """Replay a dead-lettered analysis job. Raises on failure."""
        await self._analysis.submit(job)

    async def drain(self) -> None:
        """Wait for pending analysis handoffs (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
