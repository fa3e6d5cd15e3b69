"""
Dead Letter Worker
Replays failed pipeline steps from the dead_letter_queue table

Run as separate process:
    python -m voipcore.workers.dead_letter_worker
"""
import asyncio
import logging
import signal
from typing import Any, Awaitable, Callable, Dict, Optional

from dotenv import load_dotenv

from voipcore.domain.models.call import CallEvent
from voipcore.domain.models.dead_letter import DeadLetterEntry, DeadLetterStatus, TaskType
from voipcore.domain.services.billing_service import BillingLedger
from voipcore.domain.services.call_state_machine import CallStateMachine
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.domain.services.recording_service import RecordingService

logger = logging.getLogger(__name__)


class DeadLetterSweeper:
    """
    One sweep over replayable entries, oldest first.

    Every handler is idempotent against the already-applied case: settling
    a settled call reports already_settled, re-applying a status that was
    reached is a no-op, attaching a provider id twice returns the call.
    """

    def __init__(
        self,
        dead_letters: DeadLetterService,
        ledger: BillingLedger,
        state_machine: CallStateMachine,
        recordings: RecordingService,
        max_attempts: int = 5,
        batch_size: int = 50
    ):
        self._dead_letters = dead_letters
        self._ledger = ledger
        self._state_machine = state_machine
        self._recordings = recordings
        self.max_attempts = max_attempts
        self.batch_size = batch_size

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            TaskType.BILLING_DEBIT.value: self._replay_billing,
            TaskType.STATUS_UPDATE.value: self._replay_status_update,
            TaskType.AI_ANALYSIS.value: self._replay_analysis,
            TaskType.CALL_PLACEMENT.value: self._replay_placement,
        }

    async def sweep(self) -> Dict[str, int]:
        """
        Returns:
            Counts by resulting status
        """
        counts = {status.value: 0 for status in DeadLetterStatus}
        entries = await self._dead_letters.list_pending(limit=self.batch_size)

        for entry in entries:
            status = await self.replay(entry)
            counts[status.value] += 1

        if entries:
            logger.info(f"Dead letter sweep: {counts}")
        return counts

    async def replay(self, entry: DeadLetterEntry) -> DeadLetterStatus:
        handler = self._handlers.get(entry.task_type)
        if handler is None:
            logger.warning(f"No replay handler for {entry.task_type} (entry={entry.id})")
            await self._dead_letters.mark_abandoned(entry, f"No replay handler for {entry.task_type}")
            return DeadLetterStatus.ABANDONED

        try:
            await handler(entry.payload)
        except Exception as e:
            status = await self._dead_letters.mark_failed_attempt(entry, e, self.max_attempts)
            logger.warning(
                f"Replay of {entry.task_type} failed "
                f"(entry={entry.id}, attempt {entry.attempts + 1}/{self.max_attempts}): {e}"
            )
            return status

        await self._dead_letters.mark_resolved(entry)
        logger.info(f"Replayed {entry.task_type} (entry={entry.id})")
        return DeadLetterStatus.RESOLVED

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _replay_billing(self, payload: Dict[str, Any]) -> None:
        await self._ledger.settle(payload["provider_call_id"], record_failure=False)

    async def _replay_status_update(self, payload: Dict[str, Any]) -> None:
        event = CallEvent.model_validate(payload)
        await self._state_machine.apply(event)

    async def _replay_analysis(self, payload: Dict[str, Any]) -> None:
        await self._recordings.resubmit(payload)

    async def _replay_placement(self, payload: Dict[str, Any]) -> None:
        await self._state_machine.attach_provider_call(
            payload["call_id"],
            payload["provider_call_id"],
        )


class DeadLetterWorker:
    """
    Background worker running the sweeper on an interval.

    Architecture:
    - Runs as separate process from FastAPI
    - Connects to the same Supabase instance
    """

    MAX_CONSECUTIVE_ERRORS = 10

    def __init__(self, sweeper: Optional[DeadLetterSweeper] = None, interval_seconds: float = 60.0):
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.running = False
        self._container = None
        self._sweeps = 0

    async def initialize(self) -> None:
        if self.sweeper is not None:
            return

        logger.info("Initializing Dead Letter Worker...")
        from voipcore.core.config import ConfigManager, get_settings
        from voipcore.core.container import ServiceContainer

        settings = get_settings()
        config = ConfigManager(settings.environment)
        self._container = await ServiceContainer.build(settings, config)
        self.sweeper = self._container.sweeper
        self.interval_seconds = float(config.get("dead_letters.sweep_interval_seconds", 60))
        logger.info("Dead Letter Worker initialized successfully")

    async def run(self) -> None:
        await self.initialize()

        self.running = True
        consecutive_errors = 0

        logger.info(f"Dead Letter Worker started - sweeping every {self.interval_seconds}s")

        while self.running:
            try:
                await self.sweeper.sweep()
                self._sweeps += 1
                consecutive_errors = 0
                await asyncio.sleep(self.interval_seconds)

            except asyncio.CancelledError:
                logger.info("Worker received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Worker error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down Dead Letter Worker...")
        self.running = False
        if self._container is not None:
            await self._container.close()
            self._container = None
        logger.info(f"Dead Letter Worker shutdown complete. Sweeps: {self._sweeps}")


async def main():
    """Entry point for running the dead letter worker as separate process."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    worker = DeadLetterWorker()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await worker.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
