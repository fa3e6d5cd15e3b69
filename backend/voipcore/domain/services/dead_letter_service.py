"""
Dead Letter Service
Failure sink for the settlement pipeline.

record() is best-effort-safe: if the dead-letter store is unavailable the
failure is logged and swallowed, so a failure recording a failure never
cascades into the caller.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Union

from voipcore.domain.interfaces.repositories import DeadLetterRepository
from voipcore.domain.models.dead_letter import (
    DeadLetterEntry,
    DeadLetterStatus,
    TaskType,
)

logger = logging.getLogger(__name__)


class DeadLetterService:
    """Appends and transitions dead_letter_queue entries"""

    def __init__(self, repository: DeadLetterRepository):
        self._repository = repository

    async def record(
        self,
        task_type: Union[TaskType, str],
        payload: Dict[str, Any],
        error: Union[BaseException, str],
        tenant_id: Optional[str] = None
    ) -> Optional[DeadLetterEntry]:
        """
        Durably append a pending entry.

        Returns:
            The stored entry, or None if the store itself failed
        """
        task = task_type.value if isinstance(task_type, TaskType) else str(task_type)
        message = str(error) or error.__class__.__name__
        entry = DeadLetterEntry(
            tenant_id=tenant_id,
            task_type=task,
            payload=payload,
            error_message=message,
        )

        try:
            stored = await self._repository.insert(entry)
            logger.warning(f"Dead-lettered {task}: {message} (entry={stored.id})")
            return stored
        except Exception as e:
            logger.error(
                f"Failed to record dead letter {task} "
                f"(original error: {message}, payload={payload}): {e}",
                exc_info=True
            )
            return None

    async def list_pending(self, limit: int = 50) -> List[DeadLetterEntry]:
        """Entries still eligible for replay (pending or retried), oldest first."""
        entries = await self._repository.list_by_status(DeadLetterStatus.PENDING, limit=limit)
        entries += await self._repository.list_by_status(DeadLetterStatus.RETRIED, limit=limit)
        entries.sort(key=lambda e: e.created_at)
        return entries[:limit]

    async def mark_resolved(self, entry: DeadLetterEntry) -> None:
        await self._repository.update(entry.id, {
            "status": DeadLetterStatus.RESOLVED.value,
            "attempts": entry.attempts + 1,
            "updated_at": datetime.utcnow().isoformat(),
        })

    async def mark_failed_attempt(
        self,
        entry: DeadLetterEntry,
        error: Union[BaseException, str],
        max_attempts: int
    ) -> DeadLetterStatus:
        """
        Record a failed replay. The entry is marked retried (still eligible)
        until max_attempts, then it is abandoned for manual remediation.
        """
        attempts = entry.attempts + 1
        status = DeadLetterStatus.ABANDONED if attempts >= max_attempts else DeadLetterStatus.RETRIED
        await self._repository.update(entry.id, {
            "status": status.value,
            "attempts": attempts,
            "last_error": str(error),
            "updated_at": datetime.utcnow().isoformat(),
        })
        return status

    async def mark_abandoned(self, entry: DeadLetterEntry, reason: str) -> None:
        await self._repository.update(entry.id, {
            "status": DeadLetterStatus.ABANDONED.value,
            "last_error": reason,
            "updated_at": datetime.utcnow().isoformat(),
        })
