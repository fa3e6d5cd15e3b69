"""
Dead Letter API Endpoints
Inspection and on-demand replay of failed pipeline steps
"""
from typing import Dict, List

from fastapi import APIRouter, Depends, Query

from voipcore.api.v1.dependencies import get_dead_letters, get_sweeper
from voipcore.domain.models.dead_letter import DeadLetterEntry
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.workers.dead_letter_worker import DeadLetterSweeper

router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])


@router.get("", response_model=List[DeadLetterEntry])
async def list_pending(
    limit: int = Query(50, ge=1, le=500),
    dead_letters: DeadLetterService = Depends(get_dead_letters)
):
    """Entries awaiting replay (pending or retried), oldest first."""
    return await dead_letters.list_pending(limit=limit)


@router.post("/sweep")
async def sweep(sweeper: DeadLetterSweeper = Depends(get_sweeper)) -> Dict[str, int]:
    """Run one replay sweep now."""
    return await sweeper.sweep()
