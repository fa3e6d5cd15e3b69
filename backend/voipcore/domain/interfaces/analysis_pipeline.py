"""
AI Analysis Pipeline Interface
Downstream consumer of finished recordings (transcript / sentiment)
"""
from abc import ABC, abstractmethod
from typing import Dict, Any


class AnalysisPipeline(ABC):
    """Fire-and-forget handoff of a recording to the analysis collaborator"""

    @abstractmethod
    async def submit(self, job: Dict[str, Any]) -> None:
        """
        Hand off a recording for analysis.

        Args:
            job: recording_id, call_id, tenant_id, recording_ref

        Raises:
            Exception: Any transport failure; callers dead-letter it
        """
        pass
