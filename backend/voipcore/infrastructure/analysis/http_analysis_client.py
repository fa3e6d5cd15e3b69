"""
HTTP Analysis Client
Hands finished recordings to the AI analysis service
"""
import logging
from typing import Dict, Any, Optional

import httpx

from voipcore.domain.interfaces.analysis_pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)


class HttpAnalysisClient(AnalysisPipeline):
    """POSTs analysis jobs to ANALYSIS_URL; raises on any non-2xx answer."""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 10.0):
        self._url = url
        self._api_key = api_key
        self._timeout = timeout

    async def submit(self, job: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=job, headers=headers)
            response.raise_for_status()

        logger.info(f"Analysis requested for recording {job.get('recording_id')}")


class LoggingAnalysisPipeline(AnalysisPipeline):
    """Used when no analysis service is configured; jobs are only logged."""

    async def submit(self, job: Dict[str, Any]) -> None:
        logger.info(f"No analysis service configured, skipping job for call {job.get('call_id')}")
