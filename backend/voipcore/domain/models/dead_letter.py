"""
Dead Letter Models
A failed unit of work kept for retry instead of being dropped
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    RETRIED = "retried"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class TaskType(str, Enum):
    """Pipeline steps that can land in the dead-letter queue"""
    BILLING_DEBIT = "billing_debit"
    STATUS_UPDATE = "status_update"
    AI_ANALYSIS = "ai_analysis"
    RECORDING_DOWNLOAD = "recording_download"
    CALL_PLACEMENT = "call_placement"


class DeadLetterEntry(BaseModel):
    """
    Row of the dead_letter_queue table.

    The payload must carry enough to retry or reconcile the step without
    double-applying it (e.g. the provider call id for a billing debit).
    """
    id: Optional[str] = None
    tenant_id: Optional[str] = None
    task_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    error_message: str
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        record = self.model_dump(mode="json")
        if record.get("id") is None:
            record.pop("id")
        return record
