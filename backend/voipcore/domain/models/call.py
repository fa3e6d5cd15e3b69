"""
Call Domain Models
Call record, lifecycle statuses and the normalized provider event vocabulary
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, ClassVar
from datetime import datetime
from decimal import Decimal
from enum import Enum


class CallStatus(str, Enum):
    """Call status"""
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the lifecycle; all terminal statuses share the last rank."""
        return STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.CANCELED,
    CallStatus.FAILED,
})

STATUS_RANK: Dict[CallStatus, int] = {
    CallStatus.QUEUED: 0,
    CallStatus.INITIATED: 1,
    CallStatus.RINGING: 2,
    CallStatus.IN_PROGRESS: 3,
    **{status: 4 for status in TERMINAL_STATUSES},
}


class CallDirection(str, Enum):
    """Call direction"""
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class CallEventType(str, Enum):
    """Normalized provider event vocabulary, independent of provider dialect"""
    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    CANCELED = "canceled"
    FAILED = "failed"

    def to_status(self) -> CallStatus:
        return EVENT_STATUS_MAP[self]


EVENT_STATUS_MAP: Dict[CallEventType, CallStatus] = {
    CallEventType.INITIATED: CallStatus.INITIATED,
    CallEventType.RINGING: CallStatus.RINGING,
    CallEventType.ANSWERED: CallStatus.IN_PROGRESS,
    CallEventType.COMPLETED: CallStatus.COMPLETED,
    CallEventType.BUSY: CallStatus.BUSY,
    CallEventType.NO_ANSWER: CallStatus.NO_ANSWER,
    CallEventType.CANCELED: CallStatus.CANCELED,
    CallEventType.FAILED: CallStatus.FAILED,
}


class Call(BaseModel):
    """
    Call record.

    Created at placement (outbound) or on the first inbound event and only
    ever mutated by CallStateMachine transitions. Rows are never deleted.
    """
    CORRELATION_KEY: ClassVar[str] = "correlation_id"

    id: str
    tenant_id: str
    provider_call_id: Optional[str] = None
    direction: CallDirection = CallDirection.OUTBOUND
    status: CallStatus = CallStatus.QUEUED
    from_number: str
    to_number: str
    user_id: Optional[str] = None
    campaign_id: Optional[str] = None

    started_at: Optional[datetime] = None
    answered_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    duration_seconds: int = Field(default=0, ge=0)
    billable_seconds: int = Field(default=0, ge=0)

    cost_per_minute: Optional[Decimal] = None
    total_cost: Optional[Decimal] = None

    hangup_cause: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.metadata.get(self.CORRELATION_KEY)

    @property
    def is_settled(self) -> bool:
        return self.total_cost is not None

    def to_record(self) -> Dict[str, Any]:
        """Serialize for the calls table."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Call":
        return cls.model_validate(data)


class CallEvent(BaseModel):
    """
    Provider webhook event after normalization.

    occurred_at is advisory only; ordering is enforced by status reachability.
    """
    provider_call_id: str
    event_type: CallEventType
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    non_billable_seconds: Optional[int] = Field(default=None, ge=0)
    hangup_cause: Optional[str] = None
    provider: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class CallTransition(BaseModel):
    """A committed status change, fanned out to observers after commit."""
    call: Call
    previous_status: CallStatus
    status: CallStatus
    occurred_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
