"""
Dial Queue Models
Represents one contact's position in a power dialer run
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum
import uuid

from voipcore.domain.models.call import CallStatus


class DialerStatus(str, Enum):
    """Status of a power dialer instance"""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WRAP_UP = "wrap_up"


class QueueItemStatus(str, Enum):
    """Status of a dial queue item"""
    WAITING = "waiting"
    DIALING = "dialing"
    ACTIVE = "active"
    WRAP_UP = "wrap-up"
    COMPLETED = "completed"
    SKIPPED = "skipped"


# At most one item per queue may be in one of these at any time
IN_FLIGHT_STATUSES = frozenset({
    QueueItemStatus.DIALING,
    QueueItemStatus.ACTIVE,
    QueueItemStatus.WRAP_UP,
})

# Outcome recorded on an item whose placement request failed outright
PLACEMENT_FAILED = "placement_failed"

# Contact statuses that are loaded into a new queue
DIALABLE_CONTACT_STATUSES = ("pending", "callback")


class CampaignContact(BaseModel):
    """Contact row of a campaign (managed outside the core)"""
    id: str
    campaign_id: str
    phone_number: str
    contact_name: Optional[str] = None
    company_name: Optional[str] = None
    status: str = "pending"
    priority: int = 0
    attempts: int = 0
    notes: Optional[str] = None
    extra_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class DialQueueItem(BaseModel):
    """
    One contact in a dialer run.

    Items are created in bulk at load time and never deleted during a run;
    terminal items stay for reporting.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    campaign_id: str
    contact_id: str
    phone_number: str
    position: int = Field(ge=0)
    status: QueueItemStatus = QueueItemStatus.WAITING

    call_id: Optional[str] = None
    call_status: Optional[CallStatus] = None
    outcome: Optional[str] = None
    last_error: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def sort_key(self) -> tuple:
        return (self.position, self.created_at)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def __repr__(self) -> str:
        return (
            f"DialQueueItem(id={self.id[:8]}..., "
            f"position={self.position}, "
            f"phone={self.phone_number}, "
            f"status={self.status.value})"
        )


class DialerStats(BaseModel):
    """Counters for a dialer run"""
    total: int = 0
    completed: int = 0
    connected: int = 0
    no_answer: int = 0
    busy: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0

    @classmethod
    def from_items(cls, items: List[DialQueueItem]) -> "DialerStats":
        completed = [i for i in items if i.status == QueueItemStatus.COMPLETED]
        return cls(
            total=len(items),
            completed=len([i for i in completed if i.outcome != PLACEMENT_FAILED]),
            connected=len([i for i in completed if i.call_status == CallStatus.COMPLETED]),
            no_answer=len([i for i in completed if i.call_status == CallStatus.NO_ANSWER]),
            busy=len([i for i in completed if i.call_status == CallStatus.BUSY]),
            failed=len([
                i for i in completed
                if i.outcome == PLACEMENT_FAILED or i.call_status in (CallStatus.FAILED, CallStatus.CANCELED)
            ]),
            skipped=len([i for i in items if i.status == QueueItemStatus.SKIPPED]),
            remaining=len([i for i in items if i.status == QueueItemStatus.WAITING]),
        )


class DialerSnapshot(BaseModel):
    """State of a dialer, delivered to observers on every change"""
    campaign_id: str
    tenant_id: str
    status: DialerStatus
    current_item: Optional[DialQueueItem] = None
    stats: DialerStats
    error: Optional[str] = None
