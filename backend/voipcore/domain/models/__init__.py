"""Domain models"""

# Call lifecycle
from .call import (
    CallStatus,
    CallDirection,
    CallEventType,
    Call,
    CallEvent,
    CallTransition,
)

# Billing
from .billing import (
    RateCard,
    Tariff,
    BillingAccount,
    BillingTransaction,
    TransactionType,
    DebitOutcome,
    SettlementStatus,
    SettlementResult,
)

# Dialer models
from .dial_queue import (
    DialerStatus,
    QueueItemStatus,
    CampaignContact,
    DialQueueItem,
    DialerStats,
    DialerSnapshot,
)

# Recovery and recordings
from .dead_letter import (
    DeadLetterStatus,
    TaskType,
    DeadLetterEntry,
)

from .recording import (
    RecordingReady,
    CallRecording,
)

__all__ = [
    # Call lifecycle
    "CallStatus",
    "CallDirection",
    "CallEventType",
    "Call",
    "CallEvent",
    "CallTransition",
    # Billing
    "RateCard",
    "Tariff",
    "BillingAccount",
    "BillingTransaction",
    "TransactionType",
    "DebitOutcome",
    "SettlementStatus",
    "SettlementResult",
    # Dialer models
    "DialerStatus",
    "QueueItemStatus",
    "CampaignContact",
    "DialQueueItem",
    "DialerStats",
    "DialerSnapshot",
    # Recovery and recordings
    "DeadLetterStatus",
    "TaskType",
    "DeadLetterEntry",
    "RecordingReady",
    "CallRecording",
]
