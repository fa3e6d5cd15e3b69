"""
Realtime Fan-out Interface
Message-bus collaborator that pushes committed changes to dashboards
"""
from abc import ABC, abstractmethod
from typing import Dict, Any


class RealtimePublisher(ABC):
    """Publishes change events after they are committed"""

    @abstractmethod
    async def publish(self, channel: str, event: Dict[str, Any]) -> None:
        pass

    async def close(self) -> None:
        return None


def calls_channel(tenant_id: str) -> str:
    return f"realtime:{tenant_id}:calls"


def dialer_channel(tenant_id: str) -> str:
    return f"realtime:{tenant_id}:dialer"
