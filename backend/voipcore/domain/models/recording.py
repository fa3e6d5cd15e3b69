"""
Recording Models
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timedelta

# Recordings are kept 90 days (LGPD retention)
RETENTION_DAYS = 90


class RecordingReady(BaseModel):
    """Recording-ready notification from a provider, after normalization"""
    provider_call_id: str
    recording_ref: str
    recording_sid: Optional[str] = None
    duration_seconds: int = Field(default=0, ge=0)
    channels: int = Field(default=2, ge=1)


class CallRecording(BaseModel):
    """Row of the call_recordings table"""
    id: Optional[str] = None
    call_id: str
    tenant_id: str
    provider_recording_id: Optional[str] = None
    recording_ref: str
    duration_seconds: int = 0
    channels: int = 2
    format: str = "wav"
    status: str = "available"
    transcription_status: str = "pending"
    retention_until: datetime = Field(
        default_factory=lambda: datetime.utcnow() + timedelta(days=RETENTION_DAYS)
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
