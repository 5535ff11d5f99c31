"""Call log data model."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class CallStatus(str, Enum):
    """Status of a voice call."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class CallLog(BaseModel):
    """One row per external call id."""

    call_id: str = Field(..., description="Voice platform call id")
    tenant_id: str = Field(..., description="Tenant the call was routed to")
    caller_number: str | None = Field(None, description="Caller phone number")
    status: CallStatus = Field(default=CallStatus.IN_PROGRESS)
    duration: float | None = Field(None, description="Call duration in seconds")
    transcript: str | None = Field(None, description="Call transcript")
    recording_url: str | None = Field(None, description="Recording reference")
    started_at: datetime | None = Field(None)
    ended_at: datetime | None = Field(None)
