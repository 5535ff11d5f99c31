"""Inbound email models for the BCC booking channel."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EmailBookingType(str, Enum):
    """What a third-party booking email reports."""

    NEW = "new"
    MODIFICATION = "modification"
    CANCELLATION = "cancellation"


class InboundEmail(BaseModel):
    """Normalized email as delivered by the inbound mail provider."""

    to: str = Field(..., description="Envelope recipient")
    from_: str | None = Field(None, alias="from", description="Envelope sender")
    subject: str = Field(default="", description="Subject line")
    body: str = Field(default="", description="Plain text (or HTML) body")
    raw: str | None = Field(None, description="Full RFC 822 message when available")

    model_config = ConfigDict(populate_by_name=True)


class ParsedBookingEmail(BaseModel):
    """Booking details extracted from a widget notification email."""

    type: EmailBookingType = EmailBookingType.NEW
    source: str = "unknown"
    guest_name: str | None = None
    email: str | None = None
    phone: str | None = None
    date: str | None = None
    time: str | None = None
    party_size: int | None = None
    confirmation_code: str | None = None


class InboundEmailLog(BaseModel):
    """Audit row for every accepted inbound email."""

    tenant_id: str
    from_email: str | None = None
    subject: str = ""
    parsed: ParsedBookingEmail
    raw_content: str = ""
    received_at: datetime = Field(default_factory=datetime.now)


class EmailAck(BaseModel):
    """Acknowledgement returned to the mail provider."""

    received: bool = True
    tenant_id: str
    action: str = Field(
        ...,
        description="created, updated, cancelled, duplicate, rejected, skipped or not_found",
    )
    confirmation_code: str | None = None
    parsed: ParsedBookingEmail
