"""Data models for restaurant reservations."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ReservationStatus(str, Enum):
    """Status of a stored reservation."""

    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ReservationSource(str, Enum):
    """Well-known booking sources; external channels use their own name."""

    PHONE = "phone"
    MANUAL = "manual"


class GuestDetails(BaseModel):
    """Contact details of the person the table is booked for."""

    name: str = Field(..., min_length=1, description="Guest name")
    email: str | None = Field(None, description="Guest email")
    phone: str | None = Field(None, description="Guest phone number")

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0]

    @property
    def last_name(self) -> str:
        return " ".join(self.name.split(" ")[1:])


class Reservation(BaseModel):
    """The authoritative reservation record."""

    id: str = Field(..., description="Internal reservation id")
    tenant_id: str = Field(..., description="Owning tenant")
    confirmation_code: str = Field(..., description="Guest-facing unique code")
    guest_name: str = Field(..., description="Name for the reservation")
    guest_email: str | None = Field(None, description="Guest email")
    guest_phone: str | None = Field(None, description="Guest phone number")
    date: str = Field(..., description="Reservation date")
    time: str = Field(..., description="Reservation time, 24-hour when parseable")
    party_size: int = Field(..., gt=0, description="Number of people")
    special_requests: str | None = Field(None, description="Special requests or notes")
    status: ReservationStatus = Field(default=ReservationStatus.CONFIRMED)
    source: str = Field(default=ReservationSource.PHONE.value)
    calendar_event_id: str | None = Field(None, description="Google Calendar event id")
    crm_deal_id: str | None = Field(None, description="HubSpot deal id")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_cancelled(self) -> bool:
        return self.status == ReservationStatus.CANCELLED

    @property
    def guest(self) -> GuestDetails:
        """Guest contact details as stored on the record."""
        return GuestDetails.model_construct(
            name=self.guest_name, email=self.guest_email, phone=self.guest_phone
        )
