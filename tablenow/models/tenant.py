"""Tenant (restaurant) data model."""

from pydantic import BaseModel, ConfigDict, Field


class Tenant(BaseModel):
    """A restaurant account and its integration settings."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Opaque tenant id")
    name: str = Field(default="Restaurant", description="Restaurant name")
    email: str | None = Field(None, description="Address for staff notifications")
    vapi_phone_id: str | None = Field(None, description="Voice platform phone-number id")
    vapi_phone_number: str | None = Field(
        None, description="Voice platform phone number (E.164)"
    )
    vapi_assistant_id: str | None = Field(None, description="Voice platform assistant id")
    capacity: int | None = Field(None, ge=0, description="Seats per time slot")
    max_party_size: int | None = Field(None, gt=0, description="Largest bookable party")
    calendar_credentials: dict | None = Field(
        None, description="Opaque Google OAuth token blob"
    )
    timezone: str | None = Field(None, description="IANA timezone name")
    faq_text: str | None = Field(None, description="Free-form restaurant knowledge")

    def has_calendar(self) -> bool:
        """Check if the tenant connected a calendar."""
        return bool(self.calendar_credentials)
