"""Structured results returned by the reservation engine."""

from enum import Enum

from pydantic import BaseModel, Field

from tablenow.errors import ErrorKind
from tablenow.models.reservation import Reservation


class AvailabilitySource(str, Enum):
    """Which tier produced an availability decision."""

    CALENDAR = "calendar"
    CAPACITY = "capacity"
    ERROR = "error"


class AvailabilityDecision(BaseModel):
    """Answer to "is there a table?"."""

    available: bool
    message: str
    suggestions: list[str] = Field(default_factory=list)
    source: AvailabilitySource = AvailabilitySource.CAPACITY


class LifecycleResult(BaseModel):
    """Outcome of a create, update or cancel command."""

    success: bool
    message: str
    reservation: Reservation | None = None
    error: ErrorKind | None = None
    changed_fields: set[str] = Field(default_factory=set)

    @property
    def confirmation_code(self) -> str | None:
        return self.reservation.confirmation_code if self.reservation else None

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> "LifecycleResult":
        return cls(success=False, error=error, message=message)
