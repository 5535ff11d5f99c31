"""Data models for the TableNow reservation engine."""

from tablenow.models.call import CallLog, CallStatus
from tablenow.models.email import (
    EmailAck,
    EmailBookingType,
    InboundEmail,
    InboundEmailLog,
    ParsedBookingEmail,
)
from tablenow.models.events import (
    CallEnded,
    CallStarted,
    FunctionCall,
    IgnoredEvent,
    NormalizedEvent,
    TenantKeys,
    ToolCall,
    ToolInvocation,
)
from tablenow.models.reservation import (
    GuestDetails,
    Reservation,
    ReservationSource,
    ReservationStatus,
)
from tablenow.models.results import (
    AvailabilityDecision,
    AvailabilitySource,
    LifecycleResult,
)
from tablenow.models.tenant import Tenant

__all__ = [
    "AvailabilityDecision",
    "AvailabilitySource",
    "CallEnded",
    "CallLog",
    "CallStarted",
    "CallStatus",
    "EmailAck",
    "EmailBookingType",
    "FunctionCall",
    "GuestDetails",
    "IgnoredEvent",
    "InboundEmail",
    "InboundEmailLog",
    "LifecycleResult",
    "NormalizedEvent",
    "ParsedBookingEmail",
    "Reservation",
    "ReservationSource",
    "ReservationStatus",
    "Tenant",
    "TenantKeys",
    "ToolCall",
    "ToolInvocation",
]
