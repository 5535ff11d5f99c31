"""Reservation engine: tenant resolution, availability, lifecycle and fan-out."""

from tablenow.engine.availability import AvailabilityOracle
from tablenow.engine.dispatcher import ChannelDispatcher, format_tool_results
from tablenow.engine.email_channel import (
    EmailChannel,
    extract_tenant_id,
    parse_booking_email,
)
from tablenow.engine.fanout import (
    EffectKind,
    EffectStatus,
    FanoutReport,
    SideEffectCoordinator,
    Transition,
)
from tablenow.engine.lifecycle import (
    LookupPolicy,
    ReservationLifecycle,
    generate_confirmation_code,
)
from tablenow.engine.normalizer import normalize_voice_event, parse_tool_arguments
from tablenow.engine.tenant_resolver import TenantResolver
from tablenow.engine.timeutils import normalize_time

__all__ = [
    # Components
    "AvailabilityOracle",
    "ChannelDispatcher",
    "EmailChannel",
    "ReservationLifecycle",
    "SideEffectCoordinator",
    "TenantResolver",
    # Types
    "EffectKind",
    "EffectStatus",
    "FanoutReport",
    "LookupPolicy",
    "Transition",
    # Functions
    "extract_tenant_id",
    "format_tool_results",
    "generate_confirmation_code",
    "normalize_time",
    "normalize_voice_event",
    "parse_booking_email",
    "parse_tool_arguments",
]
