"""Normalized inbound events from the voice platform.

Every raw webhook payload maps to exactly one of these variants; shapes the
normalizer does not recognize become ``IgnoredEvent``.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class TenantKeys(BaseModel):
    """Identifiers an event carries for locating its tenant."""

    phone_number_id: str | None = None
    phone_number: str | None = None
    assistant_id: str | None = None

    def is_empty(self) -> bool:
        return not (self.phone_number_id or self.phone_number or self.assistant_id)


class ToolCall(BaseModel):
    """A single function invocation inside a tool-calls batch."""

    id: str | None = Field(None, description="Tool call id echoed in the result")
    function_name: str | None = Field(None, description="Requested function")
    arguments: dict[str, Any] | None = Field(
        None, description="Decoded arguments, None when they could not be parsed"
    )
    parse_error: str | None = Field(None, description="Why the arguments were rejected")

    @property
    def is_valid(self) -> bool:
        return self.parse_error is None and self.arguments is not None


class CallStarted(BaseModel):
    kind: Literal["call_started"] = "call_started"
    call_id: str | None = None
    caller_number: str | None = None
    keys: TenantKeys = Field(default_factory=TenantKeys)


class CallEnded(BaseModel):
    kind: Literal["call_ended"] = "call_ended"
    event_type: str = "call.ended"
    call_id: str | None = None
    caller_number: str | None = None
    caller_email: str | None = None
    duration: float | None = None
    transcript: str | None = None
    recording_url: str | None = None
    started_at: str | None = None
    keys: TenantKeys = Field(default_factory=TenantKeys)


class ToolInvocation(BaseModel):
    kind: Literal["tool_invocation"] = "tool_invocation"
    call_id: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    keys: TenantKeys = Field(default_factory=TenantKeys)


class FunctionCall(BaseModel):
    """Legacy single-function event, resolved by assistant id only."""

    kind: Literal["function_call"] = "function_call"
    function_name: str | None = None
    parameters: dict[str, Any] | None = None
    parse_error: str | None = None
    assistant_id: str | None = None


class IgnoredEvent(BaseModel):
    kind: Literal["ignored"] = "ignored"
    event_type: str | None = None
    reason: str = "unrecognized event type"


NormalizedEvent = CallStarted | CallEnded | ToolInvocation | FunctionCall | IgnoredEvent
