"""Turns raw voice-platform webhook payloads into normalized events.

The platform wraps events in ``message`` on some paths and not on others, and
phone identifiers move between the event root, ``call`` and ``phone``
depending on the event type. Everything here is total: a payload that cannot
be understood becomes an ``IgnoredEvent`` rather than an exception.
"""

import json
import logging
from typing import Any

from tablenow.models import (
    CallEnded,
    CallStarted,
    FunctionCall,
    IgnoredEvent,
    NormalizedEvent,
    TenantKeys,
    ToolCall,
    ToolInvocation,
)

logger = logging.getLogger(__name__)

CALL_ENDED_TYPES = ("call.ended", "end-of-call-report")


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def parse_tool_arguments(raw: Any) -> tuple[dict[str, Any] | None, str | None]:
    """Decode tool-call arguments given as a JSON string or a mapping.

    Returns:
        Tuple of (arguments, error). Exactly one of them is None.
    """
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            return None, f"arguments are not valid JSON: {e.msg}"
        if isinstance(decoded, dict):
            return decoded, None
        return None, "arguments must be a JSON object"
    return None, f"unsupported arguments type {type(raw).__name__}"


def extract_tenant_keys(event: dict) -> TenantKeys:
    """Collect phone-number id, phone number and assistant id from an event."""
    call = _dict(event.get("call"))

    phone_id = None
    phone_number = None
    for source in (
        event.get("phoneNumber"),
        call.get("phoneNumber"),
        event.get("phone"),
        call.get("phone"),
    ):
        source = _dict(source)
        phone_id = phone_id or _text(source.get("id"))

        number = source.get("number")
        # Some events nest the number object one level deeper
        if isinstance(number, dict):
            number = number.get("number") or number.get("id")
        phone_number = phone_number or _text(number)

    assistant = _dict(event.get("assistant"))
    assistant_id = (
        _text(call.get("assistantId"))
        or _text(event.get("assistantId"))
        or _text(assistant.get("id"))
        or _text(assistant.get("assistantId"))
    )

    return TenantKeys(
        phone_number_id=phone_id, phone_number=phone_number, assistant_id=assistant_id
    )


def _tool_call(raw: Any) -> ToolCall:
    raw = _dict(raw)
    function = _dict(raw.get("function"))

    name = _text(function.get("name")) or _text(raw.get("name"))
    raw_args = function.get("arguments")
    if raw_args in (None, ""):
        raw_args = raw.get("parameters")
    if raw_args in (None, ""):
        raw_args = function.get("input")

    arguments, error = parse_tool_arguments(raw_args)
    return ToolCall(
        id=_text(raw.get("id")), function_name=name, arguments=arguments, parse_error=error
    )


def _call_ended(event: dict, event_type: str, keys: TenantKeys) -> CallEnded:
    call = _dict(event.get("call"))
    customer = _dict(call.get("customer"))
    recording = event.get("recording")
    recording_url = (
        _text(_dict(recording).get("url")) if isinstance(recording, dict) else _text(recording)
    )

    duration = call.get("duration", event.get("duration"))
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None

    transcript = event.get("transcript")
    return CallEnded(
        event_type=event_type,
        call_id=_text(call.get("id")),
        caller_number=_text(customer.get("number")),
        caller_email=_text(customer.get("email")),
        duration=duration,
        transcript=transcript if isinstance(transcript, str) else None,
        recording_url=recording_url or _text(event.get("recordingUrl")),
        started_at=_text(call.get("startedAt")),
        keys=keys,
    )


def normalize_voice_event(raw: Any) -> NormalizedEvent:
    """Map one raw webhook payload to exactly one normalized event.

    Args:
        raw: Decoded JSON body of the webhook request

    Returns:
        CallStarted, CallEnded, ToolInvocation, FunctionCall or IgnoredEvent
    """
    if not isinstance(raw, dict):
        return IgnoredEvent(reason="payload is not an object")

    event = raw.get("message") if isinstance(raw.get("message"), dict) else raw
    event_type = _text(event.get("type"))
    keys = extract_tenant_keys(event)
    call = _dict(event.get("call"))

    if event_type == "call.started":
        customer = _dict(call.get("customer"))
        return CallStarted(
            call_id=_text(call.get("id")),
            caller_number=_text(customer.get("number")),
            keys=keys,
        )

    if event_type in CALL_ENDED_TYPES:
        return _call_ended(event, event_type, keys)

    if event_type == "tool-calls":
        raw_calls = event.get("toolCalls")
        if raw_calls is None:
            raw_calls = event.get("toolCallList") or []
        if not isinstance(raw_calls, list):
            return IgnoredEvent(event_type=event_type, reason="toolCalls is not a list")
        return ToolInvocation(
            call_id=_text(call.get("id")),
            tool_calls=[_tool_call(item) for item in raw_calls],
            keys=keys,
        )

    if event_type == "function-call":
        function = _dict(event.get("functionCall"))
        name = _text(event.get("functionName")) or _text(function.get("name"))
        raw_params = event.get("parameters", function.get("parameters"))
        parameters, error = parse_tool_arguments(raw_params)
        return FunctionCall(
            function_name=name,
            parameters=parameters,
            parse_error=error,
            assistant_id=_text(call.get("assistantId")) or keys.assistant_id,
        )

    logger.debug(f"Ignoring webhook event type {event_type!r}")
    return IgnoredEvent(event_type=event_type)
