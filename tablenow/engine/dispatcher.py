"""Voice channel dispatcher.

Routes normalized webhook events to the lifecycle engine, the availability
oracle and the knowledge base, then shapes the response the voice platform
expects. The webhook always answers; errors are reported inside the body.
"""

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from tablenow.engine.availability import AvailabilityOracle
from tablenow.engine.fanout import EffectKind, SideEffectCoordinator, Transition
from tablenow.engine.lifecycle import LookupPolicy, ReservationLifecycle
from tablenow.engine.normalizer import normalize_voice_event
from tablenow.engine.tenant_resolver import TenantResolver
from tablenow.models import (
    AvailabilitySource,
    CallEnded,
    CallStarted,
    FunctionCall,
    GuestDetails,
    LifecycleResult,
    Tenant,
    TenantKeys,
    ToolCall,
    ToolInvocation,
)
from tablenow.services.knowledge_service import KnowledgeBase

logger = logging.getLogger(__name__)

TENANT_NOT_FOUND = {"error": "Restaurant not found"}
UNKNOWN_FUNCTION = {"error": "Unknown function"}
INVALID_PARAMETERS = {"error": "Invalid parameters"}
QUESTION_APOLOGY = (
    "I apologize, but I am having trouble finding that information. "
    "Please contact the restaurant directly."
)

CREATE_EFFECTS = {
    EffectKind.CALENDAR_CREATE,
    EffectKind.CRM_UPSERT_CONTACT_AND_DEAL,
    EffectKind.NOTIFY_GUEST,
    EffectKind.NOTIFY_TENANT,
}
CANCEL_EFFECTS = {
    EffectKind.CALENDAR_DELETE,
    EffectKind.CRM_UPDATE_DEAL_STAGE,
    EffectKind.NOTIFY_GUEST,
    EffectKind.NOTIFY_TENANT,
}
# Changes that move the calendar slot
SLOT_FIELDS = frozenset({"date", "time", "party_size"})
# Tools whose successful result is recorded per (call id, tool call id)
MUTATING_TOOLS = frozenset({"create_booking", "update_booking", "cancel_booking"})


class ToolArguments(BaseModel):
    """Base for tool arguments; accepts camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CheckAvailabilityArgs(ToolArguments):
    date: str = Field(..., description="Requested date (YYYY-MM-DD)")
    time: str = Field(..., description="Requested time")
    party_size: int = Field(..., gt=0, description="Number of guests")


class CreateBookingArgs(ToolArguments):
    guest_name: str = Field(..., min_length=1)
    guest_email: str | None = None
    guest_phone: str | None = None
    date: str
    time: str
    party_size: int = Field(..., gt=0)
    special_requests: str | None = None


class UpdateBookingArgs(ToolArguments):
    confirmation_number: str = Field(..., min_length=1)
    id: str | None = Field(None, description="Restricts the lookup to the calling restaurant")
    guest_name: str | None = None
    guest_email: str | None = None
    guest_phone: str | None = None
    date: str | None = None
    time: str | None = None
    party_size: int | None = None
    special_requests: str | None = None

    @property
    def policy(self) -> LookupPolicy:
        return LookupPolicy.SCOPED_ONLY if self.id else LookupPolicy.SCOPED_THEN_GLOBAL

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude={"confirmation_number", "id"}, exclude_none=True)


class CancelBookingArgs(ToolArguments):
    confirmation_number: str = Field(..., min_length=1)
    id: str | None = None

    @property
    def policy(self) -> LookupPolicy:
        return LookupPolicy.SCOPED_ONLY if self.id else LookupPolicy.SCOPED_THEN_GLOBAL


class AnswerQuestionArgs(ToolArguments):
    question: str = Field(..., min_length=1)


def format_tool_results(results: list[dict[str, Any]]) -> dict[str, Any]:
    """Build the tool-calls response in every shape the platform reads.

    Args:
        results: ``{"toolCallId": ..., "result": ...}`` entries in call order

    Returns:
        Dict with ``toolResults``, ``results``, ``result`` and ``tool_results``
    """
    return {
        "toolResults": results,
        "results": [{"toolCallId": r["toolCallId"], "result": r["result"]} for r in results],
        "result": results[0]["result"] if results else None,
        "tool_results": results,
    }


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable call start time {value!r}")
        return None


class ChannelDispatcher:
    """Handles voice webhook events for all tenants."""

    def __init__(
        self,
        resolver: TenantResolver,
        oracle: AvailabilityOracle,
        lifecycle: ReservationLifecycle,
        fanout: SideEffectCoordinator,
        knowledge: KnowledgeBase | None = None,
    ) -> None:
        self.resolver = resolver
        self.oracle = oracle
        self.lifecycle = lifecycle
        self.fanout = fanout
        self.knowledge = knowledge

        self._tools = {
            "check_availability": (CheckAvailabilityArgs, self._check_availability),
            "create_booking": (CreateBookingArgs, self._create_booking),
            "update_booking": (UpdateBookingArgs, self._update_booking),
            "cancel_booking": (CancelBookingArgs, self._cancel_booking),
            "answer_question": (AnswerQuestionArgs, self._answer_question),
        }

    async def handle_voice_webhook(self, raw: Any) -> dict[str, Any]:
        """Process one webhook delivery.

        Args:
            raw: Decoded JSON body

        Returns:
            Response body; the route always sends it with HTTP 200
        """
        try:
            event = normalize_voice_event(raw)

            if isinstance(event, CallStarted):
                await self._call_started(event)
            elif isinstance(event, CallEnded):
                await self._call_ended(event)
            elif isinstance(event, ToolInvocation):
                return await self._tool_calls(event)
            elif isinstance(event, FunctionCall):
                return await self._function_call(event)
            else:
                logger.info(f"Unhandled event type: {event.event_type}")

            return {"received": True}
        except Exception as e:
            logger.exception("Voice webhook processing failed")
            return {"received": True, "error": str(e)}

    # Call lifecycle

    async def _call_started(self, event: CallStarted) -> None:
        tenant = await self.resolver.resolve(event.keys)
        if tenant is None:
            logger.error(f"Restaurant not found for started call {event.call_id}")
            return
        await self.lifecycle.record_call_start(tenant, event.call_id, event.caller_number)

    async def _call_ended(self, event: CallEnded) -> None:
        tenant = None
        if not event.keys.is_empty():
            tenant = await self.resolver.resolve(event.keys)

        call_log = await self.lifecycle.record_call_end(
            event.call_id,
            event.duration,
            event.transcript,
            event.recording_url,
            tenant=tenant,
            caller_number=event.caller_number,
            started_at=_parse_timestamp(event.started_at),
        )
        if call_log is None or not event.caller_email:
            return

        if tenant is None or tenant.id != call_log.tenant_id:
            tenant = await self.resolver.get(call_log.tenant_id)
        if tenant is not None:
            await self.fanout.record_call_activity(tenant, call_log, event.caller_email)

    # Tools

    async def _tool_calls(self, event: ToolInvocation) -> dict[str, Any]:
        if not event.tool_calls:
            return format_tool_results([])

        tenant = await self.resolver.resolve(event.keys)
        if tenant is None:
            return format_tool_results(
                [{"toolCallId": tc.id, "result": TENANT_NOT_FOUND} for tc in event.tool_calls]
            )

        results = []
        for tc in event.tool_calls:
            if not tc.is_valid:
                logger.warning(f"Tool call {tc.id} has invalid arguments: {tc.parse_error}")
                result = INVALID_PARAMETERS
            elif event.call_id and tc.id and tc.function_name in MUTATING_TOOLS:
                result = await self._execute_once(tenant, event.call_id, tc)
            else:
                result = await self.execute_tool(tenant, tc.function_name, tc.arguments)
            results.append({"toolCallId": tc.id, "result": result})

        return format_tool_results(results)

    async def _execute_once(
        self, tenant: Tenant, call_id: str, tc: ToolCall
    ) -> dict[str, Any]:
        """Run a mutating tool unless this call already produced a result.

        A redelivered booking returns the recorded confirmation and re-runs
        the calendar and CRM effects the first delivery did not complete.
        """
        recorded = await self.lifecycle.recall_tool_result(call_id, tc.id)
        if recorded is not None:
            logger.info(f"Tool call {tc.id} of call {call_id} already handled, replaying result")
            if tc.function_name == "create_booking":
                await self._repair_booking(tenant, recorded.get("confirmationNumber"))
            return recorded

        result = await self.execute_tool(tenant, tc.function_name, tc.arguments)
        if result.get("success") is True:
            await self.lifecycle.remember_tool_result(
                tenant, call_id, tc.id, tc.function_name, result
            )
        return result

    async def _repair_booking(self, tenant: Tenant, confirmation_code: str | None) -> None:
        if not confirmation_code:
            return
        reservation = await self.lifecycle.find_for_channel(tenant, confirmation_code)
        if reservation is None:
            logger.warning(f"Recorded booking {confirmation_code} no longer found")
            return
        await self.fanout.repair(tenant, reservation)

    async def _function_call(self, event: FunctionCall) -> dict[str, Any]:
        tenant = await self.resolver.resolve(
            TenantKeys(assistant_id=event.assistant_id), assistant_only=True
        )
        if tenant is None:
            return TENANT_NOT_FOUND
        if event.parse_error:
            return INVALID_PARAMETERS
        return await self.execute_tool(tenant, event.function_name, event.parameters or {})

    async def execute_tool(
        self, tenant: Tenant, function_name: str | None, arguments: dict[str, Any]
    ) -> dict[str, Any]:
        """Run one tool for a tenant.

        Errors are confined to the returned result so the other calls of a
        batch still run.
        """
        if function_name not in self._tools:
            logger.warning(f"Unknown function {function_name!r} for tenant {tenant.id}")
            return UNKNOWN_FUNCTION

        model, handler = self._tools[function_name]
        try:
            args = model.model_validate(arguments)
        except ValidationError as e:
            logger.warning(f"Invalid parameters for {function_name}: {e.errors()}")
            return INVALID_PARAMETERS

        logger.info(f"Executing {function_name} for tenant {tenant.id}")
        try:
            return await handler(tenant, args)
        except Exception as e:
            logger.exception(f"Tool {function_name} failed for tenant {tenant.id}")
            return {"success": False, "error": "Tool execution failed", "message": str(e)}

    async def _check_availability(
        self, tenant: Tenant, args: CheckAvailabilityArgs
    ) -> dict[str, Any]:
        decision = await self.oracle.check(tenant, args.date, args.time, args.party_size)
        if decision.source == AvailabilitySource.ERROR:
            outcome = "error"
        else:
            outcome = "available" if decision.available else "unavailable"
        return {"result": outcome, "message": decision.message}

    async def _create_booking(self, tenant: Tenant, args: CreateBookingArgs) -> dict[str, Any]:
        result = await self.lifecycle.create(
            tenant,
            GuestDetails(name=args.guest_name, email=args.guest_email, phone=args.guest_phone),
            args.date,
            args.time,
            args.party_size,
            args.special_requests,
        )
        if not result.success:
            return {"success": False, "message": result.message}

        await self.fanout.dispatch(tenant, result.reservation, CREATE_EFFECTS, Transition.CREATED)
        return {
            "success": True,
            "confirmationNumber": result.confirmation_code,
            "message": result.message,
        }

    async def _update_booking(self, tenant: Tenant, args: UpdateBookingArgs) -> dict[str, Any]:
        result = await self.lifecycle.update(
            tenant, args.confirmation_number, args.changes(), policy=args.policy
        )
        if result.success:
            await self.fanout.dispatch(
                tenant, result.reservation, update_effects(result), Transition.UPDATED
            )
        return {"success": result.success, "message": result.message}

    async def _cancel_booking(self, tenant: Tenant, args: CancelBookingArgs) -> dict[str, Any]:
        result = await self.lifecycle.cancel(tenant, args.confirmation_number, policy=args.policy)
        if result.success:
            await self.fanout.dispatch(
                tenant, result.reservation, CANCEL_EFFECTS, Transition.CANCELLED
            )
        return {"success": result.success, "message": result.message}

    async def _answer_question(self, tenant: Tenant, args: AnswerQuestionArgs) -> dict[str, Any]:
        if self.knowledge is None:
            return {"success": False, "answer": QUESTION_APOLOGY}
        try:
            answer = await self.knowledge.answer_question(tenant.id, args.question)
        except Exception:
            logger.exception(f"Error answering question for tenant {tenant.id}")
            return {"success": False, "answer": QUESTION_APOLOGY}
        return {"success": True, "answer": answer}


def update_effects(result: LifecycleResult) -> set[EffectKind]:
    """Effects for a successful update; the calendar moves only with the slot."""
    effects = {EffectKind.CRM_UPDATE_DEAL_STAGE, EffectKind.NOTIFY_GUEST}
    if result.changed_fields & SLOT_FIELDS:
        effects.add(EffectKind.CALENDAR_UPDATE)
    return effects
