"""Tests for the voice webhook dispatcher."""

from tablenow.engine import ChannelDispatcher, format_tool_results
from tablenow.engine.dispatcher import (
    INVALID_PARAMETERS,
    QUESTION_APOLOGY,
    TENANT_NOT_FOUND,
    UNKNOWN_FUNCTION,
)
from tablenow.models import CallStatus, ReservationStatus
from tablenow.services.hubspot_service import DealStage

from .conftest import TENANT_ID


def tool_calls(*calls, assistant_id="assistant-1", call_id="call-1"):
    """Build a tool-calls webhook body."""
    return {
        "message": {
            "type": "tool-calls",
            "call": {"id": call_id, "assistantId": assistant_id},
            "toolCalls": [
                {"id": f"tc-{i}", "function": {"name": name, "arguments": arguments}}
                for i, (name, arguments) in enumerate(calls, start=1)
            ],
        }
    }


BOOKING = {
    "guestName": "Jane Doe",
    "guestEmail": "jane@example.com",
    "guestPhone": "+15559998888",
    "date": "2025-06-01",
    "time": "7:00 PM",
    "partySize": 4,
}


async def book(dispatcher, assistant_id="assistant-1", call_id="call-booking", **overrides):
    response = await dispatcher.handle_voice_webhook(
        tool_calls(
            ("create_booking", {**BOOKING, **overrides}),
            assistant_id=assistant_id,
            call_id=call_id,
        )
    )
    result = response["result"]
    assert result["success"] is True
    return result["confirmationNumber"]


class TestResponseShape:
    def test_every_shape_present(self):
        results = [{"toolCallId": "tc-1", "result": {"ok": True}}]

        response = format_tool_results(results)

        assert response["toolResults"] == results
        assert response["tool_results"] == results
        assert response["results"] == results
        assert response["result"] == {"ok": True}

    def test_empty(self):
        assert format_tool_results([])["result"] is None

    async def test_empty_batch(self, dispatcher):
        response = await dispatcher.handle_voice_webhook(tool_calls())

        assert response["toolResults"] == []


class TestToolCalls:
    """Test tool-call batches end to end."""

    async def test_check_availability(self, dispatcher, tenant):
        response = await dispatcher.handle_voice_webhook(
            tool_calls(
                ("check_availability", {"date": "2025-06-01", "time": "19:00", "partySize": 2})
            )
        )

        assert response["result"]["result"] == "available"
        assert response["toolResults"][0]["toolCallId"] == "tc-1"

    async def test_malformed_call_does_not_block_batch(self, dispatcher, tenant):
        """Test that one bad call still yields a result for every call."""
        response = await dispatcher.handle_voice_webhook(
            tool_calls(
                ("check_availability", "{bad"),
                ("check_availability", {"date": "2025-06-01", "time": "19:00", "partySize": 2}),
            )
        )

        results = response["toolResults"]
        assert len(results) == 2
        assert results[0] == {"toolCallId": "tc-1", "result": INVALID_PARAMETERS}
        assert results[1]["result"]["result"] == "available"

    async def test_missing_required_argument(self, dispatcher, tenant):
        response = await dispatcher.handle_voice_webhook(
            tool_calls(("check_availability", {"date": "2025-06-01"}))
        )

        assert response["result"] == INVALID_PARAMETERS

    async def test_unknown_function(self, dispatcher, tenant):
        response = await dispatcher.handle_voice_webhook(tool_calls(("order_pizza", {})))

        assert response["result"] == UNKNOWN_FUNCTION

    async def test_unknown_tenant(self, dispatcher, tenant):
        response = await dispatcher.handle_voice_webhook(
            tool_calls(
                ("check_availability", {}),
                ("answer_question", {"question": "Parking?"}),
                assistant_id="assistant-unknown",
            )
        )

        assert [r["result"] for r in response["toolResults"]] == [
            TENANT_NOT_FOUND,
            TENANT_NOT_FOUND,
        ]

    async def test_handler_error_is_confined(self, store, tenant, lifecycle, fanout):
        """Test that a raising handler becomes a failed result for that call."""

        class BrokenOracle:
            async def check(self, *args):
                raise RuntimeError("boom")

        dispatcher = ChannelDispatcher(TenantResolverStub(tenant), BrokenOracle(), lifecycle, fanout)

        response = await dispatcher.handle_voice_webhook(
            tool_calls(
                ("check_availability", {"date": "2025-06-01", "time": "19:00", "partySize": 2}),
                ("answer_question", {"question": "Parking?"}),
            )
        )

        first, second = (r["result"] for r in response["toolResults"])
        assert first["success"] is False
        assert first["error"] == "Tool execution failed"
        assert second == {"success": False, "answer": QUESTION_APOLOGY}


class TenantResolverStub:
    def __init__(self, tenant):
        self.tenant = tenant

    async def resolve(self, keys, assistant_only=False):
        return self.tenant

    async def get(self, tenant_id):
        return self.tenant


class TestBookingTools:
    """Test create, update and cancel through the webhook."""

    async def test_create_booking(self, dispatcher, store, tenant, notifier):
        code = await book(dispatcher)

        stored = await store.find_reservation(code, TENANT_ID)
        assert stored.time == "19:00"
        assert stored.guest_email == "jane@example.com"
        assert len(notifier.guest) == 1
        assert notifier.tenant[0][0] == "New Phone Booking"

    async def test_crm_failure_does_not_fail_booking(
        self, dispatcher, store, calendar_tenant, crm, calendar
    ):
        """Test that a CRM outage still confirms the booking."""
        crm.fail.add("create_deal")

        code = await book(dispatcher, assistant_id="assistant-2")

        stored = await store.find_reservation(code)
        assert stored.status == ReservationStatus.CONFIRMED
        assert stored.crm_deal_id is None
        assert stored.calendar_event_id == "evt-1"
        assert len(calendar.created) == 1

    async def test_create_over_max_party(self, dispatcher, tenant, notifier):
        response = await dispatcher.handle_voice_webhook(
            tool_calls(("create_booking", {**BOOKING, "partySize": 12}))
        )

        assert response["result"]["success"] is False
        assert notifier.guest == []

    async def test_update_time_moves_calendar(self, dispatcher, calendar_tenant, calendar, crm):
        code = await book(dispatcher, assistant_id="assistant-2")

        response = await dispatcher.handle_voice_webhook(
            tool_calls(
                ("update_booking", {"confirmationNumber": code, "time": "8:00 PM"}),
                assistant_id="assistant-2",
            )
        )

        assert response["result"] == {
            "success": True,
            "message": "Your booking has been updated successfully.",
        }
        assert calendar.updated[0][0] == "evt-1"
        assert crm.stages == [("deal-1", DealStage.CONFIRMED)]

    async def test_update_requests_leaves_calendar(self, dispatcher, calendar_tenant, calendar):
        code = await book(dispatcher, assistant_id="assistant-2")

        await dispatcher.handle_voice_webhook(
            tool_calls(
                ("update_booking", {"confirmationNumber": code, "specialRequests": "Quiet table"}),
                assistant_id="assistant-2",
            )
        )

        assert calendar.updated == []

    async def test_id_restricts_lookup_to_caller(self, dispatcher, tenant, calendar_tenant):
        """Test that an ``id`` argument disables the cross-tenant fallback."""
        code = await book(dispatcher, assistant_id="assistant-2")

        scoped = await dispatcher.handle_voice_webhook(
            tool_calls(("cancel_booking", {"confirmationNumber": code, "id": "x"}))
        )
        fallback = await dispatcher.handle_voice_webhook(
            tool_calls(("cancel_booking", {"confirmationNumber": code}))
        )

        assert scoped["result"] == {"success": False, "message": "Booking not found."}
        assert fallback["result"]["success"] is True

    async def test_cancel_booking(self, dispatcher, store, calendar_tenant, calendar, crm, notifier):
        code = await book(dispatcher, assistant_id="assistant-2")

        response = await dispatcher.handle_voice_webhook(
            tool_calls(("cancel_booking", {"confirmation_number": code}), assistant_id="assistant-2")
        )

        assert response["result"]["message"] == "Your booking has been cancelled successfully."
        assert (await store.find_reservation(code)).status == ReservationStatus.CANCELLED
        assert calendar.deleted == ["evt-1"]
        assert crm.stages == [("deal-1", DealStage.CANCELLED)]
        assert notifier.tenant[-1][0] == "Booking Cancelled"


class TestCrossTenantChanges:
    """Test that a change found through another restaurant's line acts for the owner."""

    async def test_cancel_runs_owner_effects(
        self, dispatcher, tenant, calendar_tenant, calendar, crm, notifier
    ):
        code = await book(dispatcher, assistant_id="assistant-2")

        response = await dispatcher.handle_voice_webhook(
            tool_calls(("cancel_booking", {"confirmationNumber": code}))
        )

        assert response["result"]["success"] is True
        assert calendar.deleted == ["evt-1"]
        assert crm.stages == [("deal-1", DealStage.CANCELLED)]
        subject, data = notifier.tenant[-1]
        assert subject == "Booking Cancelled"
        assert data["tenant_email"] == "staff@bistro.example"
        assert data["restaurant_name"] == "Calendar Bistro"
        assert all(d["tenant_email"] != "staff@cheztest.example" for _, d in notifier.tenant)

    async def test_update_moves_owner_calendar(
        self, dispatcher, tenant, calendar_tenant, calendar
    ):
        code = await book(dispatcher, assistant_id="assistant-2")

        await dispatcher.handle_voice_webhook(
            tool_calls(("update_booking", {"confirmationNumber": code, "time": "8:00 PM"}))
        )

        assert calendar.updated[0][0] == "evt-1"
        assert calendar.updated[0][1].start.hour == 20


class TestRedeliveredToolCalls:
    """Test that a redelivered tool call never books twice."""

    async def test_create_twice_books_once(self, dispatcher, store, tenant, notifier):
        first = await book(dispatcher)
        second = await book(dispatcher)

        assert second == first
        assert await store.count_confirmed_party_size(TENANT_ID, "2025-06-01", "19:00") == 4
        assert len(notifier.guest) == 1

    async def test_new_tool_call_books_again(self, dispatcher, store, tenant):
        """Test that only the same (call, tool call) pair is deduplicated."""
        first = await book(dispatcher)
        second = await book(dispatcher, call_id="call-other")

        assert second != first
        assert await store.count_confirmed_party_size(TENANT_ID, "2025-06-01", "19:00") == 8

    async def test_redelivery_repairs_missing_effects(
        self, dispatcher, store, calendar_tenant, calendar, crm, notifier
    ):
        """Test that a redelivered booking re-runs the failed calendar effect only."""
        calendar.fail_writes = True
        code = await book(dispatcher, assistant_id="assistant-2")
        assert (await store.find_reservation(code)).calendar_event_id is None

        calendar.fail_writes = False
        assert await book(dispatcher, assistant_id="assistant-2") == code

        stored = await store.find_reservation(code)
        assert stored.calendar_event_id == "evt-1"
        assert len(calendar.created) == 1
        assert len(crm.deals) == 1
        assert len(notifier.guest) == 1

    async def test_failed_create_is_not_recorded(self, dispatcher, store, tenant):
        """Test that a refused booking can be retried under the same tool call id."""
        refused = await dispatcher.handle_voice_webhook(
            tool_calls(("create_booking", {**BOOKING, "partySize": 12}), call_id="call-booking")
        )
        assert refused["result"]["success"] is False

        code = await book(dispatcher)

        assert (await store.find_reservation(code, TENANT_ID)).party_size == 4

    async def test_cancel_twice_reports_success_once_applied(
        self, dispatcher, calendar_tenant, calendar, crm
    ):
        code = await book(dispatcher, assistant_id="assistant-2")
        cancel = tool_calls(
            ("cancel_booking", {"confirmationNumber": code}), assistant_id="assistant-2"
        )

        first = await dispatcher.handle_voice_webhook(cancel)
        second = await dispatcher.handle_voice_webhook(cancel)

        assert second["result"] == first["result"]
        assert second["result"]["success"] is True
        assert calendar.deleted == ["evt-1"]
        assert crm.stages == [("deal-1", DealStage.CANCELLED)]


class TestAnswerQuestion:
    async def test_answer(self, dispatcher, tenant, knowledge):
        response = await dispatcher.handle_voice_webhook(
            tool_calls(("answer_question", {"question": "When do you open?"}))
        )

        assert response["result"] == {"success": True, "answer": "We open at noon."}
        assert knowledge.questions == [(TENANT_ID, "When do you open?")]

    async def test_knowledge_failure_apologizes(self, dispatcher, tenant, knowledge):
        knowledge.answer = None

        response = await dispatcher.handle_voice_webhook(
            tool_calls(("answer_question", {"question": "When do you open?"}))
        )

        assert response["result"] == {"success": False, "answer": QUESTION_APOLOGY}


class TestFunctionCall:
    """Test the legacy single function-call event."""

    async def test_resolves_by_assistant(self, dispatcher, tenant):
        response = await dispatcher.handle_voice_webhook(
            {
                "message": {
                    "type": "function-call",
                    "functionCall": {
                        "name": "check_availability",
                        "parameters": {"date": "2025-06-01", "time": "19:00", "partySize": 2},
                    },
                    "call": {"assistantId": "assistant-1"},
                }
            }
        )

        assert response["result"] == "available"

    async def test_phone_keys_are_not_used(self, dispatcher, tenant):
        response = await dispatcher.handle_voice_webhook(
            {
                "type": "function-call",
                "functionName": "check_availability",
                "parameters": {},
                "phoneNumber": {"id": "phone-1"},
            }
        )

        assert response == TENANT_NOT_FOUND


class TestCallEvents:
    """Test call-started and call-ended handling."""

    def started(self):
        return {
            "message": {
                "type": "call.started",
                "call": {"id": "call-1", "customer": {"number": "+15551234567"}},
                "phoneNumber": {"id": "phone-1", "number": "+15550001111"},
            }
        }

    def ended(self, email=None):
        customer = {"number": "+15551234567"}
        if email:
            customer["email"] = email
        return {
            "message": {
                "type": "end-of-call-report",
                "call": {"id": "call-1", "duration": 42, "customer": customer},
                "phoneNumber": {"id": "phone-1"},
                "transcript": "Hello there",
            }
        }

    async def test_started_then_ended(self, dispatcher, store, tenant):
        assert await dispatcher.handle_voice_webhook(self.started()) == {"received": True}
        assert await dispatcher.handle_voice_webhook(self.ended()) == {"received": True}

        call_log = await store.get_call_log("call-1")
        assert call_log.tenant_id == TENANT_ID
        assert call_log.status == CallStatus.COMPLETED
        assert call_log.transcript == "Hello there"

    async def test_redelivered_end(self, dispatcher, store, tenant):
        await dispatcher.handle_voice_webhook(self.ended())
        await dispatcher.handle_voice_webhook(self.ended())

        assert len(await store.list_call_logs(TENANT_ID)) == 1

    async def test_end_logs_crm_activity(self, dispatcher, tenant, crm):
        await dispatcher.handle_voice_webhook(self.ended(email="jane@example.com"))

        assert crm.activities[0][0] == "jane@example.com"
        assert "Hello there" in crm.activities[0][2]

    async def test_unknown_phone(self, dispatcher, store, tenant):
        body = self.started()
        body["message"]["phoneNumber"] = {"id": "phone-unknown"}

        assert await dispatcher.handle_voice_webhook(body) == {"received": True}
        assert await store.get_call_log("call-1") is None

    async def test_unhandled_event(self, dispatcher):
        assert await dispatcher.handle_voice_webhook({"type": "speech-update"}) == {
            "received": True
        }

    async def test_internal_error_is_reported(self, store, tenant, lifecycle, fanout):
        """Test that an unexpected failure still acknowledges the delivery."""

        class BrokenResolver:
            async def resolve(self, keys, assistant_only=False):
                raise RuntimeError("database locked")

        dispatcher = ChannelDispatcher(BrokenResolver(), None, lifecycle, fanout)

        response = await dispatcher.handle_voice_webhook(self.started())

        assert response == {"received": True, "error": "database locked"}
