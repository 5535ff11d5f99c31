"""Tests for the external service clients."""

import json
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from tablenow.config import Config
from tablenow.errors import (
    CalendarError,
    CRMError,
    KnowledgeBaseError,
    NotificationError,
    TransportDegraded,
)
from tablenow.services.calendar_service import CalendarEvent, GoogleCalendarService
from tablenow.services.email_service import (
    GuestTemplate,
    SMTPEmailService,
    format_booking_summary,
)
from tablenow.services.hubspot_service import ContactInfo, DealInfo, DealStage, HubSpotService
from tablenow.services.knowledge_service import OpenAIKnowledgeService

from .conftest import CALENDAR_TOKENS, TENANT_ID


def make_config(**overrides) -> Config:
    return Config(_env_file=None, **overrides)


def recording_client(handler, requests):
    """AsyncClient whose requests are recorded and answered by ``handler``."""

    def transport(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(transport))


class TestHubSpotService:
    """Tests for the HubSpot client."""

    def service(self, handler, requests, token="hubspot-token"):
        service = HubSpotService(recording_client(handler, requests))
        service.config = make_config(hubspot_access_token=token)
        return service

    async def test_create_contact(self):
        requests = []
        service = self.service(lambda r: httpx.Response(201, json={"id": "101"}), requests)

        contact_id = await service.upsert_contact(ContactInfo(email="jane@example.com"))

        assert contact_id == "101"
        assert requests[0].headers["Authorization"] == "Bearer hubspot-token"
        assert json.loads(requests[0].content)["properties"]["email"] == "jane@example.com"

    async def test_existing_contact_is_updated(self):
        """Test that a conflict falls back to search and patch."""

        def handler(request):
            if request.url.path.endswith("/search"):
                return httpx.Response(200, json={"results": [{"id": "202"}]})
            if request.method == "PATCH":
                return httpx.Response(200, json={"id": "202"})
            return httpx.Response(409, json={"message": "Contact already exists"})

        requests = []
        service = self.service(handler, requests)

        contact_id = await service.upsert_contact(ContactInfo(email="jane@example.com"))

        assert contact_id == "202"
        assert [r.method for r in requests] == ["POST", "POST", "PATCH"]
        assert requests[2].url.path == "/crm/v3/objects/contacts/202"

    async def test_create_deal_associates_contact(self):
        requests = []
        service = self.service(lambda r: httpx.Response(201, json={"id": "deal-9"}), requests)
        deal = DealInfo(
            name="Chez Test - Jane Doe - 2025-06-01",
            contact_email="jane@example.com",
            tenant_id=TENANT_ID,
            reservation_date="2025-06-01 19:00",
            party_size=8,
        )

        assert await service.create_deal(deal, "101") == "deal-9"

        body = json.loads(requests[0].content)
        assert body["properties"]["dealstage"] == DealStage.CONFIRMED.value
        assert body["properties"]["hs_priority"] == "high"
        assert "closedate" in body["properties"]
        assert body["associations"][0]["to"] == {"id": "101"}

    async def test_update_stage(self):
        requests = []
        service = self.service(lambda r: httpx.Response(200, json={}), requests)

        await service.update_deal_stage("deal-9", DealStage.CANCELLED)

        assert requests[0].method == "PATCH"
        assert json.loads(requests[0].content) == {"properties": {"dealstage": "closedlost"}}

    async def test_error_status_raises(self):
        service = self.service(lambda r: httpx.Response(500, text="oops"), [])

        with pytest.raises(CRMError):
            await service.update_deal_stage("deal-9", DealStage.CANCELLED)

    async def test_not_configured(self):
        requests = []
        service = self.service(lambda r: httpx.Response(200), requests, token=None)

        with pytest.raises(CRMError, match="not configured"):
            await service.upsert_contact(ContactInfo(email="jane@example.com"))
        assert requests == []


class TestGoogleCalendarService:
    """Tests for the Google Calendar client."""

    def service(self, handler, requests, **config):
        service = GoogleCalendarService(recording_client(handler, requests))
        service.config = make_config(**config)
        return service

    async def test_create_event(self):
        requests = []
        service = self.service(lambda r: httpx.Response(200, json={"id": "evt-42"}), requests)
        start = datetime(2025, 6, 1, 19, 0, tzinfo=timezone.utc)

        event_id = await service.create_event(
            CALENDAR_TOKENS,
            CalendarEvent(summary="Reservation", start=start, attendees=["jane@example.com"]),
        )

        assert event_id == "evt-42"
        body = json.loads(requests[0].content)
        assert body["start"]["dateTime"] == "2025-06-01T19:00:00+00:00"
        assert body["attendees"] == [{"email": "jane@example.com"}]
        assert requests[0].headers["Authorization"] == "Bearer token"

    async def test_query_busy(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "calendars": {
                        "primary": {
                            "busy": [
                                {"start": "2025-06-01T19:00:00Z", "end": "2025-06-01T20:00:00Z"}
                            ]
                        }
                    }
                },
            )

        service = self.service(handler, [])

        busy = await service.query_busy(
            CALENDAR_TOKENS,
            datetime(2025, 6, 1, 9, tzinfo=timezone.utc),
            datetime(2025, 6, 1, 22, tzinfo=timezone.utc),
        )

        assert len(busy) == 1
        assert busy[0].start.hour == 19

    async def test_expired_token_is_refreshed(self):
        def handler(request):
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "fresh"})
            return httpx.Response(204)

        requests = []
        service = self.service(
            handler, requests, google_client_id="id", google_client_secret="secret"
        )
        credentials = {"access_token": "stale", "refresh_token": "refresh", "expiry_date": 0}

        await service.delete_event(credentials, "evt-1")

        assert requests[1].headers["Authorization"] == "Bearer fresh"

    async def test_expired_token_without_client_config(self):
        service = self.service(
            lambda r: httpx.Response(200), [], google_client_id=None, google_client_secret=None
        )

        with pytest.raises(CalendarError):
            await service.delete_event({"refresh_token": "refresh"}, "evt-1")

    async def test_http_error_raises(self):
        service = self.service(lambda r: httpx.Response(404, text="not found"), [])

        with pytest.raises(CalendarError):
            await service.delete_event(CALENDAR_TOKENS, "evt-1")

    async def test_busy_query_failure_is_degraded(self):
        """Test that a failed freeBusy read is reported as a transport failure."""
        service = self.service(lambda r: httpx.Response(500, text="backend error"), [])

        with pytest.raises(TransportDegraded):
            await service.query_busy(
                CALENDAR_TOKENS,
                datetime(2025, 6, 1, 19, tzinfo=timezone.utc),
                datetime(2025, 6, 1, 20, tzinfo=timezone.utc),
            )


class TestSMTPEmailService:
    def test_booking_summary_skips_missing_fields(self):
        summary = format_booking_summary(
            {"guest_name": "Jane Doe", "party_size": 4, "special_requests": None}
        )

        assert summary == "Guest: Jane Doe\nParty Size: 4"

    async def test_not_configured(self):
        service = SMTPEmailService()
        service.config = make_config(smtp_password=None)

        with pytest.raises(NotificationError, match="not configured"):
            await service.send("jane@example.com", "Hi", "Body")

    async def test_guest_without_email(self):
        service = SMTPEmailService()

        with pytest.raises(NotificationError):
            await service.notify_guest(GuestTemplate.BOOKING_CONFIRMATION, {"guest_name": "Bob"})


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class TestOpenAIKnowledgeService:
    async def test_answer_uses_faq(self, store, tenant):
        completions = FakeCompletions("  We open at noon.  ")
        client = SimpleNamespace(chat=SimpleNamespace(completions=completions))

        answer = await OpenAIKnowledgeService(store, client).answer_question(
            TENANT_ID, "When do you open?"
        )

        assert answer == "We open at noon."
        prompt = completions.calls[0]["messages"][1]["content"]
        assert "Chez Test" in prompt
        assert "Open daily from noon to 11pm." in prompt

    async def test_unknown_tenant(self, store):
        client = SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions("x")))

        with pytest.raises(KnowledgeBaseError):
            await OpenAIKnowledgeService(store, client).answer_question("missing", "Parking?")

    async def test_not_configured(self, store, tenant):
        service = OpenAIKnowledgeService(store)
        service.client = None

        with pytest.raises(KnowledgeBaseError, match="not configured"):
            await service.answer_question(TENANT_ID, "Parking?")
