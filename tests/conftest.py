"""Shared fixtures: an in-memory store, tenants and fake collaborators."""

from datetime import datetime, timedelta
from typing import Any

import pytest

from tablenow.engine import (
    AvailabilityOracle,
    ChannelDispatcher,
    EmailChannel,
    ReservationLifecycle,
    SideEffectCoordinator,
    TenantResolver,
)
from tablenow.errors import CalendarError, CRMError, TransportDegraded
from tablenow.models import GuestDetails, Tenant
from tablenow.services.calendar_service import BusyInterval, CalendarEvent
from tablenow.services.email_service import GuestTemplate
from tablenow.services.hubspot_service import ContactInfo, DealInfo, DealStage
from tablenow.services.store import SQLiteReservationStore

TENANT_ID = "a1b2c3d4-0000-4000-8000-000000000001"
OTHER_TENANT_ID = "a1b2c3d4-0000-4000-8000-000000000002"
CALENDAR_TOKENS = {"access_token": "token", "refresh_token": "refresh"}


class FakeCalendar:
    """Records calendar calls; busy intervals and failures are configurable."""

    def __init__(self) -> None:
        self.busy: list[BusyInterval] = []
        self.day_busy: list[BusyInterval] | None = None
        self.fail_query = False
        self.fail_day_query = False
        self.fail_writes = False
        self.created: list[CalendarEvent] = []
        self.updated: list[tuple[str, CalendarEvent]] = []
        self.deleted: list[str] = []
        self.queries: list[tuple[datetime, datetime]] = []

    async def create_event(self, credentials: dict, event: CalendarEvent) -> str:
        if self.fail_writes:
            raise CalendarError("calendar down")
        self.created.append(event)
        return f"evt-{len(self.created)}"

    async def update_event(self, credentials: dict, event_id: str, event: CalendarEvent) -> None:
        if self.fail_writes:
            raise CalendarError("calendar down")
        self.updated.append((event_id, event))

    async def delete_event(self, credentials: dict, event_id: str) -> None:
        if self.fail_writes:
            raise CalendarError("calendar down")
        self.deleted.append(event_id)

    async def query_busy(
        self, credentials: dict, start: datetime, end: datetime
    ) -> list[BusyInterval]:
        self.queries.append((start, end))
        is_day_query = end - start > timedelta(hours=1)
        if self.fail_query and not is_day_query:
            raise TransportDegraded("freeBusy failed")
        if self.fail_day_query and is_day_query:
            raise TransportDegraded("freeBusy failed")
        if is_day_query and self.day_busy is not None:
            return self.day_busy
        return self.busy


class FakeCRM:
    """Records CRM calls; any method can be made to fail."""

    def __init__(self) -> None:
        self.fail: set[str] = set()
        self.contacts: list[ContactInfo] = []
        self.deals: list[DealInfo] = []
        self.stages: list[tuple[str, DealStage]] = []
        self.activities: list[tuple[str, str, str]] = []

    def _check(self, name: str) -> None:
        if name in self.fail:
            raise CRMError(f"{name} failed")

    async def upsert_contact(self, contact: ContactInfo) -> str:
        self._check("upsert_contact")
        self.contacts.append(contact)
        return f"contact-{len(self.contacts)}"

    async def create_deal(self, deal: DealInfo, contact_id: str | None = None) -> str:
        self._check("create_deal")
        self.deals.append(deal)
        return f"deal-{len(self.deals)}"

    async def update_deal_stage(self, deal_id: str, stage: DealStage) -> None:
        self._check("update_deal_stage")
        self.stages.append((deal_id, stage))

    async def log_activity(self, contact_email: str, subject: str, body: str) -> None:
        self._check("log_activity")
        self.activities.append((contact_email, subject, body))


class FakeNotifier:
    def __init__(self) -> None:
        self.guest: list[tuple[GuestTemplate, dict[str, Any]]] = []
        self.tenant: list[tuple[str, dict[str, Any]]] = []

    async def notify_guest(self, template: GuestTemplate, data: dict[str, Any]) -> None:
        self.guest.append((template, data))

    async def notify_tenant(self, subject: str, data: dict[str, Any]) -> None:
        self.tenant.append((subject, data))


class FakeKnowledge:
    def __init__(self, answer: str | None = "We open at noon.") -> None:
        self.answer = answer
        self.questions: list[tuple[str, str]] = []

    async def answer_question(self, tenant_id: str, question: str) -> str:
        self.questions.append((tenant_id, question))
        if self.answer is None:
            raise RuntimeError("index unavailable")
        return self.answer


@pytest.fixture
def store():
    """Fresh in-memory reservation store."""
    store = SQLiteReservationStore(":memory:")
    yield store
    store.close()


@pytest.fixture
async def tenant(store):
    """A tenant without calendar credentials (capacity tier only)."""
    return await store.save_tenant(
        Tenant(
            id=TENANT_ID,
            name="Chez Test",
            email="staff@cheztest.example",
            vapi_phone_id="phone-1",
            vapi_phone_number="+15550001111",
            vapi_assistant_id="assistant-1",
            capacity=10,
            max_party_size=8,
            timezone="Europe/Paris",
            faq_text="Open daily from noon to 11pm.",
        )
    )


@pytest.fixture
async def calendar_tenant(store):
    """A tenant with a connected calendar."""
    return await store.save_tenant(
        Tenant(
            id=OTHER_TENANT_ID,
            name="Calendar Bistro",
            email="staff@bistro.example",
            vapi_phone_id="phone-2",
            vapi_phone_number="+15550002222",
            vapi_assistant_id="assistant-2",
            capacity=20,
            calendar_credentials=CALENDAR_TOKENS,
            timezone="UTC",
        )
    )


@pytest.fixture
def guest():
    return GuestDetails(name="Jane Doe", email="jane@example.com", phone="+15559998888")


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def crm():
    return FakeCRM()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def knowledge():
    return FakeKnowledge()


@pytest.fixture
def lifecycle(store):
    return ReservationLifecycle(store)


@pytest.fixture
def fanout(store, calendar, crm, notifier):
    return SideEffectCoordinator(store, calendar=calendar, crm=crm, notifier=notifier)


@pytest.fixture
def dispatcher(store, calendar, lifecycle, fanout, knowledge):
    return ChannelDispatcher(
        resolver=TenantResolver(store),
        oracle=AvailabilityOracle(store, calendar),
        lifecycle=lifecycle,
        fanout=fanout,
        knowledge=knowledge,
    )


@pytest.fixture
def email_channel(store, lifecycle, fanout):
    return EmailChannel(TenantResolver(store), lifecycle, fanout, store)
