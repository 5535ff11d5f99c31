"""Side-effect fan-out after a committed reservation change.

Calendar, CRM and email updates are independent of each other and of the
reservation record. Each requested effect runs in its own try-scope, in
sequence; a failure is logged with enough context to replay it by hand and
never reaches the caller or touches the reservation's status.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable

from pydantic import BaseModel, Field

from tablenow.config import get_config
from tablenow.engine.timeutils import slot_start
from tablenow.errors import ErrorKind, TableNowError
from tablenow.models import CallLog, Reservation, Tenant
from tablenow.services.calendar_service import CalendarClient, CalendarEvent
from tablenow.services.email_service import GuestTemplate, Notifier
from tablenow.services.hubspot_service import ContactInfo, CRMClient, DealInfo, DealStage
from tablenow.services.store import ReservationStore

logger = logging.getLogger(__name__)

EVENT_LENGTH = timedelta(minutes=90)


class EffectKind(str, Enum):
    CALENDAR_CREATE = "calendar_create"
    CALENDAR_UPDATE = "calendar_update"
    CALENDAR_DELETE = "calendar_delete"
    CRM_UPSERT_CONTACT_AND_DEAL = "crm_upsert_contact_and_deal"
    CRM_UPDATE_DEAL_STAGE = "crm_update_deal_stage"
    NOTIFY_GUEST = "notify_guest"
    NOTIFY_TENANT = "notify_tenant"


class Transition(str, Enum):
    """The lifecycle change that triggered the fan-out."""

    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class EffectStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class EffectOutcome(BaseModel):
    kind: EffectKind
    status: EffectStatus
    error: ErrorKind | None = None
    detail: str | None = None


class FanoutReport(BaseModel):
    """What happened to each requested effect of one dispatch."""

    tenant_id: str
    confirmation_code: str
    outcomes: list[EffectOutcome] = Field(default_factory=list)
    reservation: Reservation | None = None

    def status_of(self, kind: EffectKind) -> EffectStatus | None:
        for outcome in self.outcomes:
            if outcome.kind == kind:
                return outcome.status
        return None

    @property
    def failed(self) -> list[EffectKind]:
        return [o.kind for o in self.outcomes if o.status == EffectStatus.FAILED]


class EffectSkipped(Exception):
    """An effect's preconditions are not met (no credentials, no email, ...)."""


GUEST_TEMPLATES = {
    Transition.CREATED: GuestTemplate.BOOKING_CONFIRMATION,
    Transition.UPDATED: GuestTemplate.BOOKING_UPDATED,
    Transition.CANCELLED: GuestTemplate.BOOKING_CANCELLED,
}

Handler = Callable[[Tenant, Reservation, Transition], Awaitable[Reservation | None]]


class SideEffectCoordinator:
    """Runs calendar, CRM and notification effects for a reservation."""

    def __init__(
        self,
        store: ReservationStore,
        calendar: CalendarClient | None = None,
        crm: CRMClient | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = get_config()
        self.store = store
        self.calendar = calendar
        self.crm = crm
        self.notifier = notifier
        self._handlers: dict[EffectKind, Handler] = {
            EffectKind.CALENDAR_CREATE: self._calendar_create,
            EffectKind.CALENDAR_UPDATE: self._calendar_update,
            EffectKind.CALENDAR_DELETE: self._calendar_delete,
            EffectKind.CRM_UPSERT_CONTACT_AND_DEAL: self._crm_upsert,
            EffectKind.CRM_UPDATE_DEAL_STAGE: self._crm_stage,
            EffectKind.NOTIFY_GUEST: self._notify_guest,
            EffectKind.NOTIFY_TENANT: self._notify_tenant,
        }

    async def dispatch(
        self,
        tenant: Tenant,
        reservation: Reservation,
        effects: set[EffectKind],
        transition: Transition = Transition.CREATED,
    ) -> FanoutReport:
        """Run each requested effect to completion, isolating failures.

        Effects run for the tenant that owns the reservation, which differs
        from the calling tenant after a cross-tenant lookup.

        Args:
            tenant: Restaurant that handled the request
            reservation: Committed reservation
            effects: Effects to run
            transition: Change that triggered them (picks templates and deal stage)

        Returns:
            FanoutReport with one outcome per requested effect
        """
        owner = await self._owner(tenant, reservation)
        report = FanoutReport(
            tenant_id=owner.id if owner else reservation.tenant_id,
            confirmation_code=reservation.confirmation_code,
        )
        if owner is None:
            for kind in EffectKind:
                if kind in effects:
                    report.outcomes.append(
                        EffectOutcome(
                            kind=kind,
                            status=EffectStatus.FAILED,
                            error=ErrorKind.NOT_FOUND,
                            detail="owning restaurant not found",
                        )
                    )
            report.reservation = reservation
            return report

        tenant = owner
        current = reservation

        for kind in EffectKind:
            if kind not in effects:
                continue
            try:
                updated = await self._handlers[kind](tenant, current, transition)
            except EffectSkipped as e:
                logger.debug(f"Skipped {kind.value} for {current.confirmation_code}: {e}")
                report.outcomes.append(
                    EffectOutcome(kind=kind, status=EffectStatus.SKIPPED, detail=str(e))
                )
                continue
            except Exception as e:
                logger.exception(
                    f"Side effect {kind.value} failed: tenant={tenant.id} "
                    f"reservation={current.confirmation_code} transition={transition.value}"
                )
                error = e.kind if isinstance(e, TableNowError) else ErrorKind.COLLABORATOR_FAILURE
                report.outcomes.append(
                    EffectOutcome(
                        kind=kind, status=EffectStatus.FAILED, error=error, detail=str(e)
                    )
                )
                continue

            if updated is not None:
                current = updated
            report.outcomes.append(EffectOutcome(kind=kind, status=EffectStatus.SUCCEEDED))

        report.reservation = current
        return report

    async def repair(self, tenant: Tenant, reservation: Reservation) -> FanoutReport | None:
        """Re-run the creation effects whose external id was never stored.

        Called when a booking is delivered again. Notifications are not
        repeated since there is no record of whether they went out.

        Returns:
            FanoutReport, or None when there is nothing to repair
        """
        if reservation.is_cancelled:
            return None

        effects = set()
        if not reservation.calendar_event_id:
            effects.add(EffectKind.CALENDAR_CREATE)
        if not reservation.crm_deal_id:
            effects.add(EffectKind.CRM_UPSERT_CONTACT_AND_DEAL)
        if not effects:
            return None

        logger.info(
            f"Repairing {sorted(e.value for e in effects)} for {reservation.confirmation_code}"
        )
        return await self.dispatch(tenant, reservation, effects, Transition.CREATED)

    async def _owner(self, tenant: Tenant, reservation: Reservation) -> Tenant | None:
        if reservation.tenant_id == tenant.id:
            return tenant
        try:
            owner = await self.store.get_tenant(reservation.tenant_id)
        except Exception:
            logger.exception(f"Could not load owning tenant {reservation.tenant_id}")
            return None
        if owner is None:
            logger.error(
                f"Reservation {reservation.confirmation_code} belongs to unknown "
                f"tenant {reservation.tenant_id}"
            )
        return owner

    async def _persist(
        self, reservation: Reservation, field: str, value: str
    ) -> Reservation:
        """Store an external id on the reservation, logging (not raising) on failure."""
        local = reservation.model_copy(update={field: value})
        try:
            stored = await self.store.update_reservation(reservation.id, {field: value})
        except Exception:
            logger.exception(
                f"Could not persist {field}={value} on reservation "
                f"{reservation.confirmation_code}"
            )
            return local
        return stored or local

    # Calendar

    def _require_calendar(self, tenant: Tenant) -> CalendarClient:
        if self.calendar is None or not tenant.has_calendar():
            msg = "tenant has no connected calendar"
            raise EffectSkipped(msg)
        return self.calendar

    def _event_for(self, tenant: Tenant, reservation: Reservation) -> CalendarEvent:
        start = slot_start(
            reservation.date,
            reservation.time,
            tenant.timezone or self.config.default_timezone,
        )
        return CalendarEvent(
            summary=f"Reservation: {reservation.guest_name} ({reservation.party_size} ppl)",
            description=(
                f"Source: {reservation.source}\n"
                f"Phone: {reservation.guest_phone or 'N/A'}\n"
                f"Email: {reservation.guest_email or 'N/A'}\n"
                f"Special Requests: {reservation.special_requests or 'None'}\n"
                f"Confirmation: {reservation.confirmation_code}"
            ),
            start=start,
            end=start + EVENT_LENGTH,
            attendees=[reservation.guest_email] if reservation.guest_email else [],
        )

    async def _calendar_create(
        self, tenant: Tenant, reservation: Reservation, transition: Transition
    ) -> Reservation:
        calendar = self._require_calendar(tenant)
        event_id = await calendar.create_event(
            tenant.calendar_credentials, self._event_for(tenant, reservation)
        )
        return await self._persist(reservation, "calendar_event_id", event_id)

    async def _calendar_update(
        self, tenant: Tenant, reservation: Reservation, transition: Transition
    ) -> None:
        calendar = self._require_calendar(tenant)
        if not reservation.calendar_event_id:
            msg = "reservation has no calendar event"
            raise EffectSkipped(msg)

        event = self._event_for(tenant, reservation)
        await calendar.update_event(
            tenant.calendar_credentials,
            reservation.calendar_event_id,
            CalendarEvent(summary=event.summary, start=event.start, end=event.end),
        )

    async def _calendar_delete(
        self, tenant: Tenant, reservation: Reservation, transition: Transition
    ) -> None:
        calendar = self._require_calendar(tenant)
        if not reservation.calendar_event_id:
            msg = "reservation has no calendar event"
            raise EffectSkipped(msg)
        await calendar.delete_event(tenant.calendar_credentials, reservation.calendar_event_id)

    # CRM

    async def _crm_upsert(
        self, tenant: Tenant, reservation: Reservation, transition: Transition
    ) -> Reservation:
        if self.crm is None:
            msg = "no CRM configured"
            raise EffectSkipped(msg)
        if not reservation.guest_email:
            msg = "guest has no email"
            raise EffectSkipped(msg)

        guest = reservation.guest
        contact_id = await self.crm.upsert_contact(
            ContactInfo(
                email=guest.email,
                first_name=guest.first_name,
                last_name=guest.last_name,
                phone=guest.phone,
                company=tenant.name,
            )
        )
        deal_id = await self.crm.create_deal(
            DealInfo(
                name=f"{tenant.name} - {reservation.guest_name} - {reservation.date}",
                contact_email=reservation.guest_email,
                tenant_id=tenant.id,
                reservation_date=f"{reservation.date} {reservation.time}",
                party_size=reservation.party_size,
            ),
            contact_id,
        )
        return await self._persist(reservation, "crm_deal_id", deal_id)

    async def _crm_stage(
        self, tenant: Tenant, reservation: Reservation, transition: Transition
    ) -> None:
        if self.crm is None:
            msg = "no CRM configured"
            raise EffectSkipped(msg)
        if not reservation.crm_deal_id:
            msg = "reservation has no CRM deal"
            raise EffectSkipped(msg)

        stage = DealStage.CANCELLED if reservation.is_cancelled else DealStage.CONFIRMED
        await self.crm.update_deal_stage(reservation.crm_deal_id, stage)

    # Notifications

    def _notification_data(self, tenant: Tenant, reservation: Reservation) -> dict:
        return {
            **reservation.model_dump(mode="json"),
            "restaurant_name": tenant.name,
            "tenant_email": tenant.email,
        }

    async def _notify_guest(
        self, tenant: Tenant, reservation: Reservation, transition: Transition
    ) -> None:
        if self.notifier is None:
            msg = "no notifier configured"
            raise EffectSkipped(msg)
        if not reservation.guest_email:
            msg = "guest has no email"
            raise EffectSkipped(msg)

        await self.notifier.notify_guest(
            GUEST_TEMPLATES[transition], self._notification_data(tenant, reservation)
        )

    async def _notify_tenant(
        self, tenant: Tenant, reservation: Reservation, transition: Transition
    ) -> None:
        if self.notifier is None:
            msg = "no notifier configured"
            raise EffectSkipped(msg)
        if not tenant.email:
            msg = "restaurant has no notification email"
            raise EffectSkipped(msg)

        source = reservation.source.title()
        subjects = {
            Transition.CREATED: f"New {source} Booking",
            Transition.UPDATED: "Booking Updated",
            Transition.CANCELLED: "Booking Cancelled",
        }
        data = self._notification_data(tenant, reservation)
        data["message"] = (
            f"{reservation.guest_name}, {reservation.party_size} guests on "
            f"{reservation.date} at {reservation.time}. "
            f"Special requests: {reservation.special_requests or 'None'}. "
            f"Confirmation: {reservation.confirmation_code}. Source: {source}."
        )
        await self.notifier.notify_tenant(subjects[transition], data)

    # Calls

    async def record_call_activity(
        self, tenant: Tenant, call_log: CallLog, contact_email: str | None
    ) -> bool:
        """Log an ended call on the caller's CRM contact.

        Returns:
            True if the activity was logged
        """
        if self.crm is None or not contact_email:
            return False

        try:
            await self.crm.log_activity(
                contact_email,
                "AI Phone Call",
                f"Call duration: {call_log.duration or 0}s\n\n"
                f"Transcript:\n{call_log.transcript or 'No transcript available'}",
            )
        except Exception:
            logger.exception(
                f"CRM call activity failed: tenant={tenant.id} call={call_log.call_id}"
            )
            return False
        return True
