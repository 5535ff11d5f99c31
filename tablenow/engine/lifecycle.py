"""Reservation lifecycle: create, update and cancel bookings, and log calls.

Every operation returns a structured ``LifecycleResult`` instead of raising,
so a failing booking can be reported back to the guest while the rest of a
tool-call batch carries on. External systems are never called from here; the
dispatcher hands committed reservations to the fan-out coordinator.
"""

import logging
import secrets
import string
import time as clock
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import ValidationError

from tablenow.config import get_config
from tablenow.engine.timeutils import normalize_time
from tablenow.errors import DuplicateConfirmationCode, ErrorKind
from tablenow.models import (
    CallLog,
    CallStatus,
    GuestDetails,
    LifecycleResult,
    Reservation,
    ReservationSource,
    ReservationStatus,
    Tenant,
)
from tablenow.services.store import ReservationStore

logger = logging.getLogger(__name__)

BASE36 = string.digits + string.ascii_uppercase
CODE_ATTEMPTS = 3

# Fields a guest may change through an update command
GUEST_EDITABLE_FIELDS = frozenset(
    {
        "guest_name",
        "guest_email",
        "guest_phone",
        "date",
        "time",
        "party_size",
        "special_requests",
    }
)


class LookupPolicy(str, Enum):
    """How a confirmation code is located.

    SCOPED_ONLY searches the resolved tenant only. SCOPED_THEN_GLOBAL retries
    across all tenants when the scoped lookup misses, which covers events whose
    tenant resolution was ambiguous but can touch another tenant's booking.
    """

    SCOPED_ONLY = "scoped_only"
    SCOPED_THEN_GLOBAL = "scoped_then_global"


def generate_confirmation_code(prefix: str) -> str:
    """Build ``<prefix>-<epoch millis>-<6 uppercase base36 chars>``."""
    millis = int(clock.time() * 1000)
    suffix = "".join(secrets.choice(BASE36) for _ in range(6))
    return f"{prefix}-{millis}-{suffix}"


class ReservationLifecycle:
    """Owns reservation state transitions against the store."""

    def __init__(self, store: ReservationStore) -> None:
        self.config = get_config()
        self.store = store

    async def create(
        self,
        tenant: Tenant,
        guest: GuestDetails,
        date: str,
        time: str,
        party_size: int,
        special_requests: str | None = None,
        *,
        source: str = ReservationSource.PHONE.value,
        confirmation_code: str | None = None,
    ) -> LifecycleResult:
        """Create a confirmed reservation.

        Args:
            tenant: Owning restaurant
            guest: Guest contact details
            date: Reservation date
            time: Reservation time, normalized to 24-hour when parseable
            party_size: Number of guests
            special_requests: Optional notes
            source: Booking channel
            confirmation_code: Code issued by an external channel, if any

        Returns:
            LifecycleResult carrying the stored reservation on success
        """
        if not party_size or party_size < 1:
            return LifecycleResult.failure(
                ErrorKind.VALIDATION_FAILURE, "Party size must be at least one guest."
            )

        if tenant.max_party_size and party_size > tenant.max_party_size:
            logger.info(
                f"Refusing party of {party_size} for tenant {tenant.id} "
                f"(max {tenant.max_party_size})"
            )
            return LifecycleResult.failure(
                ErrorKind.VALIDATION_FAILURE,
                f"I'm sorry, we can only take parties of up to {tenant.max_party_size} "
                "guests. Please contact the restaurant directly for larger groups.",
            )

        try:
            reservation = Reservation(
                id=str(uuid.uuid4()),
                tenant_id=tenant.id,
                confirmation_code=confirmation_code
                or generate_confirmation_code(self.config.confirmation_prefix),
                guest_name=guest.name,
                guest_email=guest.email,
                guest_phone=guest.phone,
                date=date,
                time=normalize_time(time),
                party_size=party_size,
                special_requests=special_requests,
                status=ReservationStatus.CONFIRMED,
                source=source,
            )
        except ValidationError as e:
            logger.warning(f"Invalid booking for tenant {tenant.id}: {e}")
            return LifecycleResult.failure(
                ErrorKind.VALIDATION_FAILURE,
                "I need a date, a time and a party size to make the booking.",
            )

        try:
            stored = await self._insert(reservation, regenerate=confirmation_code is None)
        except DuplicateConfirmationCode:
            logger.warning(f"Confirmation code {reservation.confirmation_code} already exists")
            return LifecycleResult.failure(
                ErrorKind.VALIDATION_FAILURE,
                "A booking with this confirmation number already exists.",
            )
        except Exception:
            logger.exception(f"Failed to store reservation for tenant {tenant.id}")
            return LifecycleResult.failure(
                ErrorKind.COLLABORATOR_FAILURE,
                "Failed to create booking. Please try again.",
            )

        email_note = " A confirmation email has been sent to you." if guest.email else ""
        return LifecycleResult(
            success=True,
            reservation=stored,
            message=(
                f"Perfect! Your reservation is confirmed for {party_size} guests on "
                f"{date} at {time}. Your confirmation number is "
                f"{stored.confirmation_code}.{email_note}"
            ),
        )

    async def _insert(self, reservation: Reservation, regenerate: bool) -> Reservation:
        """Insert, drawing a new generated code if the random suffix collides."""
        for _ in range(CODE_ATTEMPTS - 1):
            try:
                return await self.store.insert_reservation(reservation)
            except DuplicateConfirmationCode:
                if not regenerate:
                    raise
                logger.info(f"Confirmation code {reservation.confirmation_code} taken, retrying")
                reservation = reservation.model_copy(
                    update={
                        "confirmation_code": generate_confirmation_code(
                            self.config.confirmation_prefix
                        )
                    }
                )
        return await self.store.insert_reservation(reservation)

    async def _locate(
        self, tenant: Tenant, confirmation_code: str, policy: LookupPolicy
    ) -> Reservation | None:
        reservation = await self.store.find_reservation(confirmation_code, tenant.id)
        if reservation is not None or policy == LookupPolicy.SCOPED_ONLY:
            return reservation

        reservation = await self.store.find_reservation(confirmation_code)
        if reservation is not None and reservation.tenant_id != tenant.id:
            logger.warning(
                f"Reservation {confirmation_code} found under tenant "
                f"{reservation.tenant_id} while handling tenant {tenant.id}"
            )
        return reservation

    async def update(
        self,
        tenant: Tenant,
        confirmation_code: str,
        fields: dict[str, Any],
        *,
        policy: LookupPolicy = LookupPolicy.SCOPED_THEN_GLOBAL,
    ) -> LifecycleResult:
        """Apply guest-editable changes to a confirmed reservation.

        The status never changes here, and cancelled reservations are not
        edited.
        """
        changes = {
            name: value
            for name, value in fields.items()
            if name in GUEST_EDITABLE_FIELDS and value is not None
        }
        if "time" in changes:
            changes["time"] = normalize_time(changes["time"])
        if "party_size" in changes and changes["party_size"] <= 0:
            return LifecycleResult.failure(
                ErrorKind.VALIDATION_FAILURE, "Party size must be at least one guest."
            )
        if not changes:
            return LifecycleResult.failure(
                ErrorKind.VALIDATION_FAILURE, "Nothing to update on this booking."
            )

        try:
            reservation = await self._locate(tenant, confirmation_code, policy)
            if reservation is None:
                return LifecycleResult.failure(
                    ErrorKind.NOT_FOUND, "Booking not found or update failed."
                )
            if reservation.is_cancelled:
                return LifecycleResult.failure(
                    ErrorKind.NOT_FOUND, "That booking has been cancelled and can't be changed."
                )

            changed = {
                name for name, value in changes.items() if getattr(reservation, name) != value
            }
            updated = await self.store.update_reservation(reservation.id, changes)
        except Exception:
            logger.exception(f"Failed to update reservation {confirmation_code}")
            return LifecycleResult.failure(
                ErrorKind.COLLABORATOR_FAILURE, "Booking not found or update failed."
            )

        if updated is None:
            return LifecycleResult.failure(
                ErrorKind.NOT_FOUND, "Booking not found or update failed."
            )

        logger.info(f"Updated reservation {confirmation_code}: {sorted(changed)}")
        return LifecycleResult(
            success=True,
            reservation=updated,
            changed_fields=changed,
            message="Your booking has been updated successfully.",
        )

    async def cancel(
        self,
        tenant: Tenant,
        confirmation_code: str,
        *,
        policy: LookupPolicy = LookupPolicy.SCOPED_THEN_GLOBAL,
    ) -> LifecycleResult:
        """Mark a reservation cancelled. Cancelled is terminal."""
        try:
            reservation = await self._locate(tenant, confirmation_code, policy)
            if reservation is None:
                return LifecycleResult.failure(ErrorKind.NOT_FOUND, "Booking not found.")
            if reservation.is_cancelled:
                logger.info(f"Reservation {confirmation_code} already cancelled")
                return LifecycleResult.failure(
                    ErrorKind.NOT_FOUND, "That booking has already been cancelled."
                )

            updated = await self.store.update_reservation(
                reservation.id, {"status": ReservationStatus.CANCELLED}
            )
        except Exception:
            logger.exception(f"Failed to cancel reservation {confirmation_code}")
            return LifecycleResult.failure(
                ErrorKind.COLLABORATOR_FAILURE, "Failed to cancel booking."
            )

        logger.info(f"Cancelled reservation {confirmation_code}")
        return LifecycleResult(
            success=True,
            reservation=updated,
            changed_fields={"status"},
            message="Your booking has been cancelled successfully.",
        )

    async def find_for_channel(
        self,
        tenant: Tenant,
        confirmation_code: str | None = None,
        guest_email: str | None = None,
    ) -> Reservation | None:
        """Locate the reservation an external channel refers to.

        Prefers the confirmation code; otherwise takes the guest's most recent
        booking with this tenant.
        """
        if confirmation_code:
            return await self.store.find_reservation(confirmation_code, tenant.id)
        if guest_email:
            return await self.store.find_latest_reservation_by_email(tenant.id, guest_email)
        return None

    # Tool results

    async def recall_tool_result(
        self, call_id: str, tool_call_id: str
    ) -> dict[str, Any] | None:
        """Return the result already given for a tool call, if any."""
        return await self.store.get_tool_result(call_id, tool_call_id)

    async def remember_tool_result(
        self,
        tenant: Tenant,
        call_id: str,
        tool_call_id: str,
        function_name: str,
        result: dict[str, Any],
    ) -> None:
        """Record a tool call result so a redelivery returns it unchanged.

        The first result recorded for a ``(call_id, tool_call_id)`` pair wins.
        """
        try:
            await self.store.save_tool_result(
                call_id, tool_call_id, tenant.id, function_name, result
            )
        except Exception:
            logger.exception(f"Failed to record result of tool call {tool_call_id}")

    # Call logs

    async def record_call_start(
        self, tenant: Tenant, call_id: str | None, caller_number: str | None = None
    ) -> CallLog | None:
        """Open a call log. A repeated start never reopens a completed call."""
        if not call_id:
            logger.warning("Call started without a call id")
            return None

        try:
            existing = await self.store.get_call_log(call_id)
            if existing is not None and existing.status == CallStatus.COMPLETED:
                logger.info(f"Call {call_id} already completed, ignoring start")
                return existing

            call_log = CallLog(
                call_id=call_id,
                tenant_id=tenant.id,
                caller_number=caller_number or (existing.caller_number if existing else None),
                status=CallStatus.IN_PROGRESS,
                started_at=existing.started_at if existing else datetime.now(),
            )
            return await self.store.upsert_call_log(call_log)
        except Exception:
            logger.exception(f"Failed to record start of call {call_id}")
            return None

    async def record_call_end(
        self,
        call_id: str | None,
        duration: float | None = None,
        transcript: str | None = None,
        recording_url: str | None = None,
        *,
        tenant: Tenant | None = None,
        caller_number: str | None = None,
        started_at: datetime | None = None,
    ) -> CallLog | None:
        """Complete a call log, synthesizing it when the start was never seen.

        Args:
            call_id: Voice platform call id
            duration: Call length in seconds
            transcript: Call transcript
            recording_url: Recording reference
            tenant: Resolved tenant, needed only to synthesize a missing row
            caller_number: Caller number for a synthesized row
            started_at: Start time for a synthesized row

        Returns:
            The stored call log, or None when it could not be recorded
        """
        if not call_id:
            logger.warning("Call ended without a call id")
            return None

        now = datetime.now()
        try:
            existing = await self.store.get_call_log(call_id)
            if existing is not None:
                call_log = existing.model_copy(
                    update={
                        "status": CallStatus.COMPLETED,
                        "duration": duration if duration is not None else existing.duration,
                        "transcript": transcript or existing.transcript,
                        "recording_url": recording_url or existing.recording_url,
                        "caller_number": existing.caller_number or caller_number,
                        "ended_at": now,
                    }
                )
                return await self.store.upsert_call_log(call_log)

            if tenant is None:
                logger.error(f"No call log and no tenant for ended call {call_id}")
                return None

            call_log = CallLog(
                call_id=call_id,
                tenant_id=tenant.id,
                caller_number=caller_number,
                status=CallStatus.COMPLETED,
                duration=duration,
                transcript=transcript,
                recording_url=recording_url,
                started_at=started_at or now - timedelta(seconds=duration or 0),
                ended_at=now,
            )
            logger.info(f"Synthesized call log for {call_id} without a start event")
            return await self.store.upsert_call_log(call_log)
        except Exception:
            logger.exception(f"Failed to record end of call {call_id}")
            return None
