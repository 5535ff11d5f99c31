"""BCC email channel.

Restaurants BCC their widget notification emails (Zenchef, SevenRooms, ...)
to ``bcc+r-<tenant id>@...``. Each email is parsed with loose regexes,
logged, and reconciled into the reservation store.
"""

import email
import logging
import re
import time as clock
from email import policy

from tablenow.engine.fanout import EffectKind, SideEffectCoordinator, Transition
from tablenow.engine.lifecycle import LookupPolicy, ReservationLifecycle
from tablenow.engine.tenant_resolver import TenantResolver
from tablenow.errors import InvalidEmailAddress, TenantNotFound
from tablenow.models import (
    EmailAck,
    EmailBookingType,
    GuestDetails,
    InboundEmail,
    InboundEmailLog,
    ParsedBookingEmail,
    Tenant,
)
from tablenow.services.store import ReservationStore

logger = logging.getLogger(__name__)

TENANT_ADDRESS = re.compile(r"r-([a-f0-9-]+)@")

EMAIL_PATTERN = re.compile(r"([a-zA-Z0-9._-]+@[a-zA-Z0-9._-]+\.[a-zA-Z0-9_-]+)")
PHONE_PATTERN = re.compile(r"(\+?\d{1,3}[-.\s]?\(?\d{1,4}\)?[-.\s]?\d{1,4}[-.\s]?\d{1,9})")
DATE_PATTERN = re.compile(r"(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})")
TIME_PATTERN = re.compile(r"(\d{1,2}:\d{2}\s?(?:AM|PM|am|pm)?)")
PARTY_PATTERN = re.compile(r"(\d+)\s*(?:guest|person|people|pax)", re.IGNORECASE)
CODE_PATTERN = re.compile(
    r"(?i:confirmation|booking|reservation)\s*(?i:number|no\.?|code|ref|reference|id)?"
    r"\s*[:#]\s*([A-Z0-9][A-Z0-9-]*\d[A-Z0-9-]*)"
)
HTML_TAG = re.compile(r"<[^>]+>")

EMAIL_EFFECTS = {
    EmailBookingType.NEW: {EffectKind.CALENDAR_CREATE, EffectKind.CRM_UPSERT_CONTACT_AND_DEAL},
    EmailBookingType.MODIFICATION: {
        EffectKind.CALENDAR_UPDATE,
        EffectKind.CRM_UPDATE_DEAL_STAGE,
    },
    EmailBookingType.CANCELLATION: {
        EffectKind.CALENDAR_DELETE,
        EffectKind.CRM_UPDATE_DEAL_STAGE,
    },
}


def extract_tenant_id(address: str | None) -> str:
    """Pull the tenant id out of a ``...r-<tenant id>@...`` address.

    Raises:
        InvalidEmailAddress: If the address does not carry a tenant id
    """
    match = TENANT_ADDRESS.search(address or "")
    if not match:
        raise InvalidEmailAddress(f"Invalid BCC email format: {address!r}")
    return match.group(1)


def _first(pattern: re.Pattern, text: str) -> str | None:
    match = pattern.search(text)
    return match.group(1).strip() if match else None


def _message_parts(message: InboundEmail) -> tuple[str, str, str]:
    """Return (subject, sender, body text) from the raw message or the fields."""
    if message.raw:
        parsed = email.message_from_string(message.raw, policy=policy.default)
        if parsed.get("From") or parsed.get("Subject"):
            body_part = parsed.get_body(preferencelist=("plain", "html"))
            body = body_part.get_content() if body_part is not None else ""
            if body_part is not None and body_part.get_content_subtype() == "html":
                body = HTML_TAG.sub(" ", body)
            return (
                str(parsed.get("Subject") or message.subject),
                str(parsed.get("From") or message.from_ or ""),
                body or message.body,
            )

    body = message.body
    if "<html" in body.lower() or "<body" in body.lower():
        body = HTML_TAG.sub(" ", body)
    return message.subject, message.from_ or "", body


def parse_booking_email(message: InboundEmail) -> ParsedBookingEmail:
    """Extract booking details from a widget notification email.

    The type comes from subject and body keywords, the source from the sender,
    and guest details from the first regex match in the body.
    """
    subject, sender, body = _message_parts(message)

    if "cancel" in subject.lower() or "cancelled" in body.lower():
        booking_type = EmailBookingType.CANCELLATION
    elif "modif" in subject.lower() or "update" in subject.lower():
        booking_type = EmailBookingType.MODIFICATION
    else:
        booking_type = EmailBookingType.NEW

    source = "unknown"
    if "zenchef" in sender.lower():
        source = "zenchef"
    elif "sevenrooms" in sender.lower():
        source = "sevenrooms"

    guest_name = sender.split("<")[0].strip().strip('"') if "<" in sender else ""

    party = _first(PARTY_PATTERN, body)
    return ParsedBookingEmail(
        type=booking_type,
        source=source,
        guest_name=guest_name or None,
        email=_first(EMAIL_PATTERN, body),
        phone=_first(PHONE_PATTERN, body),
        date=_first(DATE_PATTERN, body),
        time=_first(TIME_PATTERN, body),
        party_size=int(party) if party and int(party) > 0 else None,
        confirmation_code=_first(CODE_PATTERN, body),
    )


class EmailChannel:
    """Reconciles parsed booking emails into the reservation store."""

    def __init__(
        self,
        resolver: TenantResolver,
        lifecycle: ReservationLifecycle,
        fanout: SideEffectCoordinator,
        store: ReservationStore,
    ) -> None:
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.fanout = fanout
        self.store = store

    async def handle(self, message: InboundEmail) -> EmailAck:
        """Process one inbound BCC email.

        Args:
            message: Email as delivered by the mail provider

        Returns:
            EmailAck describing what was done

        Raises:
            InvalidEmailAddress: If the recipient carries no tenant id
            TenantNotFound: If the tenant id is unknown
        """
        tenant_id = extract_tenant_id(message.to)
        logger.info(f"BCC email for tenant {tenant_id} from {message.from_}: {message.subject}")

        tenant = await self.resolver.get(tenant_id)
        if tenant is None:
            raise TenantNotFound(tenant_id)

        parsed = parse_booking_email(message)
        await self.store.record_inbound_email(
            InboundEmailLog(
                tenant_id=tenant.id,
                from_email=message.from_,
                subject=message.subject,
                parsed=parsed,
                raw_content=message.raw or message.body,
            )
        )

        if not parsed.email:
            logger.info(f"No guest email in BCC message for tenant {tenant.id}, nothing to do")
            return EmailAck(tenant_id=tenant.id, action="skipped", parsed=parsed)

        if parsed.type == EmailBookingType.NEW:
            return await self._create(tenant, parsed)
        return await self._change(tenant, parsed)

    async def _create(self, tenant: Tenant, parsed: ParsedBookingEmail) -> EmailAck:
        code = parsed.confirmation_code
        existing = await self.store.find_reservation(code) if code else None
        if existing is not None:
            logger.info(f"Booking {code} already recorded, repairing missing effects only")
            await self.fanout.repair(tenant, existing)
            return EmailAck(
                tenant_id=tenant.id, action="duplicate", confirmation_code=code, parsed=parsed
            )

        result = await self.lifecycle.create(
            tenant,
            GuestDetails(name=parsed.guest_name or "Guest", email=parsed.email, phone=parsed.phone),
            parsed.date,
            parsed.time,
            parsed.party_size,
            source=parsed.source,
            confirmation_code=code or f"EXT-{int(clock.time() * 1000)}",
        )
        if not result.success:
            logger.warning(f"BCC booking rejected for tenant {tenant.id}: {result.message}")
            return EmailAck(tenant_id=tenant.id, action="rejected", parsed=parsed)

        await self.fanout.dispatch(
            tenant, result.reservation, EMAIL_EFFECTS[parsed.type], Transition.CREATED
        )
        return EmailAck(
            tenant_id=tenant.id,
            action="created",
            confirmation_code=result.confirmation_code,
            parsed=parsed,
        )

    async def _change(self, tenant: Tenant, parsed: ParsedBookingEmail) -> EmailAck:
        reservation = await self.lifecycle.find_for_channel(
            tenant, parsed.confirmation_code, parsed.email
        )
        if reservation is None:
            logger.info(f"No booking matches {parsed.type.value} email for tenant {tenant.id}")
            return EmailAck(tenant_id=tenant.id, action="not_found", parsed=parsed)

        code = reservation.confirmation_code
        if parsed.type == EmailBookingType.CANCELLATION:
            result = await self.lifecycle.cancel(tenant, code, policy=LookupPolicy.SCOPED_ONLY)
            action, transition = "cancelled", Transition.CANCELLED
        else:
            changes = {
                "date": parsed.date,
                "time": parsed.time,
                "party_size": parsed.party_size,
            }
            result = await self.lifecycle.update(
                tenant, code, changes, policy=LookupPolicy.SCOPED_ONLY
            )
            action, transition = "updated", Transition.UPDATED

        if not result.success:
            logger.info(f"BCC {parsed.type.value} not applied to {code}: {result.message}")
            return EmailAck(
                tenant_id=tenant.id, action="skipped", confirmation_code=code, parsed=parsed
            )

        await self.fanout.dispatch(
            tenant, result.reservation, EMAIL_EFFECTS[parsed.type], transition
        )
        return EmailAck(tenant_id=tenant.id, action=action, confirmation_code=code, parsed=parsed)
