"""HubSpot CRM client for guest contacts and reservation deals."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from tablenow.config import get_config
from tablenow.errors import CRMError

logger = logging.getLogger(__name__)

HUBSPOT_API = "https://api.hubapi.com"

# HubSpot-defined association types
DEAL_TO_CONTACT_ASSOCIATION = 3
NOTE_TO_CONTACT_ASSOCIATION = 202


class DealStage(str, Enum):
    """Reservation states mirrored onto the HubSpot deal pipeline."""

    CONFIRMED = "appointmentscheduled"
    CANCELLED = "closedlost"
    COMPLETED = "closedwon"


class ContactInfo(BaseModel):
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: str | None = None
    company: str | None = None


class DealInfo(BaseModel):
    name: str
    contact_email: str
    tenant_id: str
    reservation_date: str
    party_size: int
    amount: float | None = None


class CRMClient(Protocol):
    """CRM operations used by the fan-out coordinator."""

    async def upsert_contact(self, contact: ContactInfo) -> str: ...

    async def create_deal(self, deal: DealInfo, contact_id: str | None = None) -> str: ...

    async def update_deal_stage(self, deal_id: str, stage: DealStage) -> None: ...

    async def log_activity(self, contact_email: str, subject: str, body: str) -> None: ...


class HubSpotService:
    """HubSpot CRM v3 REST client authenticated with a private app token."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        """Initialize the HubSpot service."""
        self.config = get_config()
        self.client = client or httpx.AsyncClient(timeout=10.0)
        if not self.config.has_hubspot_config():
            logger.warning("HubSpot not configured - CRM calls will fail")

    def is_configured(self) -> bool:
        return self.config.has_hubspot_config()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self.is_configured():
            msg = "HubSpot is not configured"
            raise CRMError(msg)

        try:
            response = await self.client.request(
                method,
                f"{HUBSPOT_API}{path}",
                headers={"Authorization": f"Bearer {self.config.hubspot_access_token}"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            msg = f"HubSpot {method} {path} failed: {e}"
            raise CRMError(msg) from e
        return response

    async def _find_contact_id(self, email: str) -> str | None:
        response = await self._request(
            "POST",
            "/crm/v3/objects/contacts/search",
            json={
                "filterGroups": [
                    {"filters": [{"propertyName": "email", "operator": "EQ", "value": email}]}
                ],
                "properties": ["email"],
                "limit": 1,
            },
        )
        if response.status_code >= 400:
            msg = f"HubSpot contact search returned {response.status_code}"
            raise CRMError(msg)
        results = response.json().get("results", [])
        return results[0]["id"] if results else None

    async def upsert_contact(self, contact: ContactInfo) -> str:
        """Create the contact, or update it when the email already exists.

        Returns:
            HubSpot contact id
        """
        properties = {
            "email": contact.email,
            "firstname": contact.first_name,
            "lastname": contact.last_name,
            "phone": contact.phone or "",
            "company": contact.company or "",
            "hs_lead_status": "NEW",
        }

        response = await self._request(
            "POST", "/crm/v3/objects/contacts", json={"properties": properties}
        )
        if response.status_code < 400:
            return response.json()["id"]

        if response.status_code != 409:
            msg = f"HubSpot contact create returned {response.status_code}: {response.text}"
            raise CRMError(msg)

        # Conflict: the contact exists, update it in place
        contact_id = await self._find_contact_id(contact.email)
        if not contact_id:
            msg = f"HubSpot reported a conflict but no contact for {contact.email}"
            raise CRMError(msg)

        response = await self._request(
            "PATCH",
            f"/crm/v3/objects/contacts/{contact_id}",
            json={"properties": properties},
        )
        if response.status_code >= 400:
            msg = f"HubSpot contact update returned {response.status_code}"
            raise CRMError(msg)
        return contact_id

    async def create_deal(self, deal: DealInfo, contact_id: str | None = None) -> str:
        """Create a deal for a reservation and associate it with the contact.

        Returns:
            HubSpot deal id
        """
        try:
            close_date = datetime.fromisoformat(deal.reservation_date)
            close_ms = str(int(close_date.timestamp() * 1000))
        except ValueError:
            close_ms = None

        properties = {
            "dealname": deal.name,
            "amount": str(deal.amount or 0),
            "dealstage": DealStage.CONFIRMED.value,
            "pipeline": "default",
            "hs_priority": "high" if deal.party_size >= 8 else "medium",
        }
        if close_ms:
            properties["closedate"] = close_ms

        body: dict[str, Any] = {"properties": properties}
        if contact_id:
            body["associations"] = [
                {
                    "to": {"id": contact_id},
                    "types": [
                        {
                            "associationCategory": "HUBSPOT_DEFINED",
                            "associationTypeId": DEAL_TO_CONTACT_ASSOCIATION,
                        }
                    ],
                }
            ]

        response = await self._request("POST", "/crm/v3/objects/deals", json=body)
        if response.status_code >= 400:
            msg = f"HubSpot deal create returned {response.status_code}: {response.text}"
            raise CRMError(msg)

        deal_id = response.json()["id"]
        logger.info(f"Created HubSpot deal {deal_id} for tenant {deal.tenant_id}")
        return deal_id

    async def update_deal_stage(self, deal_id: str, stage: DealStage) -> None:
        response = await self._request(
            "PATCH",
            f"/crm/v3/objects/deals/{deal_id}",
            json={"properties": {"dealstage": stage.value}},
        )
        if response.status_code >= 400:
            msg = f"HubSpot deal update returned {response.status_code}: {response.text}"
            raise CRMError(msg)
        logger.info(f"HubSpot deal {deal_id} moved to {stage.value}")

    async def log_activity(self, contact_email: str, subject: str, body: str) -> None:
        """Attach a note to the contact's timeline."""
        contact_id = await self._find_contact_id(contact_email)
        if not contact_id:
            contact_id = await self.upsert_contact(ContactInfo(email=contact_email))

        response = await self._request(
            "POST",
            "/crm/v3/objects/notes",
            json={
                "properties": {
                    "hs_timestamp": datetime.now().astimezone().isoformat(),
                    "hs_note_body": f"{subject}\n\n{body}",
                },
                "associations": [
                    {
                        "to": {"id": contact_id},
                        "types": [
                            {
                                "associationCategory": "HUBSPOT_DEFINED",
                                "associationTypeId": NOTE_TO_CONTACT_ASSOCIATION,
                            }
                        ],
                    }
                ],
            },
        )
        if response.status_code >= 400:
            msg = f"HubSpot note create returned {response.status_code}"
            raise CRMError(msg)
