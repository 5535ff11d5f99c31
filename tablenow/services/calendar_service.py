"""Google Calendar client used for availability checks and booking sync."""

import logging
import time
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from tablenow.config import get_config
from tablenow.errors import CalendarError, TransportDegraded

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"


class BusyInterval(BaseModel):
    """A blocked period reported by the calendar's free/busy query."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


class CalendarEvent(BaseModel):
    """Event fields written to the calendar. Unset fields are left untouched on patch."""

    summary: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    attendees: list[str] = Field(default_factory=list)


class CalendarClient(Protocol):
    """Calendar operations, parameterized by a per-tenant credential blob."""

    async def create_event(self, credentials: dict, event: CalendarEvent) -> str: ...

    async def update_event(
        self, credentials: dict, event_id: str, event: CalendarEvent
    ) -> None: ...

    async def delete_event(self, credentials: dict, event_id: str) -> None: ...

    async def query_busy(
        self, credentials: dict, start: datetime, end: datetime
    ) -> list[BusyInterval]: ...


def _event_time(value: datetime) -> dict[str, str]:
    return {"dateTime": value.isoformat(), "timeZone": str(value.tzinfo or "UTC")}


class GoogleCalendarService:
    """Google Calendar v3 REST client on the tenant's primary calendar.

    The credential blob is the token dictionary stored when the tenant
    connected their calendar (``access_token``, ``refresh_token``,
    ``expiry_date`` in epoch milliseconds). Expired access tokens are refreshed
    when a refresh token and OAuth client credentials are available.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        calendar_id: str = "primary",
    ) -> None:
        """Initialize the calendar service.

        Args:
            client: Shared HTTP client (created if not provided)
            calendar_id: Calendar to read and write
        """
        self.config = get_config()
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self.calendar_id = calendar_id

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _access_token(self, credentials: dict) -> str:
        """Return a usable access token, refreshing it if it has expired."""
        access_token = credentials.get("access_token")
        expiry_ms = credentials.get("expiry_date")
        expired = expiry_ms is not None and expiry_ms <= time.time() * 1000

        if access_token and not expired:
            return access_token

        refresh_token = credentials.get("refresh_token")
        if not refresh_token or not self.config.has_google_config():
            msg = "Calendar credentials expired and cannot be refreshed"
            raise CalendarError(msg)

        logger.info("Refreshing Google Calendar access token")
        response = await self.client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.config.google_client_id,
                "client_secret": self.config.google_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code != 200:
            msg = f"Token refresh failed: {response.status_code} {response.text}"
            raise CalendarError(msg)

        new_token = response.json().get("access_token")
        if not new_token:
            msg = "No access token in refresh response"
            raise CalendarError(msg)
        return new_token

    async def _request(
        self, method: str, path: str, credentials: dict, **kwargs: Any
    ) -> httpx.Response:
        token = await self._access_token(credentials)
        try:
            response = await self.client.request(
                method,
                f"{GOOGLE_CALENDAR_API}{path}",
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            msg = f"Google Calendar {method} {path} failed: {e}"
            raise CalendarError(msg) from e

        if response.status_code >= 400:
            msg = f"Google Calendar {method} {path} returned {response.status_code}: {response.text}"
            raise CalendarError(msg)
        return response

    async def create_event(self, credentials: dict, event: CalendarEvent) -> str:
        """Create an event and return its id."""
        body: dict[str, Any] = {
            "summary": event.summary,
            "description": event.description,
            "attendees": [{"email": email} for email in event.attendees],
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 60},
                ],
            },
        }
        if event.start:
            body["start"] = _event_time(event.start)
        if event.end:
            body["end"] = _event_time(event.end)

        response = await self._request(
            "POST", f"/calendars/{self.calendar_id}/events", credentials, json=body
        )
        event_id = response.json()["id"]
        logger.info(f"Created calendar event {event_id}")
        return event_id

    async def update_event(
        self, credentials: dict, event_id: str, event: CalendarEvent
    ) -> None:
        """Patch the fields of ``event`` that are set."""
        body: dict[str, Any] = {}
        if event.summary:
            body["summary"] = event.summary
        if event.description:
            body["description"] = event.description
        if event.start:
            body["start"] = _event_time(event.start)
        if event.end:
            body["end"] = _event_time(event.end)

        await self._request(
            "PATCH",
            f"/calendars/{self.calendar_id}/events/{event_id}",
            credentials,
            json=body,
        )
        logger.info(f"Updated calendar event {event_id}")

    async def delete_event(self, credentials: dict, event_id: str) -> None:
        await self._request(
            "DELETE", f"/calendars/{self.calendar_id}/events/{event_id}", credentials
        )
        logger.info(f"Deleted calendar event {event_id}")

    async def query_busy(
        self, credentials: dict, start: datetime, end: datetime
    ) -> list[BusyInterval]:
        """Return the busy intervals between ``start`` and ``end``.

        Raises:
            TransportDegraded: If the calendar cannot be queried
        """
        try:
            response = await self._request(
                "POST",
                "/freeBusy",
                credentials,
                json={
                    "timeMin": start.isoformat(),
                    "timeMax": end.isoformat(),
                    "items": [{"id": self.calendar_id}],
                },
            )
        except CalendarError as e:
            raise TransportDegraded(str(e)) from e
        calendars = response.json().get("calendars", {})
        busy = calendars.get(self.calendar_id, {}).get("busy", [])
        return [BusyInterval(start=item["start"], end=item["end"]) for item in busy]
