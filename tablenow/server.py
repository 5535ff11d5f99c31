"""FastAPI server for the voice webhook and the BCC email channel."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tablenow.config import Config, get_config, setup_logging
from tablenow.engine import (
    AvailabilityOracle,
    ChannelDispatcher,
    EmailChannel,
    ReservationLifecycle,
    SideEffectCoordinator,
    TenantResolver,
)
from tablenow.errors import TenantNotFound, ValidationFailure
from tablenow.models import InboundEmail
from tablenow.services.calendar_service import GoogleCalendarService
from tablenow.services.email_service import SMTPEmailService
from tablenow.services.hubspot_service import HubSpotService
from tablenow.services.knowledge_service import OpenAIKnowledgeService
from tablenow.services.store import SQLiteReservationStore

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything the routes need, built once per process."""

    store: SQLiteReservationStore
    dispatcher: ChannelDispatcher
    email_channel: EmailChannel
    calendar: GoogleCalendarService | None = None
    crm: HubSpotService | None = None

    async def aclose(self) -> None:
        if self.calendar is not None:
            await self.calendar.aclose()
        if self.crm is not None:
            await self.crm.aclose()
        self.store.close()


def build_components(config: Config) -> Components:
    """Wire the store, the collaborators and the engine together.

    Integrations without configuration are left out; the fan-out coordinator
    records their effects as skipped.
    """
    store = SQLiteReservationStore(config.database_path)
    calendar = GoogleCalendarService()
    crm = HubSpotService() if config.has_hubspot_config() else None
    notifier = SMTPEmailService() if config.has_smtp_config() else None
    knowledge = OpenAIKnowledgeService(store) if config.openai_api_key else None

    resolver = TenantResolver(store)
    lifecycle = ReservationLifecycle(store)
    fanout = SideEffectCoordinator(store, calendar=calendar, crm=crm, notifier=notifier)

    dispatcher = ChannelDispatcher(
        resolver=resolver,
        oracle=AvailabilityOracle(store, calendar),
        lifecycle=lifecycle,
        fanout=fanout,
        knowledge=knowledge,
    )
    email_channel = EmailChannel(resolver, lifecycle, fanout, store)

    return Components(
        store=store,
        dispatcher=dispatcher,
        email_channel=email_channel,
        calendar=calendar,
        crm=crm,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application lifespan manager."""
    config = get_config()
    logger.info(f"Starting TableNow server on {config.server_host}:{config.server_port}")
    logger.info(f"Database: {config.database_path}")

    components = build_components(config)
    _app.state.dispatcher = components.dispatcher
    _app.state.email_channel = components.email_channel
    logger.info("✓ Reservation engine initialized")

    yield

    logger.info("Shutting down TableNow server")
    await components.aclose()


app = FastAPI(
    title="TableNow API",
    description="Phone and email reservation engine for restaurants",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_dispatcher(request: Request) -> ChannelDispatcher:
    """Dependency to get the voice dispatcher from app state.

    Raises:
        HTTPException: If the engine is not initialized
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Engine not initialized yet")
    return dispatcher


def get_email_channel(request: Request) -> EmailChannel:
    """Dependency to get the email channel from app state."""
    channel = getattr(request.app.state, "email_channel", None)
    if channel is None:
        raise HTTPException(status_code=503, detail="Engine not initialized yet")
    return channel


def inbound_email_from_payload(data: dict[str, Any]) -> InboundEmail:
    """Read a CloudMailin-style JSON body into an ``InboundEmail``.

    Falls back to flat ``to``/``from``/``subject``/``text``/``html`` keys.
    """
    envelope = data.get("envelope") or {}
    headers = data.get("headers") or {}

    to = envelope.get("to") or headers.get("to") or headers.get("To") or data.get("to")
    sender = (
        envelope.get("from") or headers.get("from") or headers.get("From") or data.get("from")
    )
    subject = headers.get("subject") or headers.get("Subject") or data.get("subject") or ""
    body = data.get("plain") or data.get("html") or data.get("text") or ""

    return InboundEmail(
        to=to or "",
        from_=sender,
        subject=subject,
        body=body,
        raw=data.get("raw"),
    )


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "tablenow-api"}


@app.post("/api/vapi/webhook")
async def vapi_webhook(
    request: Request,
    dispatcher: ChannelDispatcher = Depends(get_dispatcher),
):
    """Voice platform webhook. Always answers 200; errors are in the body."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Voice webhook body is not valid JSON")
        return {"received": True, "error": "Invalid JSON body"}

    return await dispatcher.handle_voice_webhook(payload)


@app.post("/api/email/bcc")
async def bcc_email(
    request: Request,
    channel: EmailChannel = Depends(get_email_channel),
):
    """Inbound BCC email from the mail provider.

    Returns:
        200 with the acknowledgement, 400 for an address without a tenant
        id, 404 for an unknown tenant
    """
    try:
        data = await request.json()
        message = inbound_email_from_payload(data)
        ack = await channel.handle(message)
        return ack.model_dump(mode="json")

    except ValidationFailure as e:
        logger.error(str(e))
        return JSONResponse(status_code=400, content={"error": "Invalid BCC email format"})
    except TenantNotFound as e:
        logger.error(f"BCC email for unknown tenant {e}")
        return JSONResponse(status_code=404, content={"error": "Restaurant not found"})
    except Exception as e:
        logger.exception("BCC email processing failed")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process email", "message": str(e)},
        )


def run_server():
    """Run the FastAPI server using uvicorn."""
    setup_logging()
    config = get_config()

    uvicorn.run(
        "tablenow.server:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run_server()
