"""Notification sinks.

A sink delivers one event and may raise; the dispatcher logs and drops the
failure. Sinks never retry.
"""

import json
from typing import Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from genguard.config import NotifySettings, StoreSettings
from genguard.db.connection import DatabaseConnection
from genguard.db.models import TelemetryEvent
from genguard.db.transaction import run_transaction
from genguard.logging.config import get_logger
from genguard.spend.guard import to_micros

from .events import AdmissionEvent

logger = get_logger(__name__)

GENERATION_STARTED_TEMPLATE = "generation_started"


class NotificationSink(Protocol):
    name: str

    async def send(self, event: AdmissionEvent) -> None: ...


class TelemetrySink:
    """Persists every event as a TelemetryEvents row."""

    name = "telemetry"

    def __init__(self, db: DatabaseConnection, store_settings: StoreSettings) -> None:
        self.db = db
        self.store_settings = store_settings

    async def send(self, event: AdmissionEvent) -> None:
        async def work(session: AsyncSession) -> None:
            session.add(
                TelemetryEvent(
                    event=event.event,
                    job_id=event.job_id,
                    outcome=event.outcome,
                    error_kind=event.error_kind,
                    cost_estimate_micros=(
                        None
                        if event.cost_estimate_usd is None
                        else to_micros(event.cost_estimate_usd)
                    ),
                    latency_ms=event.latency_ms,
                    attributes=json.dumps(event.attributes, default=str),
                    created_at=event.created_at,
                )
            )

        await run_transaction(self.db, work, self.store_settings, name="notify.telemetry")


class WebhookSink:
    """POSTs the event payload as JSON to ``{base_url}/{event}``."""

    name = "webhook"

    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def send(self, event: AdmissionEvent) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/{event.event}", json=event.to_payload())
            response.raise_for_status()


class EmailSink:
    """Sends a templated confirmation email for admitted requests.

    Only admitted events that carry a ``notify_email`` produce a message.
    """

    name = "email"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        timeout: float,
        template: str = GENERATION_STARTED_TEMPLATE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self._api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.template = template
        self._transport = transport

    async def send(self, event: AdmissionEvent) -> None:
        if not event.admitted or not event.notify_email:
            return

        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self._api_key}"},
            transport=self._transport,
        ) as client:
            response = await client.post(
                self.api_url,
                json={
                    "from": self.sender,
                    "to": [event.notify_email],
                    "template": self.template,
                    "variables": {"job_id": event.job_id, **event.attributes},
                },
            )
            response.raise_for_status()
        logger.debug("Notification email sent", job_id=event.job_id, template=self.template)


def build_sinks(
    settings: NotifySettings,
    db: DatabaseConnection,
    store_settings: StoreSettings,
) -> list[NotificationSink]:
    """Sinks enabled by configuration."""
    sinks: list[NotificationSink] = []
    if settings.telemetry_enabled:
        sinks.append(TelemetrySink(db, store_settings))
    if settings.webhook_base_url:
        sinks.append(WebhookSink(settings.webhook_base_url, settings.timeout_seconds))
    if settings.email_api_key and settings.email_from:
        sinks.append(
            EmailSink(
                api_url=settings.email_api_url,
                api_key=settings.email_api_key,
                sender=settings.email_from,
                timeout=settings.timeout_seconds,
            )
        )
    return sinks
