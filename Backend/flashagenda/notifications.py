"""
Booking lifecycle notifications.

The booking transaction only knows about `BookingEvent` and the
`NotificationDispatcher` protocol. `WebhookDispatcher` is the production
collaborator: it loads the booking, looks up the professional's webhook URL,
checks it against the outbound URL policy and POSTs a JSON payload.

Delivery is best-effort. `notify()` never lets a dispatcher failure reach the
caller, so a dead webhook can never fail or roll back a booking.
"""

import ipaddress
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol
from urllib.parse import urlsplit

import httpx
from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.config import get_settings
from .core.db import AsyncSessionLocal
from .models import Booking, OwnerSettings
from .repositories import BookingRepository, booking_span
from .slots import format_minutes, parse_time

logger = logging.getLogger(__name__)

BLOCKED_HOSTNAMES = {"localhost", "metadata.google.internal"}


class EventType(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BookingEvent:
    booking_id: uuid.UUID
    event_type: EventType


class WebhookError(Exception):
    pass


class WebhookValidationError(WebhookError):
    pass


class WebhookDeliveryError(WebhookError):
    pass


class NotificationDispatcher(Protocol):
    async def dispatch(self, event: BookingEvent) -> None:
        ...


async def notify(dispatcher: Optional[NotificationDispatcher], event: BookingEvent) -> None:
    """Hand an event to the dispatcher; failures are logged and swallowed."""
    if dispatcher is None:
        return
    try:
        await dispatcher.dispatch(event)
    except Exception:
        logger.exception(
            "Notification for booking %s (%s) failed", event.booking_id, event.event_type.value
        )


# ────────────────────────────────────────────────────────────────
# Outbound URL policy
# ────────────────────────────────────────────────────────────────

def _is_internal_address(hostname: str) -> bool:
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
    )


def validate_webhook_url(webhook_url: str) -> str:
    """
    Check a webhook URL against the outbound policy.

    Returns the URL unchanged, raises WebhookValidationError otherwise.
    """
    try:
        parts = urlsplit(webhook_url.strip())
    except ValueError as exc:
        raise WebhookValidationError("Invalid webhook URL") from exc

    if parts.scheme not in ("http", "https"):
        raise WebhookValidationError("Only HTTP and HTTPS webhook URLs are allowed")

    hostname = (parts.hostname or "").lower()
    if not hostname:
        raise WebhookValidationError("Invalid webhook URL")
    if hostname in BLOCKED_HOSTNAMES or _is_internal_address(hostname):
        raise WebhookValidationError("Webhooks to internal networks are not allowed")
    # Public webhook endpoints always have a dotted hostname.
    if "." not in hostname:
        raise WebhookValidationError("Webhook domain is not allowed")
    return webhook_url.strip()


# ────────────────────────────────────────────────────────────────
# Payloads
# ────────────────────────────────────────────────────────────────

def _service_dict(booking: Booking) -> Optional[dict[str, Any]]:
    if not booking.service:
        return None
    return {
        "name": booking.service.name,
        "duration": booking.service.duration_minutes,
        "price": float(booking.service.price),
    }


def build_webhook_payload(event: BookingEvent, booking: Booking, group: list[Booking]) -> dict[str, Any]:
    settings = get_settings()
    start, end = booking_span(group or [booking])
    services = [_service_dict(row) for row in group if row.service]
    return {
        "event": event.event_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "booking": {
            "id": str(booking.id),
            "date": booking.booking_date.isoformat(),
            "start_time": format_minutes(parse_time(start)),
            "end_time": format_minutes(parse_time(end)),
            "status": booking.status.value,
            "guest": {
                "name": booking.guest_name,
                "email": booking.guest_email,
                "phone": booking.guest_phone,
            },
            "agenda": {
                "title": booking.agenda.title,
                "slug": booking.agenda.slug,
            },
            "service": services[0] if services else None,
            "services": services,
            "public_url": settings.public_booking_url(booking.agenda.slug),
        },
    }


def build_test_payload() -> dict[str, Any]:
    return {
        "event": "test",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": "Flash Agenda webhook test",
        "booking": {
            "id": "00000000-0000-0000-0000-000000000000",
            "date": datetime.now(timezone.utc).date().isoformat(),
            "start_time": "09:00",
            "end_time": "10:00",
            "status": "pending",
            "guest": {"name": "Test Guest", "email": "guest@example.com", "phone": "+5511999999999"},
        },
    }


async def post_webhook(
    url: str,
    payload: dict[str, Any],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    settings = get_settings()
    async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds, transport=transport) as client:
        try:
            response = await client.post(url, json=payload, headers={"Content-Type": "application/json"})
        except httpx.RequestError as exc:
            raise WebhookDeliveryError(f"Webhook request failed: {exc}") from exc
    if response.is_error:
        raise WebhookDeliveryError(f"Webhook returned status {response.status_code}")
    return response.status_code


async def send_test_webhook(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    validate_webhook_url(url)
    return await post_webhook(url, build_test_payload(), transport=transport)


# ────────────────────────────────────────────────────────────────
# Dispatchers
# ────────────────────────────────────────────────────────────────

class WebhookDispatcher:
    """Loads booking detail in its own session and POSTs it to the owner's webhook."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_factory = session_factory
        self.transport = transport

    async def dispatch(self, event: BookingEvent) -> None:
        async with self.session_factory() as session:
            bookings = BookingRepository(session)
            booking = await bookings.get(event.booking_id)
            if not booking:
                raise WebhookDeliveryError(f"Booking {event.booking_id} not found")
            group = await bookings.get_group(booking.group_id)

            result = await session.execute(
                select(OwnerSettings.webhook_url).where(OwnerSettings.owner_id == booking.agenda.owner_id)
            )
            webhook_url = result.scalar_one_or_none()
            if not webhook_url:
                logger.info("No webhook configured for owner %s", booking.agenda.owner_id)
                return

            try:
                validate_webhook_url(webhook_url)
            except WebhookValidationError as exc:
                logger.warning("Webhook URL rejected for owner %s: %s", booking.agenda.owner_id, exc)
                return

            payload = build_webhook_payload(event, booking, group)

        status_code = await post_webhook(webhook_url, payload, transport=self.transport)
        logger.info(
            "Webhook %s for booking %s delivered (%s)", event.event_type.value, event.booking_id, status_code
        )


class BackgroundDispatcher:
    """Defers delivery until after the HTTP response has been sent."""

    def __init__(self, background_tasks: BackgroundTasks, target: NotificationDispatcher):
        self.background_tasks = background_tasks
        self.target = target

    async def dispatch(self, event: BookingEvent) -> None:
        self.background_tasks.add_task(notify, self.target, event)


_default_dispatcher: Optional[NotificationDispatcher] = None


def get_webhook_dispatcher() -> NotificationDispatcher:
    global _default_dispatcher
    if _default_dispatcher is None:
        _default_dispatcher = WebhookDispatcher()
    return _default_dispatcher


def get_dispatcher(background_tasks: BackgroundTasks) -> NotificationDispatcher:
    """FastAPI dependency: webhook delivery scheduled as a background task."""
    return BackgroundDispatcher(background_tasks, get_webhook_dispatcher())
