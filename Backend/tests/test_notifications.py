"""
Tests for booking notifications: outbound URL policy, payload shape and
webhook delivery.

Run with: pytest tests/test_notifications.py -v
"""
import json
import uuid

import httpx
import pytest

from conftest import BOOKING_DATE, OWNER_ID, FailingDispatcher, make_token
from flashagenda.booking_service import BookingRequest, create_booking
from flashagenda.models import OwnerSettings
from flashagenda.notifications import (
    BookingEvent,
    EventType,
    WebhookDeliveryError,
    WebhookDispatcher,
    WebhookValidationError,
    notify,
    post_webhook,
    validate_webhook_url,
)


# ============================================================================
# URL POLICY
# ============================================================================

class TestValidateWebhookUrl:
    """Tests for validate_webhook_url."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://hooks.n8n.cloud/webhook/abc",
            "https://hook.eu1.make.com/xyz",
            "https://example.com/booking-hook",
            "http://api.my-salon.com.br/hooks",
        ],
    )
    def test_accepts_public_urls(self, url):
        assert validate_webhook_url(url) == url

    @pytest.mark.parametrize(
        "url",
        [
            "ftp://example.com/hook",
            "http://localhost:8000/hook",
            "http://127.0.0.1/hook",
            "http://10.0.0.5/hook",
            "http://192.168.1.20/hook",
            "http://172.16.4.1/hook",
            "http://169.254.169.254/latest/meta-data",
            "http://0.0.0.0/hook",
            "http://[::1]/hook",
            "http://metadata.google.internal/computeMetadata",
            "http://intranet/hook",
            "not a url",
        ],
    )
    def test_rejects_internal_or_malformed_urls(self, url):
        with pytest.raises(WebhookValidationError):
            validate_webhook_url(url)


# ============================================================================
# NOTIFY
# ============================================================================

@pytest.mark.asyncio
async def test_notify_swallows_dispatcher_errors():
    await notify(FailingDispatcher(), BookingEvent(uuid.uuid4(), EventType.CREATED))


@pytest.mark.asyncio
async def test_notify_without_dispatcher_is_noop():
    await notify(None, BookingEvent(uuid.uuid4(), EventType.CREATED))


# ============================================================================
# DELIVERY
# ============================================================================

@pytest.mark.asyncio
async def test_post_webhook_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    with pytest.raises(WebhookDeliveryError):
        await post_webhook("https://example.com/hook", {"event": "test"}, transport=transport)


@pytest.mark.asyncio
async def test_post_webhook_raises_on_connection_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(WebhookDeliveryError):
        await post_webhook("https://example.com/hook", {"event": "test"}, transport=httpx.MockTransport(refuse))


async def _create_booking(session_factory, agenda, service_ids):
    request = BookingRequest.parse(
        {
            "agenda_id": str(agenda.id),
            "service_ids": [str(service_id) for service_id in service_ids],
            "date": BOOKING_DATE.isoformat(),
            "start_time": "10:00",
            "guest_name": "Carla Souza",
            "guest_email": "carla@example.com",
            "guest_phone": "11988887777",
        }
    )
    async with session_factory() as session:
        return await create_booking(session, request)


@pytest.mark.asyncio
async def test_webhook_dispatcher_posts_booking_payload(async_session, session_factory, agenda, services):
    async_session.add(OwnerSettings(owner_id=OWNER_ID, webhook_url="https://hooks.n8n.cloud/webhook/abc"))
    await async_session.commit()
    receipt = await _create_booking(session_factory, agenda, [services["wash"].id, services["brows"].id])

    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"ok": True})

    dispatcher = WebhookDispatcher(session_factory, transport=httpx.MockTransport(handler))
    await dispatcher.dispatch(BookingEvent(receipt.booking_id, EventType.CREATED))

    assert len(captured) == 1
    assert str(captured[0].url) == "https://hooks.n8n.cloud/webhook/abc"
    payload = json.loads(captured[0].content)
    assert payload["event"] == "created"
    booking = payload["booking"]
    assert booking["id"] == str(receipt.booking_id)
    assert booking["date"] == "2030-01-07"
    assert booking["start_time"] == "10:00"
    assert booking["end_time"] == "11:00"
    assert booking["status"] == "pending"
    assert booking["guest"] == {"name": "Carla Souza", "email": "carla@example.com", "phone": "11988887777"}
    assert booking["agenda"] == {"title": "Estúdio Ana Beleza", "slug": "estudio-ana-beleza"}
    assert booking["service"] == {"name": "Wash", "duration": 30, "price": 30.0}
    assert [svc["name"] for svc in booking["services"]] == ["Wash", "Brows"]
    assert booking["public_url"].endswith("/agendar/estudio-ana-beleza")


@pytest.mark.asyncio
async def test_webhook_dispatcher_without_url_sends_nothing(session_factory, agenda, services):
    receipt = await _create_booking(session_factory, agenda, [services["haircut"].id])

    def handler(request):
        raise AssertionError("no request expected")

    dispatcher = WebhookDispatcher(session_factory, transport=httpx.MockTransport(handler))
    await dispatcher.dispatch(BookingEvent(receipt.booking_id, EventType.CREATED))


@pytest.mark.asyncio
async def test_webhook_dispatcher_skips_stored_internal_url(async_session, session_factory, agenda, services):
    async_session.add(OwnerSettings(owner_id=OWNER_ID, webhook_url="http://127.0.0.1:5678/hook"))
    await async_session.commit()
    receipt = await _create_booking(session_factory, agenda, [services["haircut"].id])

    def handler(request):
        raise AssertionError("no request expected")

    dispatcher = WebhookDispatcher(session_factory, transport=httpx.MockTransport(handler))
    await dispatcher.dispatch(BookingEvent(receipt.booking_id, EventType.CREATED))


# ============================================================================
# SETTINGS ENDPOINTS
# ============================================================================

@pytest.mark.asyncio
async def test_save_webhook_url(client):
    headers = {"Authorization": f"Bearer {make_token()}"}

    saved = await client.put(
        "/owner/settings", json={"webhook_url": "https://hooks.n8n.cloud/webhook/abc"}, headers=headers
    )
    assert saved.status_code == 200

    current = await client.get("/owner/settings", headers=headers)
    assert current.json() == {"webhook_url": "https://hooks.n8n.cloud/webhook/abc"}

    cleared = await client.put("/owner/settings", json={"webhook_url": ""}, headers=headers)
    assert cleared.json() == {"webhook_url": None}


@pytest.mark.asyncio
async def test_save_internal_webhook_url_is_rejected(client):
    response = await client.put(
        "/owner/settings",
        json={"webhook_url": "http://192.168.0.10/hook"},
        headers={"Authorization": f"Bearer {make_token()}"},
    )

    assert response.status_code == 422
    assert response.json()["error"]["details"]["field"] == "webhook_url"


@pytest.mark.asyncio
async def test_test_webhook_requires_url(client):
    response = await client.post(
        "/owner/settings/test-webhook",
        json={},
        headers={"Authorization": f"Bearer {make_token()}"},
    )

    assert response.status_code == 422
