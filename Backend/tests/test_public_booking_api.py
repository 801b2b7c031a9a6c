"""
Public booking API tests.

Run with: pytest tests/test_public_booking_api.py -v
"""
import uuid

import pytest
from httpx import AsyncClient

from conftest import BOOKING_DATE
from flashagenda.notifications import EventType


def booking_payload(agenda, service_ids, start_time="10:00", **overrides):
    payload = {
        "agenda_id": str(agenda.id),
        "service_ids": [str(service_id) for service_id in service_ids],
        "date": BOOKING_DATE.isoformat(),
        "start_time": start_time,
        "guest_name": "Carla Souza",
        "guest_email": "carla@example.com",
        "guest_phone": "11988887777",
    }
    payload.update(overrides)
    return payload


# ============================================================================
# AGENDA PAGE
# ============================================================================

@pytest.mark.asyncio
async def test_get_public_agenda(client: AsyncClient, agenda):
    response = await client.get(f"/public/agendas/{agenda.slug}")

    assert response.status_code == 200
    data = response.json()
    assert data["slug"] == "estudio-ana-beleza"
    assert data["title"] == "Estúdio Ana Beleza"


@pytest.mark.asyncio
async def test_unknown_slug_is_inactive(client: AsyncClient):
    response = await client.get("/public/agendas/nobody-here")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "AGENDA_INACTIVE"


@pytest.mark.asyncio
async def test_inactive_agenda_is_hidden(client: AsyncClient, async_session, agenda):
    agenda.is_active = False
    await async_session.commit()

    response = await client.get(f"/public/agendas/{agenda.slug}")

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "This booking page is no longer available."


@pytest.mark.asyncio
async def test_lists_only_active_services(client: AsyncClient, async_session, agenda, services):
    services["brows"].active = False
    await async_session.commit()

    response = await client.get(f"/public/agendas/{agenda.slug}/services")

    assert response.status_code == 200
    assert [svc["name"] for svc in response.json()] == ["Haircut", "Wash"]


# ============================================================================
# SLOTS
# ============================================================================

@pytest.mark.asyncio
async def test_slots_by_slug(client: AsyncClient, agenda, services):
    response = await client.get(
        f"/public/agendas/{agenda.slug}/slots",
        params={"date": BOOKING_DATE.isoformat(), "service_ids": str(services["haircut"].id)},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["duration_minutes"] == 60
    assert [slot["slot_start"][11:16] for slot in data["slots"]] == ["09:00", "10:00", "11:00"]


@pytest.mark.asyncio
async def test_slots_by_agenda_id_with_two_services(client: AsyncClient, agenda, services):
    response = await client.get(
        "/public/slots",
        params=[
            ("agenda_id", str(agenda.id)),
            ("date", BOOKING_DATE.isoformat()),
            ("service_ids", str(services["wash"].id)),
            ("service_ids", str(services["brows"].id)),
        ],
    )

    assert response.status_code == 200
    data = response.json()
    assert data["duration_minutes"] == 60
    assert len(data["slots"]) == 3


@pytest.mark.asyncio
async def test_closed_day_returns_empty_list(client: AsyncClient, agenda, services):
    response = await client.get(
        f"/public/agendas/{agenda.slug}/slots",
        params={"date": "2030-01-08", "service_ids": str(services["haircut"].id)},
    )

    assert response.status_code == 200
    assert response.json()["slots"] == []


@pytest.mark.asyncio
async def test_slots_bad_date(client: AsyncClient, agenda, services):
    response = await client.get(
        f"/public/agendas/{agenda.slug}/slots",
        params={"date": "07-01-2030", "service_ids": str(services["haircut"].id)},
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_slots_unknown_service(client: AsyncClient, agenda):
    response = await client.get(
        f"/public/agendas/{agenda.slug}/slots",
        params={"date": BOOKING_DATE.isoformat(), "service_ids": str(uuid.uuid4())},
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SERVICE_INACTIVE"


# ============================================================================
# BOOKING CREATION
# ============================================================================

@pytest.mark.asyncio
async def test_create_booking(client: AsyncClient, dispatcher, agenda, services):
    response = await client.post(
        "/public/bookings", json=booking_payload(agenda, [services["haircut"].id])
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["start_time"] == "10:00"
    assert data["end_time"] == "11:00"
    assert [event.event_type for event in dispatcher.events] == [EventType.CREATED]
    assert str(dispatcher.events[0].booking_id) == data["booking_id"]


@pytest.mark.asyncio
async def test_booked_slot_disappears_and_conflicts(client: AsyncClient, agenda, services):
    payload = booking_payload(agenda, [services["haircut"].id])
    first = await client.post("/public/bookings", json=payload)
    assert first.status_code == 201

    slots = await client.get(
        f"/public/agendas/{agenda.slug}/slots",
        params={"date": BOOKING_DATE.isoformat(), "service_ids": str(services["haircut"].id)},
    )
    assert [slot["slot_start"][11:16] for slot in slots.json()["slots"]] == ["09:00", "11:00"]

    second = await client.post("/public/bookings", json=payload)
    assert second.status_code == 409
    error = second.json()["error"]
    assert error["code"] == "SLOT_CONFLICT"
    assert error["message"] == "This time was just taken. Please pick another time."
    assert error["details"]["refetch_slots"] is True


@pytest.mark.asyncio
async def test_create_booking_validation_error(client: AsyncClient, agenda, services):
    response = await client.post(
        "/public/bookings",
        json=booking_payload(agenda, [services["haircut"].id], guest_name="  "),
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"]["errors"][0]["field"] == "guest_name"


@pytest.mark.asyncio
async def test_create_booking_inactive_service(client: AsyncClient, async_session, agenda, services):
    services["haircut"].active = False
    await async_session.commit()

    response = await client.post(
        "/public/bookings", json=booking_payload(agenda, [services["haircut"].id])
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SERVICE_INACTIVE"


@pytest.mark.asyncio
async def test_slots_same_service_twice(client: AsyncClient, agenda, services):
    wash = str(services["wash"].id)
    response = await client.get(
        f"/public/agendas/{agenda.slug}/slots",
        params=[("date", BOOKING_DATE.isoformat()), ("service_ids", wash), ("service_ids", wash)],
    )

    assert response.status_code == 422
    assert response.json()["error"]["details"]["field"] == "service_ids"
