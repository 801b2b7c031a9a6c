"""
Public Booking API.

Endpoints used by the shareable booking page (`/agendar/{slug}`). No
authentication: anything reachable here is already public through the link.

Flow:
    GET  /public/agendas/{slug}            -> agenda header
    GET  /public/agendas/{slug}/services   -> active services
    GET  /public/agendas/{slug}/slots      -> free start times for service(s) + date
    POST /public/bookings                  -> create a pending booking

Slots are computed on the server only. A slot shown on the page is advisory:
POST /public/bookings re-checks it and answers 409 SLOT_CONFLICT when it was
taken in the meantime, telling the page to refetch.
"""

import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..booking_service import (
    BookingRequest,
    create_booking,
    parse_date,
    query_slots,
)
from ..core.db import get_session
from ..core.responses import ErrorResponse
from ..errors import AgendaInactive
from ..models import Agenda
from ..notifications import NotificationDispatcher, get_dispatcher
from ..repositories import AgendaRepository, ServiceRepository
from ..slots import format_minutes

router = APIRouter(prefix="/public", tags=["public-booking"])


# ────────────────────────────────────────────────────────────────
# Pydantic Models for Public API
# ────────────────────────────────────────────────────────────────

class PublicAgendaResponse(BaseModel):
    id: uuid.UUID
    title: str
    description: Optional[str] = None
    slug: str


class PublicServiceResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    duration_minutes: int
    price: Decimal


class SlotResponse(BaseModel):
    slot_start: str  # ISO-8601, display timezone
    slot_end: str


class SlotsResponse(BaseModel):
    date: str
    duration_minutes: int
    slots: list[SlotResponse]
    message: str


class BookingCreatedResponse(BaseModel):
    booking_id: uuid.UUID
    group_id: uuid.UUID
    agenda_id: uuid.UUID
    service_ids: list[uuid.UUID]
    date: str
    start_time: str  # "HH:MM"
    end_time: str
    status: str
    guest_name: str
    message: str


ERROR_RESPONSES = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


async def require_public_agenda(slug: str, session: AsyncSession) -> Agenda:
    agenda = await AgendaRepository(session).get_active_by_slug(slug)
    if not agenda:
        raise AgendaInactive()
    return agenda


async def _slots_response(
    session: AsyncSession,
    agenda: Agenda,
    service_ids: list[uuid.UUID],
    date: str,
) -> SlotsResponse:
    on_date = parse_date(date)
    result = await query_slots(session, agenda, service_ids, on_date)
    return SlotsResponse(
        date=date,
        duration_minutes=result.duration_minutes,
        slots=[SlotResponse(**slot) for slot in result.slots],
        message=(
            f"Found {len(result.slots)} available slot(s)."
            if result.slots
            else "No available times on this date. Try another day."
        ),
    )


# ────────────────────────────────────────────────────────────────
# Public API Endpoints
# ────────────────────────────────────────────────────────────────

@router.get("/agendas/{slug}", response_model=PublicAgendaResponse, responses=ERROR_RESPONSES)
async def get_public_agenda(slug: str, session: AsyncSession = Depends(get_session)):
    agenda = await require_public_agenda(slug, session)
    return PublicAgendaResponse(
        id=agenda.id,
        title=agenda.title,
        description=agenda.description,
        slug=agenda.slug,
    )


@router.get(
    "/agendas/{slug}/services",
    response_model=list[PublicServiceResponse],
    responses=ERROR_RESPONSES,
)
async def list_public_services(slug: str, session: AsyncSession = Depends(get_session)):
    """Active services of the agenda owner, ordered by name."""
    agenda = await require_public_agenda(slug, session)
    services = await ServiceRepository(session).list_for_owner(agenda.owner_id, active_only=True)
    return [
        PublicServiceResponse(
            id=svc.id,
            name=svc.name,
            description=svc.description,
            duration_minutes=svc.duration_minutes,
            price=svc.price,
        )
        for svc in services
    ]


@router.get("/agendas/{slug}/slots", response_model=SlotsResponse, responses=ERROR_RESPONSES)
async def get_public_slots(
    slug: str,
    date: str = Query(..., description="Date in YYYY-MM-DD format"),
    service_ids: list[uuid.UUID] = Query(...),
    session: AsyncSession = Depends(get_session),
):
    agenda = await require_public_agenda(slug, session)
    return await _slots_response(session, agenda, service_ids, date)


@router.get("/slots", response_model=SlotsResponse, responses=ERROR_RESPONSES)
async def get_slots(
    agenda_id: uuid.UUID,
    date: str = Query(..., description="Date in YYYY-MM-DD format"),
    service_ids: list[uuid.UUID] = Query(...),
    session: AsyncSession = Depends(get_session),
):
    """Slot query by agenda id."""
    agenda = await AgendaRepository(session).get(agenda_id)
    return await _slots_response(session, agenda, service_ids, date)


@router.post(
    "/bookings",
    response_model=BookingCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_public_booking(
    request: BookingRequest,
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Create a pending booking.

    Possible errors:
    - 404 AGENDA_INACTIVE / SERVICE_INACTIVE: page no longer available
    - 409 SLOT_CONFLICT: time was just taken; refetch slots and pick again
    - 422 VALIDATION_ERROR: guest input needs fixing
    """
    receipt = await create_booking(session, request, dispatcher)
    return BookingCreatedResponse(
        booking_id=receipt.booking_id,
        group_id=receipt.group_id,
        agenda_id=receipt.agenda.id,
        service_ids=[row.service_id for row in receipt.bookings],
        date=receipt.booking_date.isoformat(),
        start_time=format_minutes(receipt.start_minutes),
        end_time=format_minutes(receipt.end_minutes),
        status=receipt.status.value,
        guest_name=request.guest_name,
        message="Booking received! The professional will confirm it shortly.",
    )
