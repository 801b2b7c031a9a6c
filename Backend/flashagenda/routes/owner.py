"""
Owner API.

Everything a professional manages from the dashboard: agendas and their
weekly availability, the lunch break, services, incoming bookings, the
webhook setting, expenses and the financial/client overviews.

Every endpoint requires a bearer token; its `sub` claim is the owner id and
all reads and writes are scoped to it. Records owned by someone else answer
404, never 403, so ids cannot be probed.
"""

import logging
import uuid
from datetime import time
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_owner
from ..booking_service import booking_stats, local_now, parse_date, update_booking_status
from ..clients import list_clients, summarize_clients
from ..core.config import get_settings
from ..core.db import get_session
from ..core.responses import ErrorResponse
from ..errors import BookingValidationError
from ..financial import add_expense, delete_expense, financial_summary, list_expenses
from ..models import Agenda, AvailabilityWindow, Booking, BookingStatus, OwnerSettings, Service
from ..notifications import (
    NotificationDispatcher,
    WebhookError,
    WebhookValidationError,
    get_dispatcher,
    send_test_webhook,
    validate_webhook_url,
)
from ..repositories import AgendaRepository, AvailabilityRepository, BookingRepository, ServiceRepository
from ..slots import format_minutes, parse_time

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/owner",
    tags=["owner"],
    responses={
        401: {"description": "Missing or invalid bearer token"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)


def _hhmm(value: Optional[time]) -> Optional[str]:
    return format_minutes(parse_time(value)) if value is not None else None


# ────────────────────────────────────────────────────────────────
# Pydantic Models
# ────────────────────────────────────────────────────────────────

class AgendaCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=1000)


class AgendaUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None


class AgendaResponse(BaseModel):
    id: uuid.UUID
    title: str
    description: Optional[str] = None
    slug: str
    is_active: bool
    lunch_break_start: Optional[str] = None
    lunch_break_end: Optional[str] = None
    public_url: str


class WindowCreate(BaseModel):
    day_of_week: int = Field(..., description="0 = Sunday .. 6 = Saturday")
    start_time: str
    end_time: str


class SplitWindowCreate(WindowCreate):
    break_start: str
    break_end: str


class WindowResponse(BaseModel):
    id: uuid.UUID
    day_of_week: int
    start_time: str
    end_time: str


class LunchBreakPayload(BaseModel):
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class LunchBreakResponse(BaseModel):
    enabled: bool
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class ServiceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    price: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    duration_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    active: Optional[bool] = None


class ServiceResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    duration_minutes: int
    price: Decimal
    active: bool


class BookingResponse(BaseModel):
    id: uuid.UUID
    group_id: uuid.UUID
    position: int
    agenda_id: uuid.UUID
    service_id: Optional[uuid.UUID] = None
    service_name: Optional[str] = None
    date: str
    start_time: str
    end_time: str
    guest_name: str
    guest_email: Optional[str] = None
    guest_phone: str
    notes: Optional[str] = None
    status: str


class BookingStatusUpdate(BaseModel):
    status: Literal["confirmed", "cancelled"]


class WebhookSettings(BaseModel):
    webhook_url: Optional[str] = Field(None, max_length=2048)


class WebhookTestResult(BaseModel):
    success: bool
    status_code: Optional[int] = None
    message: str


class ExpenseCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=255)
    category: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    date: Optional[str] = Field(None, description="Date in YYYY-MM-DD format, defaults to today")


class ExpenseResponse(BaseModel):
    id: uuid.UUID
    description: str
    category: str
    amount: Decimal
    date: str


class ClientResponse(BaseModel):
    id: uuid.UUID
    name: str
    phone: str
    email: Optional[str] = None
    total_bookings: int
    first_booking_date: str
    last_booking_date: str


class ClientStatsResponse(BaseModel):
    total: int
    new_this_month: int
    returning: int


def _agenda_response(agenda: Agenda) -> AgendaResponse:
    return AgendaResponse(
        id=agenda.id,
        title=agenda.title,
        description=agenda.description,
        slug=agenda.slug,
        is_active=agenda.is_active,
        lunch_break_start=_hhmm(agenda.lunch_break_start),
        lunch_break_end=_hhmm(agenda.lunch_break_end),
        public_url=get_settings().public_booking_url(agenda.slug),
    )


def _window_response(window: AvailabilityWindow) -> WindowResponse:
    return WindowResponse(
        id=window.id,
        day_of_week=window.day_of_week,
        start_time=_hhmm(window.start_time),
        end_time=_hhmm(window.end_time),
    )


def _service_response(service: Service) -> ServiceResponse:
    return ServiceResponse(
        id=service.id,
        name=service.name,
        description=service.description,
        duration_minutes=service.duration_minutes,
        price=service.price,
        active=service.active,
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        group_id=booking.group_id,
        position=booking.position,
        agenda_id=booking.agenda_id,
        service_id=booking.service_id,
        service_name=booking.service.name if booking.service else None,
        date=booking.booking_date.isoformat(),
        start_time=_hhmm(booking.start_time),
        end_time=_hhmm(booking.end_time),
        guest_name=booking.guest_name,
        guest_email=booking.guest_email,
        guest_phone=booking.guest_phone,
        notes=booking.notes,
        status=booking.status.value,
    )


# ────────────────────────────────────────────────────────────────
# Agendas
# ────────────────────────────────────────────────────────────────

@router.post("/agendas", response_model=AgendaResponse, status_code=status.HTTP_201_CREATED)
async def create_agenda(
    payload: AgendaCreate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    agenda = await AgendaRepository(session).create(owner_id, payload.title, payload.description)
    await session.commit()
    logger.info("Owner %s created agenda %s (%s)", owner_id, agenda.id, agenda.slug)
    return _agenda_response(agenda)


@router.get("/agendas", response_model=list[AgendaResponse])
async def list_agendas(
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    agendas = await AgendaRepository(session).list_for_owner(owner_id)
    return [_agenda_response(agenda) for agenda in agendas]


@router.get("/agendas/{agenda_id}", response_model=AgendaResponse)
async def get_agenda(
    agenda_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    return _agenda_response(await AgendaRepository(session).get_owned(owner_id, agenda_id))


@router.patch("/agendas/{agenda_id}", response_model=AgendaResponse)
async def update_agenda(
    agenda_id: uuid.UUID,
    payload: AgendaUpdate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    """Update title, description or active flag. The slug never changes."""
    agenda = await AgendaRepository(session).get_owned(owner_id, agenda_id)
    if payload.title is not None:
        agenda.title = payload.title.strip()
    if payload.description is not None:
        agenda.description = payload.description
    if payload.is_active is not None:
        agenda.is_active = payload.is_active
    await session.commit()
    return _agenda_response(agenda)


@router.delete("/agendas/{agenda_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agenda(
    agenda_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    agenda = await AgendaRepository(session).get_owned(owner_id, agenda_id)
    await session.delete(agenda)
    await session.commit()
    logger.info("Owner %s deleted agenda %s", owner_id, agenda_id)


# ────────────────────────────────────────────────────────────────
# Availability and lunch break
# ────────────────────────────────────────────────────────────────

@router.get("/agendas/{agenda_id}/availability", response_model=list[WindowResponse])
async def list_availability(
    agenda_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    await AgendaRepository(session).get_owned(owner_id, agenda_id)
    windows = await AvailabilityRepository(session).list_all(agenda_id)
    return [_window_response(window) for window in windows]


@router.post(
    "/agendas/{agenda_id}/availability",
    response_model=WindowResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_availability(
    agenda_id: uuid.UUID,
    payload: WindowCreate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    await AgendaRepository(session).get_owned(owner_id, agenda_id)
    window = await AvailabilityRepository(session).add_window(
        agenda_id, payload.day_of_week, payload.start_time, payload.end_time
    )
    await session.commit()
    return _window_response(window)


@router.post(
    "/agendas/{agenda_id}/availability/split",
    response_model=list[WindowResponse],
    status_code=status.HTTP_201_CREATED,
)
async def add_split_availability(
    agenda_id: uuid.UUID,
    payload: SplitWindowCreate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    """Working hours with a manual break, stored as two windows."""
    await AgendaRepository(session).get_owned(owner_id, agenda_id)
    windows = await AvailabilityRepository(session).add_split_window(
        agenda_id,
        payload.day_of_week,
        payload.start_time,
        payload.end_time,
        payload.break_start,
        payload.break_end,
    )
    await session.commit()
    return [_window_response(window) for window in windows]


@router.delete("/agendas/{agenda_id}/availability/{window_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_availability(
    agenda_id: uuid.UUID,
    window_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    await AgendaRepository(session).get_owned(owner_id, agenda_id)
    await AvailabilityRepository(session).delete_window(agenda_id, window_id)
    await session.commit()


@router.get("/agendas/{agenda_id}/lunch-break", response_model=LunchBreakResponse)
async def get_lunch_break(
    agenda_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    await AgendaRepository(session).get_owned(owner_id, agenda_id)
    lunch = await AvailabilityRepository(session).get_lunch_break(agenda_id)
    if lunch is None:
        return LunchBreakResponse(enabled=False)
    return LunchBreakResponse(
        enabled=True,
        start_time=format_minutes(lunch.start),
        end_time=format_minutes(lunch.end),
    )


@router.put("/agendas/{agenda_id}/lunch-break", response_model=LunchBreakResponse)
async def set_lunch_break(
    agenda_id: uuid.UUID,
    payload: LunchBreakPayload,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    """Set the daily lunch break. Sending both times empty clears it."""
    agenda = await AgendaRepository(session).get_owned(owner_id, agenda_id)
    lunch = await AvailabilityRepository(session).set_lunch_break(
        agenda, payload.start_time, payload.end_time
    )
    await session.commit()
    if lunch is None:
        return LunchBreakResponse(enabled=False)
    return LunchBreakResponse(
        enabled=True,
        start_time=format_minutes(lunch.start),
        end_time=format_minutes(lunch.end),
    )


@router.delete("/agendas/{agenda_id}/lunch-break", status_code=status.HTTP_204_NO_CONTENT)
async def clear_lunch_break(
    agenda_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    agenda = await AgendaRepository(session).get_owned(owner_id, agenda_id)
    await AvailabilityRepository(session).set_lunch_break(agenda)
    await session.commit()


# ────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────

@router.post("/services", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    payload: ServiceCreate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    service = await ServiceRepository(session).create(
        owner_id,
        payload.name,
        payload.duration_minutes,
        payload.price,
        payload.description,
    )
    await session.commit()
    return _service_response(service)


@router.get("/services", response_model=list[ServiceResponse])
async def list_services(
    active_only: bool = False,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    services = await ServiceRepository(session).list_for_owner(owner_id, active_only=active_only)
    return [_service_response(service) for service in services]


@router.patch("/services/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: uuid.UUID,
    payload: ServiceUpdate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    service = await ServiceRepository(session).get_owned(owner_id, service_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        setattr(service, field, value.strip() if field == "name" else value)
    await session.commit()
    return _service_response(service)


@router.delete("/services/{service_id}", response_model=ServiceResponse)
async def deactivate_service(
    service_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    """Deactivate a service. Existing bookings keep their reference."""
    service = await ServiceRepository(session).get_owned(owner_id, service_id)
    service.active = False
    await session.commit()
    return _service_response(service)


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

@router.get("/agendas/{agenda_id}/bookings", response_model=list[BookingResponse])
async def list_bookings(
    agenda_id: uuid.UUID,
    date: Optional[str] = Query(None, description="Date in YYYY-MM-DD format"),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    await AgendaRepository(session).get_owned(owner_id, agenda_id)
    on_date = parse_date(date) if date else None
    bookings = await BookingRepository(session).list_for_agenda(agenda_id, on_date, status_filter)
    return [_booking_response(booking) for booking in bookings]


@router.patch("/bookings/{booking_id}/status", response_model=list[BookingResponse])
async def change_booking_status(
    booking_id: uuid.UUID,
    payload: BookingStatusUpdate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Confirm or cancel a booking. Returns every sub-booking of its group.

    Possible errors:
    - 404 NOT_FOUND: no such booking for this owner
    - 409 STATE_CONFLICT: transition not allowed (e.g. cancelled -> confirmed)
    """
    group = await update_booking_status(
        session, owner_id, booking_id, BookingStatus(payload.status), dispatcher
    )
    return [_booking_response(booking) for booking in group]


# ────────────────────────────────────────────────────────────────
# Settings (webhook)
# ────────────────────────────────────────────────────────────────

async def _owner_settings(session: AsyncSession, owner_id: str) -> Optional[OwnerSettings]:
    result = await session.execute(select(OwnerSettings).where(OwnerSettings.owner_id == owner_id))
    return result.scalar_one_or_none()


@router.get("/settings", response_model=WebhookSettings)
async def get_owner_settings(
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    settings_row = await _owner_settings(session, owner_id)
    return WebhookSettings(webhook_url=settings_row.webhook_url if settings_row else None)


@router.put("/settings", response_model=WebhookSettings)
async def update_owner_settings(
    payload: WebhookSettings,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    """Save the webhook URL. An empty value disables notifications."""
    webhook_url = (payload.webhook_url or "").strip() or None
    if webhook_url:
        try:
            webhook_url = validate_webhook_url(webhook_url)
        except WebhookValidationError as exc:
            raise BookingValidationError(str(exc), details={"field": "webhook_url"}) from exc

    settings_row = await _owner_settings(session, owner_id)
    if settings_row is None:
        settings_row = OwnerSettings(owner_id=owner_id)
        session.add(settings_row)
    settings_row.webhook_url = webhook_url
    await session.commit()
    logger.info("Owner %s %s webhook", owner_id, "set" if webhook_url else "cleared")
    return WebhookSettings(webhook_url=webhook_url)


@router.post("/settings/test-webhook", response_model=WebhookTestResult)
async def test_webhook(
    payload: WebhookSettings,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    """Send a sample payload to the given URL, or to the saved one."""
    webhook_url = (payload.webhook_url or "").strip()
    if not webhook_url:
        settings_row = await _owner_settings(session, owner_id)
        webhook_url = settings_row.webhook_url if settings_row and settings_row.webhook_url else ""
    if not webhook_url:
        raise BookingValidationError("Webhook URL is required.", details={"field": "webhook_url"})

    try:
        status_code = await send_test_webhook(webhook_url)
    except WebhookValidationError as exc:
        raise BookingValidationError(str(exc), details={"field": "webhook_url"}) from exc
    except WebhookError as exc:
        logger.warning("Test webhook for owner %s failed: %s", owner_id, exc)
        return WebhookTestResult(success=False, message=str(exc))
    return WebhookTestResult(success=True, status_code=status_code, message="Webhook delivered.")


# ────────────────────────────────────────────────────────────────
# Expenses and financial summary
# ────────────────────────────────────────────────────────────────

def _expense_response(expense) -> ExpenseResponse:
    return ExpenseResponse(
        id=expense.id,
        description=expense.description,
        category=expense.category,
        amount=expense.amount,
        date=expense.expense_date.isoformat(),
    )


@router.post("/expenses", response_model=ExpenseResponse, status_code=status.HTTP_201_CREATED)
async def create_expense(
    payload: ExpenseCreate,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    expense_date = parse_date(payload.date) if payload.date else local_now().date()
    expense = await add_expense(
        session, owner_id, payload.description, payload.category, payload.amount, expense_date
    )
    await session.commit()
    return _expense_response(expense)


@router.get("/expenses", response_model=list[ExpenseResponse])
async def get_expenses(
    since: Optional[str] = Query(None, description="Only expenses on or after this date (YYYY-MM-DD)"),
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    expenses = await list_expenses(session, owner_id, parse_date(since) if since else None)
    return [_expense_response(expense) for expense in expenses]


@router.delete("/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_expense(
    expense_id: uuid.UUID,
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    await delete_expense(session, owner_id, expense_id)
    await session.commit()


@router.get("/financial/summary")
async def get_financial_summary(
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    summary = await financial_summary(session, owner_id, local_now().date())
    return summary.to_dict()


# ────────────────────────────────────────────────────────────────
# Clients and dashboard
# ────────────────────────────────────────────────────────────────

@router.get("/clients", response_model=list[ClientResponse])
async def get_clients(
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    clients = await list_clients(session, owner_id)
    return [
        ClientResponse(
            id=client.id,
            name=client.name,
            phone=client.phone,
            email=client.email,
            total_bookings=client.total_bookings,
            first_booking_date=client.first_booking_date.isoformat(),
            last_booking_date=client.last_booking_date.isoformat(),
        )
        for client in clients
    ]


@router.get("/clients/stats", response_model=ClientStatsResponse)
async def get_client_stats(
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
):
    stats = summarize_clients(await list_clients(session, owner_id), local_now().date())
    return ClientStatsResponse(
        total=stats.total,
        new_this_month=stats.new_this_month,
        returning=stats.returning,
    )


@router.get("/dashboard")
async def get_dashboard(
    owner_id: str = Depends(get_current_owner),
    session: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    return await booking_stats(session, owner_id)
