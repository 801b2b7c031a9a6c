"""
Booking Service - Core Logic

The write path for guest bookings and the read path for offerable slots.
Endpoints live in routes/; this module owns the rules.

Functions:
    list_available_slots - Slot query: free start times for services on a date
    create_booking - Validate, re-check the slot, insert all sub-bookings atomically
    update_booking_status - Owner confirms or cancels a booking group

Double booking is prevented in two layers. The slot generator is re-run on a
fresh read inside the transaction while the agenda row is locked (fast path
and the source of the friendly "just taken" message), and the partial unique
index on (agenda_id, booking_date, start_time) rejects whatever slips past it.
Both end in SlotConflict.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .clients import normalize_email, normalize_phone, record_client_booking
from .core.config import get_settings
from .errors import (
    AgendaInactive,
    BookingValidationError,
    InvalidStatusTransition,
    NotFound,
    ServiceInactive,
    SlotConflict,
)
from .models import ALLOWED_TRANSITIONS, Agenda, Booking, BookingStatus, Service
from .notifications import BookingEvent, EventType, NotificationDispatcher, notify
from .repositories import (
    AgendaRepository,
    AvailabilityRepository,
    BookingRepository,
    ServiceRepository,
)
from .slots import compute_slots, day_of_week, format_minutes, minutes_to_time, parse_time

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s().-]+$")
MIN_PHONE_DIGITS = 8
MAX_SERVICES_PER_BOOKING = 2

STATUS_EVENTS = {
    BookingStatus.CONFIRMED: EventType.CONFIRMED,
    BookingStatus.CANCELLED: EventType.CANCELLED,
}


def get_local_tz() -> ZoneInfo:
    """Get the configured display timezone."""
    return ZoneInfo(get_settings().display_timezone)


def local_now() -> datetime:
    return datetime.now(get_local_tz())


def service_selection_error(service_ids: Sequence[uuid.UUID]) -> Optional[str]:
    """Why a service selection cannot be booked, or None when it can."""
    if not service_ids or len(service_ids) > MAX_SERVICES_PER_BOOKING:
        return "Select one or two services."
    if len(set(service_ids)) != len(service_ids):
        return "The same service cannot be selected twice."
    return None


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise BookingValidationError("Date must be in YYYY-MM-DD format.", details={"field": "date"}) from exc


# ────────────────────────────────────────────────────────────────
# Booking request
# ────────────────────────────────────────────────────────────────

class BookingRequest(BaseModel):
    """Guest booking submission from the public page."""
    agenda_id: uuid.UUID
    service_ids: list[uuid.UUID]
    date: str = Field(..., description="Date in YYYY-MM-DD format")
    start_time: str = Field(..., description="Time in HH:MM or HH:MM:SS format (24-hour)")
    guest_name: str = Field(..., max_length=100)
    guest_email: Optional[str] = Field(None, max_length=255)
    guest_phone: str = Field(..., max_length=32)
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("service_ids")
    @classmethod
    def validate_service_ids(cls, v: list[uuid.UUID]) -> list[uuid.UUID]:
        problem = service_selection_error(v)
        if problem:
            raise ValueError(problem)
        return v

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        try:
            datetime.strptime(v, "%Y-%m-%d")
        except ValueError:
            raise ValueError("Date must be in YYYY-MM-DD format")
        return v

    @field_validator("start_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        parse_time(v)
        return v

    @field_validator("guest_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("guest_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.strip()
        digits = re.sub(r"\D", "", v)
        if not PHONE_PATTERN.match(v) or not MIN_PHONE_DIGITS <= len(digits) <= 15 or len(v) > 20:
            raise ValueError("Phone must have between 8 and 15 digits")
        return v

    @field_validator("guest_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Email address is not valid")
        return v

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @property
    def booking_date(self):
        return datetime.strptime(self.date, "%Y-%m-%d").date()

    @property
    def start_minutes(self) -> int:
        return parse_time(self.start_time)

    @classmethod
    def parse(cls, data: dict) -> "BookingRequest":
        """Build a request from raw input, mapping failures to BookingValidationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            raise BookingValidationError("Please check the highlighted fields.", details={"errors": errors}) from exc


@dataclass
class BookingReceipt:
    """Result of a successful create_booking: the group of sub-bookings."""
    group_id: uuid.UUID
    bookings: list[Booking]
    agenda: Agenda
    booking_date: date
    start_minutes: int
    end_minutes: int

    @property
    def booking_id(self) -> uuid.UUID:
        return self.bookings[0].id

    @property
    def status(self) -> BookingStatus:
        return self.bookings[0].status


# ────────────────────────────────────────────────────────────────
# Shared loading
# ────────────────────────────────────────────────────────────────

async def load_bookable_services(
    session: AsyncSession,
    agenda: Agenda,
    service_ids: Sequence[uuid.UUID],
) -> list[Service]:
    """Load services in request order; all must exist, be active and belong to the agenda owner."""
    services = await ServiceRepository(session).get_many(service_ids)
    if len(services) != len(service_ids) or any(
        not service.active or service.owner_id != agenda.owner_id for service in services
    ):
        raise ServiceInactive()
    return services


async def compute_free_slots(
    session: AsyncSession,
    agenda: Agenda,
    on_date: date,
    duration_minutes: int,
) -> list[int]:
    availability = AvailabilityRepository(session)
    windows = await availability.list_windows(agenda.id, day_of_week(on_date))
    if not windows:
        return []
    taken = await BookingRepository(session).list_intervals(agenda.id, on_date)
    return compute_slots(
        windows,
        availability.lunch_break_of(agenda),
        on_date,
        duration_minutes,
        taken,
    )


def _slot_datetime(on_date: date, minutes: int, tz: ZoneInfo) -> datetime:
    return datetime.combine(on_date, minutes_to_time(minutes), tzinfo=tz)


def _is_past(on_date: date, minutes: int, now: datetime) -> bool:
    return _slot_datetime(on_date, minutes, get_local_tz()) <= now


# ────────────────────────────────────────────────────────────────
# Slot query
# ────────────────────────────────────────────────────────────────

@dataclass
class SlotQuery:
    """Offerable slots together with the combined duration they were computed for."""
    duration_minutes: int
    slots: list[dict[str, str]]


async def query_slots(
    session: AsyncSession,
    agenda: Optional[Agenda],
    service_ids: Sequence[uuid.UUID],
    on_date: date,
    now: Optional[datetime] = None,
) -> SlotQuery:
    if not agenda or not agenda.is_active:
        raise AgendaInactive()
    problem = service_selection_error(service_ids)
    if problem:
        raise BookingValidationError(problem, details={"field": "service_ids"})
    services = await load_bookable_services(session, agenda, service_ids)
    duration = sum(service.duration_minutes for service in services)

    now = now or local_now()
    tz = get_local_tz()
    starts = await compute_free_slots(session, agenda, on_date, duration)
    return SlotQuery(
        duration_minutes=duration,
        slots=[
            {
                "slot_start": _slot_datetime(on_date, start, tz).isoformat(),
                "slot_end": _slot_datetime(on_date, start + duration, tz).isoformat(),
            }
            for start in starts
            if not _is_past(on_date, start, now)
        ],
    )


async def list_available_slots(
    session: AsyncSession,
    agenda: Optional[Agenda],
    service_ids: Sequence[uuid.UUID],
    on_date: date,
    now: Optional[datetime] = None,
) -> list[dict[str, str]]:
    """
    Offerable slots for the selected services on a date.

    Returns:
        [{"slot_start": ISO-8601, "slot_end": ISO-8601}, ...] in the display
        timezone, ascending. Start times already in the past are left out.
    """
    result = await query_slots(session, agenda, service_ids, on_date, now)
    return result.slots


# ────────────────────────────────────────────────────────────────
# Booking transaction
# ────────────────────────────────────────────────────────────────

async def create_booking(
    session: AsyncSession,
    request: BookingRequest,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> BookingReceipt:
    """
    Create a pending booking for a guest.

    Raises:
        AgendaInactive: agenda missing or disabled
        ServiceInactive: any selected service missing or disabled
        BookingValidationError: start time in the past
        SlotConflict: the slot is no longer free
    """
    on_date = request.booking_date
    start = request.start_minutes
    now = now or local_now()

    try:
        # Lock the agenda before the fresh read so concurrent creates queue here.
        agenda = await AgendaRepository(session).get_for_update(request.agenda_id)
        if not agenda or not agenda.is_active:
            raise AgendaInactive()

        services = await load_bookable_services(session, agenda, request.service_ids)
        duration = sum(service.duration_minutes for service in services)

        if _is_past(on_date, start, now):
            raise BookingValidationError("Cannot book a time in the past.", details={"field": "start_time"})

        free = await compute_free_slots(session, agenda, on_date, duration)
        if start not in free:
            logger.info(
                "Slot %s %s no longer free on agenda %s", on_date, format_minutes(start), agenda.id
            )
            raise SlotConflict()

        group_id = uuid.uuid4()
        rows: list[Booking] = []
        cursor = start
        for position, service in enumerate(services):
            rows.append(
                Booking(
                    id=uuid.uuid4(),
                    group_id=group_id,
                    position=position,
                    agenda_id=agenda.id,
                    service_id=service.id,
                    booking_date=on_date,
                    start_time=minutes_to_time(cursor),
                    end_time=minutes_to_time(cursor + service.duration_minutes),
                    guest_name=request.guest_name,
                    guest_email=normalize_email(request.guest_email),
                    guest_phone=normalize_phone(request.guest_phone),
                    notes=request.notes,
                    status=BookingStatus.PENDING,
                )
            )
            cursor += service.duration_minutes

        await BookingRepository(session).insert_group(rows)
        await record_client_booking(
            session,
            agenda.owner_id,
            request.guest_name,
            request.guest_phone,
            request.guest_email,
            on_date,
        )
        await session.commit()
    except (AgendaInactive, ServiceInactive, BookingValidationError, SlotConflict):
        await session.rollback()
        raise

    logger.info(
        "Created booking group %s on agenda %s: %s %s-%s",
        group_id,
        agenda.id,
        on_date,
        format_minutes(start),
        format_minutes(start + duration),
    )
    receipt = BookingReceipt(
        group_id=group_id,
        bookings=rows,
        agenda=agenda,
        booking_date=on_date,
        start_minutes=start,
        end_minutes=start + duration,
    )
    await notify(dispatcher, BookingEvent(receipt.booking_id, EventType.CREATED))
    return receipt


async def update_booking_status(
    session: AsyncSession,
    owner_id: str,
    booking_id: uuid.UUID,
    new_status: BookingStatus,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> list[Booking]:
    """
    Confirm or cancel a booking on behalf of the owning professional.

    The status applies to every sub-booking in the group. Cancelling frees the
    slot for the next slot query.

    The group rows are locked and re-read before the transition is checked,
    and the write only applies to rows still in the status that was checked.
    A cancelled booking therefore stays cancelled even when a confirm for it
    was already in flight.
    """
    bookings = BookingRepository(session)
    booking = await bookings.get(booking_id)
    if not booking or booking.agenda.owner_id != owner_id:
        raise NotFound("Booking not found.")

    group = await bookings.get_group(booking.group_id, lock=True)
    current = group[0].status
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(
            f"A {current.value} booking cannot become {new_status.value}.",
            details={"from": current.value, "to": new_status.value},
        )

    group = await bookings.update_status(booking.group_id, current, new_status, len(group))
    await session.commit()
    logger.info("Booking group %s is now %s", booking.group_id, new_status.value)

    await notify(dispatcher, BookingEvent(group[0].id, STATUS_EVENTS[new_status]))
    return group


async def booking_stats(session: AsyncSession, owner_id: str) -> dict[str, int]:
    """Dashboard counters: agendas and booking groups for an owner."""
    agenda_rows = (
        await session.execute(select(Agenda.is_active).where(Agenda.owner_id == owner_id))
    ).scalars().all()
    status_rows = (
        await session.execute(
            select(Booking.status, func.count(func.distinct(Booking.group_id)))
            .join(Agenda, Booking.agenda_id == Agenda.id)
            .where(Agenda.owner_id == owner_id)
            .group_by(Booking.status)
        )
    ).all()
    counts = {status: count for status, count in status_rows}
    return {
        "total_agendas": len(agenda_rows),
        "active_agendas": sum(1 for active in agenda_rows if active),
        "total_bookings": sum(counts.values()),
        "pending_bookings": counts.get(BookingStatus.PENDING, 0),
    }
