"""
Typed repositories, one per aggregate.

Every query for owner data goes through these classes so that ownership
(`owner_id`) and agenda scoping are applied in exactly one place.

Usage:
    from flashagenda.repositories import AvailabilityRepository, BookingRepository

    windows = await AvailabilityRepository(session).list_windows(agenda.id, day)
    taken = await BookingRepository(session).list_intervals(agenda.id, on_date)
"""

import logging
import re
import unicodedata
import uuid
from datetime import date, time
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .errors import BookingValidationError, InvalidStatusTransition, NotFound, SlotConflict
from .models import (
    Agenda,
    AvailabilityWindow,
    BLOCKING_STATUSES,
    Booking,
    BookingStatus,
    Service,
)
from .slots import Interval, Window, minutes_to_time, parse_time

logger = logging.getLogger(__name__)

# Names of the storage constraints that mean "someone already holds this slot".
SLOT_CONSTRAINT_MARKERS = ("uq_booking_agenda_slot", "UNIQUE constraint failed: bookings")


def generate_slug(text: str) -> str:
    """
    Build a URL slug from an agenda title.

    "Estúdio Ana Beleza!" -> "estudio-ana-beleza"
    """
    normalized = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", "-", stripped).strip("-")


def _parse_wall_clock(value, field: str) -> int:
    try:
        return parse_time(value)
    except (TypeError, ValueError) as exc:
        raise BookingValidationError(
            f"Invalid {field}. Use HH:MM (24-hour).", details={"field": field}
        ) from exc


# ────────────────────────────────────────────────────────────────
# Agendas
# ────────────────────────────────────────────────────────────────

class AgendaRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, agenda_id: uuid.UUID) -> Optional[Agenda]:
        return await self.session.get(Agenda, agenda_id)

    async def get_for_update(self, agenda_id: uuid.UUID) -> Optional[Agenda]:
        """
        Load an agenda and lock its row until the transaction ends.

        Booking creation takes this lock before reading existing bookings, so
        concurrent creates for the same agenda run one after the other on
        PostgreSQL. Backends without row locks ignore FOR UPDATE.
        """
        result = await self.session.execute(
            select(Agenda)
            .where(Agenda.id == agenda_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_active_by_slug(self, slug: str) -> Optional[Agenda]:
        result = await self.session.execute(
            select(Agenda).where(Agenda.slug == slug, Agenda.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_owned(self, owner_id: str, agenda_id: uuid.UUID) -> Agenda:
        result = await self.session.execute(
            select(Agenda).where(Agenda.id == agenda_id, Agenda.owner_id == owner_id)
        )
        agenda = result.scalar_one_or_none()
        if not agenda:
            raise NotFound("Agenda not found.")
        return agenda

    async def list_for_owner(self, owner_id: str) -> Sequence[Agenda]:
        result = await self.session.execute(
            select(Agenda).where(Agenda.owner_id == owner_id).order_by(Agenda.created_at, Agenda.title)
        )
        return result.scalars().all()

    async def unique_slug(self, title: str) -> str:
        base = generate_slug(title) or "agenda"
        result = await self.session.execute(
            select(Agenda.slug).where(Agenda.slug.like(f"{base}%"))
        )
        taken = set(result.scalars().all())
        if base not in taken:
            return base
        suffix = 2
        while f"{base}-{suffix}" in taken:
            suffix += 1
        return f"{base}-{suffix}"

    async def create(self, owner_id: str, title: str, description: Optional[str] = None) -> Agenda:
        agenda = Agenda(
            owner_id=owner_id,
            title=title.strip(),
            description=description,
            slug=await self.unique_slug(title),
            is_active=True,
            lunch_break_start=None,
            lunch_break_end=None,
        )
        self.session.add(agenda)
        await self.session.flush()
        return agenda


# ────────────────────────────────────────────────────────────────
# Availability
# ────────────────────────────────────────────────────────────────

class AvailabilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_windows(self, agenda_id: uuid.UUID, day_of_week: int) -> list[Window]:
        result = await self.session.execute(
            select(AvailabilityWindow)
            .where(
                AvailabilityWindow.agenda_id == agenda_id,
                AvailabilityWindow.day_of_week == day_of_week,
            )
            .order_by(AvailabilityWindow.start_time)
        )
        return [
            Window.of(row.day_of_week, row.start_time, row.end_time)
            for row in result.scalars().all()
        ]

    async def list_all(self, agenda_id: uuid.UUID) -> Sequence[AvailabilityWindow]:
        result = await self.session.execute(
            select(AvailabilityWindow)
            .where(AvailabilityWindow.agenda_id == agenda_id)
            .order_by(AvailabilityWindow.day_of_week, AvailabilityWindow.start_time)
        )
        return result.scalars().all()

    async def add_window(
        self,
        agenda_id: uuid.UUID,
        day_of_week: int,
        start,
        end,
    ) -> AvailabilityWindow:
        if not 0 <= day_of_week <= 6:
            raise BookingValidationError(
                "Day of week must be between 0 (Sunday) and 6 (Saturday).",
                details={"field": "day_of_week"},
            )
        start_min = _parse_wall_clock(start, "start_time")
        end_min = _parse_wall_clock(end, "end_time")
        if start_min >= end_min:
            raise BookingValidationError("Start time must be before end time.")

        window = AvailabilityWindow(
            agenda_id=agenda_id,
            day_of_week=day_of_week,
            start_time=minutes_to_time(start_min),
            end_time=minutes_to_time(end_min),
        )
        self.session.add(window)
        await self.session.flush()
        return window

    async def add_split_window(
        self,
        agenda_id: uuid.UUID,
        day_of_week: int,
        start,
        end,
        gap_start,
        gap_end,
    ) -> list[AvailabilityWindow]:
        """Insert a morning and an afternoon window around a manual break."""
        start_min = _parse_wall_clock(start, "start_time")
        end_min = _parse_wall_clock(end, "end_time")
        gap_start_min = _parse_wall_clock(gap_start, "break_start")
        gap_end_min = _parse_wall_clock(gap_end, "break_end")
        if start_min >= end_min:
            raise BookingValidationError("Start time must be before end time.")
        if gap_start_min >= gap_end_min:
            raise BookingValidationError("Break start must be before break end.")
        if gap_start_min <= start_min or gap_end_min >= end_min:
            raise BookingValidationError("The break must fall inside the working hours.")

        return [
            await self.add_window(agenda_id, day_of_week, start_min, gap_start_min),
            await self.add_window(agenda_id, day_of_week, gap_end_min, end_min),
        ]

    async def delete_window(self, agenda_id: uuid.UUID, window_id: uuid.UUID) -> None:
        result = await self.session.execute(
            select(AvailabilityWindow).where(
                AvailabilityWindow.id == window_id,
                AvailabilityWindow.agenda_id == agenda_id,
            )
        )
        window = result.scalar_one_or_none()
        if not window:
            raise NotFound("Availability window not found.")
        await self.session.delete(window)
        await self.session.flush()

    @staticmethod
    def lunch_break_of(agenda: Agenda) -> Optional[Interval]:
        if not agenda.has_lunch_break():
            return None
        return Interval.of(agenda.lunch_break_start, agenda.lunch_break_end)

    async def get_lunch_break(self, agenda_id: uuid.UUID) -> Optional[Interval]:
        agenda = await self.session.get(Agenda, agenda_id)
        if not agenda:
            return None
        return self.lunch_break_of(agenda)

    async def set_lunch_break(self, agenda: Agenda, start=None, end=None) -> Optional[Interval]:
        """Set the agenda-wide lunch break, or clear it when both ends are empty."""
        if not start and not end:
            agenda.lunch_break_start = None
            agenda.lunch_break_end = None
            await self.session.flush()
            return None
        if not start or not end:
            raise BookingValidationError("Lunch break needs both a start and an end time.")

        start_min = _parse_wall_clock(start, "lunch_break_start")
        end_min = _parse_wall_clock(end, "lunch_break_end")
        if start_min >= end_min:
            raise BookingValidationError("Lunch break start must be before its end.")

        agenda.lunch_break_start = minutes_to_time(start_min)
        agenda.lunch_break_end = minutes_to_time(end_min)
        await self.session.flush()
        return Interval(start_min, end_min)


# ────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────

class ServiceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_many(self, service_ids: Sequence[uuid.UUID]) -> list[Service]:
        """Services in the order requested; missing ids are simply absent."""
        if not service_ids:
            return []
        result = await self.session.execute(select(Service).where(Service.id.in_(service_ids)))
        by_id = {service.id: service for service in result.scalars().all()}
        return [by_id[service_id] for service_id in service_ids if service_id in by_id]

    async def get_owned(self, owner_id: str, service_id: uuid.UUID) -> Service:
        result = await self.session.execute(
            select(Service).where(Service.id == service_id, Service.owner_id == owner_id)
        )
        service = result.scalar_one_or_none()
        if not service:
            raise NotFound("Service not found.")
        return service

    async def list_for_owner(self, owner_id: str, active_only: bool = False) -> Sequence[Service]:
        stmt = select(Service).where(Service.owner_id == owner_id)
        if active_only:
            stmt = stmt.where(Service.active.is_(True))
        result = await self.session.execute(stmt.order_by(Service.name))
        return result.scalars().all()

    async def create(
        self,
        owner_id: str,
        name: str,
        duration_minutes: int,
        price: Decimal,
        description: Optional[str] = None,
    ) -> Service:
        if duration_minutes <= 0:
            raise BookingValidationError("Duration must be greater than zero.")
        if price < 0:
            raise BookingValidationError("Price cannot be negative.")
        service = Service(
            owner_id=owner_id,
            name=name.strip(),
            description=description,
            duration_minutes=duration_minutes,
            price=price,
            active=True,
        )
        self.session.add(service)
        await self.session.flush()
        return service


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_intervals(
        self,
        agenda_id: uuid.UUID,
        on_date: date,
        statuses: Iterable[BookingStatus] = BLOCKING_STATUSES,
    ) -> list[Interval]:
        """Occupied intervals on a date, read fresh from the database."""
        result = await self.session.execute(
            select(Booking.start_time, Booking.end_time).where(
                Booking.agenda_id == agenda_id,
                Booking.booking_date == on_date,
                Booking.status.in_(list(statuses)),
            )
        )
        return [Interval.of(start, end) for start, end in result.all()]

    async def insert_group(self, bookings: Sequence[Booking]) -> list[Booking]:
        """
        Insert the sub-bookings of one request together.

        Either every row is flushed or none is: a storage conflict rolls the
        whole session back and surfaces as SlotConflict.
        """
        self.session.add_all(bookings)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            if any(marker in str(exc.orig) for marker in SLOT_CONSTRAINT_MARKERS):
                logger.info("Slot constraint rejected booking insert: %s", exc.orig)
                raise SlotConflict() from exc
            raise
        return list(bookings)

    async def get(self, booking_id: uuid.UUID) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking)
            .options(selectinload(Booking.agenda), selectinload(Booking.service))
            .where(Booking.id == booking_id)
        )
        return result.scalar_one_or_none()

    async def get_group(self, group_id: uuid.UUID, lock: bool = False) -> list[Booking]:
        """
        Rows of a booking group in position order.

        With `lock`, the rows are read FOR UPDATE and reloaded over whatever
        the session already holds, so the caller sees the committed status.
        """
        stmt = (
            select(Booking)
            .options(selectinload(Booking.service))
            .where(Booking.group_id == group_id)
            .order_by(Booking.position)
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_status(
        self,
        group_id: uuid.UUID,
        from_status: BookingStatus,
        new_status: BookingStatus,
        expected_rows: int,
    ) -> list[Booking]:
        """
        Move every row of a group from `from_status` to `new_status`.

        The write only matches rows still in `from_status`; if another
        transaction changed the group first, nothing is kept and
        InvalidStatusTransition is raised.
        """
        result = await self.session.execute(
            update(Booking)
            .where(Booking.group_id == group_id, Booking.status == from_status)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != expected_rows:
            await self.session.rollback()
            logger.info("Booking group %s changed before %s could be applied", group_id, new_status.value)
            raise InvalidStatusTransition(
                "This booking was changed in the meantime. Reload it and try again.",
                details={"to": new_status.value},
            )
        return await self.get_group(group_id, lock=True)

    async def list_for_agenda(
        self,
        agenda_id: uuid.UUID,
        on_date: Optional[date] = None,
        status: Optional[BookingStatus] = None,
    ) -> Sequence[Booking]:
        stmt = (
            select(Booking)
            .options(selectinload(Booking.service))
            .where(Booking.agenda_id == agenda_id)
        )
        if on_date:
            stmt = stmt.where(Booking.booking_date == on_date)
        if status:
            stmt = stmt.where(Booking.status == status)
        result = await self.session.execute(
            stmt.order_by(Booking.booking_date, Booking.start_time, Booking.position)
        )
        return result.scalars().all()


def booking_span(group: Sequence[Booking]) -> tuple[time, time]:
    """Overall start and end of a booking group."""
    return min(row.start_time for row in group), max(row.end_time for row in group)
