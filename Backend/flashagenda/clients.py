from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Sequence

from sqlalchemy import case, desc, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Client

UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def normalize_phone(phone: str) -> str:
    """Keep a leading + and the digits: "(11) 99999-0000" -> "11999990000"."""
    phone = phone.strip()
    digits = re.sub(r"\D", "", phone)
    return f"+{digits}" if phone.startswith("+") else digits


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


async def get_client_by_phone(session: AsyncSession, owner_id: str, phone: str) -> Client | None:
    result = await session.execute(
        select(Client)
        .where(Client.owner_id == owner_id, Client.phone == normalize_phone(phone))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def record_client_booking(
    session: AsyncSession,
    owner_id: str,
    name: str,
    phone: str,
    email: str | None,
    booking_date: date,
) -> Client:
    """
    Upsert the professional's client entry for a new booking.

    One INSERT ... ON CONFLICT on (owner_id, phone): two first bookings by the
    same phone in parallel transactions end up counting on the same row
    instead of failing on the unique constraint.
    """
    insert = UPSERT_INSERTS[session.get_bind().dialect.name]
    row = Client.__table__.c
    stmt = insert(Client).values(
        id=uuid.uuid4(),
        owner_id=owner_id,
        name=name.strip(),
        phone=normalize_phone(phone),
        email=normalize_email(email),
        total_bookings=1,
        first_booking_date=booking_date,
        last_booking_date=booking_date,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["owner_id", "phone"],
        set_={
            "total_bookings": row.total_bookings + 1,
            "name": stmt.excluded.name,
            "email": func.coalesce(stmt.excluded.email, row.email),
            "first_booking_date": case(
                (stmt.excluded.first_booking_date < row.first_booking_date, stmt.excluded.first_booking_date),
                else_=row.first_booking_date,
            ),
            "last_booking_date": case(
                (stmt.excluded.last_booking_date > row.last_booking_date, stmt.excluded.last_booking_date),
                else_=row.last_booking_date,
            ),
        },
    )
    await session.execute(stmt)
    return await get_client_by_phone(session, owner_id, phone)


async def list_clients(session: AsyncSession, owner_id: str) -> Sequence[Client]:
    result = await session.execute(
        select(Client).where(Client.owner_id == owner_id).order_by(desc(Client.last_booking_date))
    )
    return result.scalars().all()


@dataclass
class ClientStats:
    total: int
    new_this_month: int
    returning: int


def summarize_clients(clients: Sequence[Client], today: date) -> ClientStats:
    month_start = today.replace(day=1)
    return ClientStats(
        total=len(clients),
        new_this_month=sum(1 for c in clients if c.first_booking_date >= month_start),
        returning=sum(1 for c in clients if c.total_bookings > 1),
    )
