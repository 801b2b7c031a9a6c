"""
Earnings and expenses for a professional.

Earnings are the prices of the services behind confirmed bookings; pending
and cancelled bookings never count. Figures are reported for "today" and for
the current month (from the 1st up to and including today) in the display
timezone.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import BookingValidationError, NotFound
from .models import Agenda, Booking, BookingStatus, Expense, Service

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class FinancialSummary:
    today_earnings: Decimal
    today_expenses: Decimal
    today_balance: Decimal
    month_earnings: Decimal
    month_expenses: Decimal
    month_balance: Decimal

    def to_dict(self) -> dict:
        return {key: float(value) for key, value in asdict(self).items()}


async def _earnings_between(session: AsyncSession, owner_id: str, start: date, end: date) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(Service.price), 0))
        .select_from(Booking)
        .join(Agenda, Booking.agenda_id == Agenda.id)
        .join(Service, Booking.service_id == Service.id)
        .where(
            Agenda.owner_id == owner_id,
            Booking.status == BookingStatus.CONFIRMED,
            Booking.booking_date >= start,
            Booking.booking_date <= end,
        )
    )
    return Decimal(str(result.scalar_one() or 0)).quantize(ZERO)


async def _expenses_between(session: AsyncSession, owner_id: str, start: date, end: date) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(Expense.amount), 0)).where(
            Expense.owner_id == owner_id,
            Expense.expense_date >= start,
            Expense.expense_date <= end,
        )
    )
    return Decimal(str(result.scalar_one() or 0)).quantize(ZERO)


async def financial_summary(session: AsyncSession, owner_id: str, today: date) -> FinancialSummary:
    month_start = today.replace(day=1)
    today_earnings = await _earnings_between(session, owner_id, today, today)
    today_expenses = await _expenses_between(session, owner_id, today, today)
    month_earnings = await _earnings_between(session, owner_id, month_start, today)
    month_expenses = await _expenses_between(session, owner_id, month_start, today)
    return FinancialSummary(
        today_earnings=today_earnings,
        today_expenses=today_expenses,
        today_balance=today_earnings - today_expenses,
        month_earnings=month_earnings,
        month_expenses=month_expenses,
        month_balance=month_earnings - month_expenses,
    )


async def add_expense(
    session: AsyncSession,
    owner_id: str,
    description: str,
    category: str,
    amount: Decimal,
    expense_date: date,
) -> Expense:
    if amount < 0:
        raise BookingValidationError("Expense amount cannot be negative.")
    expense = Expense(
        owner_id=owner_id,
        description=description.strip(),
        category=category.strip(),
        amount=amount,
        expense_date=expense_date,
    )
    session.add(expense)
    await session.flush()
    logger.info("Recorded expense %s for owner %s", expense.id, owner_id)
    return expense


async def list_expenses(
    session: AsyncSession,
    owner_id: str,
    since: Optional[date] = None,
) -> Sequence[Expense]:
    stmt = select(Expense).where(Expense.owner_id == owner_id)
    if since:
        stmt = stmt.where(Expense.expense_date >= since)
    result = await session.execute(stmt.order_by(Expense.expense_date.desc(), Expense.created_at.desc()))
    return result.scalars().all()


async def delete_expense(session: AsyncSession, owner_id: str, expense_id) -> None:
    result = await session.execute(
        select(Expense).where(Expense.id == expense_id, Expense.owner_id == owner_id)
    )
    expense = result.scalar_one_or_none()
    if not expense:
        raise NotFound("Expense not found.")
    await session.delete(expense)
    await session.flush()
