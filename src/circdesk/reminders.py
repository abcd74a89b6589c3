from __future__ import annotations
import logging
from typing import Optional
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_

from circdesk.models import Book, Loan, ActivityType, NotificationType
from circdesk.recorder import record_activity, notify

logger = logging.getLogger(__name__)

async def reminder_sweep(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Remind every subscriber whose open loan is due tomorrow. One transaction."""
    now = now or datetime.now()
    tomorrow = now.date() + timedelta(days=1)
    rows = (await session.execute(
        select(Loan.subscriber_id, Loan.book_id, Book.title)
        .join(Book, Book.id == Loan.book_id)
        .where(and_(Loan.due_date == tomorrow, Loan.actual_return_date.is_(None)))
        .order_by(Loan.id)
    )).all()
    for row in rows:
        message = f"Reminder: The book '{row.title}' is due tomorrow"
        notify(session, row.subscriber_id, message, NotificationType.REMINDER, now=now)
        record_activity(session, ActivityType.NOTIFICATION, message,
                        subscriber_id=row.subscriber_id, book_id=row.book_id, now=now)
    await session.commit()
    logger.info("[reminders] Created %s return reminder(s)", len(rows))
    return len(rows)
