from __future__ import annotations
import logging
from typing import Any, Dict, Optional
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_

from circdesk.models import Loan, Subscriber, SubscriberStatus, ActivityType, NotificationType
from circdesk.copies import lock_book, take_copy, release_copy, write_off_copy
from circdesk.recorder import record_activity, notify
from circdesk.reservations import drop_pending, fulfill_next, has_pending, held_reservation, RETURN_PICKUP_DAYS
from circdesk.results import ErrorKind, ok, err
from circdesk.status import freeze

logger = logging.getLogger(__name__)

LOAN_DAYS = 14
EXTENSION_DAYS = 7
EXTENSION_WINDOW_DAYS = 7
FREEZE_AFTER_LATE_DAYS = 7

async def _lock_subscriber(session: AsyncSession, subscriber_id: int) -> Optional[Subscriber]:
    q = (
        select(Subscriber)
        .where(Subscriber.id == subscriber_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(q)).scalar_one_or_none()

async def _open_loan(session: AsyncSession, subscriber_id: int, book_id: int) -> Optional[Loan]:
    q = (
        select(Loan)
        .where(and_(Loan.subscriber_id == subscriber_id, Loan.book_id == book_id, Loan.actual_return_date.is_(None)))
        .order_by(Loan.id.asc())
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(q)).scalar_one_or_none()

def _late_suffix(days: int) -> str:
    return f" ({days} {'day' if days == 1 else 'days'} late)"

async def borrow(
    session: AsyncSession,
    *,
    book_id: int,
    subscriber_id: int,
    librarian_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now()
    subscriber = await _lock_subscriber(session, subscriber_id)
    if subscriber is None:
        return err(ErrorKind.NOT_FOUND, "Subscriber doesn't exist", code="SUBSCRIBER_NOT_FOUND")
    if subscriber.status == SubscriberStatus.FROZEN:
        return err(ErrorKind.CONFLICT, "Subscriber is frozen and cannot borrow books", code="SUBSCRIBER_FROZEN")
    book = await lock_book(session, book_id)
    if book is None:
        return err(ErrorKind.NOT_FOUND, "Book doesn't exist", code="BOOK_NOT_FOUND")

    held = await held_reservation(session, subscriber_id, book_id)
    if held is None and book.available_copies <= 0:
        return err(ErrorKind.CONFLICT, "No copies of this book are available", code="NO_COPIES_AVAILABLE")
    if await _open_loan(session, subscriber_id, book_id) is not None:
        return err(ErrorKind.CONFLICT, "Subscriber already has an active loan for this book", code="ALREADY_BORROWED")

    if held is not None:
        # the copy was taken off the shelf when the reservation was fulfilled
        held.collected_at = now
    elif not await take_copy(session, book_id):
        return err(ErrorKind.CONFLICT, "No copies of this book are available", code="NO_COPIES_AVAILABLE")

    loan = Loan(
        subscriber_id=subscriber_id, book_id=book_id,
        loan_date=now.date(), due_date=now.date() + timedelta(days=LOAN_DAYS),
    )
    session.add(loan)
    # a loan settles any reservation still queued for the same book
    if await drop_pending(session, subscriber_id, book_id):
        logger.info("[lending] Dropped queued reservation of subscriber %s on book %s", subscriber_id, book_id)
    message = f"Successfully borrowed book: {book.title}"
    record_activity(session, ActivityType.LOAN, message,
                    subscriber_id=subscriber_id, book_id=book_id, librarian_id=librarian_id, now=now)
    await session.commit()
    logger.info("[lending] Loan %s opened: book %s -> subscriber %s, due %s", loan.id, book_id, subscriber_id, loan.due_date)
    return ok(message, loan_id=loan.id, due_date=loan.due_date.isoformat())

async def return_book(
    session: AsyncSession,
    *,
    book_id: int,
    subscriber_id: int,
    librarian_id: Optional[int] = None,
    is_lost: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now()
    loan = await _open_loan(session, subscriber_id, book_id)
    if loan is None:
        return err(ErrorKind.NOT_FOUND, "No active loan found for this book and subscriber", code="ACTIVE_LOAN_NOT_FOUND")
    book = await lock_book(session, book_id)
    loan.actual_return_date = now.date()

    if is_lost:
        await write_off_copy(session, book_id)
        message = f"Book reported as lost: {book.title}"
        record_activity(session, ActivityType.LOSS, message,
                        subscriber_id=subscriber_id, book_id=book_id, librarian_id=librarian_id, now=now)
        await session.commit()
        logger.info("[lending] Loan %s closed as lost, book %s total now %s", loan.id, book_id, book.total_copies)
        return ok(message, loan_id=loan.id, late_days=0, frozen=False, cascaded=False)

    await release_copy(session, book_id)
    late_days = (loan.actual_return_date - loan.due_date).days
    message = f"Successfully returned book: {book.title}"
    if late_days > 0:
        message += _late_suffix(late_days)

    frozen = False
    if late_days > FREEZE_AFTER_LATE_DAYS:
        subscriber = await _lock_subscriber(session, subscriber_id)
        freeze(session, subscriber, now=now)
        notify(
            session, subscriber_id,
            f"Your account has been frozen for returning '{book.title}' {late_days} days late.",
            NotificationType.LATE_RETURN, now=now,
        )
        message += " - Note: Member has been frozen due to late return"
        frozen = True

    record_activity(session, ActivityType.RETURN, message,
                    subscriber_id=subscriber_id, book_id=book_id, librarian_id=librarian_id, now=now)

    promoted = await fulfill_next(session, book, pickup_days=RETURN_PICKUP_DAYS, now=now, librarian_id=librarian_id)
    if promoted is not None:
        message += "\nNotification sent to waiting subscriber."

    await session.commit()
    logger.info("[lending] Loan %s returned (%s day(s) late)", loan.id, max(late_days, 0))
    return ok(message, loan_id=loan.id, late_days=max(late_days, 0), frozen=frozen, cascaded=promoted is not None)

async def extend_loan(
    session: AsyncSession,
    *,
    subscriber_id: int,
    book_id: int,
    librarian_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Push the due date of an open loan back by EXTENSION_DAYS.

    Librarian and self-service extensions share one rule set; self-service
    callers pass ``librarian_id`` 0 or None.
    """
    now = now or datetime.now()
    subscriber = await session.get(Subscriber, subscriber_id, populate_existing=True)
    if subscriber is None:
        return err(ErrorKind.NOT_FOUND, "Subscriber doesn't exist", code="SUBSCRIBER_NOT_FOUND")
    if subscriber.status == SubscriberStatus.FROZEN:
        return err(ErrorKind.CONFLICT, "Cannot extend loan - Subscriber is frozen", code="SUBSCRIBER_FROZEN")
    if await has_pending(session, book_id):
        return err(ErrorKind.CONFLICT, "Cannot extend loan - Book has pending reservations", code="PENDING_RESERVATIONS")
    loan = await _open_loan(session, subscriber_id, book_id)
    if loan is None:
        return err(ErrorKind.NOT_FOUND, "No active loan found for this book and subscriber", code="ACTIVE_LOAN_NOT_FOUND")
    days_left = (loan.due_date - now.date()).days
    if days_left > EXTENSION_WINDOW_DAYS:
        return err(ErrorKind.CONFLICT, "Cannot extend loan - More than 7 days remaining until return date",
                   code="OUTSIDE_EXTENSION_WINDOW")

    book = await lock_book(session, book_id)
    loan.due_date = loan.due_date + timedelta(days=EXTENSION_DAYS)
    record_activity(
        session, ActivityType.EXTENSION, f"Extended loan for book: {book.title} by {EXTENSION_DAYS} days",
        subscriber_id=subscriber_id, book_id=book_id, librarian_id=librarian_id, now=now,
    )
    await session.commit()
    logger.info("[lending] Loan %s extended to %s", loan.id, loan.due_date)
    return ok(f"Successfully extended loan for book: {book.title}", loan_id=loan.id, due_date=loan.due_date.isoformat())
