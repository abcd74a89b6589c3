from __future__ import annotations
import enum
import logging
from typing import Any, Dict, List, Optional
from datetime import date, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, and_, or_

from circdesk.models import (
    Book, Loan, Subscriber, Reservation, ReservationStatus,
    ActivityType, NotificationType,
)
from circdesk.copies import lock_book, take_copy, release_copy
from circdesk.recorder import record_activity, notify
from circdesk.results import ErrorKind, ok, err

logger = logging.getLogger(__name__)

# Pickup windows: after a return or cancel, and after an expired hold is passed on.
RETURN_PICKUP_DAYS = 2
EXPIRY_PICKUP_DAYS = 3

class ReservationOutcome(str, enum.Enum):
    """Outcome of a reservation request; values are the wire tokens."""
    RESERVED = "success"
    ALREADY_RESERVED = "alreadyreserved"
    ALREADY_BORROWED = "alreadyborrowed"
    NO_COPIES_AVAILABLE = "nocopiesavailable"
    CAN_BORROW = "canborrow"
    DATABASE_ERROR = "databaseerror"
    ERROR = "error"

def _pending_for_book(book_id: int):
    return and_(Reservation.book_id == book_id, Reservation.status == ReservationStatus.PENDING)

async def has_pending(session: AsyncSession, book_id: int) -> bool:
    q = select(Reservation.id).where(_pending_for_book(book_id)).limit(1)
    return (await session.execute(q)).scalar_one_or_none() is not None

async def next_pending(session: AsyncSession, book_id: int) -> Optional[Reservation]:
    q = (
        select(Reservation)
        .where(_pending_for_book(book_id))
        .order_by(Reservation.reservation_date.asc(), Reservation.id.asc())
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(q)).scalar_one_or_none()

async def held_reservation(session: AsyncSession, subscriber_id: int, book_id: int) -> Optional[Reservation]:
    """The subscriber's FULFILLED reservation whose copy is still on the hold shelf."""
    q = (
        select(Reservation)
        .where(and_(
            Reservation.subscriber_id == subscriber_id,
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.FULFILLED,
            Reservation.collected_at.is_(None),
        ))
        .order_by(Reservation.id.asc())
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(q)).scalar_one_or_none()

async def drop_pending(session: AsyncSession, subscriber_id: int, book_id: int) -> int:
    """Cancel the subscriber's PENDING reservations on a book they now have on loan."""
    res = await session.execute(
        update(Reservation)
        .where(Reservation.subscriber_id == subscriber_id, _pending_for_book(book_id))
        .values(status=ReservationStatus.CANCELLED)
    )
    return res.rowcount

async def fulfill_next(
    session: AsyncSession,
    book: Book,
    *,
    pickup_days: int,
    now: datetime,
    librarian_id: Optional[int] = None,
) -> Optional[Reservation]:
    """Promote the oldest PENDING reservation on ``book`` and hold a copy for it.

    Runs inside the caller's transaction. Returns None when nobody is waiting
    or when no copy could be held.
    """
    resv = await next_pending(session, book.id)
    if resv is None:
        return None
    if not await take_copy(session, book.id):
        logger.warning("[reservations] No copy to hold for reservation %s (book %s)", resv.id, book.id)
        return None
    resv.status = ReservationStatus.FULFILLED
    resv.expiration_date = now.date() + timedelta(days=pickup_days)
    message = f"Book '{book.title}' is now available. Please collect within {pickup_days} days."
    notify(session, resv.subscriber_id, message, NotificationType.RESERVATION_READY, now=now)
    record_activity(
        session, ActivityType.NOTIFICATION, f"Notification sent: {message}",
        subscriber_id=resv.subscriber_id, book_id=book.id, librarian_id=librarian_id, now=now,
    )
    logger.info("[reservations] Reservation %s fulfilled, expires %s", resv.id, resv.expiration_date)
    return resv

async def request_reservation(
    session: AsyncSession,
    *,
    subscriber_id: int,
    book_id: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now()
    subscriber = await session.get(Subscriber, subscriber_id)
    if subscriber is None:
        return err(ErrorKind.NOT_FOUND, "Subscriber doesn't exist", code="SUBSCRIBER_NOT_FOUND",
                   outcome=ReservationOutcome.ERROR)
    book = await lock_book(session, book_id)
    if book is None:
        return err(ErrorKind.NOT_FOUND, "Book doesn't exist", code="BOOK_NOT_FOUND",
                   outcome=ReservationOutcome.ERROR)

    dup = await session.execute(
        select(Reservation.id).where(and_(
            Reservation.subscriber_id == subscriber_id,
            Reservation.book_id == book_id,
            or_(
                Reservation.status == ReservationStatus.PENDING,
                and_(Reservation.status == ReservationStatus.FULFILLED, Reservation.collected_at.is_(None)),
            ),
        )).limit(1)
    )
    if dup.scalar_one_or_none() is not None:
        return err(ErrorKind.CONFLICT, "Book already reserved by this subscriber", code="ALREADY_RESERVED",
                   outcome=ReservationOutcome.ALREADY_RESERVED)

    if book.available_copies > 0:
        return ok("Copies are available, borrow the book directly", outcome=ReservationOutcome.CAN_BORROW)

    pending = (await session.execute(
        select(func.count()).select_from(Reservation).where(_pending_for_book(book_id))
    )).scalar_one()
    if pending >= book.total_copies:
        return err(ErrorKind.CONFLICT, "Reservation queue is full", code="NO_COPIES_AVAILABLE",
                   outcome=ReservationOutcome.NO_COPIES_AVAILABLE)

    borrowed = await session.execute(
        select(Loan.id).where(and_(
            Loan.subscriber_id == subscriber_id,
            Loan.book_id == book_id,
            Loan.actual_return_date.is_(None),
        )).limit(1)
    )
    if borrowed.scalar_one_or_none() is not None:
        return err(ErrorKind.CONFLICT, "Book already borrowed by this subscriber", code="ALREADY_BORROWED",
                   outcome=ReservationOutcome.ALREADY_BORROWED)

    resv = Reservation(
        subscriber_id=subscriber_id, book_id=book_id,
        reservation_date=now.date(), expiration_date=None,
        status=ReservationStatus.PENDING,
    )
    session.add(resv)
    record_activity(
        session, ActivityType.RESERVATION, f"User {subscriber_id} reserved the book with ID: {book_id}",
        subscriber_id=subscriber_id, book_id=book_id, now=now,
    )
    await session.commit()
    logger.info("[reservations] Subscriber %s reserved book %s (reservation %s)", subscriber_id, book_id, resv.id)
    return ok("Reservation created", outcome=ReservationOutcome.RESERVED, reservation_id=resv.id)

async def cancel_reservation(
    session: AsyncSession,
    *,
    subscriber_id: int,
    book_id: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now()
    q = (
        select(Reservation)
        .where(and_(
            Reservation.subscriber_id == subscriber_id,
            Reservation.book_id == book_id,
            Reservation.status.in_([ReservationStatus.PENDING, ReservationStatus.FULFILLED]),
            Reservation.collected_at.is_(None),
        ))
        .order_by(Reservation.id.asc())
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    resv = (await session.execute(q)).scalar_one_or_none()
    if resv is None:
        return err(ErrorKind.NOT_FOUND, "No active reservation found for this book and subscriber",
                   code="ACTIVE_RESERVATION_NOT_FOUND")
    book = await lock_book(session, book_id)
    was_holding = resv.status == ReservationStatus.FULFILLED
    resv.status = ReservationStatus.CANCELLED
    message = f"Reservation cancelled for book: {book.title}"
    notify(session, subscriber_id, message, NotificationType.CANCELLED_RESERVATION, now=now)
    record_activity(session, ActivityType.RESERVATION, message,
                    subscriber_id=subscriber_id, book_id=book_id, now=now)
    if was_holding:
        await release_copy(session, book_id)
        await fulfill_next(session, book, pickup_days=RETURN_PICKUP_DAYS, now=now)
    await session.commit()
    logger.info("[reservations] Reservation %s cancelled by subscriber %s", resv.id, subscriber_id)
    return ok("Reservation cancelled successfully", reservation_id=resv.id)

async def _expire_one(session: AsyncSession, reservation_id: int, now: datetime) -> bool:
    q = (
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    resv = (await session.execute(q)).scalar_one_or_none()
    # re-check: a concurrent borrow or cancel may have settled it already
    if (
        resv is None
        or resv.status != ReservationStatus.FULFILLED
        or resv.collected_at is not None
        or resv.expiration_date is None
        or resv.expiration_date > now.date()
    ):
        return False
    book = await lock_book(session, resv.book_id)
    resv.status = ReservationStatus.CANCELLED
    await release_copy(session, book.id)
    notify(
        session, resv.subscriber_id,
        f"Your reservation for '{book.title}' has expired and been cancelled.",
        NotificationType.RESERVATION_EXPIRED, now=now,
    )
    record_activity(
        session, ActivityType.RESERVATION, f"Reservation cancelled due to expiration for book: {book.title}",
        subscriber_id=resv.subscriber_id, book_id=book.id, now=now,
    )
    await fulfill_next(session, book, pickup_days=EXPIRY_PICKUP_DAYS, now=now)
    return True

async def expired_reservation_ids(session: AsyncSession, today: date) -> List[int]:
    q = (
        select(Reservation.id)
        .where(and_(
            Reservation.status == ReservationStatus.FULFILLED,
            Reservation.collected_at.is_(None),
            Reservation.expiration_date <= today,
        ))
        .order_by(Reservation.expiration_date.asc(), Reservation.id.asc())
    )
    return list((await session.execute(q)).scalars().all())

async def expiry_sweep(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Cancel uncollected FULFILLED reservations past their expiration date.

    Each reservation is settled in its own transaction: cancel it, put the
    held copy back, tell the subscriber, then pass the copy to the next
    subscriber in line (EXPIRY_PICKUP_DAYS window). Returns the number of
    reservations cancelled.
    """
    now = now or datetime.now()
    ids = await expired_reservation_ids(session, now.date())
    await session.rollback()
    cancelled = 0
    for rid in ids:
        try:
            if await _expire_one(session, rid, now):
                await session.commit()
                cancelled += 1
            else:
                await session.rollback()
        except Exception:
            await session.rollback()
            logger.exception("[reservations] Expiry failed for reservation %s", rid)
    logger.info("[reservations] Expiry sweep cancelled %s reservation(s)", cancelled)
    return cancelled
