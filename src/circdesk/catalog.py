from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from circdesk.models import Book, Loan, Subscriber, SubscriberStatus
from circdesk.results import ErrorKind, ok, err
from circdesk.status import add_history

logger = logging.getLogger(__name__)

SEARCH_FIELDS = {
    "title": Book.title,
    "author": Book.author,
    "subject": Book.subject,
    "description": Book.description,
}

async def register_book(
    session: AsyncSession,
    *,
    title: str,
    total_copies: int = 1,
    author: Optional[str] = None,
    subject: Optional[str] = None,
    description: Optional[str] = None,
    shelf_location: Optional[str] = None,
) -> Dict[str, Any]:
    if not (title or "").strip():
        return err(ErrorKind.PROTOCOL, "Book title is required", code="MISSING_TITLE")
    if total_copies < 0:
        return err(ErrorKind.PROTOCOL, "Total copies cannot be negative", code="INVALID_COPIES")
    b = Book(
        title=title.strip(), author=author, subject=subject, description=description,
        shelf_location=shelf_location, total_copies=total_copies, available_copies=total_copies,
    )
    session.add(b)
    await session.commit()
    logger.info("[catalog] Registered book %s (%s copies)", b.id, total_copies)
    return ok("Book registered successfully", book_id=b.id)

async def register_subscriber(
    session: AsyncSession,
    *,
    full_name: str,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now()
    if not (full_name or "").strip():
        return err(ErrorKind.PROTOCOL, "Subscriber name is required", code="MISSING_NAME")
    email_norm = (email or "").strip().lower() or None
    if email_norm:
        dup = await session.execute(select(Subscriber.id).where(Subscriber.email == email_norm))
        if dup.scalar_one_or_none() is not None:
            return err(ErrorKind.CONFLICT, "A subscriber with this email already exists", code="EMAIL_EXISTS")
    s = Subscriber(full_name=full_name.strip(), email=email_norm, phone=phone, status=SubscriberStatus.ACTIVE)
    session.add(s)
    await session.flush()
    add_history(session, s.id, SubscriberStatus.ACTIVE, "Subscriber registered", now)
    await session.commit()
    logger.info("[catalog] Registered subscriber %s", s.id)
    return ok("Subscriber registered successfully", subscriber_id=s.id)

async def get_book(session: AsyncSession, book_id: int) -> Optional[Book]:
    return (await session.execute(select(Book).where(Book.id == book_id))).scalar_one_or_none()

async def list_books(session: AsyncSession) -> List[Book]:
    return list((await session.execute(select(Book).order_by(Book.id))).scalars().all())

async def search_books(session: AsyncSession, *, field: str, term: str) -> List[Book]:
    column = SEARCH_FIELDS[field]
    needle = (term or "").strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    q = select(Book).where(func.lower(column).like(f"%{needle}%", escape="\\")).order_by(Book.title, Book.id)
    return list((await session.execute(q)).scalars().all())

async def list_members(session: AsyncSession) -> List[Subscriber]:
    return list((await session.execute(select(Subscriber).order_by(Subscriber.id))).scalars().all())

async def borrow_history(session: AsyncSession, subscriber_id: int) -> List[Dict[str, Any]]:
    q = (
        select(Loan.id, Loan.book_id, Book.title, Loan.loan_date, Loan.due_date, Loan.actual_return_date)
        .join(Book, Book.id == Loan.book_id)
        .where(Loan.subscriber_id == subscriber_id)
        .order_by(Loan.loan_date.desc(), Loan.id.desc())
    )
    return [
        {
            "loan_id": r.id,
            "book_id": r.book_id,
            "title": r.title,
            "subscriber_id": subscriber_id,
            "loan_date": r.loan_date,
            "due_date": r.due_date,
            "actual_return_date": r.actual_return_date,
        }
        for r in (await session.execute(q)).all()
    ]
