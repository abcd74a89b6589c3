"""Copy counters on ``books``.

Counters are only moved with guarded UPDATEs so that two transactions racing
for the last copy cannot both win: the loser's statement matches no row.
"""
from __future__ import annotations
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from circdesk.models import Book

async def lock_book(session: AsyncSession, book_id: int) -> Optional[Book]:
    q = (
        select(Book)
        .where(Book.id == book_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(q)).scalar_one_or_none()

async def take_copy(session: AsyncSession, book_id: int) -> bool:
    res = await session.execute(
        update(Book)
        .where(Book.id == book_id, Book.available_copies > 0)
        .values(available_copies=Book.available_copies - 1)
    )
    return res.rowcount == 1

async def release_copy(session: AsyncSession, book_id: int) -> bool:
    res = await session.execute(
        update(Book)
        .where(Book.id == book_id, Book.available_copies < Book.total_copies)
        .values(available_copies=Book.available_copies + 1)
    )
    return res.rowcount == 1

async def write_off_copy(session: AsyncSession, book_id: int) -> bool:
    # a lost copy was on loan, so it was never counted in available_copies
    res = await session.execute(
        update(Book)
        .where(Book.id == book_id, Book.total_copies > Book.available_copies)
        .values(total_copies=Book.total_copies - 1)
    )
    return res.rowcount == 1
