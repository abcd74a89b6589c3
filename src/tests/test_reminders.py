import pytest
from datetime import datetime, timedelta
from sqlalchemy import select
from circdesk import models
from circdesk.lending import borrow, return_book, LOAN_DAYS
from circdesk.recorder import list_notifications
from circdesk.reminders import reminder_sweep

pytestmark = pytest.mark.asyncio

T0 = datetime(2024, 4, 2, 9, 0)

async def test_reminds_loans_due_tomorrow_only(session, make_book, make_subscriber):
    due_soon = await make_book(title="Dune")
    later = await make_book(title="Emma")
    sid = await make_subscriber()
    await borrow(session, book_id=due_soon, subscriber_id=sid, now=T0)
    await borrow(session, book_id=later, subscriber_id=sid, now=T0 + timedelta(days=3))

    assert await reminder_sweep(session, now=T0 + timedelta(days=LOAN_DAYS - 2)) == 0
    assert await reminder_sweep(session, now=T0 + timedelta(days=LOAN_DAYS - 1)) == 1

    notes = await list_notifications(session, sid)
    assert len(notes) == 1
    assert notes[0].type == models.NotificationType.REMINDER
    assert notes[0].message == "Reminder: The book 'Dune' is due tomorrow"
    logs = (await session.execute(
        select(models.ActivityLog).where(models.ActivityLog.activity_type == models.ActivityType.NOTIFICATION)
    )).scalars().all()
    assert [(a.subscriber_id, a.book_id) for a in logs] == [(sid, due_soon)]

async def test_returned_loans_are_not_reminded(session, make_book, make_subscriber):
    book_id = await make_book()
    sid = await make_subscriber()
    await borrow(session, book_id=book_id, subscriber_id=sid, now=T0)
    await return_book(session, book_id=book_id, subscriber_id=sid, now=T0 + timedelta(days=2))
    assert await reminder_sweep(session, now=T0 + timedelta(days=LOAN_DAYS - 1)) == 0
    assert await list_notifications(session, sid) == []
