import os
import pytest
from datetime import date, datetime, timedelta
from sqlalchemy import select
from circdesk import models
from circdesk.reports import (
    ReportCache, ReportKind, ReportSnapshot,
    loan_duration_counts, late_return_counts, member_status_distribution,
)

pytestmark = pytest.mark.asyncio

TODAY = date(2024, 6, 30)
NOON = datetime(2024, 6, 30, 12, 0)

async def _loan(session, book_id, subscriber_id, loan_date, held_days, due_days=14):
    session.add(models.Loan(
        book_id=book_id, subscriber_id=subscriber_id, loan_date=loan_date,
        due_date=loan_date + timedelta(days=due_days),
        actual_return_date=None if held_days is None else loan_date + timedelta(days=held_days),
    ))
    await session.commit()

async def _history(session, subscriber_id, status, at):
    session.add(models.SubscriberStatusHistory(subscriber_id=subscriber_id, status=status, change_date=at, reason="test"))
    await session.commit()

async def test_loan_duration_buckets(session, make_book, make_subscriber):
    book_id = await make_book()
    sid = await make_subscriber()
    start = date(2024, 6, 1)
    for held in (3, 10, 20, 25):
        await _loan(session, book_id, sid, start, held)
    await _loan(session, book_id, sid, start, None)
    await _loan(session, book_id, sid, date(2024, 4, 1), 4)
    assert await loan_duration_counts(session, 30, TODAY) == [1, 1, 1, 1]

async def test_late_return_buckets(session, make_book, make_subscriber):
    book_id = await make_book()
    sid = await make_subscriber()
    start = date(2024, 6, 1)
    await _loan(session, book_id, sid, start, 14)
    await _loan(session, book_id, sid, start, 10)
    await _loan(session, book_id, sid, start, 17)
    await _loan(session, book_id, sid, start, 24)
    assert await late_return_counts(session, 30, TODAY) == [2, 1, 1]

async def test_empty_store_still_has_every_bucket(session):
    assert await loan_duration_counts(session, 30, TODAY) == [0, 0, 0, 0]
    assert await late_return_counts(session, 30, TODAY) == [0, 0, 0]
    assert await member_status_distribution(session, 30, TODAY) == {
        "0-7": [0, 0], "8-14": [0, 0], "15-21": [0, 0], "22-30": [0, 0],
    }

async def test_member_status_counts_distinct_frozen_subscribers(session, make_subscriber):
    s1 = await make_subscriber("S1")
    s2 = await make_subscriber("S2")
    await make_subscriber("S3")
    frozen = models.SubscriberStatus.FROZEN
    await _history(session, s1, frozen, NOON - timedelta(days=2))
    await _history(session, s1, frozen, NOON - timedelta(days=3))
    await _history(session, s2, frozen, NOON - timedelta(days=10))
    await _history(session, s2, frozen, NOON - timedelta(days=60))
    assert await member_status_distribution(session, 30, TODAY) == {
        "0-7": [2, 1], "8-14": [2, 1], "15-21": [3, 0], "22-30": [3, 0],
    }

async def test_same_day_requests_share_one_snapshot(session, make_book, make_subscriber, tmp_path):
    cache = ReportCache(tmp_path)
    book_id = await make_book()
    sid = await make_subscriber()
    await _loan(session, book_id, sid, date(2024, 6, 10), 3)

    first = await cache.get_or_generate(session, ReportKind.LOAN_DURATION, 30, now=NOON)
    assert first.payload == [1, 0, 0, 0]

    # new data does not leak into today's snapshot
    await _loan(session, book_id, sid, date(2024, 6, 10), 3)
    second = await cache.get_or_generate(session, ReportKind.LOAN_DURATION, 30, now=NOON + timedelta(hours=6))
    assert second == first
    assert len(list(tmp_path.glob("*.json"))) == 1

async def test_new_day_regenerates_even_inside_24_hours(session, tmp_path):
    cache = ReportCache(tmp_path)
    late = datetime(2024, 6, 30, 23, 59, 59)
    first = await cache.get_or_generate(session, ReportKind.LATE_RETURN, 30, now=late)
    after_midnight = late + timedelta(seconds=2)
    assert first.is_fresh(after_midnight)

    second = await cache.get_or_generate(session, ReportKind.LATE_RETURN, 30, now=after_midnight)
    assert second.generated_at == after_midnight
    assert second.generated_at != first.generated_at
    assert not first.is_fresh(late + timedelta(hours=24))

async def test_latest_written_snapshot_wins(tmp_path):
    cache = ReportCache(tmp_path)
    older = ReportSnapshot(kind=ReportKind.LATE_RETURN, days=30, title="t", generated_at=NOON, payload=[1, 1, 1])
    newer = ReportSnapshot(kind=ReportKind.LATE_RETURN, days=30, title="t", generated_at=NOON + timedelta(hours=1), payload=[2, 2, 2])
    p_newer = cache.save(newer)
    p_older = cache.save(older)
    # written last, so it wins regardless of the name
    os.utime(p_newer, (1_000_000, 1_000_000))
    os.utime(p_older, (2_000_000, 2_000_000))
    assert cache.load(ReportKind.LATE_RETURN, 30, TODAY).payload == [1, 1, 1]
    assert cache.load(ReportKind.LATE_RETURN, 7, TODAY) is None
    assert cache.is_current(ReportKind.LATE_RETURN, 30, TODAY)

async def test_vanished_snapshot_is_skipped(tmp_path):
    cache = ReportCache(tmp_path)
    kept = ReportSnapshot(kind=ReportKind.LATE_RETURN, days=30, title="t", generated_at=NOON, payload=[3, 2, 1])
    cache.save(kept)
    os.symlink(tmp_path / "gone.json", tmp_path / "late_return_30_2024-06-30_235959999999.json")
    assert cache.load(ReportKind.LATE_RETURN, 30, TODAY).payload == [3, 2, 1]

async def test_generate_all_writes_every_standard_report(session, tmp_path):
    cache = ReportCache(tmp_path)
    snapshots = await cache.generate_all(session, now=NOON)
    assert [(s.kind, s.days) for s in snapshots] == [
        (ReportKind.LOAN_DURATION, 30),
        (ReportKind.LATE_RETURN, 30),
        (ReportKind.MEMBER_STATUS, 7),
        (ReportKind.MEMBER_STATUS, 14),
        (ReportKind.MEMBER_STATUS, 21),
        (ReportKind.MEMBER_STATUS, 30),
    ]
    assert len(list(tmp_path.glob("*.json"))) == 6
    notes = (await session.execute(select(models.Notification))).scalars().all()
    assert len(notes) == 1
    assert notes[0].subscriber_id is None
    assert notes[0].message.startswith("The system generated Automatic reports")
    kinds = (await session.execute(select(models.ActivityLog.activity_type))).scalars().all()
    assert kinds == [models.ActivityType.OTHER]
