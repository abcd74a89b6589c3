import pytest
from datetime import datetime, timedelta
from sqlalchemy import select, func
from circdesk import models, status
from circdesk.recorder import list_notifications
from circdesk.status import freeze, reactivation_sweep, REACTIVATION_MESSAGE, REACTIVATION_REASON

pytestmark = pytest.mark.asyncio

DAY0 = datetime(2024, 2, 1, 15, 30)

async def _subscriber(session, subscriber_id):
    return await session.get(models.Subscriber, subscriber_id, populate_existing=True)

async def _frozen_subscriber(session, make_subscriber, name="Alice", at=DAY0):
    sid = await make_subscriber(name)
    freeze(session, await _subscriber(session, sid), now=at)
    await session.commit()
    return sid

async def _active_rows(session, subscriber_id):
    q = select(func.count()).select_from(models.SubscriberStatusHistory).where(
        models.SubscriberStatusHistory.subscriber_id == subscriber_id,
        models.SubscriberStatusHistory.status == models.SubscriberStatus.ACTIVE,
        models.SubscriberStatusHistory.reason == REACTIVATION_REASON,
    )
    return (await session.execute(q)).scalar_one()

async def test_freeze_records_history(session, make_subscriber):
    sid = await _frozen_subscriber(session, make_subscriber)
    assert (await _subscriber(session, sid)).status == models.SubscriberStatus.FROZEN
    last = await status.latest_history(session, sid)
    assert last.status == models.SubscriberStatus.FROZEN
    assert last.reason == status.LATE_RETURN_REASON

async def test_reactivation_waits_thirty_days(session, make_subscriber):
    sid = await _frozen_subscriber(session, make_subscriber)

    assert await reactivation_sweep(session, now=DAY0 + timedelta(days=29)) == 0
    assert (await _subscriber(session, sid)).status == models.SubscriberStatus.FROZEN

    assert await reactivation_sweep(session, now=DAY0 + timedelta(days=30)) == 1
    assert (await _subscriber(session, sid)).status == models.SubscriberStatus.ACTIVE
    assert await _active_rows(session, sid) == 1

    notes = await list_notifications(session, sid)
    assert [n.message for n in notes] == [REACTIVATION_MESSAGE]

    # nothing left to do on the next run
    assert await reactivation_sweep(session, now=DAY0 + timedelta(days=31)) == 0
    assert await _active_rows(session, sid) == 1

async def test_frozen_without_history_is_left_alone(session):
    s = models.Subscriber(full_name="Legacy", status=models.SubscriberStatus.FROZEN)
    session.add(s)
    await session.commit()
    sid = s.id
    assert await reactivation_sweep(session, now=DAY0 + timedelta(days=365)) == 0
    assert (await _subscriber(session, sid)).status == models.SubscriberStatus.FROZEN

async def test_reactivation_keeps_going_after_a_failure(session, make_subscriber, monkeypatch):
    s1 = await _frozen_subscriber(session, make_subscriber, "Alice")
    s2 = await _frozen_subscriber(session, make_subscriber, "Bob")
    real = status._reactivate

    async def flaky(session, subscriber_id, now):
        if subscriber_id == s1:
            raise RuntimeError("boom")
        return await real(session, subscriber_id, now)

    monkeypatch.setattr(status, "_reactivate", flaky)
    assert await reactivation_sweep(session, now=DAY0 + timedelta(days=30)) == 1
    assert (await _subscriber(session, s1)).status == models.SubscriberStatus.FROZEN
    assert (await _subscriber(session, s2)).status == models.SubscriberStatus.ACTIVE

async def test_refrozen_subscriber_is_not_reactivated_early(session, make_subscriber, monkeypatch):
    sid = await _frozen_subscriber(session, make_subscriber)
    # a second late return refreezes them before the sweep gets to the row
    freeze(session, await _subscriber(session, sid), now=DAY0 + timedelta(days=25))
    await session.commit()

    async def stale(session, now):
        return [sid]

    monkeypatch.setattr(status, "_eligible_for_reactivation", stale)
    assert await reactivation_sweep(session, now=DAY0 + timedelta(days=30)) == 0
    assert (await _subscriber(session, sid)).status == models.SubscriberStatus.FROZEN
    assert await _active_rows(session, sid) == 0
