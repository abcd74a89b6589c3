"""Subscriber standing: freeze on late return, automatic reactivation."""
from __future__ import annotations
import logging
from typing import List, Optional
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from circdesk.models import (
    Subscriber, SubscriberStatus, SubscriberStatusHistory,
    ActivityType, NotificationType,
)
from circdesk.recorder import record_activity, notify

logger = logging.getLogger(__name__)

FREEZE_PERIOD_DAYS = 30
LATE_RETURN_REASON = "Late return"
REACTIVATION_REASON = "Automatic status update after 30-day freeze period"
REACTIVATION_MESSAGE = "Your account has been automatically reactivated after the 30-day freeze period."

def add_history(session: AsyncSession, subscriber_id: int, status: SubscriberStatus, reason: str, now: datetime) -> SubscriberStatusHistory:
    row = SubscriberStatusHistory(subscriber_id=subscriber_id, status=status, change_date=now, reason=reason)
    session.add(row)
    return row

def freeze(session: AsyncSession, subscriber: Subscriber, *, reason: str = LATE_RETURN_REASON, now: datetime) -> None:
    """Mark ``subscriber`` FROZEN inside the caller's transaction."""
    subscriber.status = SubscriberStatus.FROZEN
    add_history(session, subscriber.id, SubscriberStatus.FROZEN, reason, now)
    logger.info("[status] Subscriber %s frozen: %s", subscriber.id, reason)

async def latest_history(session: AsyncSession, subscriber_id: int) -> Optional[SubscriberStatusHistory]:
    q = (
        select(SubscriberStatusHistory)
        .where(SubscriberStatusHistory.subscriber_id == subscriber_id)
        .order_by(SubscriberStatusHistory.change_date.desc(), SubscriberStatusHistory.id.desc())
        .limit(1)
    )
    return (await session.execute(q)).scalar_one_or_none()

def _freeze_served(last: Optional[SubscriberStatusHistory], now: datetime) -> bool:
    if last is None or last.status != SubscriberStatus.FROZEN:
        return False
    return (now.date() - last.change_date.date()).days >= FREEZE_PERIOD_DAYS

async def _eligible_for_reactivation(session: AsyncSession, now: datetime) -> List[int]:
    frozen_ids = (await session.execute(
        select(Subscriber.id).where(Subscriber.status == SubscriberStatus.FROZEN).order_by(Subscriber.id)
    )).scalars().all()
    return [sid for sid in frozen_ids if _freeze_served(await latest_history(session, sid), now)]

async def _reactivate(session: AsyncSession, subscriber_id: int, now: datetime) -> bool:
    q = (
        select(Subscriber)
        .where(Subscriber.id == subscriber_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscriber = (await session.execute(q)).scalar_one_or_none()
    if subscriber is None or subscriber.status != SubscriberStatus.FROZEN:
        return False
    # re-check: a late return may have refrozen the subscriber since eligibility was computed
    if not _freeze_served(await latest_history(session, subscriber_id), now):
        return False
    subscriber.status = SubscriberStatus.ACTIVE
    add_history(session, subscriber_id, SubscriberStatus.ACTIVE, REACTIVATION_REASON, now)
    notify(session, subscriber_id, REACTIVATION_MESSAGE, NotificationType.OTHER, now=now)
    record_activity(
        session, ActivityType.OTHER, "Subscriber status automatically changed to ACTIVE",
        subscriber_id=subscriber_id, now=now,
    )
    return True

async def reactivation_sweep(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Reactivate every subscriber frozen for at least FREEZE_PERIOD_DAYS.

    Each subscriber is committed on its own; a failure is rolled back and
    logged and the remaining subscribers are still attempted.
    """
    now = now or datetime.now()
    eligible = await _eligible_for_reactivation(session, now)
    await session.rollback()
    logger.info("[status] Found %s subscriber(s) eligible for reactivation", len(eligible))
    done = 0
    for sid in eligible:
        try:
            if await _reactivate(session, sid, now):
                await session.commit()
                done += 1
            else:
                await session.rollback()
        except Exception:
            await session.rollback()
            logger.exception("[status] Reactivation failed for subscriber %s", sid)
    return done
