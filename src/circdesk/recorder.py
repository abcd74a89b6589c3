from __future__ import annotations
import logging
from typing import Iterable, List, Optional
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete

from circdesk.models import ActivityLog, ActivityType, Notification, NotificationType

logger = logging.getLogger(__name__)

def record_activity(
    session: AsyncSession,
    kind: ActivityType,
    message: str,
    *,
    subscriber_id: Optional[int] = None,
    book_id: Optional[int] = None,
    librarian_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ActivityLog:
    """Append an activity row inside the caller's transaction (no commit)."""
    entry = ActivityLog(
        subscriber_id=subscriber_id,
        book_id=book_id,
        # 0 means self-service on the wire
        librarian_id=librarian_id or None,
        activity_type=kind,
        activity_date=now or datetime.now(),
        message=message,
    )
    session.add(entry)
    return entry

def notify(
    session: AsyncSession,
    subscriber_id: Optional[int],
    message: str,
    type: NotificationType,
    *,
    now: Optional[datetime] = None,
) -> Notification:
    """Queue a subscriber-facing message inside the caller's transaction (no commit)."""
    n = Notification(subscriber_id=subscriber_id, message=message, type=type, created_at=now or datetime.now())
    session.add(n)
    return n

async def list_activity_logs(
    session: AsyncSession,
    *,
    subscriber_id: Optional[int] = None,
    librarian_id: Optional[int] = None,
) -> List[ActivityLog]:
    q = select(ActivityLog)
    if subscriber_id is not None:
        q = q.where(ActivityLog.subscriber_id == subscriber_id)
    if librarian_id is not None:
        q = q.where(ActivityLog.librarian_id == librarian_id)
    q = q.order_by(ActivityLog.activity_date.desc(), ActivityLog.id.desc())
    return list((await session.execute(q)).scalars().all())

async def list_notifications(session: AsyncSession, subscriber_id: int) -> List[Notification]:
    q = (
        select(Notification)
        .where(Notification.subscriber_id == subscriber_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
    )
    return list((await session.execute(q)).scalars().all())

async def delete_notifications(session: AsyncSession, notification_ids: Iterable[int]) -> bool:
    ids = list(notification_ids)
    if not ids:
        return False
    res = await session.execute(delete(Notification).where(Notification.id.in_(ids)))
    await session.commit()
    logger.info("[recorder] Deleted %s notification(s)", res.rowcount)
    return res.rowcount > 0
