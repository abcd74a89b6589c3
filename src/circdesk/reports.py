"""Daily report snapshots.

A snapshot is computed from the store at most once per (kind, lookback,
calendar day) and persisted as one JSON file. Later requests on the same day
load the file instead of recomputing, so every caller sees the same payload
and the same ``generated_at``.

File layout: ``<reports_dir>/<kind>_<days>_<YYYY-MM-DD>_<HHMMSSffffff>.json``.
When several files exist for one day the most recently written one wins.
"""
from __future__ import annotations
import asyncio
import enum
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union
from datetime import date, datetime, timedelta

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_

from circdesk.models import (
    Loan, Subscriber, SubscriberStatus, SubscriberStatusHistory,
    ActivityType, NotificationType,
)
from circdesk.recorder import record_activity, notify

logger = logging.getLogger(__name__)

REPORT_PERIOD_DAYS = 30
SNAPSHOT_VALIDITY = timedelta(hours=24)
MEMBER_STATUS_PERIODS = (7, 14, 21, 30)

LOAN_DURATION_BUCKETS = ("0-7 days", "8-14 days", "15-21 days", "22+ days")
LATE_RETURN_BUCKETS = ("On Time", "Grace Period", "Overdue")
STATUS_RANGES = (("0-7", 0, 7), ("8-14", 8, 14), ("15-21", 15, 21), ("22-30", 22, 30))

class ReportKind(str, enum.Enum):
    LOAN_DURATION = "LOAN_DURATION"
    LATE_RETURN = "LATE_RETURN"
    MEMBER_STATUS = "MEMBER_STATUS"

TITLES = {
    ReportKind.LOAN_DURATION: "Loan Duration Report",
    ReportKind.LATE_RETURN: "Late Return Report",
    ReportKind.MEMBER_STATUS: "Member Status Report",
}

class ReportSnapshot(BaseModel):
    kind: ReportKind
    days: int
    title: str
    generated_at: datetime
    payload: Union[List[int], Dict[str, List[int]]]

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        """24-hour validity, for callers that want elapsed-time staleness."""
        return (now or datetime.now()) - self.generated_at < SNAPSHOT_VALIDITY

async def _closed_loans_since(session: AsyncSession, since: date):
    q = select(Loan.loan_date, Loan.due_date, Loan.actual_return_date).where(and_(
        Loan.loan_date >= since,
        Loan.actual_return_date.is_not(None),
    ))
    return (await session.execute(q)).all()

async def loan_duration_counts(session: AsyncSession, days: int, today: date) -> List[int]:
    counts = [0, 0, 0, 0]
    for row in await _closed_loans_since(session, today - timedelta(days=days)):
        held = (row.actual_return_date - row.loan_date).days
        if held <= 7:
            counts[0] += 1
        elif held <= 14:
            counts[1] += 1
        elif held <= 21:
            counts[2] += 1
        else:
            counts[3] += 1
    return counts

async def late_return_counts(session: AsyncSession, days: int, today: date) -> List[int]:
    counts = [0, 0, 0]
    for row in await _closed_loans_since(session, today - timedelta(days=days)):
        late = (row.actual_return_date - row.due_date).days
        if late <= 0:
            counts[0] += 1
        elif late <= 7:
            counts[1] += 1
        else:
            counts[2] += 1
    return counts

async def member_status_distribution(session: AsyncSession, days: int, today: date) -> Dict[str, List[int]]:
    """``{"0-7": [active, frozen], ...}`` by age of FROZEN history rows."""
    total = (await session.execute(select(func.count()).select_from(Subscriber))).scalar_one()
    since = datetime.combine(today - timedelta(days=days), datetime.min.time())
    rows = (await session.execute(
        select(SubscriberStatusHistory.subscriber_id, SubscriberStatusHistory.change_date).where(and_(
            SubscriberStatusHistory.status == SubscriberStatus.FROZEN,
            SubscriberStatusHistory.change_date >= since,
        ))
    )).all()
    frozen = {label: set() for label, _, _ in STATUS_RANGES}
    for row in rows:
        age = (today - row.change_date.date()).days
        for label, lo, hi in STATUS_RANGES:
            if lo <= age <= hi:
                frozen[label].add(row.subscriber_id)
                break
    return {label: [total - len(ids), len(ids)] for label, ids in frozen.items()}

async def compute(session: AsyncSession, kind: ReportKind, days: int, today: date):
    if kind == ReportKind.LOAN_DURATION:
        return await loan_duration_counts(session, days, today)
    if kind == ReportKind.LATE_RETURN:
        return await late_return_counts(session, days, today)
    return await member_status_distribution(session, days, today)

def _mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None

class ReportCache:
    def __init__(self, reports_dir: Union[str, Path]):
        self.reports_dir = Path(reports_dir)
        self._lock = asyncio.Lock()

    @staticmethod
    def _base(kind: ReportKind, days: int) -> str:
        return f"{kind.value.lower()}_{days}"

    def load(self, kind: ReportKind, days: int, day: date) -> Optional[ReportSnapshot]:
        if not self.reports_dir.is_dir():
            return None
        pattern = f"{self._base(kind, days)}_{day.isoformat()}_*.json"
        stamped = [(_mtime(p), p.name, p) for p in self.reports_dir.glob(pattern)]
        candidates = sorted((m, name, p) for m, name, p in stamped if m is not None)
        if not candidates:
            return None
        latest = candidates[-1][2]
        try:
            return ReportSnapshot.model_validate_json(latest.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("[reports] Snapshot %s vanished before it could be read", latest.name)
            return None
        except ValidationError as e:
            logger.warning("[reports] Unreadable snapshot %s: %s", latest.name, e)
            return None

    def save(self, snapshot: ReportSnapshot) -> Path:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        stamp = snapshot.generated_at.strftime("%Y-%m-%d_%H%M%S%f")
        path = self.reports_dir / f"{self._base(snapshot.kind, snapshot.days)}_{stamp}.json"
        tmp = path.with_suffix(".tmp")
        tmp.write_text(snapshot.model_dump_json(), encoding="utf-8")
        tmp.replace(path)
        logger.info("[reports] Saved snapshot %s", path.name)
        return path

    def is_current(self, kind: ReportKind, days: int, day: date) -> bool:
        return self.load(kind, days, day) is not None

    async def get_or_generate(
        self,
        session: AsyncSession,
        kind: ReportKind,
        days: int = REPORT_PERIOD_DAYS,
        *,
        now: Optional[datetime] = None,
    ) -> ReportSnapshot:
        now = now or datetime.now()
        async with self._lock:
            existing = await asyncio.to_thread(self.load, kind, days, now.date())
            if existing is not None:
                logger.debug("[reports] Cache hit for %s/%s on %s", kind.value, days, now.date())
                return existing
            payload = await compute(session, kind, days, now.date())
            snapshot = ReportSnapshot(kind=kind, days=days, title=TITLES[kind], generated_at=now, payload=payload)
            path = await asyncio.to_thread(self.save, snapshot)
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
            return ReportSnapshot.model_validate_json(raw)

    async def generate_all(self, session: AsyncSession, *, now: Optional[datetime] = None) -> List[ReportSnapshot]:
        """Monthly job: refresh every standard report, then announce it."""
        now = now or datetime.now()
        snapshots = [
            await self.get_or_generate(session, ReportKind.LOAN_DURATION, REPORT_PERIOD_DAYS, now=now),
            await self.get_or_generate(session, ReportKind.LATE_RETURN, REPORT_PERIOD_DAYS, now=now),
        ]
        for period in MEMBER_STATUS_PERIODS:
            snapshots.append(await self.get_or_generate(session, ReportKind.MEMBER_STATUS, period, now=now))
        message = "The system generated Automatic reports, generated on " + now.strftime("%Y-%m-%d %H:%M:%S")
        notify(session, None, message, NotificationType.OTHER, now=now)
        record_activity(session, ActivityType.OTHER, message, now=now)
        await session.commit()
        logger.info("[reports] Generated %s report snapshot(s)", len(snapshots))
        return snapshots
