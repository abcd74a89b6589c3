from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession
from circdesk.config import settings
from circdesk.db import SessionLocal
from circdesk.dispatcher import Dispatcher
from circdesk.reports import ReportCache

report_cache = ReportCache(settings.REPORTS_DIR)
dispatcher = Dispatcher(SessionLocal, report_cache)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

def get_dispatcher() -> Dispatcher:
    return dispatcher
