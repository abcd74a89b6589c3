from typing import Any
from fastapi import APIRouter, Body, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from circdesk.deps import get_dispatcher, get_session
from circdesk.dispatcher import Dispatcher
from circdesk.schemas import Response

router = APIRouter()

@router.post("/commands", response_model=Response)
async def http_dispatch(envelope: Any = Body(...), dispatcher: Dispatcher = Depends(get_dispatcher)):
    # malformed envelopes are answered by the dispatcher, not rejected with 422
    return await dispatcher.dispatch(envelope)

@router.get("/health")
async def http_health(session: AsyncSession = Depends(get_session)):
    await session.execute(text("SELECT 1"))
    return {"status": "ok"}
