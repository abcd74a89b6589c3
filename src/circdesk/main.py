import logging
from fastapi import FastAPI
from circdesk.config import settings
from circdesk.db import init_db, SessionLocal
from circdesk.api.router import router
from circdesk.deps import report_cache
from circdesk.worker.scheduler import build_scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)
app.include_router(router)
app.state.scheduler = None

@app.on_event("startup")
async def on_startup():
    await init_db()
    if settings.ENABLE_SCHEDULER:
        app.state.scheduler = build_scheduler(SessionLocal, report_cache, settings)
        app.state.scheduler.start()
    else:
        logger.info("[main] Scheduler disabled by ENABLE_SCHEDULER")

@app.on_event("shutdown")
async def on_shutdown():
    if app.state.scheduler is not None:
        results = await app.state.scheduler.shutdown(settings.SHUTDOWN_TIMEOUT_SECONDS)
        forced = [name for name, graceful in results.items() if not graceful]
        if forced:
            logger.warning("[main] Daemons cancelled on shutdown: %s", ", ".join(forced))
