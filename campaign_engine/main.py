from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from campaign_engine.core.errors import CampaignEngineError
from campaign_engine.core.logging import configure_logging
from campaign_engine.services.scheduler_worker import start_scheduler_worker_task
from campaign_engine import models  # noqa: F401
from campaign_engine.routers.analytics import router as analytics_router
from campaign_engine.routers.auth import router as auth_router
from campaign_engine.routers.executions import router as executions_router
from campaign_engine.routers.sequences import router as sequences_router
from campaign_engine.routers.subjects import router as subjects_router
from campaign_engine.routers.triggers import router as triggers_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    task = start_scheduler_worker_task()
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                # worker crash during shutdown; already logged.
                pass


app = FastAPI(
    title="Campaign Engine",
    lifespan=lifespan,
)


@app.exception_handler(CampaignEngineError)
async def campaign_engine_error_handler(request: Request, exc: CampaignEngineError):
    if exc.status_code >= 500:
        logger.error("Campaign engine error", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(sequences_router)
app.include_router(executions_router)
app.include_router(subjects_router)
app.include_router(triggers_router)
app.include_router(analytics_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "1.0.0",
    }
