# apps/backend/main.py
import logging
import time

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request

from apps.backend.routes.health import router as health_router
from apps.backend.routes.loyalty import router as loyalty_router
from apps.backend.services.admin.logger import configure_logging, log_request_response
from apps.backend.services.loyalty.batch_jobs import start_batch_jobs
from apps.backend.services.loyalty.service_factory import get_loyalty_service
from apps.backend.services.settings import get_settings

settings = get_settings()
configure_logging(settings.log_level)

log = logging.getLogger("loyalty.main")

app = FastAPI(
    title="Loyalty Engine",
    version="1.0.0",
    description="Points ledger, tiers, segmentation and customer health scoring",
)

scheduler = AsyncIOScheduler()

# -------------------------------------------------------------------
# Request logging (sensitive headers masked)
# -------------------------------------------------------------------
@app.middleware("http")
async def request_log(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    await log_request_response(request, response, start)
    return response

# -------------------------------------------------------------------
# Routers
# -------------------------------------------------------------------
app.include_router(health_router)
app.include_router(loyalty_router)

# -------------------------------------------------------------------
# Root
# -------------------------------------------------------------------
@app.get("/")
async def root():
    return {
        "status": "Loyalty Engine Online",
        "store": settings.store,
        "routes": [
            "/health",
            "/loyalty",
        ],
    }

# -------------------------------------------------------------------
# Startup / shutdown (nightly batch jobs only when enabled)
# -------------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    if settings.scheduler_enabled:
        start_batch_jobs(scheduler, get_loyalty_service(), settings.scheduler_hour)
        scheduler.start()
        log.info("Loyalty engine starting, nightly jobs enabled")
    else:
        log.info("Loyalty engine starting, no background schedulers")


@app.on_event("shutdown")
async def shutdown_event():
    if scheduler.running:
        scheduler.shutdown(wait=False)
