from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

import os
import logging
import stripe
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

from assignsavvy import __product__, __version__
from assignsavvy.config import (
    MONGO_URL,
    DB_NAME,
    STRIPE_API_KEY,
    ENVIRONMENT,
    ENABLE_SCHEDULER,
    is_test_run,
)
from assignsavvy.errors import (
    CreditSystemError,
    InvalidArgumentError,
    UnknownPlanError,
    RequestRejected,
)
from assignsavvy.models.validation import ValidationErrorCode
from assignsavvy.routes import (
    credits_router,
    plans_router,
    history_router,
    tools_router,
    webhooks_router,
)
from assignsavvy.services.container import build_services
from database import Database

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler with MongoDB job store so jobs survive restarts
jobstores = {}
if not is_test_run():
    try:
        from pymongo import MongoClient
        mongo_client = MongoClient(MONGO_URL)
        jobstores['default'] = MongoDBJobStore(
            database=DB_NAME,
            collection='scheduled_jobs',
            client=mongo_client
        )
        logger.info(f"MongoDB job store configured: {DB_NAME}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import run_monthly_credit_refresh, run_stale_reservation_sweep

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {__product__} API")
    if is_test_run():
        # Tests install app.state.services themselves
        yield
        return

    database = Database()
    db = await database.connect()
    app.state.services = build_services(db)

    try:
        await app.state.services.ensure_indexes()
        logger.info("MongoDB indexes created/verified")
    except Exception as e:
        # Indexes may already exist with different options
        logger.warning(f"Index creation note: {e}")

    if STRIPE_API_KEY:
        stripe.api_key = STRIPE_API_KEY
        logger.info("STRIPE_MODE = %s", "test" if STRIPE_API_KEY.startswith("sk_test_") else "live")
    else:
        logger.warning("STRIPE_API_KEY is not set. Paid credit allocation will not be reachable.")

    if ENABLE_SCHEDULER:
        # Freemium refresh and cancelled-plan downgrades daily at 2:00 AM UTC
        scheduler.add_job(
            run_monthly_credit_refresh,
            CronTrigger(hour=2, minute=0),
            id="credit_refresh_daily",
            name="Daily Credit Refresh",
            replace_existing=True
        )

        # Unresolved reservations - every 15 minutes
        scheduler.add_job(
            run_stale_reservation_sweep,
            IntervalTrigger(minutes=15),
            id="stale_reservation_sweep",
            name="Stale Reservation Sweep",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()


app = FastAPI(
    title=f"{__product__} API",
    description="Credit metering and plan entitlements for the AssignSavvy writing tools",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(plans_router)
app.include_router(credits_router)
app.include_router(tools_router)
app.include_router(history_router)
app.include_router(webhooks_router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": f"{__product__} API",
        "version": __version__,
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": ENVIRONMENT
    }


VALIDATION_STATUS = {
    ValidationErrorCode.INSUFFICIENT_CREDITS: 402,
    ValidationErrorCode.MONTHLY_CREDIT_LIMIT_REACHED: 403,
    ValidationErrorCode.PLAN_NOT_FOUND: 404,
}


@app.exception_handler(RequestRejected)
async def request_rejected_handler(request: Request, exc: RequestRejected):
    validation = exc.validation
    body = validation.model_dump(mode="json", exclude_none=True)
    body["detail"] = validation.message
    return JSONResponse(
        status_code=VALIDATION_STATUS.get(validation.error_code, 400),
        content=body
    )


@app.exception_handler(InvalidArgumentError)
@app.exception_handler(UnknownPlanError)
async def invalid_argument_handler(request: Request, exc: CreditSystemError):
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc)}
    )


# Ledger consistency, transient store and other credit errors
@app.exception_handler(CreditSystemError)
async def credit_system_error_handler(request: Request, exc: CreditSystemError):
    logger.error(f"Credit system error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=ENVIRONMENT == "development"
    )
