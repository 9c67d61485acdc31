"""
Payout Router Application Entry Point.

Startup order: configuration, logging, database, services, expiry
reconciliation, scheduler (rate cycle), operator bot. Shutdown reverses it.
"""

from fastapi import FastAPI, Request, Depends
from contextlib import asynccontextmanager
from app.database import init_db, close_database, health_check as database_health
from app.routes.payouts import router as payouts_router
from app.routes.rates import router as rates_router
from app.core.config import load_config
from app.core.container import build_container, schedule_rate_updates
from app.core.handlers import setup_exception_handlers
from app.core.middleware import RequestLoggingMiddleware
from app.core.monitoring import setup_monitoring, error_monitor, monitor_errors
from app.core.limiter import limiter, monitoring_limit
from app.security import verify_monitoring_access
from slowapi import _rate_limit_exceeded_handler
from slowapi.middleware import SlowAPIMiddleware
from slowapi.errors import RateLimitExceeded
import logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle events"""
    container = None
    # Startup
    try:
        config = load_config()
        setup_monitoring(config.logging.level)

        await init_db(config.database)

        container = build_container(config)
        container.storage.ensure_dir()
        app.state.container = container

        container.scheduler.start()
        expired, rearmed = await container.payouts.reconcile_pending()

        schedule_rate_updates(container)

        if container.bot is not None:
            await container.bot.start()

        logger.info(
            f"Payout router started ({expired} overdue payouts expired, {rearmed} timers restored)"
        )

    except Exception as e:
        error_monitor.log_error(e, {"context": "application_startup"})
        logger.error(f"Failed to start payout router: {str(e)}")
        raise

    yield

    # Shutdown
    logger.info("Payout router shutting down")
    if container.bot is not None:
        await container.bot.stop()
    container.scheduler.shutdown(wait=False)
    await container.callbacks.drain()
    await close_database()

    final_summary = error_monitor.get_error_summary()
    logger.info(f"Shutdown - Total errors handled: {final_summary['total_errors']}")


app = FastAPI(
    title="Payout Router",
    description="Routes payout requests to human operators and tracks them to completion",
    lifespan=lifespan,
)

# Initialize rate limiter (single instance, shared via app.state)
app.state.limiter = limiter

# Add global exception handler for rate limit exceeded
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Register SlowAPI middleware (required for consistent rate limiting behavior)
app.add_middleware(SlowAPIMiddleware)

# Setup custom exception handlers (generic BaseAppError handler + payout envelope)
setup_exception_handlers(app)

# Register request logging middleware
app.add_middleware(RequestLoggingMiddleware)

app.include_router(payouts_router, prefix="/api")
app.include_router(rates_router)


@app.get("/")
@limiter.limit("30/minute")
async def health(request: Request):
    return {
        "status": "active",
        "service": "Payout Router",
        "description": "Payout routing service is running",
    }


@app.get("/api/")
async def api_status():
    return {"status": "ok"}


@app.get("/health/database")
@limiter.limit("30/minute")
async def database_status(request: Request):
    return await database_health()


@app.get("/monitoring/errors", dependencies=[Depends(verify_monitoring_access)])
@limiter.limit(monitoring_limit)
@monitor_errors("monitoring_endpoint")
async def get_monitoring_info(request: Request):
    """Internal endpoint for monitoring error statistics (authenticated)."""
    return error_monitor.get_error_summary()
