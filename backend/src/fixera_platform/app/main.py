"""FastAPI application entry point for the Fixera booking API."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fixera_platform.app.config import get_settings
from fixera_platform.domain.schemas import HealthResponse
from fixera_platform.infra.database import async_session, init_db
from fixera_platform.infra.notifier import build_notifier
from fixera_platform.infra.payment_gateway import StripePaymentGateway
from fixera_platform.services.payment_monitor import expire_stale_authorizations

logger = logging.getLogger(__name__)


async def payment_monitor_loop(stop: asyncio.Event):
    """Expire lapsed payment authorizations every few minutes until ``stop`` is set.

    A sweep in progress when ``stop`` is set runs to completion.
    """
    settings = get_settings()
    gateway = StripePaymentGateway(settings.stripe_secret_key)
    notifier = build_notifier(settings)
    while not stop.is_set():
        try:
            async with async_session() as db:
                expired_count = await expire_stale_authorizations(db, gateway, notifier)
                if expired_count:
                    logger.info("Payment monitor: expired %d authorizations", expired_count)
        except Exception as e:
            logger.error("Payment monitor error: %s", e)
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=settings.payment_monitor_interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the payment monitor."""
    await init_db()
    stop = asyncio.Event()
    monitor = asyncio.create_task(payment_monitor_loop(stop))
    yield
    stop.set()
    with suppress(asyncio.CancelledError):
        await monitor


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Fixera Booking API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode for LAN/IP access
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from fixera_platform.app.routes.availability import router as availability_router
from fixera_platform.app.routes.bookings import router as bookings_router
from fixera_platform.app.routes.payments import router as payments_router
from fixera_platform.app.routes.projects import router as projects_router

app.include_router(bookings_router)
app.include_router(projects_router)
app.include_router(availability_router)
app.include_router(payments_router)


@app.get("/health", tags=["health"], response_model=HealthResponse)
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "fixera-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "fixera_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
