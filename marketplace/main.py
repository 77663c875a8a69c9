"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.config import settings
from marketplace.errors import MarketplaceError, marketplace_error_handler
from marketplace.middleware import AccessLogMiddleware, BodySizeLimitMiddleware
from marketplace.routers import counter_offers, jobs, payments

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from marketplace.services.job import get_lifecycle
    from marketplace.services.settlement import run_settlement_sweep

    sweep_task = None
    if settings.settlement_sweep_enabled:
        sweep_task = asyncio.create_task(run_settlement_sweep(get_lifecycle()))
        logger.info(
            "Settlement sweep started (every %ds, grace %ds)",
            settings.settlement_sweep_interval_seconds,
            settings.settlement_grace_period_seconds,
        )

    yield

    # Cleanup
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Helper Marketplace",
    description="Job lifecycle and payment settlement for a poster/helper task marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (last added runs outermost)
app.add_middleware(AccessLogMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=65_536)

app.add_exception_handler(MarketplaceError, marketplace_error_handler)  # type: ignore[arg-type]

# Routers
app.include_router(jobs.router)
app.include_router(counter_offers.router)
app.include_router(payments.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
