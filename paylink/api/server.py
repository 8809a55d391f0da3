"""
PayLink API Server
FastAPI surface over the fee quote and settlement verification core
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from paylink import __version__
from paylink.api.errors import payment_error_handler
from paylink.api.routers import general, payments, requests
from paylink.config import get_settings
from paylink.errors import PaymentError
from paylink.logs import configure_logging
from paylink.service import PaymentCore
from paylink.tasks import run_expiry_sweep

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the FastAPI app"""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    owns_core = app.state.core is None
    if owns_core:
        app.state.core = PaymentCore.from_settings(settings)
    core: PaymentCore = app.state.core

    logger.info(
        "paylink_starting",
        host=settings.api_host,
        port=settings.api_port,
        store=type(core.store).__name__,
    )

    sweep_task = asyncio.create_task(
        run_expiry_sweep(core, interval_seconds=settings.expiry_sweep_interval_seconds)
    )

    yield

    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    if owns_core:
        await core.close()
    logger.info("paylink_shutting_down")


def create_app(core: Optional[PaymentCore] = None) -> FastAPI:
    """Build the app; pass ``core`` to reuse an existing PaymentCore instead of building one from settings"""
    app = FastAPI(
        title="PayLink Core",
        description="Fee quotes and settlement verification for non-custodial payment links",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.core = core

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PaymentError, payment_error_handler)

    app.include_router(general.router)
    app.include_router(requests.router)
    app.include_router(payments.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()

    uvicorn.run(
        "paylink.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.reload,
        log_level=settings.log_level.lower()
    )
