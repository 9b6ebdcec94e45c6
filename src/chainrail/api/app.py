"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chainrail.config import get_settings
from chainrail.services import TransactionService, create_service

logger = logging.getLogger(__name__)


def create_app(service: Optional[TransactionService] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Pre-built service (tests); built from settings when omitted
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        app.state.service.start()
        yield
        # Shutdown
        await app.state.service.shutdown()

    app = FastAPI(
        title="Chainrail API",
        description="Multi-chain transaction execution API",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.service = service or create_service(settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from chainrail.api.routes import health, transactions

    app.include_router(health.router, tags=["Health"])
    app.include_router(transactions.router, prefix="/api/v1", tags=["Transactions"])

    return app
