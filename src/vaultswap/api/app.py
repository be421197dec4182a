"""FastAPI application factory."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vaultswap.config import get_settings
from vaultswap.ledger.database import close_db, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()
    yield
    # Shutdown
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="VaultSwap API",
        description="Custodial swap and bridge settlement API",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from vaultswap.api.routes import bridge, health, orders

    app.include_router(health.router, tags=["Health"])
    app.include_router(orders.router, prefix="/api/v1", tags=["Orders"])
    app.include_router(bridge.router, prefix="/api/v1", tags=["Bridge"])

    return app
