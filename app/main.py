"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import api_router
from app.domain.services.tenant_registry import TenantRegistry
from app.infrastructure.credential_store import create_credential_store
from app.infrastructure.protocol.factory import load_session_factory
from app.infrastructure.redis import redis_client
from app.logging_config import setup_logging
from app.persistence.database import AsyncSessionLocal
from app.settings import settings

# Setup logging
setup_logging()

logger = logging.getLogger(__name__)


def build_registry() -> TenantRegistry | None:
    """Build the tenant registry from settings, or None without a protocol client."""
    if not settings.protocol_factory:
        logger.warning("PROTOCOL_FACTORY not set, messaging bridge disabled")
        return None
    return TenantRegistry(
        load_session_factory(settings.protocol_factory),
        create_credential_store(AsyncSessionLocal),
        AsyncSessionLocal,
        redis=redis_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    await redis_client.connect()
    registry = getattr(app.state, "registry", None) or build_registry()
    app.state.registry = registry
    if registry is not None:
        for tenant_id in settings.autostart_tenants:
            try:
                await registry.start_tenant(tenant_id)
            except Exception as e:
                logger.error(f"Failed to start tenant {tenant_id}: {e}", exc_info=True)
    yield
    # Shutdown
    if registry is not None:
        await registry.shutdown()
    await redis_client.disconnect()


# Create FastAPI app
app = FastAPI(
    title="Lead Bridge API",
    description="Multi-tenant messaging lead bridge",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Lead Bridge API",
        "version": "0.1.0",
        "docs": "/docs",
    }
