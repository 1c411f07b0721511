"""Token Fee Orchestrator API - Main Application"""
import structlog
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fee_orchestrator.config import get_settings
from fee_orchestrator.api.v1.router import api_router
from fee_orchestrator.log_config import configure_logging
from fee_orchestrator.services.solana_client import close_solana_client, get_solana_client

configure_logging()

logger = structlog.get_logger()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting Token Fee Orchestrator API", version=settings.app_version)

    # Connection is lazy; failing to reach the RPC must not block startup
    try:
        await get_solana_client()
    except Exception as e:
        logger.warning("Failed to connect to Solana RPC on startup", error=str(e))

    yield

    # Cleanup
    await close_solana_client()
    logger.info("Token Fee Orchestrator API shutdown complete")


def create_app() -> FastAPI:
    """Create FastAPI application"""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Read-only API for Token-2022 transfer fees and withheld balances",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "cluster": settings.solana_cluster,
        }

    return app


app = create_app()


def run():
    """Serve the API with uvicorn"""
    import uvicorn

    uvicorn.run(
        "fee_orchestrator.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
