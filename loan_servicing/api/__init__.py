"""
Loan Servicing API Application Factory
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .credits import router as credits_router
from .installments import router as installments_router
from .clients import router as clients_router
from .admin import router as admin_router
from .auth import get_lending_system
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the daily overdue sweep with the server and stop it on shutdown"""
    system = get_lending_system()
    if get_config().sweep_enabled:
        system.scheduler.start()

    yield

    system.scheduler.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing API",
        description="Micro-lending servicing engine: schedules, penalties, payments and payoffs",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(credits_router, prefix="/credits", tags=["Credits"])
    app.include_router(installments_router, prefix="/installments", tags=["Installments"])
    app.include_router(clients_router, prefix="/clients", tags=["Clients"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Servicing API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "credits": "/credits",
                "installments": "/installments",
                "clients": "/clients",
                "admin": "/admin"
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "loan_servicing.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
