"""
Loan Servicing API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging
from ..system import LoanServicingSystem
from .notifications import router as notifications_router
from .payments import router as payments_router
from .pending_payments import router as pending_payments_router


def create_app(system: Optional[LoanServicingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the system if none was injected and run the scheduler while serving"""
        if app.state.system is None:
            app.state.system = LoanServicingSystem()
        if app.state.system.config.scheduler_enabled:
            app.state.system.start_scheduler()

        yield

        app.state.system.stop_scheduler()

    app = FastAPI(
        title="Loan Servicing API",
        description="Payment ledger, reconciliation and installment reminders",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    # Include routers
    app.include_router(payments_router, tags=["Payments"])
    app.include_router(pending_payments_router, prefix="/pending-payments", tags=["Pending Payments"])
    app.include_router(notifications_router, prefix="/notifications", tags=["Notifications"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        current = app.state.system
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__,
            "scheduler_running": bool(current and current.scheduler_state.running)
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    uvicorn.run(
        "loan_servicing.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
