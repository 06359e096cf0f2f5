"""
Loan Ledger API Application Factory
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import get_ledger_system
from .customers import router as customers_router
from .loans import router as loans_router
from .payments import router as payments_router
from .messages import router as messages_router
from .admin import router as admin_router
from .. import __version__
from ..config import get_config
from ..errors import (
    LedgerError, InvalidInputError, InvalidAmountError, NotFoundError,
    ConflictError, PermissionDeniedError
)
from ..logging_config import setup_logging, get_logger


logger = get_logger("loan_ledger.api")

ERROR_STATUS_CODES = {
    InvalidInputError: 400,
    InvalidAmountError: 400,
    ConflictError: 400,
    PermissionDeniedError: 403,
    NotFoundError: 404,
}


def status_code_for(error: LedgerError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and run the job scheduler for the app's lifetime"""
    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)

    system = get_ledger_system()
    if cfg.scheduler_enabled:
        system.scheduler.start()

    yield

    system.scheduler.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Ledger API",
        description="Loan lifecycle and payment ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        code = status_code_for(exc)
        logger.info(f"{request.method} {request.url.path} -> {code}: {exc}")
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(part) for part in e.get('loc', ()) if part != 'body')}: {e.get('msg')}"
            for e in errors
        )
        return JSONResponse(status_code=400, content={"detail": message or "Invalid request"})

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # Include routers
    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(messages_router, prefix="/messages", tags=["Messages"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_ledger_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "customers": "/customers",
                "loans": "/loans",
                "payments": "/payments",
                "messages": "/messages",
                "admin": "/admin",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_ledger.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
