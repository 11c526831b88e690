"""
Microfinance Back Office API Application Factory
"""

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import BackOffice
from .loans import router as loans_router
from .reports import router as reports_router
from .. import __version__
from ..config import MicrofinanceConfig, get_config
from ..errors import MicrofinanceError
from ..logging_config import setup_logging
from ..storage import StorageInterface, create_storage


logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "invalid_argument": 400,
    "unauthenticated": 401,
    "permission_denied": 403,
    "not_found": 404,
    "failed_precondition": 409,
    "internal": 500,
}


async def microfinance_error_handler(request: Request, exc: MicrofinanceError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message}
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_argument", "detail": "; ".join(problems)}
    )


def create_app(
    config: Optional[MicrofinanceConfig] = None,
    storage: Optional[StorageInterface] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application

    The store client is built once here and shared by every component for
    the lifetime of the app.
    """
    config = config or get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    storage = storage or create_storage(config.database_url, timeout=config.database_timeout)

    app = FastAPI(
        title="Microfinance Back Office API",
        description="Loan approval, EMI scheduling, payment ledger and collection reports",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.config = config
    app.state.back_office = BackOffice(storage, config)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(MicrofinanceError, microfinance_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microfinance_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "microfinance.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
