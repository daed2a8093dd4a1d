"""
Loan Servicing API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..errors import LoanServicingError
from ..logging_config import setup_logging, get_logger, log_action
from .classifications import router as classifications_router
from .loans import router as loans_router
from .payments import router as payments_router
from .schedules import router as schedules_router
from .transactions import router as transactions_router


logger = get_logger("loan_servicing.api")

LOANS_PREFIX = "/organizations/{organization_id}/loans"


async def servicing_error_handler(request: Request, exc: LoanServicingError) -> JSONResponse:
    """Typed engine errors become 4xx JSON bodies"""
    log_action(
        logger, "warning", exc.message,
        action="api_error", resource=request.url.path,
        extra={"error": exc.code, "status_code": exc.http_status}
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    app = FastAPI(
        title="Loan Servicing API",
        description="Repayment allocation and risk classification for microfinance loans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LoanServicingError, servicing_error_handler)

    # Static loan paths first so they are not captured by /{loan_id}
    app.include_router(classifications_router, prefix=LOANS_PREFIX, tags=["Classification"])
    app.include_router(loans_router, prefix=LOANS_PREFIX, tags=["Loans"])
    app.include_router(payments_router, prefix=LOANS_PREFIX, tags=["Payments"])
    app.include_router(schedules_router, prefix=LOANS_PREFIX, tags=["Schedules"])
    app.include_router(transactions_router, prefix="/organizations/{organization_id}/transactions",
                       tags=["Transactions"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "loan_servicing.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        workers=config.api_workers if not debug else 1,
        log_level=config.log_level.lower()
    )
