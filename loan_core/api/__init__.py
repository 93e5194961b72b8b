"""
Loan Core API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..exceptions import LoanCoreError
from ..logging_config import get_logger, log_action
from .accounts import router as accounts_router
from .loans import router as loans_router
from .reporting import router as reporting_router


logger = get_logger("loan_core.api")


async def loan_core_error_handler(request: Request, exc: LoanCoreError) -> JSONResponse:
    """Typed core failures become {"success": false, ...} with the mapped status"""
    log_action(logger, "warning", f"{request.method} {request.url.path} rejected: {exc}",
               action=exc.code, resource=request.url.path)
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "success": False,
            "error": exc.code,
            "message": str(exc),
            "retryable": exc.retryable
        }
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Core API",
        description="Dual-direction loan ledger with approval workflow and dashboard reporting",
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

    app.add_exception_handler(LoanCoreError, loan_core_error_handler)

    app.include_router(reporting_router, prefix="/loans/dashboard", tags=["Dashboard"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(accounts_router, prefix="/bank-accounts", tags=["Bank Accounts"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_core_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_core.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
