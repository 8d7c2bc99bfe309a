"""
EMI Ledger API Application Factory
"""

from contextlib import asynccontextmanager
import asyncio

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .loans import router as loans_router
from .operations import router as operations_router
from ..engine import LoanEngine
from ..errors import (
    InsufficientPayment, LoanNotFoundLocally, RemoteRejection, TransientNetworkError,
    UnflaggedOverpayment, ValidationError
)
from .. import __version__
from ..config import get_config


def create_app(engine: LoanEngine, background_sync: bool = False) -> FastAPI:
    """
    Create the FastAPI application around an opened engine.

    With ``background_sync`` the app drains the offline queue every
    ``sync_interval_seconds`` while it runs and closes the engine on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not background_sync:
            yield
            return
        stop = asyncio.Event()
        task = asyncio.create_task(engine.sync.run_periodic(engine.config.sync_interval_seconds, stop))
        try:
            yield
        finally:
            stop.set()
            await task
            await engine.aclose()

    app = FastAPI(
        lifespan=lifespan,
        title="EMI Ledger API",
        description="EMI schedule, penalty and offline payment reconciliation engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(operations_router, tags=["Sync"])

    @app.exception_handler(LoanNotFoundLocally)
    async def loan_not_found(request: Request, exc: LoanNotFoundLocally):
        return JSONResponse(status_code=404, content={"detail": str(exc), "loan_id": exc.loan_id})

    @app.exception_handler(InsufficientPayment)
    async def insufficient_payment(request: Request, exc: InsufficientPayment):
        return JSONResponse(status_code=400, content={
            "detail": str(exc),
            "error": "insufficient_payment",
            "due": str(exc.due),
            "shortfall": str(exc.shortfall),
        })

    @app.exception_handler(UnflaggedOverpayment)
    async def unflagged_overpayment(request: Request, exc: UnflaggedOverpayment):
        return JSONResponse(status_code=400, content={
            "detail": str(exc),
            "error": "unflagged_overpayment",
            "outstanding": str(exc.outstanding),
        })

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(TransientNetworkError)
    async def remote_unavailable(request: Request, exc: TransientNetworkError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(RemoteRejection)
    async def remote_rejected(request: Request, exc: RemoteRejection):
        return JSONResponse(status_code=502, content={"detail": exc.detail, "status_code": exc.status_code})

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "emi_ledger_api",
            "version": __version__,
            "queued_operations": len(engine.queue),
            "remote_reachable": await engine.remote.health_check(),
        }

    return app


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server with an engine built from configuration"""
    config = get_config()
    engine = LoanEngine(config, configure_logging=True).open()
    uvicorn.run(
        create_app(engine, background_sync=True),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="debug" if debug else config.log_level.lower()
    )
