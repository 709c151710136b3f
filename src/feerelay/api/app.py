"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from feerelay import __version__
from feerelay.config import get_settings
from feerelay.errors import FeeRelayError
from feerelay.ledger.database import close_db, get_session_factory, init_db
from feerelay.services import Services, create_services

logger = logging.getLogger(__name__)


def error_response(error: FeeRelayError, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=error.http_status,
        content={"success": False, "error": error.to_dict(), **extra},
    )


async def handle_feerelay_error(request: Request, exc: FeeRelayError) -> JSONResponse:
    return error_response(exc)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
    message = f"Invalid request: {', '.join(f for f in fields if f) or 'body'}"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": {"code": "VALIDATION_ERROR", "message": message}},
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"},
        },
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    When ``services`` is given the app uses it as-is and leaves its
    lifecycle to the caller.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await init_db()
        owned = services is None
        if owned:
            app.state.services = create_services(settings, session_factory=get_session_factory())
        yield
        # Shutdown
        if owned:
            await app.state.services.close()
        await close_db()

    app = FastAPI(
        title="FeeRelay API",
        description="Signature-authorized, fee-delegated transfers and vault operations",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    if services is not None:
        app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FeeRelayError, handle_feerelay_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    # Register routes
    from feerelay.api.routers import defi, faucet, quote, transfer
    from feerelay.api.routes import health

    app.include_router(health.router, tags=["Health"])
    app.include_router(quote.router)
    app.include_router(transfer.router)
    app.include_router(defi.router)
    app.include_router(faucet.router)

    return app
