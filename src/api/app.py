"""
FastAPI application factory.

* Registers routes for dispatch, offers, cancellations, rides, captains
  and admin.
* Maps engine errors to JSON ``{"detail": ...}`` responses.
* Starts / stops the offer expiry sweeper via lifespan events.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from src.api.middleware import limiter
from src.api.routes import admin, cancellations, captains, dispatch, offers, rides
from src.config import settings
from src.domain.errors import DependencyFailure, DispatchError, ValidationError
from src.infrastructure.notifications import get_notifier
from src.infrastructure.redis_client import close_redis
from src.workers import sweeper as _sweeper

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the offer sweeper on startup (if enabled); release clients on shutdown."""
    if settings.sweeper_enabled:
        await _sweeper.start_sweeper()
    yield
    if settings.sweeper_enabled:
        await _sweeper.stop_sweeper()
    await get_notifier().close()
    await close_redis()


async def _dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.warning(
            "%s %s rejected (%d): %s",
            request.method, request.url.path, exc.status_code, exc,
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning(
        "%s %s invalid request: %s", request.method, request.url.path, exc.errors()
    )
    return JSONResponse(
        status_code=422, content={"detail": ValidationError.public_message}
    )


async def _persistence_error_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    logger.exception("%s %s persistence failure", request.method, request.url.path)
    return JSONResponse(
        status_code=DependencyFailure.status_code,
        content={"detail": DependencyFailure.public_message},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Captain Matching & Dispatch API",
        description=(
            "Finds, ranks and offers nearby captains for ride requests, "
            "tracks offer responses, and applies cancellation penalties "
            "and cooldowns.  Safe under concurrent dispatch: a captain is "
            "never assigned to two rides."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Error mapping
    app.add_exception_handler(DispatchError, _dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(SQLAlchemyError, _persistence_error_handler)

    # Routers
    app.include_router(dispatch.router, prefix="/api/v1")
    app.include_router(offers.router, prefix="/api/v1")
    app.include_router(cancellations.router, prefix="/api/v1")
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(captains.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
