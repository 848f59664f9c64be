import contextlib
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException

from foldly.config import config
from foldly.db.session import engine
from foldly.exceptions import FoldlyError, InternalError
from foldly.logger import setup_logging, get_logger
from foldly.routers import register_routers
from foldly.services.rate_limit_service import RateLimiter
from foldly.services.realtime_service import RealtimeBus
from foldly.services.storage_service import LocalStorage, StorageAdapter

logger = get_logger("main")

_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "INVALID_INPUT",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "UNAUTHORIZED",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "INVALID_INPUT",
}


@contextlib.asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    logger.info("Starting with storage at %s", config.STORAGE_PATH)
    yield
    await engine.dispose()


async def foldly_error_handler(_request: Request, exc: FoldlyError):
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message, exc_info=exc)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def http_error_handler(_request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"success": False, "error": exc.detail, "code": _STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR")},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(_request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request."
    return JSONResponse(
        {"success": False, "error": message, "code": "INVALID_INPUT"},
        status_code=status.HTTP_400_BAD_REQUEST,
    )


async def unhandled_error_handler(_request: Request, exc: Exception):
    logger.exception("Unhandled error", exc_info=exc)
    error = InternalError("An unexpected error occurred.")
    return JSONResponse(error.to_dict(), status_code=error.status_code)


def create_app(
        storage: Optional[StorageAdapter] = None,
        bus: Optional[RealtimeBus] = None,
        rate_limiter: Optional[RateLimiter] = None
) -> FastAPI:
    app = FastAPI(lifespan=lifespan)

    app.state.storage = storage or LocalStorage(config.STORAGE_PATH)
    app.state.bus = bus or RealtimeBus()
    app.state.rate_limiter = rate_limiter or RateLimiter()

    app.add_exception_handler(FoldlyError, foldly_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    register_routers(app)
    return app


app = create_app()
