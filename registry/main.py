import logging
import os
import sqlite3
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from registry import __version__
from registry.admin_api import router as admin_router
from registry.config import Settings, get_settings
from registry.device_api import router as device_router
from registry.devices import DeviceRegistry
from registry.errors import InvalidArgument, RegistryError, ServerError
from registry.identity import DeviceIdentityStore
from registry.protocol import PollHandler
from registry.queue import CommandQueue
from registry.security import RequestLoggingMiddleware, SecurityHeadersMiddleware
from registry.storage import Storage

APP_TITLE = "Device Registry"
APP_VERSION = __version__

logger = logging.getLogger("registry")

# ─────────────────────────── LOGGING SETUP ───────────────────────────

LOG_FORMAT = logging.Formatter(
    '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logger.setLevel(level)
    if logger.handlers:
        return

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(LOG_FORMAT)
    logger.addHandler(console_handler)

    # File handler (optional, only if writable)
    if settings.log_file:
        try:
            directory = os.path.dirname(settings.log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file, maxBytes=10*1024*1024, backupCount=5  # 10MB per file, keep 5 backups
            )
            file_handler.setFormatter(LOG_FORMAT)
            logger.addHandler(file_handler)
            logger.info(f"File logging enabled: {settings.log_file}")
        except OSError as e:
            logger.warning(f"Could not enable file logging: {e}")


# ─────────────────────────── ERROR HANDLERS ───────────────────────────

HTTP_ERROR_CODES = {
    400: "invalid_argument",
    401: "unauthorized",
    404: "not_found",
    405: "method_not_allowed",
    503: "service_unavailable",
}


def _is_admin_request(request: Request) -> bool:
    return request.url.path.startswith("/admin/")


async def registry_error_handler(request: Request, exc: RegistryError):
    # device clients get the code only; admins also get the message
    return JSONResponse(exc.to_dict(include_message=_is_admin_request(request)), status_code=exc.status_code)


async def storage_error_handler(request: Request, exc: sqlite3.Error):
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return await registry_error_handler(request, ServerError())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted({str(err.get("loc", ["", "?"])[-1]) for err in exc.errors()})
    return await registry_error_handler(request, InvalidArgument(f"Invalid fields: {', '.join(fields)}"))


async def unhandled_error_handler(request: Request, exc: Exception):
    # already logged by RequestLoggingMiddleware
    return JSONResponse(ServerError().to_dict(), status_code=500)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {exc.detail}")
    body = {"ok": False, "error": HTTP_ERROR_CODES.get(exc.status_code, "server_error")}
    if _is_admin_request(request):
        body["message"] = str(exc.detail)
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


# ─────────────────────────── APP FACTORY ───────────────────────────

def create_app(settings: Optional[Settings] = None, storage: Optional[Storage] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    storage = storage or Storage(settings.db_path)

    app = FastAPI(title=APP_TITLE, version=APP_VERSION)

    identity = DeviceIdentityStore(storage, min_secret_length=settings.secret_min_length)
    devices = DeviceRegistry(storage)
    queue = CommandQueue(
        storage,
        min_batch=settings.poll_min_batch,
        max_batch=settings.poll_max_batch,
        default_batch=settings.poll_default_batch,
    )
    app.state.settings = settings
    app.state.storage = storage
    app.state.identity = identity
    app.state.devices = devices
    app.state.queue = queue
    app.state.poll_handler = PollHandler(identity, devices, queue)

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(RegistryError, registry_error_handler)
    app.add_exception_handler(sqlite3.Error, storage_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.on_event("startup")
    def _startup():
        try:
            storage.init_db()
        except (sqlite3.Error, OSError) as e:
            # keep serving; /healthz reports the database as down
            logger.error(f"Database bootstrap failed (will not crash): {e}")
        if not settings.admin_token:
            logger.warning("ADMIN_TOKEN is not set; admin API will answer 503")
        logger.info(f"{APP_TITLE} {APP_VERSION} started")

    # Health endpoints
    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "ok"

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz():
        if await run_in_threadpool(storage.ping):
            return PlainTextResponse("ok")
        return PlainTextResponse("db down", status_code=500)

    app.include_router(device_router)
    app.include_router(admin_router)
    return app


app = create_app()
