"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from syncvault.config import Settings, get_settings
from syncvault.db.session import Database
from syncvault.errors import (
    ConflictError,
    NotFoundError,
    PathValidationError,
    StorageError,
)
from syncvault.files.routes import router as files_router
from syncvault.files.service import FileService
from syncvault.files.storage import FileStore
from syncvault.limiter import limiter
from syncvault.notify.broadcaster import ChangeBroadcaster
from syncvault.notify.routes import router as notify_router
from syncvault.sync.engine import SyncEngine
from syncvault.sync.routes import router as sync_router

log = logging.getLogger(__name__)


def _setup_logging(settings: Settings) -> None:
    """Configure logging from settings (stderr always; optional file)."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("syncvault")
    root.setLevel(level)
    root.handlers.clear()
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root.addHandler(sh)
    if settings.log_file and str(settings.log_file).strip():
        try:
            fh = logging.FileHandler(settings.log_file, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(fmt)
            root.addHandler(fh)
            root.info("Logging to file %s", settings.log_file)
        except OSError as e:
            root.warning("Could not open log file %s: %s", settings.log_file, e)
    else:
        root.debug("Logging to stderr only (no log_file set)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build storage, broadcaster, sync engine and database; tear them down on exit."""
    settings = get_settings()
    log.info("Startup: storage=%s db=%s", settings.storage_base_path, settings.db_path)
    database = Database(settings.db_path)
    await database.init()
    broadcaster = ChangeBroadcaster(queue_size=settings.notify_queue_size)
    await broadcaster.start()
    files = FileService(FileStore(settings.storage_base_path), broadcaster)
    app.state.database = database
    app.state.broadcaster = broadcaster
    app.state.files = files
    app.state.sync_engine = SyncEngine(files)
    log.info("Startup complete")
    try:
        yield
    finally:
        log.info("Shutdown")
        await broadcaster.stop()
        await database.dispose()


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PathValidationError)
    async def validation_error_handler(request: Request, exc: PathValidationError):
        log.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        content = {"detail": str(exc)}
        if exc.conflict is not None:
            content["conflict"] = exc.conflict.model_dump(mode="json")
        return JSONResponse(status_code=409, content=content)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        log.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
        return _error(500, "Internal server error")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Return generic 500 without leaking stack trace or internals."""
        if isinstance(exc, HTTPException):
            raise exc
        log.exception("Unhandled exception: %s", exc)
        return _error(500, "Internal server error")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI app; services are created in lifespan from get_settings()."""
    settings = settings or get_settings()
    _setup_logging(settings)
    app = FastAPI(title="SyncVault API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    _install_error_handlers(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.include_router(files_router)
    app.include_router(sync_router)
    app.include_router(notify_router)

    @app.get("/health")
    @limiter.exempt
    def health() -> JSONResponse:
        """Health check. Exempt from rate limiting."""
        return JSONResponse(content={"status": "ok"})

    return app


app = create_app()
