"""FastAPI application entry point."""

import asyncio
import logging
import re
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from davbox.auth.sessions import SessionManager
from davbox.config import Settings, get_settings
from davbox.db.session import Database
from davbox.errors import DavboxError, PreconditionFailed
from davbox.files.routes import api_router as files_api_router
from davbox.files.routes import router as files_router
from davbox.gate import AccessGate
from davbox.limiter import configure_limiter, limiter
from davbox.users.routes import router as users_router
from davbox.users.service import ensure_admin_exists

VERSION = "0.1.0"

log = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "Unauthorized": status.HTTP_401_UNAUTHORIZED,
    "InvalidPath": status.HTTP_400_BAD_REQUEST,
    "QuotaExceeded": status.HTTP_507_INSUFFICIENT_STORAGE,
    "NotFound": status.HTTP_404_NOT_FOUND,
    "Forbidden": status.HTTP_403_FORBIDDEN,
    "StorageIOFailure": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "Conflict": status.HTTP_409_CONFLICT,
}

# iOS WebDAV apps have been reported as not working
_IOS_USER_AGENT = re.compile(r"\b(iPhone|iPad|iPod|iOS)\b")


def _setup_logging(settings: Settings) -> None:
    """Configure logging from settings (stderr always; optional file)."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("davbox")
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


def status_for(exc: DavboxError) -> int:
    if isinstance(exc, PreconditionFailed):
        return status.HTTP_412_PRECONDITION_FAILED
    return STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def is_ios_client(user_agent: str) -> bool:
    return bool(_IOS_USER_AGENT.search(user_agent or ""))


async def _sweep_sessions(sessions: SessionManager, interval: int) -> None:
    """Periodically drop expired session rows."""
    while True:
        await asyncio.sleep(interval)
        try:
            await sessions.sweep_expired()
        except Exception:
            log.exception("Session sweep failed")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the app; components are wired from ``settings`` at startup."""
    settings = settings or get_settings()
    _setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables, wire the gate and bootstrap admin on startup."""
        log.info("Startup: initializing database and admin")
        database = Database(settings.db_path)
        await database.init()
        gate = AccessGate.from_settings(settings, database)
        app.state.database = database
        app.state.gate = gate
        await ensure_admin_exists(database, gate.store, settings)
        sweeper = None
        if settings.session_sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(
                _sweep_sessions(gate.sessions, settings.session_sweep_interval_seconds)
            )
        log.info("Startup complete")
        yield
        log.info("Shutdown")
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        await gate.thumbnails.drain()
        await database.dispose()

    app = FastAPI(title="davbox", version=VERSION, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "HEAD", "PUT", "DELETE", "POST", "PATCH", "MKCOL", "MOVE"],
        allow_headers=["*"],
        expose_headers=["ETag"],
    )

    @app.middleware("http")
    async def block_ios_clients(request: Request, call_next):
        """Refuse WebDAV requests from iOS apps when configured to."""
        if (
            settings.block_ios_clients
            and request.url.path.startswith("/files/")
            and is_ios_client(request.headers.get("user-agent", ""))
        ):
            log.info("Blocked iOS client: %s", request.headers.get("user-agent"))
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"error": "Forbidden", "detail": "iOS apps are not supported"},
            )
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    @app.exception_handler(DavboxError)
    async def storage_error_handler(request: Request, exc: DavboxError):
        """Map error kinds to HTTP statuses."""
        code = status_for(exc)
        if code >= 500:
            log.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
        else:
            log.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
        headers = {"WWW-Authenticate": "Bearer"} if code == status.HTTP_401_UNAUTHORIZED else None
        return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Return generic 500 without leaking stack trace or internals (unless errors_show)."""
        if isinstance(exc, HTTPException):
            raise exc
        log.exception("Unhandled exception: %s", exc)
        detail = f"{type(exc).__name__}: {exc}" if settings.errors_show else "Internal server error"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": detail},
        )

    app.state.limiter = configure_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.include_router(users_router)
    app.include_router(files_api_router)
    app.include_router(files_router)

    @app.get("/health")
    @limiter.exempt
    def health() -> JSONResponse:
        """Health check for Docker. Exempt from rate limiting."""
        return JSONResponse(content={"status": "ok"})

    return app


app = create_app()
