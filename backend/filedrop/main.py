"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from filedrop.config import Settings, get_settings
from filedrop.errors import DropError, StorageFolderMissingError
from filedrop.files.hash_store import LOG_FILENAME, HashIndex
from filedrop.files.routes import router as files_router
from filedrop.limiter import install_limiter, limiter

log = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure logging from settings (stderr always; optional file)."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("filedrop")
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


def open_hash_index(settings: Settings) -> HashIndex:
    """Check the uploads folder and replay its hash log. Any failure here is fatal."""
    folder = settings.uploads_folder
    if not folder.is_dir():
        raise StorageFolderMissingError(f"Provided storage folder {str(folder)!r} doesn't exist")
    return HashIndex.load(folder / LOG_FILENAME)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the app. The hash index is loaded in lifespan, before requests are served."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Load the hash index on startup; close its log on shutdown."""
        log.info("Startup: loading hash index from %s", settings.uploads_folder)
        hash_index = open_hash_index(settings)
        app.state.hash_index = hash_index
        log.info("Startup complete (auth %s)", "enabled" if settings.auth_config.enabled else "disabled")
        try:
            yield
        finally:
            hash_index.close()
            log.info("Shutdown")

    app = FastAPI(title="filedrop", version="0.1.0", lifespan=lifespan)
    app.state.uploads_folder = settings.uploads_folder
    app.state.auth_config = settings.auth_config
    app.state.public_url = settings.public_url
    app.state.max_upload_bytes = settings.max_upload_bytes

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    @app.exception_handler(DropError)
    async def drop_error_handler(request: Request, exc: DropError):
        """Map a DropError to its status code with a readable message."""
        return JSONResponse(
            status_code=exc.kind.status_code,
            content={"detail": exc.message},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Return generic 500 without leaking stack trace or internals."""
        if isinstance(exc, HTTPException):
            raise exc
        log.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    install_limiter(app)

    # Registered before the files router so /{file_name} does not shadow it
    @app.get("/health")
    @limiter.exempt
    def health() -> JSONResponse:
        """Health check. Exempt from rate limiting."""
        return JSONResponse(content={"status": "ok"})

    app.include_router(files_router)
    return app


def main() -> None:
    """Run the service with uvicorn on the configured listen address."""
    settings = get_settings()
    setup_logging(settings)
    host, port = settings.bind_host_port()
    app = create_app(settings)
    log.info("Listening on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
