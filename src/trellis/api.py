"""HTTP API for trellis.

Single-project server: a module-level ``_db`` is set at startup (or by test
fixtures) and injected into handlers via ``Depends(_get_db)``. All routes
live under ``/api``.

Usage:
    trellis serve                 # http://127.0.0.1:8400/api/...
    trellis serve --port 9000     # Custom port
"""

from __future__ import annotations

import logging
from time import perf_counter
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fastapi.responses import JSONResponse
    from starlette.requests import Request

from trellis.core import TrellisDB, find_trellis_root

DEFAULT_PORT = 8400

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level state, set by main() or test fixtures
# ---------------------------------------------------------------------------

_db: TrellisDB | None = None


def _get_db() -> TrellisDB:
    """Return the active database connection."""
    from fastapi import HTTPException

    if _db is None:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return _db


def create_app() -> Any:
    """Create the FastAPI application with all trellis endpoints."""
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware

    from trellis import __version__
    from trellis.api_routes import config as config_routes
    from trellis.api_routes import items as items_routes

    # Expose Request in module globals so PEP 563 deferred annotations resolve
    globals()["Request"] = Request

    app = FastAPI(title="Trellis", version=__version__)

    class RequestLogMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next: Any) -> Any:
            started = perf_counter()
            response = await call_next(request)
            duration_ms = round((perf_counter() - started) * 1000, 1)
            logger.info(
                "%s %s -> %d",
                request.method,
                request.url.path,
                response.status_code,
                extra={"op": "http", "duration_ms": duration_ms},
            )
            return response

    app.add_middleware(RequestLogMiddleware)

    app.include_router(items_routes.create_router(), prefix="/api")
    app.include_router(config_routes.create_router(), prefix="/api")

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        prefix = _db.prefix if _db is not None else ""
        return JSONResponse({"status": "ok", "prefix": prefix, "version": __version__})

    return app


def main(port: int = DEFAULT_PORT, *, host: str = "127.0.0.1") -> None:
    """Start the API server for the project discovered from cwd."""
    import uvicorn

    from trellis.logging import setup_logging

    global _db

    trellis_dir = find_trellis_root()
    setup_logging(trellis_dir)
    _db = TrellisDB.from_trellis_dir(trellis_dir, check_same_thread=False)
    _db.initialize()
    logger.info("Serving %s on %s:%d", trellis_dir, host, port)
    try:
        uvicorn.run(create_app(), host=host, port=port, log_level="warning")
    finally:
        _db.close()
        _db = None
