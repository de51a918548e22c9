# src/cid_portal/main.py
"""Main entry point for the CID portal API."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cid_portal.api.middleware import GatekeeperMiddleware, WhitelistCORSMiddleware, error_response
from cid_portal.api.v1 import api_router, system_router
from cid_portal.core.errors import SecurityError
from cid_portal.core.settings import Settings, settings
from cid_portal.db.session import create_tables
from cid_portal.services.maintenance import MaintenanceWorker
from cid_portal.services.registry import SecurityServices, build_services

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# rejections that end the session: the stale cookie is cleared on the way out
SESSION_ENDING_CODES = frozenset(
    {
        "SESSION_TIMEOUT",
        "SESSION_REPLAY_BLOCKED",
        "SESSION_BINDING_MISMATCH",
        "SESSION_INVALID",
    }
)


def create_app(
    config: Settings | None = None,
    services: SecurityServices | None = None,
    *,
    create_schema: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Settings to use; the module-level settings when omitted.
        services: Pre-built service graph; built from ``config`` when omitted.
        create_schema: Create database tables on startup.

    Returns:
        The configured application.
    """
    config = config or settings
    services = services or build_services(config)

    app = FastAPI(
        title=config.app_name,
        description="CID portal session and request-security API",
        version=config.app_version,
        docs_url=None if config.is_production else "/docs",
        redoc_url=None if config.is_production else "/redoc",
        openapi_url=None if config.is_production else "/openapi.json",
    )
    app.state.services = services
    app.state.maintenance = None

    # Added last runs first: the gatekeeper screens every request before CORS.
    app.add_middleware(WhitelistCORSMiddleware, gatekeeper=services.gatekeeper)
    app.add_middleware(GatekeeperMiddleware, gatekeeper=services.gatekeeper)

    app.include_router(api_router)
    app.include_router(system_router)

    @app.exception_handler(SecurityError)
    async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("System error on %s %s: %s", request.method, request.url.path, exc)
        response = error_response(exc, expose_internal=not config.is_production)
        if exc.code in SESSION_ENDING_CODES:
            services.sessions.clear_cookie(response, request)
        return response

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        payload = {"message": "Internal server error", "code": "INTERNAL_ERROR"}
        if config.is_development:
            payload["detail"] = str(exc)
        return JSONResponse(payload, status_code=500)

    @app.on_event("startup")
    async def on_startup() -> None:
        services.initialize()
        if create_schema:
            create_tables()
        if config.maintenance_enabled:
            worker = services.build_worker()
            await worker.start()
            app.state.maintenance = worker
        logger.info("CID portal started in %s mode", config.environment)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        worker: MaintenanceWorker | None = getattr(app.state, "maintenance", None)
        if worker:
            await worker.stop()
        app.state.maintenance = None

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cid_portal.main:app", host="0.0.0.0", port=5000, reload=settings.debug)
