from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stone_api.config import Settings, get_settings
from stone_api.error_handling import register_error_handlers
from stone_api.modules.auth.errors import ConfigurationFault
from stone_api.modules.auth.router import router as auth_router
from stone_api.modules.auth.runtime import build_identity_runtime
from stone_api.modules.health.router import router as health_router
from stone_api.observability import configure_logging, register_request_logging

logger = logging.getLogger("stone_api")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application.

    Raises ``ConfigurationFault`` before any route is registered when the
    access-token signing secret is missing.
    """
    cfg = settings or get_settings()
    configure_logging(cfg)
    try:
        identity = build_identity_runtime(cfg)
    except ConfigurationFault:
        logger.critical("auth_jwt_secret_missing")
        raise

    app = FastAPI(
        title=cfg.app_name,
        debug=cfg.app_debug,
        docs_url=cfg.docs_url,
        redoc_url=cfg.redoc_url,
    )
    register_error_handlers(app)
    if cfg.app_log_requests:
        register_request_logging(app)
    if cfg.app_cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.app_cors_origins,
            allow_credentials=cfg.app_cors_allow_credentials,
            allow_methods=cfg.app_cors_allow_methods,
            allow_headers=cfg.app_cors_allow_headers,
        )
    app.state.settings = cfg
    app.state.identity = identity
    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(health_router)
    return app


def main() -> None:
    cfg = get_settings()
    uvicorn.run(
        "stone_api.app:create_app",
        factory=True,
        host=cfg.app_host,
        port=cfg.app_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
