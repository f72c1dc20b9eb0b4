from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from stone_api.config import Settings, get_settings
from stone_api.db.session import get_engine

logger = logging.getLogger("stone_api.health")

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    app: str
    env: str


class ReadinessResponse(HealthResponse):
    checks: dict[str, bool]


def _settings_for(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if isinstance(settings, Settings) else get_settings()


async def _check_db_ready() -> bool:
    try:
        async with get_engine().connect() as connection:
            await connection.execute(text("SELECT 1"))
    except (DBAPIError, OSError) as exc:
        logger.warning("readiness_db_check_failed", extra={"error": type(exc).__name__})
        return False
    return True


def _integration_checks(settings: Settings) -> dict[str, bool]:
    # Configuration only; provider endpoints are not called from a readiness check.
    return {
        "apple_sign_in": bool(settings.apple_bundle_ids),
        "google_sign_in": bool(settings.google_client_ids),
        "username_moderation": settings.moderation_enabled,
    }


@router.get(
    "",
    response_model=HealthResponse,
    summary="Liveness",
    description="Process is up; no dependencies are touched.",
    responses={
        200: {
            "content": {
                "application/json": {
                    "example": {"status": "ok", "app": "Stone Atlas API", "env": "production"}
                }
            }
        }
    },
)
def get_health(request: Request) -> HealthResponse:
    settings = _settings_for(request)
    return HealthResponse(status="ok", app=settings.app_name, env=settings.app_env)


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness",
    description=(
        "Runs `SELECT 1` against the database and reports which sign-in "
        "providers and moderation are configured."
    ),
    responses={503: {"description": "Database not ready."}},
)
async def get_ready(request: Request) -> ReadinessResponse:
    settings = _settings_for(request)
    if not await _check_db_ready():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not ready",
        )
    return ReadinessResponse(
        status="ready",
        app=settings.app_name,
        env=settings.app_env,
        checks={"db": True, **_integration_checks(settings)},
    )
