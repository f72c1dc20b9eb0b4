from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from stone_api.db.models import Account
from stone_api.db.session import get_session
from stone_api.modules.auth.errors import AuthError
from stone_api.modules.auth.runtime import IdentityRuntime
from stone_api.modules.auth.service import SessionService

logger = logging.getLogger("stone_api.auth")

SESSION_DEP = Depends(get_session)
bearer_scheme = HTTPBearer(
    auto_error=False,
    scheme_name="bearerAuth",
    description="JWT access token. Format: Bearer <token>",
)
CREDENTIALS_DEP = Depends(bearer_scheme)


def get_identity_runtime_dep(request: Request) -> IdentityRuntime:
    return request.app.state.identity


IDENTITY_RUNTIME_DEP = Depends(get_identity_runtime_dep)


def get_session_service_dep(
    session: AsyncSession = SESSION_DEP,
    runtime: IdentityRuntime = IDENTITY_RUNTIME_DEP,
) -> SessionService:
    return runtime.session_service(session)


SESSION_SERVICE_DEP = Depends(get_session_service_dep)


async def get_current_account_dep(
    credentials: HTTPAuthorizationCredentials | None = CREDENTIALS_DEP,
    session_service: SessionService = SESSION_SERVICE_DEP,
) -> Account:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token.",
        )
    try:
        return await session_service.get_account_from_access_token(
            credentials.credentials
        )
    except AuthError as exc:
        logger.info("access_token_rejected", extra={"reason": exc.reason})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token.",
        ) from exc


CURRENT_ACCOUNT_DEP = Depends(get_current_account_dep)
