from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Path, Request, Response, status

from stone_api.db.enums import AuthProvider
from stone_api.db.models import Account
from stone_api.deps.auth import (
    CURRENT_ACCOUNT_DEP,
    IDENTITY_RUNTIME_DEP,
    SESSION_SERVICE_DEP,
)
from stone_api.modules.auth.errors import AuthError, EmailAlreadyRegistered
from stone_api.modules.auth.runtime import IdentityRuntime
from stone_api.modules.auth.schemas import (
    AccountResponse,
    AppleSignInRequest,
    AvailabilityResponse,
    GoogleSignInRequest,
    LogoutRequest,
    RefreshRequest,
    SessionResponse,
)
from stone_api.modules.auth.service import SessionService, SessionTokens
from stone_api.modules.auth.tokens import hash_token

logger = logging.getLogger("stone_api.auth")

router = APIRouter(prefix="/auth", tags=["auth"])

_SIGN_IN_RESPONSES: dict[int | str, dict[str, object]] = {
    200: {"description": "Signed in; returns the account and a token pair."},
    401: {"description": "Identity token rejected."},
    409: {"description": "Email already belongs to another account."},
    429: {"description": "Too many sign-in attempts. Rate limit exceeded."},
    503: {"description": "Identity provider keys are temporarily unavailable."},
}


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def _refresh_principal(refresh_token: str) -> str:
    return hash_token(refresh_token)[:24]


def _to_response(tokens: SessionTokens) -> SessionResponse:
    return SessionResponse(
        user=AccountResponse.model_validate(tokens.account),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
    )


def _enforce_sign_in_limit(
    http_request: Request, runtime: IdentityRuntime, provider: AuthProvider
) -> None:
    decision = runtime.rate_limiter.check_sign_in(
        client_ip=_client_ip(http_request),
        provider=provider.value,
    )
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many sign-in attempts. Please retry later.",
            headers={"Retry-After": str(decision.retry_after_s)},
        )


async def _sign_in(
    session_service: SessionService,
    provider: AuthProvider,
    raw_assertion: str,
    *,
    nonce: str | None = None,
    fallback_email: str | None = None,
) -> SessionResponse:
    try:
        tokens = await session_service.sign_in_with_provider(
            provider,
            raw_assertion,
            nonce=nonce,
            fallback_email=fallback_email,
        )
    except AuthError as exc:
        logger.info(
            "sign_in_rejected",
            extra={"provider": provider.value, "reason": exc.reason},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid identity token.",
        ) from exc
    except EmailAlreadyRegistered as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    return _to_response(tokens)


@router.post(
    "/apple",
    response_model=SessionResponse,
    summary="Sign In With Apple",
    description=(
        "Verifies an Apple identity token (signature, issuer, audience, expiry, "
        "nonce) and returns a session, creating the account on first sign-in."
    ),
    responses=_SIGN_IN_RESPONSES,
)
async def post_apple_sign_in(
    http_request: Request,
    request: AppleSignInRequest,
    session_service: SessionService = SESSION_SERVICE_DEP,
    runtime: IdentityRuntime = IDENTITY_RUNTIME_DEP,
) -> SessionResponse:
    _enforce_sign_in_limit(http_request, runtime, AuthProvider.APPLE)
    return await _sign_in(
        session_service,
        AuthProvider.APPLE,
        request.identity_token,
        nonce=request.nonce,
        fallback_email=request.email,
    )


@router.post(
    "/google",
    response_model=SessionResponse,
    summary="Sign In With Google",
    description=(
        "Verifies a Google ID token against Google's signing keys and returns "
        "a session, creating the account on first sign-in."
    ),
    responses=_SIGN_IN_RESPONSES,
)
async def post_google_sign_in(
    http_request: Request,
    request: GoogleSignInRequest,
    session_service: SessionService = SESSION_SERVICE_DEP,
    runtime: IdentityRuntime = IDENTITY_RUNTIME_DEP,
) -> SessionResponse:
    _enforce_sign_in_limit(http_request, runtime, AuthProvider.GOOGLE)
    return await _sign_in(session_service, AuthProvider.GOOGLE, request.id_token)


@router.post(
    "/refresh",
    response_model=SessionResponse,
    summary="Refresh Session",
    description="Rotates the refresh token and returns a new access/refresh pair.",
    responses={
        200: {"description": "Token refresh successful."},
        401: {"description": "Invalid, revoked, or expired refresh token."},
        429: {"description": "Too many refresh attempts. Rate limit exceeded."},
    },
)
async def post_refresh(
    http_request: Request,
    request: RefreshRequest,
    session_service: SessionService = SESSION_SERVICE_DEP,
    runtime: IdentityRuntime = IDENTITY_RUNTIME_DEP,
) -> SessionResponse:
    decision = runtime.rate_limiter.check_refresh(
        client_ip=_client_ip(http_request),
        principal=_refresh_principal(request.refresh_token),
    )
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many refresh attempts. Please retry later.",
            headers={"Retry-After": str(decision.retry_after_s)},
        )
    try:
        tokens = await session_service.refresh(request.refresh_token)
    except AuthError as exc:
        logger.info("refresh_rejected", extra={"reason": exc.reason})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token.",
        ) from exc
    return _to_response(tokens)


@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Logout",
    description="Revokes a refresh token. The access token stays valid until it expires.",
    responses={204: {"description": "Logout successful."}},
)
async def post_logout(
    request: LogoutRequest,
    session_service: SessionService = SESSION_SERVICE_DEP,
) -> Response:
    await session_service.logout(request.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/me",
    response_model=AccountResponse,
    summary="Get Current Account",
    description="Returns the account behind the bearer access token.",
    responses={
        200: {"description": "Current account."},
        401: {"description": "Missing or invalid access token."},
    },
)
async def get_me(current_account: Account = CURRENT_ACCOUNT_DEP) -> AccountResponse:
    return AccountResponse.model_validate(current_account)


@router.get(
    "/check-username/{username}",
    response_model=AvailabilityResponse,
    summary="Check Username Availability",
)
async def get_username_availability(
    username: str = Path(min_length=1, max_length=64),
    session_service: SessionService = SESSION_SERVICE_DEP,
) -> AvailabilityResponse:
    available = await session_service.provisioner.is_username_available(username)
    return AvailabilityResponse(available=available)


@router.get(
    "/check-email/{email}",
    response_model=AvailabilityResponse,
    summary="Check Email Availability",
)
async def get_email_availability(
    email: str = Path(min_length=3, max_length=255),
    session_service: SessionService = SESSION_SERVICE_DEP,
) -> AvailabilityResponse:
    available = await session_service.provisioner.is_email_available(email)
    return AvailabilityResponse(available=available)
