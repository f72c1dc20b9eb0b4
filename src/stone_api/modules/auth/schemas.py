from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from stone_api.db.enums import AuthProvider

_ACCOUNT_EXAMPLE = {
    "id": "7fa22272-d5a3-4374-8f89-dfdddb4251f0",
    "username": "maxlifts",
    "email": "maxlifts@example.com",
    "auth_provider": "google",
    "created_at": "2026-02-22T20:20:10.000000",
    "updated_at": "2026-02-22T20:20:10.000000",
}


class AppleSignInRequest(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "identity_token": "<apple_identity_jwt>",
                "nonce": "b6f1f0a2c7d94f6e",
                "email": "lifter@privaterelay.appleid.com",
            }
        }
    )

    identity_token: str = Field(min_length=1)
    nonce: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)


class GoogleSignInRequest(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={"example": {"id_token": "<google_id_jwt>"}}
    )

    id_token: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={"example": {"refresh_token": "<opaque_refresh_token>"}}
    )

    refresh_token: str = Field(min_length=16, max_length=512)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={"example": {"refresh_token": "<opaque_refresh_token>"}}
    )

    refresh_token: str = Field(min_length=16, max_length=512)


class AccountResponse(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={"example": _ACCOUNT_EXAMPLE},
    )

    id: UUID
    username: str
    email: str
    auth_provider: AuthProvider
    created_at: datetime
    updated_at: datetime


class SessionResponse(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "user": _ACCOUNT_EXAMPLE,
                "access_token": "<access_jwt>",
                "refresh_token": "<opaque_refresh_token>",
                "token_type": "bearer",
            }
        }
    )

    user: AccountResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AvailabilityResponse(BaseModel):
    available: bool
