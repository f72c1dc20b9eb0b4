from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from jose import JWTError, jwt

from stone_api.db.models import Account
from stone_api.modules.auth.errors import ConfigurationFault, TokenExpired, TokenInvalid

Clock = Callable[[], datetime]

ACCESS_TOKEN_TYPE = "access"


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AccessTokenClaims:
    account_id: UUID
    username: str
    expires_at: datetime


class AccessTokenIssuer:
    """Signs and verifies short-lived bearer tokens with a shared secret."""

    def __init__(
        self,
        *,
        secret: str,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(hours=1),
        clock: Clock = utc_clock,
    ) -> None:
        if not secret or not secret.strip():
            raise ConfigurationFault("auth_jwt_secret is not configured.")
        if not algorithm.upper().startswith("HS"):
            raise ConfigurationFault(
                f"Access tokens require a symmetric algorithm, got {algorithm!r}."
            )
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = ttl
        self._clock = clock

    def issue(self, account: Account) -> str:
        now = self._clock()
        payload = {
            "sub": str(account.id),
            "username": account.username,
            "type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> AccessTokenClaims:
        # Expiry is checked against our clock below, not jose's wall clock.
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_nbf": False},
            )
        except JWTError as exc:
            raise TokenInvalid("Access token signature or format is invalid.") from exc

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenInvalid("Invalid token type for access.")
        subject = payload.get("sub")
        username = payload.get("username")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not isinstance(username, str):
            raise TokenInvalid("Access token is missing identity claims.")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise TokenInvalid("Access token is missing an expiry.")
        try:
            account_id = UUID(subject)
        except ValueError as exc:
            raise TokenInvalid("Invalid token subject.") from exc

        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if self._clock() >= expires_at:
            raise TokenExpired("Access token has expired.")
        return AccessTokenClaims(
            account_id=account_id,
            username=username,
            expires_at=expires_at,
        )
