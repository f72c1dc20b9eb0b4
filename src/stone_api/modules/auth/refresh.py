from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from stone_api.db.models import Account, RefreshCredential
from stone_api.modules.auth.errors import (
    CredentialConflict,
    CredentialExpired,
    CredentialIssueContention,
    CredentialNotFound,
    CredentialRevoked,
)
from stone_api.modules.auth.repository import IdentityRepository
from stone_api.modules.auth.tokens import Clock, hash_token, utc_clock

logger = logging.getLogger("stone_api.auth")

REFRESH_TOKEN_BYTES = 32
_MAX_ISSUE_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedRefreshCredential:
    token: str
    credential: RefreshCredential


class RefreshCredentialManager:
    """Long-lived opaque refresh credentials, one active per account.

    Only the SHA-256 digest of a token is stored; the raw value is handed to
    the client once and never written anywhere else.
    """

    def __init__(
        self,
        repository: IdentityRepository,
        *,
        ttl: timedelta = timedelta(days=270),
        clock: Clock = utc_clock,
    ) -> None:
        self.repository = repository
        self._ttl = ttl
        self._clock = clock

    async def issue(self, account: Account) -> IssuedRefreshCredential:
        return await self._replace(account, supersedes=None)

    async def redeem(self, token: str) -> Account:
        stored = await self.repository.get_refresh_credential(hash_token(token))
        if stored is None:
            raise CredentialNotFound("Refresh token not found.")
        if stored.is_revoked:
            raise CredentialRevoked("Refresh token has been revoked.")
        if self._as_utc(stored.expires_at) <= self._clock():
            raise CredentialExpired("Refresh token has expired.")

        account = await self.repository.get_account_by_id(stored.account_id)
        if account is None:
            raise CredentialNotFound("Refresh token owner no longer exists.")
        return account

    async def rotate(self, token: str, account: Account) -> IssuedRefreshCredential:
        """Replace ``token`` with a new credential; only one concurrent caller wins."""
        return await self._replace(account, supersedes=hash_token(token))

    async def revoke(self, token: str) -> None:
        await self.repository.revoke_credential(
            hash_token(token), revoked_at=self._db_now()
        )

    async def _replace(
        self, account: Account, *, supersedes: str | None
    ) -> IssuedRefreshCredential:
        account_id = account.id
        for attempt in range(1, _MAX_ISSUE_ATTEMPTS + 1):
            token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
            now = self._db_now()
            credential = RefreshCredential(
                account_id=account_id,
                token_hash=hash_token(token),
                expires_at=now + self._ttl,
                is_revoked=False,
                created_at=now,
            )
            try:
                stored = await self.repository.replace_active_credential(
                    account_id,
                    credential,
                    revoked_at=now,
                    supersedes=supersedes,
                )
            except CredentialConflict:
                logger.warning(
                    "refresh_credential_conflict",
                    extra={"account_id": str(account_id), "attempt": attempt},
                )
                # The rollback expired the account instance.
                await self.repository.reload(account)
                continue
            return IssuedRefreshCredential(token=token, credential=stored)
        if supersedes is not None:
            raise CredentialRevoked("Refresh token could not be rotated.")
        raise CredentialIssueContention("Could not persist a new refresh credential, retry.")

    def _db_now(self) -> datetime:
        return self._clock().astimezone(timezone.utc)

    @staticmethod
    def _as_utc(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
