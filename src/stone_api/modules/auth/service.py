from __future__ import annotations

import logging
from dataclasses import dataclass

from stone_api.db.enums import AuthProvider
from stone_api.db.models import Account
from stone_api.modules.auth.errors import TokenInvalid
from stone_api.modules.auth.oauth import OAuthAssertionVerifier
from stone_api.modules.auth.provisioning import AccountProvisioner
from stone_api.modules.auth.refresh import RefreshCredentialManager
from stone_api.modules.auth.repository import IdentityRepository
from stone_api.modules.auth.tokens import AccessTokenClaims, AccessTokenIssuer

logger = logging.getLogger("stone_api.auth")


@dataclass(frozen=True)
class SessionTokens:
    account: Account
    access_token: str
    refresh_token: str


class SessionService:
    """Entry points used by the HTTP layer: sign in, refresh, verify."""

    def __init__(
        self,
        *,
        repository: IdentityRepository,
        verifier: OAuthAssertionVerifier,
        provisioner: AccountProvisioner,
        access_tokens: AccessTokenIssuer,
        refresh_credentials: RefreshCredentialManager,
    ) -> None:
        self.repository = repository
        self.verifier = verifier
        self.provisioner = provisioner
        self.access_tokens = access_tokens
        self.refresh_credentials = refresh_credentials

    async def sign_in_with_provider(
        self,
        provider: AuthProvider,
        raw_assertion: str,
        *,
        nonce: str | None = None,
        fallback_email: str | None = None,
    ) -> SessionTokens:
        identity = await self.verifier.verify(provider, raw_assertion, nonce=nonce)
        # Apple only includes the email on the first authorization.
        email = identity.email or fallback_email
        account = await self.provisioner.resolve_or_create(
            provider, identity.subject_id, email
        )
        # The account stays even if issuance fails below; sign-in is idempotent.
        access_token = self.access_tokens.issue(account)
        issued = await self.refresh_credentials.issue(account)
        logger.info(
            "sign_in_succeeded",
            extra={"provider": provider.value, "account_id": str(account.id)},
        )
        return SessionTokens(
            account=account,
            access_token=access_token,
            refresh_token=issued.token,
        )

    async def refresh(self, refresh_token: str) -> SessionTokens:
        account = await self.refresh_credentials.redeem(refresh_token)
        issued = await self.refresh_credentials.rotate(refresh_token, account)
        access_token = self.access_tokens.issue(account)
        logger.info("session_refreshed", extra={"account_id": str(account.id)})
        return SessionTokens(
            account=account,
            access_token=access_token,
            refresh_token=issued.token,
        )

    async def logout(self, refresh_token: str) -> None:
        await self.refresh_credentials.revoke(refresh_token)

    def verify_access_token(self, access_token: str) -> AccessTokenClaims:
        return self.access_tokens.verify(access_token)

    async def get_account_from_access_token(self, access_token: str) -> Account:
        claims = self.verify_access_token(access_token)
        account = await self.repository.get_account_by_id(claims.account_id)
        if account is None:
            raise TokenInvalid("Access token subject no longer exists.")
        return account
