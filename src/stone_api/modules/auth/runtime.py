from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from stone_api.config.settings import Settings
from stone_api.modules.auth.oauth import (
    OAuthAssertionVerifier,
    build_key_source,
    build_provider_profiles,
)
from stone_api.modules.auth.provisioning import AccountProvisioner
from stone_api.modules.auth.rate_limit import AuthRateLimiter
from stone_api.modules.auth.refresh import RefreshCredentialManager
from stone_api.modules.auth.repository import IdentityRepository
from stone_api.modules.auth.service import SessionService
from stone_api.modules.auth.tokens import AccessTokenIssuer
from stone_api.modules.moderation.service import ModerationService, TextModerator


@dataclass
class IdentityRuntime:
    """Process-wide identity components; per-request pieces are built from it."""

    settings: Settings
    access_tokens: AccessTokenIssuer
    verifier: OAuthAssertionVerifier
    moderator: TextModerator | None
    rate_limiter: AuthRateLimiter

    def session_service(self, session: AsyncSession) -> SessionService:
        repository = IdentityRepository(session=session)
        return SessionService(
            repository=repository,
            verifier=self.verifier,
            provisioner=AccountProvisioner(
                repository,
                moderator=self.moderator,
                moderation_deadline_s=self.settings.moderation_deadline_s,
                max_attempts=self.settings.provision_max_attempts,
            ),
            access_tokens=self.access_tokens,
            refresh_credentials=RefreshCredentialManager(
                repository,
                ttl=timedelta(days=self.settings.auth_refresh_token_ttl_days),
            ),
        )


def build_identity_runtime(settings: Settings) -> IdentityRuntime:
    """Fails with ``ConfigurationFault`` when no signing secret is configured."""
    access_tokens = AccessTokenIssuer(
        secret=settings.auth_jwt_secret,
        algorithm=settings.auth_jwt_algorithm,
        ttl=timedelta(minutes=settings.auth_access_token_ttl_minutes),
    )
    verifier = OAuthAssertionVerifier(
        profiles=build_provider_profiles(settings),
        key_source=build_key_source(settings),
        leeway_s=settings.oauth_clock_skew_s,
    )
    return IdentityRuntime(
        settings=settings,
        access_tokens=access_tokens,
        verifier=verifier,
        moderator=ModerationService.from_settings(settings),
        rate_limiter=AuthRateLimiter.from_settings(settings),
    )
