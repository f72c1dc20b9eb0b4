"""Verification of Apple and Google identity tokens.

Both providers publish RS256 signing keys as a JWK set. A token is accepted
only if its signature checks out against one of those keys; the claims are
then validated against the provider's profile.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Protocol

import httpx
from jose import JWTError, jwt

from stone_api.config.settings import Settings
from stone_api.db.enums import AuthProvider
from stone_api.modules.auth.errors import (
    AssertionExpired,
    AudienceMismatch,
    InvalidAssertion,
    NonceMismatch,
    OAuthProviderUnavailable,
)
from stone_api.modules.auth.tokens import Clock, utc_clock

logger = logging.getLogger("stone_api.auth")

SIGNING_ALGORITHM = "RS256"
APPLE_PRIVATE_RELAY_DOMAIN = "privaterelay.appleid.com"

JsonWebKey = dict[str, Any]


@dataclass(frozen=True)
class ProviderProfile:
    provider: AuthProvider
    issuers: frozenset[str]
    audiences: frozenset[str]
    checks_nonce: bool = False
    requires_email: bool = False
    requires_verified_email: bool = False


@dataclass(frozen=True)
class VerifiedIdentity:
    provider: AuthProvider
    subject_id: str
    email: str | None


class ProviderKeySource(Protocol):
    async def get_keys(
        self, provider: AuthProvider, *, force_refresh: bool = False
    ) -> list[JsonWebKey]: ...


class StaticKeySource:
    """Fixed key material, for tests and deployments without egress."""

    def __init__(self, keys: Mapping[AuthProvider, list[JsonWebKey]]) -> None:
        self._keys = {provider: list(values) for provider, values in keys.items()}

    async def get_keys(
        self, provider: AuthProvider, *, force_refresh: bool = False
    ) -> list[JsonWebKey]:
        del force_refresh
        return list(self._keys.get(provider, []))


@dataclass
class _CachedKeys:
    keys: list[JsonWebKey]
    fetched_at: float


@dataclass
class JwksKeySource:
    """Fetches provider JWK sets over HTTPS and caches them per provider."""

    urls: Mapping[AuthProvider, str]
    ttl_s: float = 3600.0
    timeout_s: float = 5.0
    min_refresh_interval_s: float = 60.0
    transport: httpx.AsyncBaseTransport | None = None
    now: Callable[[], float] = monotonic
    _cache: dict[AuthProvider, _CachedKeys] = field(
        default_factory=dict, init=False, repr=False
    )
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def get_keys(
        self, provider: AuthProvider, *, force_refresh: bool = False
    ) -> list[JsonWebKey]:
        url = self.urls.get(provider)
        if url is None:
            raise OAuthProviderUnavailable(f"No key endpoint configured for {provider.value}.")

        async with self._lock:
            cached = self._cache.get(provider)
            if cached is not None:
                age = self.now() - cached.fetched_at
                if age < self.ttl_s and not force_refresh:
                    return cached.keys
                # Unknown kids must not turn into a request flood against the provider.
                if force_refresh and age < self.min_refresh_interval_s:
                    return cached.keys

            try:
                keys = await self._fetch(url)
            except OAuthProviderUnavailable:
                logger.warning(
                    "oauth_keys_fetch_failed",
                    extra={"provider": provider.value, "had_cache": cached is not None},
                )
                if cached is not None and not force_refresh:
                    return cached.keys
                raise

            self._cache[provider] = _CachedKeys(keys=keys, fetched_at=self.now())
            return keys

    async def _fetch(self, url: str) -> list[JsonWebKey]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s,
                transport=self.transport,
                follow_redirects=False,
            ) as client:
                response = await client.get(url, headers={"accept": "application/json"})
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as exc:
            raise OAuthProviderUnavailable(f"Could not fetch signing keys: {exc}") from exc
        except ValueError as exc:
            raise OAuthProviderUnavailable("Signing key response is not JSON.") from exc

        keys = body.get("keys") if isinstance(body, dict) else None
        if not isinstance(keys, list):
            raise OAuthProviderUnavailable("Signing key response has no key set.")
        return [key for key in keys if isinstance(key, dict)]


def build_provider_profiles(settings: Settings) -> dict[AuthProvider, ProviderProfile]:
    return {
        AuthProvider.APPLE: ProviderProfile(
            provider=AuthProvider.APPLE,
            issuers=frozenset({settings.apple_issuer}),
            audiences=frozenset(settings.apple_bundle_ids),
            checks_nonce=True,
        ),
        AuthProvider.GOOGLE: ProviderProfile(
            provider=AuthProvider.GOOGLE,
            issuers=frozenset(settings.google_issuers),
            audiences=frozenset(settings.google_client_ids),
            requires_email=True,
            requires_verified_email=True,
        ),
    }


def build_key_source(settings: Settings) -> JwksKeySource:
    return JwksKeySource(
        urls={
            AuthProvider.APPLE: settings.apple_keys_url,
            AuthProvider.GOOGLE: settings.google_keys_url,
        },
        ttl_s=settings.oauth_keys_cache_ttl_s,
        timeout_s=settings.oauth_http_timeout_s,
    )


def hash_nonce(nonce: str) -> str:
    return hashlib.sha256(nonce.encode("utf-8")).hexdigest()


class OAuthAssertionVerifier:
    def __init__(
        self,
        *,
        profiles: Mapping[AuthProvider, ProviderProfile],
        key_source: ProviderKeySource,
        clock: Clock = utc_clock,
        leeway_s: int = 300,
    ) -> None:
        self.profiles = dict(profiles)
        self.key_source = key_source
        self._clock = clock
        self._leeway_s = leeway_s

    async def verify(
        self,
        provider: AuthProvider,
        raw_assertion: str,
        *,
        nonce: str | None = None,
    ) -> VerifiedIdentity:
        profile = self.profiles.get(provider)
        if profile is None:
            raise InvalidAssertion(f"Sign-in with {provider.value} is not supported.")
        if not isinstance(raw_assertion, str) or raw_assertion.count(".") != 2:
            raise InvalidAssertion("Identity token is not a JWT.")

        try:
            header = jwt.get_unverified_header(raw_assertion)
        except JWTError as exc:
            raise InvalidAssertion("Identity token header is malformed.") from exc
        if header.get("alg") != SIGNING_ALGORITHM:
            raise InvalidAssertion("Identity token is not signed with RS256.")

        key = await self._find_key(provider, header.get("kid"))
        try:
            claims = jwt.decode(
                raw_assertion,
                key,
                algorithms=[SIGNING_ALGORITHM],
                options={
                    "verify_aud": False,
                    "verify_iat": False,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_at_hash": False,
                },
            )
        except JWTError as exc:
            raise InvalidAssertion("Identity token signature is invalid.") from exc

        self._check_issuer(profile, claims)
        self._check_audience(profile, claims)
        self._check_expiry(claims)
        if profile.checks_nonce and nonce is not None:
            self._check_nonce(nonce, claims)

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidAssertion("Identity token has no subject.")
        email = self._extract_email(profile, claims)
        return VerifiedIdentity(provider=provider, subject_id=subject, email=email)

    async def _find_key(self, provider: AuthProvider, kid: object) -> JsonWebKey:
        if not isinstance(kid, str) or not kid:
            raise InvalidAssertion("Identity token has no key id.")

        keys = await self.key_source.get_keys(provider)
        match = self._select_key(keys, kid)
        if match is None:
            # Providers rotate keys; look once more before rejecting.
            keys = await self.key_source.get_keys(provider, force_refresh=True)
            match = self._select_key(keys, kid)
        if match is None:
            raise InvalidAssertion("Identity token was signed with an unknown key.")
        return match

    @staticmethod
    def _select_key(keys: list[JsonWebKey], kid: str) -> JsonWebKey | None:
        for key in keys:
            if key.get("kid") == kid and key.get("kty") == "RSA":
                return key
        return None

    @staticmethod
    def _check_issuer(profile: ProviderProfile, claims: Mapping[str, Any]) -> None:
        if claims.get("iss") not in profile.issuers:
            raise InvalidAssertion("Identity token issuer is not trusted.")

    @staticmethod
    def _check_audience(profile: ProviderProfile, claims: Mapping[str, Any]) -> None:
        raw = claims.get("aud")
        if isinstance(raw, str):
            audiences = {raw}
        elif isinstance(raw, list):
            audiences = {value for value in raw if isinstance(value, str)}
        else:
            audiences = set()
        if not audiences & profile.audiences:
            raise AudienceMismatch("Identity token was not issued for this application.")

    def _check_expiry(self, claims: Mapping[str, Any]) -> None:
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise InvalidAssertion("Identity token has no expiry.")
        now = self._clock().astimezone(timezone.utc)
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if (now - expires_at).total_seconds() >= self._leeway_s:
            raise AssertionExpired("Identity token has expired.")

    @staticmethod
    def _check_nonce(nonce: str, claims: Mapping[str, Any]) -> None:
        embedded = claims.get("nonce")
        if not isinstance(embedded, str) or not hmac.compare_digest(
            embedded, hash_nonce(nonce)
        ):
            raise NonceMismatch("Identity token nonce does not match.")

    @staticmethod
    def _extract_email(profile: ProviderProfile, claims: Mapping[str, Any]) -> str | None:
        email = claims.get("email")
        if not isinstance(email, str) or not email.strip():
            if profile.requires_email:
                raise InvalidAssertion("Identity token has no email.")
            return None
        if profile.requires_verified_email and not _is_truthy(claims.get("email_verified")):
            raise InvalidAssertion("Identity token email is not verified.")
        return email.strip().lower()


def _is_truthy(value: object) -> bool:
    # Apple sends booleans as strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False
