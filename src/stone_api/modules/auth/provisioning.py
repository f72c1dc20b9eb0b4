from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone

from stone_api.db.enums import AuthProvider
from stone_api.db.models import Account
from stone_api.modules.auth.errors import (
    AccountConflict,
    EmailAlreadyRegistered,
    InvalidAssertion,
    ProvisioningContention,
)
from stone_api.modules.auth.oauth import APPLE_PRIVATE_RELAY_DOMAIN
from stone_api.modules.auth.repository import IdentityRepository
from stone_api.modules.moderation.service import ModerationUnavailable, TextModerator

logger = logging.getLogger("stone_api.auth")

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
GENERIC_USERNAME_BASE = "user"

_USERNAME_DISALLOWED = re.compile(r"[^A-Za-z0-9_]")


def sanitize_username_base(raw: str) -> str:
    sanitized = _USERNAME_DISALLOWED.sub("", raw)[:USERNAME_MAX_LENGTH].lower()
    # Empty and too-short bases both fall back; "ab" would fail the 3-character minimum.
    if len(sanitized) < USERNAME_MIN_LENGTH:
        return GENERIC_USERNAME_BASE
    return sanitized


def username_candidate(base: str, counter: int) -> str:
    if counter <= 0:
        return base
    suffix = str(counter)
    return f"{base[: USERNAME_MAX_LENGTH - len(suffix)]}{suffix}"


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    email = value.strip().lower()
    local, sep, domain = email.partition("@")
    if not sep or not local or "." not in domain or "@" in domain or " " in email:
        return None
    return email


def email_local_part(email: str) -> str:
    return email.partition("@")[0]


class AccountProvisioner:
    """Maps a verified external identity to a local account, creating it on first use."""

    def __init__(
        self,
        repository: IdentityRepository,
        *,
        moderator: TextModerator | None = None,
        moderation_deadline_s: float = 10.0,
        max_attempts: int = 5,
    ) -> None:
        self.repository = repository
        self.moderator = moderator
        self._moderation_deadline_s = moderation_deadline_s
        self._max_attempts = max(1, max_attempts)

    async def resolve_or_create(
        self,
        provider: AuthProvider,
        subject_id: str,
        candidate_email: str | None,
    ) -> Account:
        existing = await self.repository.get_account_by_subject(provider, subject_id)
        if existing is not None:
            return existing

        email = normalize_email(candidate_email)
        base = email_local_part(email) if email else GENERIC_USERNAME_BASE
        stored_email = email or self._placeholder_email(provider, subject_id)
        if await self.repository.get_account_by_email(stored_email) is not None:
            raise EmailAlreadyRegistered("Email is already registered to another account.")

        for attempt in range(1, self._max_attempts + 1):
            username = await self._choose_username(base)
            now = datetime.now(timezone.utc)
            account = Account(
                username=username,
                email=stored_email,
                auth_provider=provider,
                apple_subject_id=subject_id if provider is AuthProvider.APPLE else None,
                google_subject_id=subject_id if provider is AuthProvider.GOOGLE else None,
                created_at=now,
                updated_at=now,
            )
            try:
                created = await self.repository.insert_account(account)
            except AccountConflict:
                winner = await self.repository.get_account_by_subject(provider, subject_id)
                if winner is not None:
                    logger.info(
                        "account_provision_race_resolved",
                        extra={"provider": provider.value, "account_id": str(winner.id)},
                    )
                    return winner
                if await self.repository.get_account_by_email(stored_email) is not None:
                    raise EmailAlreadyRegistered(
                        "Email is already registered to another account."
                    ) from None
                logger.info(
                    "account_provision_retry",
                    extra={"provider": provider.value, "attempt": attempt},
                )
                continue

            logger.info(
                "account_provisioned",
                extra={
                    "provider": provider.value,
                    "account_id": str(created.id),
                    "username": created.username,
                },
            )
            return created

        raise ProvisioningContention("Could not allocate a unique account, retry sign-in.")

    async def is_username_available(self, username: str) -> bool:
        return await self.repository.get_account_by_username(username) is None

    async def is_email_available(self, email: str) -> bool:
        normalized = normalize_email(email)
        if normalized is None:
            return False
        return await self.repository.get_account_by_email(normalized) is None

    async def _choose_username(self, base: str) -> str:
        sanitized = sanitize_username_base(base)
        username = await self._first_free_username(sanitized)
        if sanitized == GENERIC_USERNAME_BASE:
            return username
        if await self._is_flagged(username):
            fallback = await self._first_free_username(GENERIC_USERNAME_BASE)
            logger.warning(
                "username_flagged",
                extra={"rejected_username": username, "username": fallback},
            )
            return fallback
        return username

    async def _first_free_username(self, base: str) -> str:
        counter = 0
        candidate = username_candidate(base, counter)
        while await self.repository.get_account_by_username(candidate) is not None:
            counter += 1
            candidate = username_candidate(base, counter)
        return candidate

    async def _is_flagged(self, username: str) -> bool:
        if self.moderator is None:
            return False
        try:
            verdict = await asyncio.wait_for(
                self.moderator.check_text(username),
                timeout=self._moderation_deadline_s,
            )
        except (ModerationUnavailable, TimeoutError) as exc:
            logger.warning(
                "moderation_unavailable",
                extra={"username": username, "error": type(exc).__name__},
            )
            return False
        return verdict.flagged

    @staticmethod
    def _placeholder_email(provider: AuthProvider, subject_id: str) -> str:
        if provider is not AuthProvider.APPLE:
            raise InvalidAssertion("Identity token has no email.")
        return f"{subject_id.lower()}@{APPLE_PRIVATE_RELAY_DOMAIN}"
