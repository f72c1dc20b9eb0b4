from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from stone_api.db.enums import AuthProvider
from stone_api.db.models import Account, RefreshCredential
from stone_api.modules.auth.errors import (
    AccountConflict,
    CredentialConflict,
    CredentialRevoked,
)

_SUBJECT_COLUMNS = {
    AuthProvider.APPLE: Account.apple_subject_id,
    AuthProvider.GOOGLE: Account.google_subject_id,
}


class IdentityRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_account_by_id(self, account_id: UUID) -> Account | None:
        return await self.session.get(Account, account_id)

    async def get_account_by_subject(
        self, provider: AuthProvider, subject_id: str
    ) -> Account | None:
        column = _SUBJECT_COLUMNS.get(provider)
        if column is None:
            return None
        result = await self.session.execute(select(Account).where(column == subject_id))
        return result.scalars().first()

    async def get_account_by_username(self, username: str) -> Account | None:
        result = await self.session.execute(
            select(Account).where(Account.username == username)
        )
        return result.scalars().first()

    async def get_account_by_email(self, email: str) -> Account | None:
        result = await self.session.execute(select(Account).where(Account.email == email))
        return result.scalars().first()

    async def insert_account(self, account: Account) -> Account:
        self.session.add(account)
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise AccountConflict(str(exc.orig)) from exc
        await self.session.refresh(account)
        return account

    async def reload(self, account: Account) -> Account:
        await self.session.refresh(account)
        return account

    async def get_refresh_credential(self, token_hash: str) -> RefreshCredential | None:
        # Revocations are bulk UPDATEs; reload so a cached row is never stale.
        stmt = (
            select(RefreshCredential)
            .where(RefreshCredential.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def replace_active_credential(
        self,
        account_id: UUID,
        credential: RefreshCredential,
        *,
        revoked_at: datetime,
        supersedes: str | None = None,
    ) -> RefreshCredential:
        """Revoke every active credential of the account and insert ``credential``.

        Runs as one transaction. When ``supersedes`` is given, the credential
        with that hash must still be active at the moment it is revoked;
        otherwise another request already rotated it and ``CredentialRevoked``
        is raised with nothing written.
        """
        try:
            await self._lock_account(account_id)
            if supersedes is not None:
                swapped = await self._compare_and_revoke(
                    supersedes, account_id=account_id, revoked_at=revoked_at
                )
                if not swapped:
                    raise CredentialRevoked("Refresh token has been revoked.")
            await self._revoke_all_active(account_id, revoked_at=revoked_at)
            self.session.add(credential)
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise CredentialConflict(str(exc.orig)) from exc
        except Exception:
            await self.session.rollback()
            raise
        await self.session.refresh(credential)
        return credential

    async def revoke_credential(self, token_hash: str, *, revoked_at: datetime) -> bool:
        stmt = (
            update(RefreshCredential)
            .where(col(RefreshCredential.token_hash) == token_hash)
            .where(col(RefreshCredential.is_revoked).is_(False))
            .values(is_revoked=True, revoked_at=revoked_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    async def _lock_account(self, account_id: UUID) -> None:
        # Serializes concurrent issuance for one account. SQLite ignores
        # FOR UPDATE and serializes writers on its own.
        await self.session.execute(
            select(Account.id).where(Account.id == account_id).with_for_update()
        )

    async def _compare_and_revoke(
        self, token_hash: str, *, account_id: UUID, revoked_at: datetime
    ) -> bool:
        stmt = (
            update(RefreshCredential)
            .where(col(RefreshCredential.token_hash) == token_hash)
            .where(col(RefreshCredential.account_id) == account_id)
            .where(col(RefreshCredential.is_revoked).is_(False))
            .values(is_revoked=True, revoked_at=revoked_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def _revoke_all_active(self, account_id: UUID, *, revoked_at: datetime) -> None:
        stmt = (
            update(RefreshCredential)
            .where(col(RefreshCredential.account_id) == account_id)
            .where(col(RefreshCredential.is_revoked).is_(False))
            .values(is_revoked=True, revoked_at=revoked_at)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
