from __future__ import annotations

import asyncio
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from identity_fixtures import SqliteDatabase, count_active_credentials, seed_account

from stone_api.modules.auth.errors import (
    CredentialExpired,
    CredentialIssueContention,
    CredentialNotFound,
    CredentialRevoked,
    RetryableIdentityFault,
)
from stone_api.modules.auth.refresh import RefreshCredentialManager
from stone_api.modules.auth.repository import IdentityRepository
from stone_api.modules.auth.tokens import hash_token


class TestRefreshCredentials(unittest.TestCase):
    def setUp(self) -> None:
        self.db = SqliteDatabase("refresh_credentials.db")

    def tearDown(self) -> None:
        self.db.close()

    def test_issue_stores_only_the_hash(self) -> None:
        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="hashonly")
                manager = RefreshCredentialManager(IdentityRepository(session))
                issued = await manager.issue(account)

                self.assertGreaterEqual(len(issued.token), 43)
                self.assertEqual(issued.credential.token_hash, hash_token(issued.token))
                self.assertNotEqual(issued.credential.token_hash, issued.token)
                self.assertFalse(issued.credential.is_revoked)

        asyncio.run(_scenario())

    def test_issue_revokes_previous_credential(self) -> None:
        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="twodevices")
                repository = IdentityRepository(session)
                manager = RefreshCredentialManager(repository)

                first = await manager.issue(account)
                second = await manager.issue(account)

                self.assertEqual(await count_active_credentials(session, account.id), 1)
                with self.assertRaises(CredentialRevoked):
                    await manager.redeem(first.token)
                redeemed = await manager.redeem(second.token)
                self.assertEqual(redeemed.id, account.id)

        asyncio.run(_scenario())

    def test_rotation_then_replay_is_revoked(self) -> None:
        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="rotator")
                repository = IdentityRepository(session)
                manager = RefreshCredentialManager(repository)
                issued = await manager.issue(account)

                owner = await manager.redeem(issued.token)
                account_id = owner.id
                rotated = await manager.rotate(issued.token, owner)

                self.assertNotEqual(rotated.token, issued.token)
                with self.assertRaises(CredentialRevoked):
                    await manager.redeem(issued.token)
                with self.assertRaises(CredentialRevoked):
                    await manager.rotate(issued.token, owner)
                self.assertEqual(await count_active_credentials(session, account_id), 1)
                self.assertEqual((await manager.redeem(rotated.token)).id, account_id)

        asyncio.run(_scenario())

    def test_expired_credential_is_rejected(self) -> None:
        issued_at = datetime.now(timezone.utc) - timedelta(days=271)

        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="oldtimer")
                repository = IdentityRepository(session)
                past = RefreshCredentialManager(repository, clock=lambda: issued_at)
                issued = await past.issue(account)

                with self.assertRaises(CredentialExpired):
                    await RefreshCredentialManager(repository).redeem(issued.token)

        asyncio.run(_scenario())

    def test_unknown_token_is_not_found(self) -> None:
        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                manager = RefreshCredentialManager(IdentityRepository(session))
                with self.assertRaises(CredentialNotFound):
                    await manager.redeem("never-issued-token-value")

        asyncio.run(_scenario())

    def test_revoke_is_idempotent(self) -> None:
        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="leaver")
                repository = IdentityRepository(session)
                manager = RefreshCredentialManager(repository)
                issued = await manager.issue(account)

                await manager.revoke(issued.token)
                await manager.revoke(issued.token)
                await manager.revoke("never-issued-token-value")

                with self.assertRaises(CredentialRevoked):
                    await manager.redeem(issued.token)
                self.assertEqual(await count_active_credentials(session, account.id), 0)

        asyncio.run(_scenario())

    def test_issue_stamps_timezone_aware_utc(self) -> None:
        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="stamped")
                repository = IdentityRepository(session)
                replace = repository.replace_active_credential
                stamps: list[datetime] = []

                async def _capture(account_id, credential, **kwargs):
                    stamps.extend(
                        [credential.expires_at, credential.created_at, kwargs["revoked_at"]]
                    )
                    return await replace(account_id, credential, **kwargs)

                with patch.object(repository, "replace_active_credential", _capture):
                    await RefreshCredentialManager(repository).issue(account)

                self.assertEqual(len(stamps), 3)
                for stamp in stamps:
                    self.assertEqual(stamp.utcoffset(), timedelta(0))

        asyncio.run(_scenario())

    def test_repeated_hash_collisions_raise_retryable_fault(self) -> None:
        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                first = await seed_account(session, username="collider")
                second = await seed_account(session, username="collided")
                second_id = second.id
                manager = RefreshCredentialManager(IdentityRepository(session))
                with patch(
                    "stone_api.modules.auth.refresh.secrets.token_urlsafe",
                    return_value="same-refresh-token-every-time",
                ) as token_urlsafe:
                    await manager.issue(first)
                    with self.assertRaises(CredentialIssueContention) as ctx:
                        await manager.issue(second)

                self.assertIsInstance(ctx.exception, RetryableIdentityFault)
                self.assertEqual(ctx.exception.retry_after_s, 1)
                self.assertEqual(token_urlsafe.call_count, 4)
                self.assertEqual(await count_active_credentials(session, second_id), 0)

        asyncio.run(_scenario())

    def test_concurrent_issuance_leaves_one_active_credential(self) -> None:
        async def _issue(account_id: object) -> str:
            async with self.db.sessionmaker() as session:
                repository = IdentityRepository(session)
                account = await repository.get_account_by_id(account_id)
                assert account is not None
                issued = await RefreshCredentialManager(repository).issue(account)
                return issued.token

        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="racer")
            tokens = await asyncio.gather(*(_issue(account.id) for _ in range(4)))
            self.assertEqual(len(set(tokens)), 4)

            async with self.db.sessionmaker() as session:
                self.assertEqual(await count_active_credentials(session, account.id), 1)

        asyncio.run(_scenario())

    def test_concurrent_rotation_has_exactly_one_winner(self) -> None:
        async def _rotate(token: str) -> str:
            async with self.db.sessionmaker() as session:
                manager = RefreshCredentialManager(IdentityRepository(session))
                owner = await manager.redeem(token)
                rotated = await manager.rotate(token, owner)
                return rotated.token

        async def _scenario() -> None:
            async with self.db.sessionmaker() as session:
                account = await seed_account(session, username="doubletap")
                issued = await RefreshCredentialManager(IdentityRepository(session)).issue(
                    account
                )

            results = await asyncio.gather(
                _rotate(issued.token),
                _rotate(issued.token),
                return_exceptions=True,
            )
            winners = [result for result in results if isinstance(result, str)]
            losers = [result for result in results if isinstance(result, CredentialRevoked)]
            self.assertEqual(len(winners), 1)
            self.assertEqual(len(losers), 1)

            async with self.db.sessionmaker() as session:
                repository = IdentityRepository(session)
                self.assertEqual(await count_active_credentials(session, account.id), 1)
                manager = RefreshCredentialManager(repository)
                self.assertEqual((await manager.redeem(winners[0])).id, account.id)

        asyncio.run(_scenario())


if __name__ == "__main__":
    unittest.main()
