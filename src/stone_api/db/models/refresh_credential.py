from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshCredential(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_refresh_credentials_token_hash"),
        # One non-revoked credential per account.
        Index(
            "uq_refresh_credentials_one_active",
            "account_id",
            unique=True,
            postgresql_where=text("NOT is_revoked"),
            sqlite_where=text("NOT is_revoked"),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    token_hash: str = Field(index=True, min_length=64, max_length=128)
    expires_at: datetime = Field(sa_type=DateTime(timezone=True), nullable=False, index=True)
    is_revoked: bool = Field(default=False, nullable=False)
    revoked_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
