from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from stone_api.db.enums import AuthProvider


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("username", name="uq_accounts_username"),
        UniqueConstraint("email", name="uq_accounts_email"),
        UniqueConstraint("apple_subject_id", name="uq_accounts_apple_subject_id"),
        UniqueConstraint("google_subject_id", name="uq_accounts_google_subject_id"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    username: str = Field(index=True, min_length=3, max_length=20)
    email: str = Field(index=True, max_length=255)
    password_hash: str | None = Field(default=None, max_length=255)

    # At most one of the subject columns is set; auth_provider never changes.
    apple_subject_id: str | None = Field(default=None, index=True, max_length=255)
    google_subject_id: str | None = Field(default=None, index=True, max_length=255)
    auth_provider: AuthProvider = Field(index=True)

    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
