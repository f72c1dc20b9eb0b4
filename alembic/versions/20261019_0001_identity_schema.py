"""identity schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

AUTH_PROVIDER = sa.Enum("APPLE", "GOOGLE", "PASSWORD", name="authprovider")


def upgrade() -> None:
    op.create_table(
        "account",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("username", sqlmodel.AutoString(length=20), nullable=False),
        sa.Column("email", sqlmodel.AutoString(length=255), nullable=False),
        sa.Column("password_hash", sqlmodel.AutoString(length=255), nullable=True),
        sa.Column("apple_subject_id", sqlmodel.AutoString(length=255), nullable=True),
        sa.Column("google_subject_id", sqlmodel.AutoString(length=255), nullable=True),
        sa.Column("auth_provider", AUTH_PROVIDER, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username", name="uq_accounts_username"),
        sa.UniqueConstraint("email", name="uq_accounts_email"),
        sa.UniqueConstraint("apple_subject_id", name="uq_accounts_apple_subject_id"),
        sa.UniqueConstraint("google_subject_id", name="uq_accounts_google_subject_id"),
    )
    for column in ("username", "email", "apple_subject_id", "google_subject_id", "auth_provider"):
        op.create_index(f"ix_account_{column}", "account", [column])

    op.create_table(
        "refreshcredential",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("token_hash", sqlmodel.AutoString(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash", name="uq_refresh_credentials_token_hash"),
    )
    for column in ("account_id", "token_hash", "expires_at"):
        op.create_index(f"ix_refreshcredential_{column}", "refreshcredential", [column])
    op.create_index(
        "uq_refresh_credentials_one_active",
        "refreshcredential",
        ["account_id"],
        unique=True,
        postgresql_where=sa.text("NOT is_revoked"),
        sqlite_where=sa.text("NOT is_revoked"),
    )


def downgrade() -> None:
    op.drop_index("uq_refresh_credentials_one_active", table_name="refreshcredential")
    op.drop_table("refreshcredential")
    op.drop_table("account")
    AUTH_PROVIDER.drop(op.get_bind(), checkfirst=True)
