"""create client portal tables

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "portal_access_tokens",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("contact_id", sa.String(length=36), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("token_type", sa.String(length=20), nullable=False, server_default="access"),
        sa.Column("permissions", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token"),
    )
    op.create_index("ix_portal_access_tokens_client_id", "portal_access_tokens", ["client_id"], unique=False)
    op.create_index("ix_portal_access_tokens_contact_id", "portal_access_tokens", ["contact_id"], unique=False)
    op.create_index("ix_portal_access_tokens_email", "portal_access_tokens", ["email"], unique=False)
    op.create_index("ix_portal_access_tokens_is_active", "portal_access_tokens", ["is_active"], unique=False)

    op.create_table(
        "portal_sessions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("access_token_id", sa.String(length=36), nullable=False),
        sa.Column("session_token", sa.String(length=64), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["access_token_id"], ["portal_access_tokens.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_token"),
    )
    op.create_index("ix_portal_sessions_access_token_id", "portal_sessions", ["access_token_id"], unique=False)
    op.create_index("ix_portal_sessions_expires_at", "portal_sessions", ["expires_at"], unique=False)

    op.create_table(
        "portal_activity_log",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("access_token_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("resource_type", sa.String(length=50), nullable=True),
        sa.Column("resource_id", sa.String(length=36), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_portal_activity_log_client_created",
        "portal_activity_log",
        ["client_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_portal_activity_log_client_created", table_name="portal_activity_log")
    op.drop_table("portal_activity_log")
    op.drop_index("ix_portal_sessions_expires_at", table_name="portal_sessions")
    op.drop_index("ix_portal_sessions_access_token_id", table_name="portal_sessions")
    op.drop_table("portal_sessions")
    op.drop_index("ix_portal_access_tokens_is_active", table_name="portal_access_tokens")
    op.drop_index("ix_portal_access_tokens_email", table_name="portal_access_tokens")
    op.drop_index("ix_portal_access_tokens_contact_id", table_name="portal_access_tokens")
    op.drop_index("ix_portal_access_tokens_client_id", table_name="portal_access_tokens")
    op.drop_table("portal_access_tokens")
