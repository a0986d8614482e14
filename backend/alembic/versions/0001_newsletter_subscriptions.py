"""add accounts and newsletter subscriptions

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None

unsubscribe_reason = sa.Enum(
    "user_request",
    "bounce",
    "complaint",
    "admin_action",
    "gdpr_request",
    name="unsubscribe_reason",
)


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_company_id", "users", ["company_id"])

    op.create_table(
        "newsletter_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_subscribed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reason", unsubscribe_reason, nullable=False, server_default="user_request"),
        sa.Column("unsubscribe_reason", sa.Text(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("can_resubscribe", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("unsubscribe_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resubscribe_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resubscribe_token", sa.String(length=128), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_newsletter_subscriptions_email", "newsletter_subscriptions", ["email"], unique=True)
    op.create_index("ix_newsletter_subscriptions_resubscribe_token", "newsletter_subscriptions", ["resubscribe_token"])
    op.create_index("ix_newsletter_subscriptions_user_id", "newsletter_subscriptions", ["user_id"])
    op.create_index("ix_newsletter_subscriptions_company_id", "newsletter_subscriptions", ["company_id"])


def downgrade() -> None:
    op.drop_index("ix_newsletter_subscriptions_company_id", table_name="newsletter_subscriptions")
    op.drop_index("ix_newsletter_subscriptions_user_id", table_name="newsletter_subscriptions")
    op.drop_index("ix_newsletter_subscriptions_resubscribe_token", table_name="newsletter_subscriptions")
    op.drop_index("ix_newsletter_subscriptions_email", table_name="newsletter_subscriptions")
    op.drop_table("newsletter_subscriptions")
    unsubscribe_reason.drop(op.get_bind(), checkfirst=True)
    op.drop_index("ix_users_company_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_table("companies")
