"""create follow-up deletion requests and profile change requests

Revision ID: 202610180004
Revises: 202610180003
Create Date: 2026-10-18 00:04:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180004"
down_revision: str | None = "202610180003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "follow_up_deletion_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("follow_up_id", sa.Uuid(), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("requested_by_id", sa.Uuid(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reviewed_by_id", sa.Uuid(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["follow_up_id"], ["follow_ups.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["requested_by_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reviewed_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_follow_up_deletion_requests_follow_up_id", "follow_up_deletion_requests", ["follow_up_id"], unique=False
    )
    op.create_index(
        "ix_follow_up_deletion_requests_requested_by_id",
        "follow_up_deletion_requests",
        ["requested_by_id"],
        unique=False,
    )

    op.create_table(
        "profile_change_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("requested_changes", sa.JSON(), nullable=False),
        sa.Column("current_values", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reviewed_by_id", sa.Uuid(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reviewed_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_profile_change_requests_user_id", "profile_change_requests", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_profile_change_requests_user_id", table_name="profile_change_requests")
    op.drop_table("profile_change_requests")
    op.drop_index("ix_follow_up_deletion_requests_requested_by_id", table_name="follow_up_deletion_requests")
    op.drop_index("ix_follow_up_deletion_requests_follow_up_id", table_name="follow_up_deletion_requests")
    op.drop_table("follow_up_deletion_requests")
