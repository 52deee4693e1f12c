"""create change review tables

Revision ID: 3f7c2a9d1e04
Revises:
Create Date: 2026-10-12 09:14:37.201866

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f7c2a9d1e04'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users/RBAC tables, changes, revisions, approvals and change_messages."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("full_name", sa.String(255), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )

    # changes <-> revisions reference each other; the current_revision_id FK is added after both exist.
    if "changes" not in existing_tables:
        op.create_table(
            "changes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("subject", sa.String(255), nullable=False),
            sa.Column("project", sa.String(255), nullable=False),
            sa.Column("dest_branch", sa.String(255), nullable=False, server_default="refs/heads/main"),
            sa.Column("owner_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="new"),
            sa.Column("current_revision_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("last_updated_on", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        )
        op.create_index("idx_changes_status", "changes", ["status"])
        op.create_index("idx_changes_owner", "changes", ["owner_user_id"])

    if "revisions" not in existing_tables:
        op.create_table(
            "revisions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("change_id", sa.Integer(), sa.ForeignKey("changes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("commit_sha", sa.String(40), nullable=True),
            sa.Column("uploader_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("change_id", "sequence", name="uq_revision_change_sequence"),
        )
        if conn.dialect.name != "sqlite":
            op.create_foreign_key(
                "fk_changes_current_revision",
                "changes",
                "revisions",
                ["current_revision_id"],
                ["id"],
                ondelete="SET NULL",
            )

    if "approvals" not in existing_tables:
        op.create_table(
            "approvals",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("change_id", sa.Integer(), sa.ForeignKey("changes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("revision_id", sa.Integer(), sa.ForeignKey("revisions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("reviewer_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("category", sa.String(64), nullable=False, server_default="Code-Review"),
            sa.Column("value", sa.SmallInteger(), nullable=False, server_default="0"),
            sa.Column("granted_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("change_status", sa.String(16), nullable=False, server_default="new"),
            sa.UniqueConstraint("revision_id", "reviewer_user_id", name="uq_approval_revision_reviewer"),
        )
        op.create_index("ix_approvals_change_id", "approvals", ["change_id"])

    if "change_messages" not in existing_tables:
        op.create_table(
            "change_messages",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("uuid", sa.String(32), nullable=False, unique=True),
            sa.Column("change_id", sa.Integer(), sa.ForeignKey("changes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("revision_id", sa.Integer(), sa.ForeignKey("revisions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("author_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("written_on", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_change_messages_change_id", "change_messages", ["change_id"])


def downgrade() -> None:
    op.drop_table("change_messages")
    op.drop_table("approvals")
    conn = op.get_bind()
    if conn.dialect.name != "sqlite":
        op.drop_constraint("fk_changes_current_revision", "changes", type_="foreignkey")
    op.drop_table("revisions")
    op.drop_table("changes")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
