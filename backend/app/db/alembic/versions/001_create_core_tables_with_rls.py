"""create organizations and audit_logs with row-level security

Revision ID: 001
Revises:
Create Date: 2026-01-11 10:00:00.000000

"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Bound per transaction by SessionBinder; NULL/empty when unbound
CURRENT_SUBJECT = "nullif(current_setting('request.jwt.claim.sub', true), '')"


def upgrade() -> None:
    """Create core tables, enable RLS and add subject-based policies."""
    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("performed_by", sa.Uuid(), nullable=True),
        sa.Column(
            "metadata",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )

    op.create_index("idx_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("idx_audit_logs_organization_id", "audit_logs", ["organization_id"])
    op.create_index("idx_audit_logs_created_at", "audit_logs", ["created_at"])

    if op.get_bind().dialect.name != "postgresql":
        return

    for table in ("organizations", "audit_logs"):
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")

    # Any bound subject may read and create organizations
    op.execute(
        f"CREATE POLICY organizations_select ON organizations FOR SELECT "
        f"USING ({CURRENT_SUBJECT} IS NOT NULL)"
    )
    op.execute(
        f"CREATE POLICY organizations_insert ON organizations FOR INSERT "
        f"WITH CHECK ({CURRENT_SUBJECT} IS NOT NULL)"
    )
    op.execute(
        f"CREATE POLICY organizations_update ON organizations FOR UPDATE "
        f"USING ({CURRENT_SUBJECT} IS NOT NULL)"
    )

    # Subjects see and write only their own audit trail
    op.execute(
        f"CREATE POLICY audit_logs_select_own ON audit_logs FOR SELECT "
        f"USING (user_id::text = {CURRENT_SUBJECT})"
    )
    op.execute(
        f"CREATE POLICY audit_logs_insert_own ON audit_logs FOR INSERT "
        f"WITH CHECK (user_id::text = {CURRENT_SUBJECT} OR performed_by::text = {CURRENT_SUBJECT})"
    )


def downgrade() -> None:
    """Drop policies and core tables."""
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP POLICY IF EXISTS audit_logs_insert_own ON audit_logs")
        op.execute("DROP POLICY IF EXISTS audit_logs_select_own ON audit_logs")
        op.execute("DROP POLICY IF EXISTS organizations_update ON organizations")
        op.execute("DROP POLICY IF EXISTS organizations_insert ON organizations")
        op.execute("DROP POLICY IF EXISTS organizations_select ON organizations")

    op.drop_index("idx_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("idx_audit_logs_organization_id", table_name="audit_logs")
    op.drop_index("idx_audit_logs_user_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("organizations")
