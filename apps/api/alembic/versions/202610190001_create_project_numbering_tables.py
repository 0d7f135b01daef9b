"""create project numbering and auth token tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "project_sequence_counter",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("department_code", sa.String(length=2), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("current_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("department_code", "year", name="uq_project_sequence_counter_department_year"),
        sa.CheckConstraint("year >= 0 AND year <= 99", name="ck_project_sequence_counter_year"),
        sa.CheckConstraint("current_number >= 0", name="ck_project_sequence_counter_current_number"),
    )

    op.create_table(
        "deal_project_mapping",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_number", sa.String(length=16), nullable=False),
        sa.Column("department", sa.String(length=128), nullable=True),
        sa.Column("department_code", sa.String(length=2), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_number"),
    )
    op.create_index(
        "ix_deal_project_mapping_department_year",
        "deal_project_mapping",
        ["department_code", "year"],
        unique=False,
    )

    op.create_table(
        "deal_project_mapping_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("mapping_id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.BigInteger(), nullable=False),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["mapping_id"], ["deal_project_mapping.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deal_id"),
    )
    op.create_index(
        "ix_deal_project_mapping_deal_mapping_id",
        "deal_project_mapping_deal",
        ["mapping_id"],
        unique=False,
    )

    op.create_table(
        "auth_token",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("service", sa.String(length=16), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.BigInteger(), nullable=False),
        sa.Column("api_domain", sa.String(length=255), nullable=True),
        sa.Column("accounting_tenant_id", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "service", name="uq_auth_token_tenant_service"),
    )


def downgrade() -> None:
    op.drop_table("auth_token")
    op.drop_index("ix_deal_project_mapping_deal_mapping_id", table_name="deal_project_mapping_deal")
    op.drop_table("deal_project_mapping_deal")
    op.drop_index("ix_deal_project_mapping_department_year", table_name="deal_project_mapping")
    op.drop_table("deal_project_mapping")
    op.drop_table("project_sequence_counter")
