"""Patient portal password login.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "lead_portal_auth",
        sa.Column("lead_id", sa.String(100), sa.ForeignKey("leads.id"), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(100), nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("ix_lead_portal_auth_email", "lead_portal_auth", ["email"])


def downgrade() -> None:
    op.drop_index("ix_lead_portal_auth_email", table_name="lead_portal_auth")
    op.drop_table("lead_portal_auth")
