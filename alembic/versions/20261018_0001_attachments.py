"""attachments table

Revision ID: 20261018_0001
Revises: None
Create Date: 2026-10-18 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def upgrade() -> None:
    if _table_exists("attachments"):
        return

    op.create_table(
        "attachments",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=True),
        sa.Column("mimetype", sa.String(length=255), nullable=True),
        sa.Column("size", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("path", sa.String(length=512), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("parent_id", sa.String(length=128), nullable=True),
        sa.Column("parent_type", sa.String(length=64), nullable=True),
        sa.Column("parent_subtype", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_attachments_path", "attachments", ["path"], unique=False)
    op.create_index("ix_attachments_timestamp", "attachments", ["timestamp"], unique=False)
    op.create_index("ix_attachments_user_id", "attachments", ["user_id"], unique=False)
    op.create_index("ix_attachments_parent_id", "attachments", ["parent_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_attachments_parent_id", table_name="attachments")
    op.drop_index("ix_attachments_user_id", table_name="attachments")
    op.drop_index("ix_attachments_timestamp", table_name="attachments")
    op.drop_index("ix_attachments_path", table_name="attachments")
    op.drop_table("attachments")
