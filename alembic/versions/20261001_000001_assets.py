"""assets table

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261001_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "assets",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("short_code", sa.String(length=32), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.String(length=64), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False, server_default="anonymous"),
        sa.Column("batch_id", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("short_code"),
    )
    op.create_index("idx_assets_owner_created", "assets", ["owner_id", "created_at"], unique=False)
    op.create_index("idx_assets_batch", "assets", ["batch_id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_assets_batch", table_name="assets")
    op.drop_index("idx_assets_owner_created", table_name="assets")
    op.drop_table("assets")
