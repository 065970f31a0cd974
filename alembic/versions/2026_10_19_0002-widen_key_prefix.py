"""Widen api_keys.key_prefix for the longer display prefix.

Revision ID: 2026_10_19_0002
Revises: 2026_10_01_0001
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0002"
down_revision: str | None = "2026_10_01_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """key_prefix holds `cgk_` + 16 hex chars + `...`."""
    with op.batch_alter_table("api_keys") as batch_op:
        batch_op.alter_column(
            "key_prefix",
            existing_type=sa.String(20),
            type_=sa.String(32),
            existing_nullable=False,
        )


def downgrade() -> None:
    with op.batch_alter_table("api_keys") as batch_op:
        batch_op.alter_column(
            "key_prefix",
            existing_type=sa.String(32),
            type_=sa.String(20),
            existing_nullable=False,
        )
