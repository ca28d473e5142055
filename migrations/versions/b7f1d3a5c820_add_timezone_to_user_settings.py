"""add timezone to user_settings

Revision ID: b7f1d3a5c820
Revises: 8a4c2e6f0b93
Create Date: 2026-04-02 21:04:58.064219

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b7f1d3a5c820'
down_revision: Union[str, Sequence[str], None] = '8a4c2e6f0b93'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column("user_settings", sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"))


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_column("user_settings", "timezone")
