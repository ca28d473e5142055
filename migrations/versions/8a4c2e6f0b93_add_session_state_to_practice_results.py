"""add session_state to practice_results

Revision ID: 8a4c2e6f0b93
Revises: 5d9e1f7a3b42
Create Date: 2026-03-21 09:30:12.817354

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8a4c2e6f0b93'
down_revision: Union[str, Sequence[str], None] = '5d9e1f7a3b42'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Store the serialised exercise runner on the in-progress attempt."""
    op.add_column('practice_results', sa.Column('session_state', sa.JSON(), nullable=True))


def downgrade() -> None:
    """Remove session_state from practice_results."""
    op.drop_column('practice_results', 'session_state')
