"""add knowledge base and conversation tables

Revision ID: 5d9e1f7a3b42
Revises: 0f3b8a2c6d11
Create Date: 2026-03-09 18:47:05.220941

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5d9e1f7a3b42'
down_revision: Union[str, Sequence[str], None] = '0f3b8a2c6d11'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create grammar/folklore chunk tables and tutor conversation tables."""
    op.create_table('grammar_chunks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('contextualized_chunk', sa.Text(), nullable=True),
        sa.Column('category_vi', sa.String(), nullable=True),
        sa.Column('category_en', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('content_embedding', sa.LargeBinary(), nullable=True),
        sa.Column('context_embedding', sa.LargeBinary(), nullable=True),
        sa.Column('keywords_embedding', sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('folklore_chunks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('vi_content', sa.JSON(), nullable=True),
        sa.Column('en_content', sa.JSON(), nullable=True),
        sa.Column('category_vi', sa.String(), nullable=True),
        sa.Column('category_en', sa.String(), nullable=True),
        sa.Column('sub_category_vi', sa.String(), nullable=True),
        sa.Column('sub_category_en', sa.String(), nullable=True),
        sa.Column('definition_vi', sa.Text(), nullable=True),
        sa.Column('definition_en', sa.Text(), nullable=True),
        sa.Column('detailed_explanations', sa.Text(), nullable=True),
        sa.Column('embedding', sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('conversations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('topic', sa.String(), nullable=True),
        sa.Column('difficulty_level', sa.String(), nullable=True),
        sa.Column('conversation_type', sa.String(), nullable=True, server_default='chat'),
        sa.Column('status', sa.String(), nullable=True, server_default='active'),
        sa.Column('message_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('user_message_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('duration_seconds', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('is_completed', sa.Boolean(), nullable=True, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('chat_messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('conversation_feedback',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('total_score', sa.Float(), nullable=True, server_default='0'),
        sa.Column('category_scores', sa.JSON(), nullable=True),
        sa.Column('strengths', sa.JSON(), nullable=True),
        sa.Column('areas_for_improvement', sa.JSON(), nullable=True),
        sa.Column('final_assessment', sa.Text(), nullable=True),
        sa.Column('vocabulary_suggestions', sa.JSON(), nullable=True),
        sa.Column('grammar_notes', sa.JSON(), nullable=True),
        sa.Column('pronunciation_tips', sa.JSON(), nullable=True),
        sa.Column('ai_model', sa.String(), nullable=True),
        sa.Column('ai_processing_time_ms', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('conversation_id', 'user')
    )


def downgrade() -> None:
    """Drop knowledge base and conversation tables."""
    op.drop_table('conversation_feedback')
    op.drop_table('chat_messages')
    op.drop_table('conversations')
    op.drop_table('folklore_chunks')
    op.drop_table('grammar_chunks')
