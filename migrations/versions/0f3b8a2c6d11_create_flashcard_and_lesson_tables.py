"""create flashcard and lesson tables

Revision ID: 0f3b8a2c6d11
Revises:
Create Date: 2026-03-02 10:12:41.503117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0f3b8a2c6d11'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create curriculum, flashcard, review and exercise tables."""
    op.create_table('zones',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('level')
    )
    op.create_table('topics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('zone_id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['zone_id'], ['zones.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug')
    )
    op.create_table('lessons',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('topic_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('practice_sets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('lesson_id', sa.Integer(), nullable=True),
        sa.Column('topic_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('coin_reward', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('xp_reward', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('pass_threshold', sa.Float(), nullable=True, server_default='0.8'),
        sa.ForeignKeyConstraint(['lesson_id'], ['lessons.id']),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('questions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('practice_set_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['practice_set_id'], ['practice_sets.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('flashcards',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('vietnamese', sa.String(), nullable=False),
        sa.Column('english', sa.JSON(), nullable=True),
        sa.Column('type', sa.String(), nullable=True),
        sa.Column('is_multiword', sa.Boolean(), nullable=True, server_default='0'),
        sa.Column('is_multimeaning', sa.Boolean(), nullable=True, server_default='0'),
        sa.Column('vietnamese_sentence', sa.Text(), nullable=True),
        sa.Column('english_sentence', sa.Text(), nullable=True),
        sa.Column('topic', sa.JSON(), nullable=True),
        sa.Column('audio_url', sa.String(), nullable=True),
        sa.Column('image_url', sa.String(), nullable=True),
        sa.Column('text_complexity', sa.String(), nullable=True, server_default='simple'),
        sa.Column('common_class', sa.String(), nullable=True),
        sa.Column('common_meaning', sa.Text(), nullable=True),
        sa.Column('pronunciation', sa.String(), nullable=True),
        sa.Column('embedding', sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('flashcard_reviews',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('flashcard_id', sa.String(), nullable=False),
        sa.Column('ease_factor', sa.Float(), nullable=True, server_default='2.5'),
        sa.Column('repetition_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('interval_days', sa.Integer(), nullable=True, server_default='1'),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('total_reviews', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('correct_reviews', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('last_reviewed', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user', 'flashcard_id')
    )
    op.create_table('review_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('session_type', sa.String(), nullable=True, server_default='custom'),
        sa.Column('status', sa.String(), nullable=True, server_default='in_progress'),
        sa.Column('total_cards', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('completed_cards', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('correct_answers', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('session_config', sa.JSON(), nullable=True),
        sa.Column('filters_applied', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('review_session_cards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('session_id', sa.Integer(), nullable=False),
        sa.Column('flashcard_id', sa.String(), nullable=False),
        sa.Column('card_order', sa.Integer(), nullable=False),
        sa.Column('flashcard_type', sa.String(), nullable=True, server_default='APP'),
        sa.Column('result', sa.String(), nullable=True),
        sa.Column('time_spent_seconds', sa.Integer(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['session_id'], ['review_sessions.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('flashcard_statistics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=True),
        sa.Column('flashcards_reviewed', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('correct_answers', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('total_questions', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('accuracy_rate', sa.Float(), nullable=True, server_default='0'),
        sa.Column('time_spent_minutes', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('topics_practiced', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user', 'date')
    )
    op.create_table('saved_flashcards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('flashcard_id', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user', 'flashcard_id')
    )
    op.create_table('custom_flashcards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('vietnamese_text', sa.String(length=500), nullable=False),
        sa.Column('english_text', sa.String(length=500), nullable=False),
        sa.Column('ipa_pronunciation', sa.String(length=200), nullable=True),
        sa.Column('image_url', sa.String(), nullable=True),
        sa.Column('topic', sa.String(length=100), nullable=True),
        sa.Column('word_type', sa.String(length=50), nullable=True),
        sa.Column('source_type', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('daily_flashcard_sets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('flashcard_ids', sa.JSON(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user', 'date')
    )
    op.create_table('practice_results',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('practice_set_id', sa.Integer(), nullable=False),
        sa.Column('attempt_no', sa.Integer(), nullable=True, server_default='1'),
        sa.Column('status', sa.String(), nullable=True, server_default='in_progress'),
        sa.Column('score_percent', sa.Float(), nullable=True, server_default='0'),
        sa.Column('total_correct', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('total_incorrect', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('total_skipped', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('time_spent_seconds', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('weak_question_types', sa.JSON(), nullable=True),
        sa.Column('passed', sa.Boolean(), nullable=True, server_default='0'),
        sa.Column('is_first_pass', sa.Boolean(), nullable=True, server_default='0'),
        sa.Column('coins_earned', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('xp_earned', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('pass_criteria', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['practice_set_id'], ['practice_sets.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('practice_result_details',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('practice_result_id', sa.Integer(), nullable=False),
        sa.Column('question_id', sa.Integer(), nullable=True),
        sa.Column('question_type', sa.String(), nullable=True),
        sa.Column('is_correct', sa.Boolean(), nullable=True, server_default='0'),
        sa.Column('time_spent_ms', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('answer_data', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(), nullable=True, server_default='answered'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['practice_result_id'], ['practice_results.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('user_lesson_progress',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('lesson_id', sa.Integer(), nullable=False),
        sa.Column('topic_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=True, server_default='not_started'),
        sa.Column('total_attempts', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('best_score_percent', sa.Float(), nullable=True, server_default='0'),
        sa.Column('first_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('passed_at', sa.DateTime(), nullable=True),
        sa.Column('pass_threshold', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user', 'lesson_id')
    )
    op.create_table('user_rewards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('coins', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('xp', sa.Integer(), nullable=True, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user')
    )
    op.create_table('user_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user', sa.String(), nullable=False),
        sa.Column('tier', sa.String(), nullable=True, server_default='FREE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user')
    )


def downgrade() -> None:
    """Drop curriculum, flashcard, review and exercise tables."""
    op.drop_table('user_settings')
    op.drop_table('user_rewards')
    op.drop_table('user_lesson_progress')
    op.drop_table('practice_result_details')
    op.drop_table('practice_results')
    op.drop_table('daily_flashcard_sets')
    op.drop_table('custom_flashcards')
    op.drop_table('saved_flashcards')
    op.drop_table('flashcard_statistics')
    op.drop_table('review_session_cards')
    op.drop_table('review_sessions')
    op.drop_table('flashcard_reviews')
    op.drop_table('flashcards')
    op.drop_table('questions')
    op.drop_table('practice_sets')
    op.drop_table('lessons')
    op.drop_table('topics')
    op.drop_table('zones')
