"""create assessment, session and result tables

Revision ID: d4e5f6a7b8c9
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'd4e5f6a7b8c9'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'assessments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('passing_score', sa.Integer(), server_default='70', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('timer_enabled', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('auto_submit_on_timeout', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('tab_switch_detection', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('max_tab_switches', sa.Integer(), server_default='3', nullable=False),
        sa.Column('face_detection_enabled', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('grace_period_seconds', sa.Integer(), server_default='10', nullable=False),
        sa.Column('submit_on_knockout', sa.Boolean(), server_default='false', nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'assessment_questions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('assessment_id', sa.String(36), sa.ForeignKey('assessments.id'), nullable=False),
        sa.Column('question_text', sa.Text(), nullable=False),
        sa.Column('question_type', sa.String(20), server_default='single_choice', nullable=False),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('correct_answer', sa.Text(), nullable=True),
        sa.Column('points', sa.Integer(), server_default='1', nullable=False),
        sa.Column('order_index', sa.Integer(), server_default='0', nullable=False),
        sa.Column('starter_code', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_assessment_questions_assessment_id', 'assessment_questions', ['assessment_id'])

    op.create_table(
        'assessment_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('assessment_id', sa.String(36), sa.ForeignKey('assessments.id'), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('current_question_index', sa.Integer(), server_default='0', nullable=False),
        sa.Column('time_remaining_seconds', sa.Integer(), nullable=False),
        sa.Column('review_marks', sa.JSON(), nullable=True),
        sa.Column('tab_switches', sa.Integer(), server_default='0', nullable=False),
        sa.Column('clipboard_violations', sa.Integer(), server_default='0', nullable=False),
        sa.Column('proctoring_violations', sa.JSON(), nullable=True),
        sa.Column('knockout', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_paused', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('pause_reason', sa.String(255), nullable=True),
        sa.Column('completed', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('last_activity_at', sa.DateTime(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('result_id', sa.String(36), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_assessment_sessions_assessment_id', 'assessment_sessions', ['assessment_id'])
    op.create_index('ix_assessment_sessions_user_id', 'assessment_sessions', ['user_id'])
    # At most one active session per candidate and assessment
    op.create_index(
        'uq_active_session',
        'assessment_sessions',
        ['assessment_id', 'user_id'],
        unique=True,
        postgresql_where=sa.text('completed = false'),
        sqlite_where=sa.text('completed = 0'),
    )

    op.create_table(
        'session_answers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('assessment_sessions.id'), nullable=False),
        sa.Column('question_id', sa.String(36), nullable=False),
        sa.Column('kind', sa.String(10), nullable=False),
        sa.Column('answer', sa.Text(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('session_id', 'question_id', name='uq_session_question'),
    )
    op.create_index('ix_session_answers_session_id', 'session_answers', ['session_id'])

    op.create_table(
        'assessment_results',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('assessment_sessions.id'), nullable=False, unique=True),
        sa.Column('assessment_id', sa.String(36), sa.ForeignKey('assessments.id'), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('total_points', sa.Integer(), nullable=False),
        sa.Column('percentage', sa.Integer(), nullable=False),
        sa.Column('passed', sa.Boolean(), nullable=False),
        sa.Column('question_results', sa.JSON(), nullable=False),
        sa.Column('time_taken_seconds', sa.Integer(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=False),
        sa.Column('tab_switches_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('clipboard_violations_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('proctoring_flags', sa.JSON(), nullable=True),
        sa.Column('knockout', sa.Boolean(), server_default='false', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_assessment_results_assessment_id', 'assessment_results', ['assessment_id'])
    op.create_index('ix_assessment_results_user_id', 'assessment_results', ['user_id'])


def downgrade() -> None:
    op.drop_table('assessment_results')
    op.drop_table('session_answers')
    op.drop_index('uq_active_session', table_name='assessment_sessions')
    op.drop_table('assessment_sessions')
    op.drop_table('assessment_questions')
    op.drop_table('assessments')
