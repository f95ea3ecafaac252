"""Task workflow tables: users, tasks, stage history/progress, applications, assets, ratings, audit, notifications

Revision ID: 7f3a9c2d41e0
Revises:
Create Date: 2026-10-19 09:12:31.204118

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7f3a9c2d41e0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=50), nullable=False),
        sa.Column('email', sa.String(length=200), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False,
                  comment='supplier | creator | media | admin'),
        sa.Column('full_name', sa.String(length=200), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('content_types', sa.JSON(), nullable=True,
                  comment='Content types a creator produces; empty = any'),
        sa.Column('rating', sa.Numeric(precision=3, scale=2), nullable=False, server_default='0',
                  comment='Mean of all ratings received'),
        sa.Column('total_tasks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_tasks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_role', 'users', ['role'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('assigned_creator_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('requirements', sa.Text(), nullable=True),
        sa.Column('budget_min', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('budget_max', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('budget_type', sa.String(length=20), nullable=True),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('content_types', sa.JSON(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('views_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('applications_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('shares_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='draft'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['supplier_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['assigned_creator_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_supplier_id', 'tasks', ['supplier_id'])
    op.create_index('ix_tasks_assigned_creator_id', 'tasks', ['assigned_creator_id'])
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('idx_tasks_supplier_status', 'tasks', ['supplier_id', 'status'])

    op.create_table(
        'task_stage_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('from_stage', sa.String(length=30), nullable=False),
        sa.Column('to_stage', sa.String(length=30), nullable=False),
        sa.Column('changed_by', sa.Integer(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['changed_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_stage_history_task', 'task_stage_history', ['task_id', 'changed_at'])

    op.create_table(
        'task_stages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('stage_name', sa.String(length=30), nullable=False),
        sa.Column('stage_order', sa.Integer(), nullable=False),
        sa.Column('progress_percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('stage_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stage_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id', 'stage_name', name='uq_task_stage'),
    )
    op.create_index('ix_task_stages_task_id', 'task_stages', ['task_id'])

    op.create_table(
        'task_applications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('proposal', sa.Text(), nullable=False),
        sa.Column('proposed_budget', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('estimated_duration', sa.String(length=50), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='pending | accepted | rejected'),
        sa.Column('supplier_notes', sa.Text(), nullable=True),
        sa.Column('creator_notes', sa.Text(), nullable=True),
        sa.Column('supplier_rating', sa.Integer(), nullable=True),
        sa.Column('creator_rating', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['creator_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id', 'creator_id', name='uq_application_task_creator'),
    )
    op.create_index('ix_task_applications_task_id', 'task_applications', ['task_id'])
    op.create_index('ix_task_applications_creator_id', 'task_applications', ['creator_id'])

    op.create_table(
        'media_assets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('asset_type', sa.String(length=50), nullable=False),
        sa.Column('file_url', sa.String(length=500), nullable=False),
        sa.Column('thumbnail_url', sa.String(length=500), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='pending_review',
                  comment='pending_review | approved | revision_required'),
        sa.Column('approval_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['creator_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_media_assets_task_id', 'media_assets', ['task_id'])

    op.create_table(
        'task_activities',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('activity_type', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_activities_task_id', 'task_activities', ['task_id'])
    op.create_index('idx_task_activities_user', 'task_activities', ['user_id', 'created_at'])

    op.create_table(
        'task_ratings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('from_user_id', sa.Integer(), nullable=False),
        sa.Column('to_user_id', sa.Integer(), nullable=False),
        sa.Column('score', sa.Numeric(precision=2, scale=1), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('rating_type', sa.String(length=50), nullable=False,
                  server_default='task_completion'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('score >= 1 AND score <= 5', name='ck_rating_score_range'),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['from_user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['to_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id', 'from_user_id', 'to_user_id', 'rating_type',
                            name='uq_rating_task_from_to_type'),
    )
    op.create_index('ix_task_ratings_task_id', 'task_ratings', ['task_id'])
    op.create_index('ix_task_ratings_to_user_id', 'task_ratings', ['to_user_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True,
                  comment='NULL for system-initiated changes'),
        sa.Column('action', sa.String(length=60), nullable=False),
        sa.Column('table_name', sa.String(length=50), nullable=False),
        sa.Column('record_id', sa.String(length=36), nullable=False,
                  comment='PK of the affected row as string'),
        sa.Column('old_values', sa.Text(), nullable=True),
        sa.Column('new_values', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_record', 'audit_logs', ['table_name', 'record_id'])
    op.create_index('idx_audit_actor', 'audit_logs', ['actor_user_id'])
    op.create_index('idx_audit_action', 'audit_logs', ['action'])
    op.create_index('idx_audit_ts', 'audit_logs', ['timestamp'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('title', sa.String(length=300), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('priority', sa.String(length=20), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=True),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('idx_notifications_user_read', 'notifications', ['user_id', 'is_read'])

    op.create_table(
        'email_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('recipient_email', sa.String(length=255), nullable=False),
        sa.Column('recipient_name', sa.String(length=150), nullable=True),
        sa.Column('subject', sa.String(length=500), nullable=False),
        sa.Column('template_name', sa.String(length=100), nullable=True,
                  comment='Email template used'),
        sa.Column('status', sa.String(length=20), nullable=True,
                  comment='queued, sent, failed'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('notification_id', sa.Integer(), nullable=True,
                  comment='Related notification ID if applicable'),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_email_logs_recipient_email', 'email_logs', ['recipient_email'])


def downgrade():
    op.drop_index('ix_email_logs_recipient_email', table_name='email_logs')
    op.drop_table('email_logs')
    op.drop_index('idx_notifications_user_read', table_name='notifications')
    op.drop_index('ix_notifications_user_id', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('idx_audit_ts', table_name='audit_logs')
    op.drop_index('idx_audit_action', table_name='audit_logs')
    op.drop_index('idx_audit_actor', table_name='audit_logs')
    op.drop_index('idx_audit_record', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_task_ratings_to_user_id', table_name='task_ratings')
    op.drop_index('ix_task_ratings_task_id', table_name='task_ratings')
    op.drop_table('task_ratings')
    op.drop_index('idx_task_activities_user', table_name='task_activities')
    op.drop_index('ix_task_activities_task_id', table_name='task_activities')
    op.drop_table('task_activities')
    op.drop_index('ix_media_assets_task_id', table_name='media_assets')
    op.drop_table('media_assets')
    op.drop_index('ix_task_applications_creator_id', table_name='task_applications')
    op.drop_index('ix_task_applications_task_id', table_name='task_applications')
    op.drop_table('task_applications')
    op.drop_index('ix_task_stages_task_id', table_name='task_stages')
    op.drop_table('task_stages')
    op.drop_index('idx_stage_history_task', table_name='task_stage_history')
    op.drop_table('task_stage_history')
    op.drop_index('idx_tasks_supplier_status', table_name='tasks')
    op.drop_index('ix_tasks_status', table_name='tasks')
    op.drop_index('ix_tasks_assigned_creator_id', table_name='tasks')
    op.drop_index('ix_tasks_supplier_id', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('ix_users_role', table_name='users')
    op.drop_table('users')
