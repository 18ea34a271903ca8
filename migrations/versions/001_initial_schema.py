"""Initial database schema

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create cases table (read model of the case management application)
    op.create_table('cases',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('branch_id', sa.String(length=64), nullable=True),
        sa.Column('case_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('priority', sa.String(length=16), nullable=False),
        sa.Column('assigned_to', sa.String(length=36), nullable=True),
        sa.Column('reporter_id', sa.String(length=36), nullable=True),
        sa.Column('attributes', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cases_company_id', 'cases', ['company_id'])
    op.create_index('ix_cases_branch_id', 'cases', ['branch_id'])
    op.create_index('ix_cases_status', 'cases', ['status'])

    # Create escalation_rules table
    op.create_table('escalation_rules',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=True),
        sa.Column('branch_id', sa.String(length=64), nullable=True),
        sa.Column('is_global', sa.Boolean(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('stage', sa.String(length=32), nullable=False),
        sa.Column('applies_to', sa.String(length=16), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('warning_threshold', sa.Integer(), nullable=True),
        sa.Column('escalation_threshold', sa.Integer(), nullable=False),
        sa.Column('critical_threshold', sa.Integer(), nullable=True),
        sa.Column('use_business_hours', sa.Boolean(), nullable=False),
        sa.Column('exclude_weekends', sa.Boolean(), nullable=False),
        sa.Column('exclude_holidays', sa.Boolean(), nullable=False),
        sa.Column('business_hours', sa.JSON(), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('escalation_level', sa.Integer(), nullable=False),
        sa.Column('escalation_to_user_id', sa.String(length=36), nullable=True),
        sa.Column('notify_current_assignee', sa.Boolean(), nullable=False),
        sa.Column('notify_branch_admin', sa.Boolean(), nullable=False),
        sa.Column('notify_company_admin', sa.Boolean(), nullable=False),
        sa.Column('notify_super_admin', sa.Boolean(), nullable=False),
        sa.Column('notify_emails', sa.JSON(), nullable=True),
        sa.Column('auto_reassign', sa.Boolean(), nullable=False),
        sa.Column('reassign_to_user_id', sa.String(length=36), nullable=True),
        sa.Column('auto_change_priority', sa.Boolean(), nullable=False),
        sa.Column('new_priority', sa.String(length=16), nullable=True),
        sa.Column('conditions', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(length=36), nullable=True),
        sa.Column('updated_by', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_rules_company_stage_active', 'escalation_rules', ['company_id', 'stage', 'is_active'])
    op.create_index('ix_rules_branch_stage', 'escalation_rules', ['branch_id', 'stage'])

    # Create case_timeline_events table
    op.create_table('case_timeline_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('case_id', sa.String(length=36), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('branch_id', sa.String(length=64), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('stage', sa.String(length=32), nullable=False),
        sa.Column('previous_stage', sa.String(length=32), nullable=True),
        sa.Column('stage_entered_at', sa.DateTime(), nullable=False),
        sa.Column('stage_occurrence_id', sa.String(length=36), nullable=False),
        sa.Column('actor_type', sa.String(length=16), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('assigned_to', sa.String(length=36), nullable=True),
        sa.Column('escalated_to', sa.String(length=36), nullable=True),
        sa.Column('event_at', sa.DateTime(), nullable=False),
        sa.Column('duration_from_previous', sa.Integer(), nullable=True),
        sa.Column('duration_in_stage', sa.Integer(), nullable=False),
        sa.Column('total_case_duration', sa.Integer(), nullable=False),
        sa.Column('is_escalation', sa.Boolean(), nullable=False),
        sa.Column('escalation_level', sa.Integer(), nullable=False),
        sa.Column('sla_breached', sa.Boolean(), nullable=False),
        sa.Column('sla_deadline', sa.DateTime(), nullable=True),
        sa.Column('sla_remaining_minutes', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('is_internal', sa.Boolean(), nullable=False),
        sa.Column('is_visible_to_reporter', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['case_id'], ['cases.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('case_id', 'sequence', name='uq_timeline_case_sequence')
    )
    op.create_index('ix_timeline_case_event_at', 'case_timeline_events', ['case_id', 'event_at'])
    op.create_index('ix_timeline_company_event_type', 'case_timeline_events', ['company_id', 'event_type'])
    # One SLA warning per stage occurrence
    op.create_index(
        'uq_timeline_sla_warning_once',
        'case_timeline_events',
        ['case_id', 'stage_occurrence_id'],
        unique=True,
        postgresql_where=sa.text("event_type = 'sla_warning'"),
        sqlite_where=sa.text("event_type = 'sla_warning'")
    )

    # Create case_escalations table
    op.create_table('case_escalations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('case_id', sa.String(length=36), nullable=False),
        sa.Column('rule_id', sa.String(length=36), nullable=True),
        sa.Column('timeline_event_id', sa.String(length=36), nullable=True),
        sa.Column('stage', sa.String(length=32), nullable=False),
        sa.Column('stage_occurrence_id', sa.String(length=36), nullable=False),
        sa.Column('escalation_level', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('overdue_minutes', sa.Integer(), nullable=False),
        sa.Column('escalated_to', sa.String(length=36), nullable=True),
        sa.Column('notified_users', sa.JSON(), nullable=True),
        sa.Column('notified_emails', sa.JSON(), nullable=True),
        sa.Column('is_resolved', sa.Boolean(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(length=36), nullable=True),
        sa.Column('resolution_note', sa.Text(), nullable=True),
        sa.Column('was_reassigned', sa.Boolean(), nullable=False),
        sa.Column('reassigned_to', sa.String(length=36), nullable=True),
        sa.Column('priority_changed', sa.Boolean(), nullable=False),
        sa.Column('old_priority', sa.String(length=16), nullable=True),
        sa.Column('new_priority', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['case_id'], ['cases.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['rule_id'], ['escalation_rules.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['timeline_event_id'], ['case_timeline_events.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_escalations_case_stage_level', 'case_escalations', ['case_id', 'stage', 'escalation_level'])
    op.create_index('ix_escalations_resolved_created', 'case_escalations', ['is_resolved', 'created_at'])
    # At most one open escalation per level and stage occurrence
    op.create_index(
        'uq_escalation_open_level',
        'case_escalations',
        ['case_id', 'stage_occurrence_id', 'escalation_level'],
        unique=True,
        postgresql_where=sa.text('is_resolved = false'),
        sqlite_where=sa.text('is_resolved = 0')
    )

    # Create business_holidays table
    op.create_table('business_holidays',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=True),
        sa.Column('holiday_date', sa.Date(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', 'holiday_date', name='uq_holiday_company_date')
    )
    op.create_index('ix_business_holidays_company_id', 'business_holidays', ['company_id'])

    # Create case_users table (read model of the user directory)
    op.create_table('case_users',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=True),
        sa.Column('branch_id', sa.String(length=64), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_case_users_company_id', 'case_users', ['company_id'])

    # Create notification_outbox table
    op.create_table('notification_outbox',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('target_user_id', sa.String(length=36), nullable=True),
        sa.Column('target_email', sa.String(length=255), nullable=True),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_notification_outbox_status', 'notification_outbox', ['status'])


def downgrade() -> None:
    op.drop_table('notification_outbox')
    op.drop_table('case_users')
    op.drop_table('business_holidays')
    op.drop_index('uq_escalation_open_level', table_name='case_escalations')
    op.drop_table('case_escalations')
    op.drop_index('uq_timeline_sla_warning_once', table_name='case_timeline_events')
    op.drop_table('case_timeline_events')
    op.drop_table('escalation_rules')
    op.drop_table('cases')
