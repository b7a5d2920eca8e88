"""initial sourcing schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Creates the tenancy, RFQ lifecycle, offer ledger, policy and automation
tables for FleetDesk Sourcing. Enum columns are VARCHAR(32).
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _enum(*values, name):
    return sa.Enum(*values, name=name, native_enum=False, length=32)


def upgrade() -> None:
    # Organizations
    op.create_table('organizations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_organizations_id', 'organizations', ['id'])
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)

    # Users
    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('role', _enum('member', 'admin', name='userrole'), nullable=False),
        sa.Column('team_role', _enum('requester', 'approver', 'manager', 'owner', name='teamrole'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Audit logs
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('timestamp', sa.DateTime(), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(100), nullable=True),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_org_timestamp', 'audit_logs', ['organization_id', 'timestamp'])

    # RFQs
    op.create_table('rfqs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reference', sa.String(32), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('listing_id', sa.String(64), nullable=True),
        sa.Column('category', sa.String(40), nullable=False),
        sa.Column('service_tier', _enum('standard', 'priority', 'enterprise', name='servicetier'), nullable=False),
        sa.Column('service_package', _enum('core', 'concierge', 'command', name='servicepackage'), nullable=False),
        sa.Column('package_addons', sa.JSON(), nullable=True),
        sa.Column('key_specs', sa.Text(), nullable=False),
        sa.Column('preferred_brands', sa.String(255), nullable=True),
        sa.Column('year_min', sa.Integer(), nullable=True),
        sa.Column('year_max', sa.Integer(), nullable=True),
        sa.Column('budget_min', sa.Float(), nullable=True),
        sa.Column('budget_max', sa.Float(), nullable=True),
        sa.Column('delivery_country', sa.String(100), nullable=False),
        sa.Column('pickup_deadline', sa.DateTime(), nullable=True),
        sa.Column('urgency', sa.String(20), nullable=False),
        sa.Column('condition_tolerance', sa.String(255), nullable=False),
        sa.Column('required_documents', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('business_goal', sa.Text(), nullable=True),
        sa.Column('risk_tolerance', sa.String(20), nullable=True),
        sa.Column('budget_confidence', sa.String(20), nullable=True),
        sa.Column('mandate_completeness', sa.Integer(), nullable=False),
        sa.Column('status', _enum('received', 'in_progress', 'offer_sent', 'pending_execution', 'won', 'lost',
                                  name='rfqstatus'), nullable=False),
        sa.Column('sla_target_hours', sa.Integer(), nullable=False),
        sa.Column('close_reason', sa.Text(), nullable=True),
        sa.Column('internal_ops_notes', sa.Text(), nullable=True),
        sa.Column('last_offer_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "(status IN ('won', 'lost') AND close_reason IS NOT NULL) "
            "OR (status NOT IN ('won', 'lost') AND close_reason IS NULL)",
            name='ck_rfq_close_reason',
        ),
    )
    op.create_index('ix_rfqs_id', 'rfqs', ['id'])
    op.create_index('ix_rfqs_reference', 'rfqs', ['reference'], unique=True)
    op.create_index('ix_rfqs_organization_id', 'rfqs', ['organization_id'])
    op.create_index('ix_rfqs_status', 'rfqs', ['status'])
    op.create_index('ix_rfqs_created_at', 'rfqs', ['created_at'])
    op.create_index('ix_rfqs_org_status_tier', 'rfqs', ['organization_id', 'status', 'service_tier'])

    # RFQ events (append-only)
    op.create_table('rfq_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('event_type', _enum('status_change', 'message', 'offer_sent', 'offer_accepted', 'offer_declined',
                                      'offer_expired', 'rfq_created', 'rfq_closed', name='rfqeventtype'),
                  nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('rfq_id', 'sequence', name='uq_rfq_event_sequence'),
    )
    op.create_index('ix_rfq_events_id', 'rfq_events', ['id'])
    op.create_index('ix_rfq_events_rfq_id', 'rfq_events', ['rfq_id'])

    # RFQ messages
    op.create_table('rfq_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False),
        sa.Column('author_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('sender_type', sa.String(10), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_rfq_messages_id', 'rfq_messages', ['id'])
    op.create_index('ix_rfq_messages_rfq_id', 'rfq_messages', ['rfq_id'])

    # Offers
    op.create_table('offers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False),
        sa.Column('listing_id', sa.String(64), nullable=True),
        sa.Column('title', sa.String(140), nullable=False),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('currency', sa.String(8), nullable=True),
        sa.Column('terms', sa.Text(), nullable=True),
        sa.Column('location', sa.String(120), nullable=True),
        sa.Column('availability_text', sa.Text(), nullable=True),
        sa.Column('valid_until', sa.DateTime(), nullable=False),
        sa.Column('included_flags', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status', _enum('draft', 'sent', 'accepted', 'declined', 'expired', name='offerstatus'),
                  nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('decline_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('rfq_id', 'version_number', name='uq_offer_rfq_version'),
    )
    op.create_index('ix_offers_id', 'offers', ['id'])
    op.create_index('ix_offers_rfq_id', 'offers', ['rfq_id'])
    op.create_index('ix_offers_status', 'offers', ['status'])

    # Approval policies
    op.create_table('approval_policies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('service_tier', _enum('standard', 'priority', 'enterprise', name='servicetier'), nullable=False),
        sa.Column('required_approvals', sa.Integer(), nullable=False),
        sa.Column('approver_team_role', _enum('requester', 'approver', 'manager', 'owner', name='teamrole'),
                  nullable=False),
        sa.Column('auto_assign_enabled', sa.Boolean(), nullable=False),
        sa.Column('warning_threshold_ratio', sa.Float(), nullable=False),
        sa.Column('critical_threshold_ratio', sa.Float(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('organization_id', 'service_tier', name='uq_policy_org_tier'),
    )
    op.create_index('ix_approval_policies_id', 'approval_policies', ['id'])

    # Automation rules
    op.create_table('automation_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('trigger_type', _enum('sla_escalation', name='triggertype'), nullable=False),
        sa.Column('action_type', _enum('notify_admin', name='actiontype'), nullable=False),
        sa.Column('condition', sa.JSON(), nullable=True),
        sa.Column('action_config', sa.JSON(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_automation_rules_id', 'automation_rules', ['id'])
    op.create_index('ix_automation_rules_organization_id', 'automation_rules', ['organization_id'])

    # Automation run logs (append-only)
    op.create_table('automation_run_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('trigger_type', _enum('sla_escalation', name='triggertype'), nullable=False),
        sa.Column('source', sa.String(80), nullable=False),
        sa.Column('status', _enum('success', 'failed', name='runstatus'), nullable=False),
        sa.Column('notifications', sa.Integer(), nullable=False),
        sa.Column('tasks_created', sa.Integer(), nullable=False),
        sa.Column('deduped_count', sa.Integer(), nullable=False),
        sa.Column('retries', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_automation_run_logs_id', 'automation_run_logs', ['id'])
    op.create_index('ix_automation_run_logs_created_at', 'automation_run_logs', ['created_at'])
    op.create_index('ix_automation_runs_org_created', 'automation_run_logs', ['organization_id', 'created_at'])

    # Ops tasks
    op.create_table('ops_tasks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=True),
        sa.Column('title', sa.String(180), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('priority', _enum('low', 'medium', 'high', 'critical', name='taskpriority'), nullable=False),
        sa.Column('source', sa.String(80), nullable=False),
        sa.Column('status', _enum('open', 'acknowledged', 'resolved', name='taskstatus'), nullable=False),
        sa.Column('assignee_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('due_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_ops_tasks_id', 'ops_tasks', ['id'])
    op.create_index(
        'uq_ops_task_active_source', 'ops_tasks', ['organization_id', 'rfq_id', 'source'],
        unique=True,
        postgresql_where=sa.text("status IN ('open', 'acknowledged')"),
        sqlite_where=sa.text("status IN ('open', 'acknowledged')"),
    )

    # Notifications
    op.create_table('notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('notification_type', _enum('rfq', 'offer', 'sla', 'system', name='notificationtype'),
                  nullable=False),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('dedupe_key', sa.String(255), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('dedupe_key', name='uq_notifications_dedupe_key'),
    )
    op.create_index('ix_notifications_id', 'notifications', ['id'])
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_is_read', 'notifications', ['is_read'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_index('uq_ops_task_active_source', table_name='ops_tasks')
    op.drop_table('ops_tasks')
    op.drop_table('automation_run_logs')
    op.drop_table('automation_rules')
    op.drop_table('approval_policies')
    op.drop_table('offers')
    op.drop_table('rfq_messages')
    op.drop_table('rfq_events')
    op.drop_table('rfqs')
    op.drop_table('audit_logs')
    op.drop_table('users')
    op.drop_table('organizations')
