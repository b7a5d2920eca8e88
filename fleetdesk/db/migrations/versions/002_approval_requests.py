"""approval requests and decisions

Revision ID: 002_approval_requests
Revises: 001_initial
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002_approval_requests'
down_revision = '001_initial'
branch_labels = None
depends_on = None

APPROVAL_STATUSES = ('pending', 'approved', 'rejected')


def upgrade() -> None:
    op.create_table('approval_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('requester_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('approver_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('policy_id', sa.Integer(), sa.ForeignKey('approval_policies.id'), nullable=True),
        sa.Column('required_approvals', sa.Integer(), nullable=False),
        sa.Column('candidate_approver_ids', sa.JSON(), nullable=True),
        sa.Column('status', sa.Enum(*APPROVAL_STATUSES, name='approvalstatus', native_enum=False, length=32),
                  nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('decision_note', sa.Text(), nullable=True),
        sa.Column('decided_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_approval_requests_id', 'approval_requests', ['id'])
    op.create_index('ix_approval_requests_rfq_id', 'approval_requests', ['rfq_id'])
    op.create_index(
        'uq_approval_request_pending_rfq', 'approval_requests', ['rfq_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table('approval_decisions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('approval_request_id', sa.Integer(), sa.ForeignKey('approval_requests.id'), nullable=False),
        sa.Column('approver_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', sa.Enum(*APPROVAL_STATUSES, name='approvalstatus', native_enum=False, length=32),
                  nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('approval_request_id', 'approver_id', name='uq_approval_decision_approver'),
    )
    op.create_index('ix_approval_decisions_id', 'approval_decisions', ['id'])
    op.create_index('ix_approval_decisions_approval_request_id', 'approval_decisions', ['approval_request_id'])


def downgrade() -> None:
    op.drop_table('approval_decisions')
    op.drop_index('uq_approval_request_pending_rfq', table_name='approval_requests')
    op.drop_table('approval_requests')
