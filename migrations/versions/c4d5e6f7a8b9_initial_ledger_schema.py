"""Initial ledger schema

Revision ID: c4d5e6f7a8b9
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'c4d5e6f7a8b9'
down_revision = None
branch_labels = None
depends_on = None


def _enum(name, *values):
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=20)


def _money(name, nullable=False, default=None):
    return sa.Column(name, sa.Numeric(20, 6), nullable=nullable,
                     server_default=None if default is None else sa.text(default))


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


OPEN_LOAN_FILTER = "status IN ('active', 'repaying')"


def upgrade():
    op.create_table(
        'workers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('display_name', sa.String(100), nullable=False),
        sa.Column('wallet_address', sa.String(42), nullable=False, unique=True),
        sa.Column('reputation_score', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('total_tasks_completed', sa.Integer(), nullable=False, server_default='0'),
        _money('total_earnings_usdc', default='0'),
        sa.Column('status', _enum('worker_status', 'active', 'suspended', 'disabled'), nullable=False),
        *_timestamps(),
        sa.Column('metadata', sa.JSON(), nullable=True),
    )
    op.create_index('ix_workers_reputation', 'workers', ['reputation_score'])
    op.create_index('ix_workers_status', 'workers', ['status'])

    op.create_table(
        'platforms',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('api_key_hash', sa.String(64), nullable=False, unique=True),
        sa.Column('wallet_address', sa.String(42), nullable=True),
        sa.Column('webhook_url', sa.String(500), nullable=True),
        sa.Column('webhook_secret', sa.String(255), nullable=True),
        sa.Column('total_workers', sa.Integer(), nullable=False, server_default='0'),
        _money('total_payments_usdc', default='0'),
        sa.Column('status', _enum('platform_status', 'active', 'disabled'), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('platform_id', sa.String(36), sa.ForeignKey('platforms.id', ondelete='CASCADE'), nullable=False),
        sa.Column('worker_id', sa.String(36), sa.ForeignKey('workers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_task_id', sa.String(255), nullable=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('type', _enum('task_type', 'fixed', 'time_based', 'milestone'), nullable=False),
        _money('payment_amount_usdc'),
        _money('paid_amount_usdc', default='0'),
        sa.Column('status', _enum('task_status', 'created', 'assigned', 'in_progress',
                                  'completed', 'disputed', 'cancelled'), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('worker_rating', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('paid_amount_usdc >= 0', name='ck_tasks_paid_non_negative'),
        sa.CheckConstraint('paid_amount_usdc <= payment_amount_usdc', name='ck_tasks_paid_le_payment'),
    )
    op.create_index('ix_tasks_worker', 'tasks', ['worker_id'])
    op.create_index('ix_tasks_platform', 'tasks', ['platform_id'])
    op.create_index('ix_tasks_status_completed', 'tasks', ['status', 'completed_at'])

    op.create_table(
        'streams',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('worker_id', sa.String(36), sa.ForeignKey('workers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('platform_id', sa.String(36), sa.ForeignKey('platforms.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id', ondelete='SET NULL'),
                  nullable=True, unique=True),
        sa.Column('contract_address', sa.String(42), nullable=False),
        sa.Column('contract_stream_id', sa.Integer(), nullable=False),
        _money('total_amount_usdc'),
        _money('released_amount_usdc', default='0'),
        _money('claimed_amount_usdc', default='0'),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('release_interval', sa.Integer(), nullable=False),
        sa.Column('next_release_at', sa.DateTime(), nullable=True),
        sa.Column('status', _enum('stream_status', 'active', 'paused', 'completed', 'cancelled'), nullable=False),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('claimed_amount_usdc >= 0', name='ck_streams_claimed_non_negative'),
        sa.CheckConstraint('claimed_amount_usdc <= released_amount_usdc', name='ck_streams_claimed_le_released'),
        sa.CheckConstraint('released_amount_usdc <= total_amount_usdc', name='ck_streams_released_le_total'),
        sa.CheckConstraint('end_time > start_time', name='ck_streams_window'),
        sa.CheckConstraint('release_interval > 0', name='ck_streams_interval_positive'),
        sa.UniqueConstraint('contract_address', 'contract_stream_id', name='uq_streams_contract'),
    )
    op.create_index('ix_streams_due', 'streams', ['status', 'next_release_at'])
    op.create_index('ix_streams_worker', 'streams', ['worker_id'])

    op.create_table(
        'loans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('worker_id', sa.String(36), sa.ForeignKey('workers.id', ondelete='CASCADE'), nullable=False),
        _money('requested_amount_usdc'),
        _money('approved_amount_usdc', nullable=True),
        _money('fee_usdc', default='0'),
        _money('total_owed_usdc', nullable=True),
        _money('remaining_balance_usdc', nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=True),
        _money('predicted_earnings_7d', nullable=True),
        sa.Column('fee_percentage', sa.Numeric(5, 2), nullable=True),
        sa.Column('status', _enum('loan_status', 'pending', 'approved', 'disbursed', 'active',
                                  'repaying', 'repaid', 'defaulted', 'cancelled'), nullable=False),
        sa.Column('requested_at', sa.DateTime(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('disbursed_at', sa.DateTime(), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('repaid_at', sa.DateTime(), nullable=True),
        sa.Column('defaulted_at', sa.DateTime(), nullable=True),
        sa.Column('tasks_repaid', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('remaining_balance_usdc >= 0', name='ck_loans_remaining_non_negative'),
    )
    op.create_index('uq_loans_open_per_worker', 'loans', ['worker_id'], unique=True,
                    sqlite_where=sa.text(OPEN_LOAN_FILTER),
                    postgresql_where=sa.text(OPEN_LOAN_FILTER))
    op.create_index('ix_loans_worker_status', 'loans', ['worker_id', 'status'])
    op.create_index('ix_loans_due', 'loans', ['status', 'due_date'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('idempotency_key', sa.String(200), nullable=False, unique=True),
        sa.Column('worker_id', sa.String(36), sa.ForeignKey('workers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('platform_id', sa.String(36), sa.ForeignKey('platforms.id', ondelete='SET NULL'), nullable=True),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('stream_id', sa.String(36), sa.ForeignKey('streams.id', ondelete='SET NULL'), nullable=True),
        sa.Column('loan_id', sa.String(36), sa.ForeignKey('loans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('type', _enum('transaction_type', 'payout', 'advance', 'refund', 'repayment', 'fee'),
                  nullable=False),
        sa.Column('status', _enum('transaction_status', 'pending', 'submitted', 'confirmed',
                                  'failed', 'cancelled'), nullable=False),
        _money('amount_usdc'),
        _money('fee_usdc', default='0'),
        sa.Column('from_wallet', sa.String(42), nullable=True),
        sa.Column('to_wallet', sa.String(42), nullable=True),
        sa.Column('tx_hash', sa.String(66), nullable=True),
        sa.Column('confirmations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.CheckConstraint('amount_usdc > 0', name='ck_transactions_amount_positive'),
    )
    op.create_index('ix_transactions_tx_hash', 'transactions', ['tx_hash'])
    op.create_index('ix_transactions_worker', 'transactions', ['worker_id'])
    op.create_index('ix_transactions_task', 'transactions', ['task_id'])
    op.create_index('ix_transactions_stream', 'transactions', ['stream_id'])
    op.create_index('ix_transactions_status_next', 'transactions', ['status', 'next_attempt_at'])

    op.create_table(
        'reputation_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('worker_id', sa.String(36), sa.ForeignKey('workers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.String(36), sa.ForeignKey('tasks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('event_type', _enum('reputation_event_type', 'task_completed', 'task_late', 'dispute_filed',
                                      'dispute_resolved', 'rating_received', 'manual_adjustment',
                                      'loan_defaulted'), nullable=False),
        sa.Column('points_delta', sa.Integer(), nullable=False),
        sa.Column('previous_score', sa.Integer(), nullable=False),
        sa.Column('new_score', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('triggered_by', sa.String(50), nullable=False, server_default='system'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
    )
    op.create_index('ix_reputation_worker_created', 'reputation_events', ['worker_id', 'created_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('actor_type', sa.String(20), nullable=False),
        sa.Column('actor_id', sa.String(100), nullable=True),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=True),
        sa.Column('resource_id', sa.String(36), nullable=True),
        sa.Column('request_id', sa.String(100), nullable=True),
        sa.Column('changes_before', sa.JSON(), nullable=True),
        sa.Column('changes_after', sa.JSON(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])
    op.create_index('ix_audit_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_created', 'audit_logs', ['created_at'])

    op.create_table(
        'operator_nonces',
        sa.Column('nonce', sa.String(64), primary_key=True),
        sa.Column('path', sa.String(255), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_operator_nonces_used_at', 'operator_nonces', ['used_at'])


def downgrade():
    op.drop_table('operator_nonces')
    op.drop_table('audit_logs')
    op.drop_table('reputation_events')
    op.drop_table('transactions')
    op.drop_table('loans')
    op.drop_table('streams')
    op.drop_table('tasks')
    op.drop_table('platforms')
    op.drop_table('workers')
