"""Initial schema: request store and job queue.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Withdrawal requests
    op.create_table(
        'withdrawal_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('request_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('treasury_contract_address', sa.String(42), nullable=False),
        sa.Column('destination_address', sa.String(42), nullable=False),
        sa.Column('token_contract_address', sa.String(42), nullable=False),
        sa.Column('amount', sa.String(80), nullable=False),
        sa.Column('partially_signed_tx', sa.Text(), nullable=False),
        sa.Column('tx_hash', sa.String(66), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processing_job_id', sa.Integer(), nullable=True),
        sa.Column('submitting_lease', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_withdrawal_requests_request_id', 'withdrawal_requests', ['request_id'], unique=True)
    op.create_index('ix_withdrawal_requests_status', 'withdrawal_requests', ['status'])
    op.create_index('ix_withdrawal_requests_tx_hash', 'withdrawal_requests', ['tx_hash'])
    op.create_index('ix_withdrawal_requests_created_at', 'withdrawal_requests', ['created_at'])

    # Status audit trail
    op.create_table(
        'withdrawal_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('withdrawal_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['withdrawal_id'], ['withdrawal_requests.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_withdrawal_history_withdrawal_id', 'withdrawal_history', ['withdrawal_id'])

    # Raw transaction relays
    op.create_table(
        'raw_transaction_broadcasts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('client_id', sa.String(255), nullable=True),
        sa.Column('raw_tx', sa.Text(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('tx_hash', sa.String(66), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash'),
    )
    op.create_index('ix_raw_transaction_broadcasts_client_id', 'raw_transaction_broadcasts', ['client_id'])

    # Job queue
    op.create_table(
        'queue_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('queue', sa.String(64), nullable=False),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('state', sa.String(16), nullable=False),
        sa.Column('attempts_made', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('backoff_seconds', sa.Float(), nullable=False),
        sa.Column('available_at', sa.DateTime(), nullable=False),
        sa.Column('lease_token', sa.String(64), nullable=True),
        sa.Column('locked_by', sa.String(128), nullable=True),
        sa.Column('locked_until', sa.DateTime(), nullable=True),
        sa.Column('stalled_count', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_queue_jobs_claim', 'queue_jobs', ['queue', 'state', 'available_at'])


def downgrade() -> None:
    op.drop_table('queue_jobs')
    op.drop_table('raw_transaction_broadcasts')
    op.drop_table('withdrawal_history')
    op.drop_table('withdrawal_requests')
