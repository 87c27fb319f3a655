"""Initial schema - payments, attempts, sessions, audit log, enforcement changes, reconciliation runs

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

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
    op.create_table(
        'payment_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('external_request_ref', sa.String(100), nullable=False, unique=True),
        sa.Column('external_transaction_ref', sa.String(100), nullable=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('amount_expected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount_confirmed', sa.Integer(), nullable=True),
        sa.Column('amount_refunded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('payer_identifier', sa.String(32), nullable=True),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('result_description', sa.Text(), nullable=True),
        sa.Column('initiated_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('state_entered_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payment_records_external_transaction_ref', 'payment_records', ['external_transaction_ref'])
    op.create_index('ix_payment_records_status', 'payment_records', ['status'])
    op.create_index('ix_payment_records_confirmed_at', 'payment_records', ['confirmed_at'])
    op.create_index('ix_payment_records_initiated_at', 'payment_records', ['initiated_at'])

    op.create_table(
        'payment_attempts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payment_records.id'), nullable=False),
        sa.Column('attempted_at', sa.DateTime(), nullable=False),
        sa.Column('outcome', sa.String(30), nullable=False),
        sa.Column('status', sa.String(30), nullable=True),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('external_transaction_ref', sa.String(100), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
    )
    op.create_index('ix_payment_attempts_payment_id', 'payment_attempts', ['payment_id'])

    op.create_table(
        'session_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(64), nullable=False),
        sa.Column('provider_id', sa.String(64), nullable=False),
        sa.Column('session_type', sa.String(50), nullable=False, server_default='individual'),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payment_records.id'), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('state_entered_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_session_records_status', 'session_records', ['status'])
    op.create_index('ix_session_records_payment_id', 'session_records', ['payment_id'])
    op.create_index('ix_session_records_client_id', 'session_records', ['client_id'])
    op.create_index('ix_session_records_provider_id', 'session_records', ['provider_id'])

    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', sa.String(36), nullable=False),
        sa.Column('from_state', sa.String(30), nullable=True),
        sa.Column('to_state', sa.String(30), nullable=False),
        sa.Column('acting_subsystem', sa.String(20), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('violation', sa.Text(), nullable=True),
    )
    op.create_index('ix_audit_log_entity', 'audit_log', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_log_timestamp', 'audit_log', ['timestamp'])

    op.create_table(
        'enforcement_changes',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('previous_level', sa.String(10), nullable=True),
        sa.Column('new_level', sa.String(10), nullable=False),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('context', sa.String(20), nullable=False),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('window_end', sa.DateTime(), nullable=False),
        sa.Column('executed_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=False),
        sa.Column('triggered_by', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('filters_json', sa.Text(), nullable=True),
        sa.Column('summary_json', sa.Text(), nullable=False),
        sa.Column('items_json', sa.Text(), nullable=False),
    )
    op.create_index('ix_reconciliation_runs_window', 'reconciliation_runs', ['window_start', 'window_end'])
    op.create_index('ix_reconciliation_runs_executed_at', 'reconciliation_runs', ['executed_at'])


def downgrade() -> None:
    op.drop_index('ix_reconciliation_runs_executed_at', table_name='reconciliation_runs')
    op.drop_index('ix_reconciliation_runs_window', table_name='reconciliation_runs')
    op.drop_table('reconciliation_runs')

    op.drop_table('enforcement_changes')

    op.drop_index('ix_audit_log_timestamp', table_name='audit_log')
    op.drop_index('ix_audit_log_entity', table_name='audit_log')
    op.drop_table('audit_log')

    op.drop_index('ix_session_records_provider_id', table_name='session_records')
    op.drop_index('ix_session_records_client_id', table_name='session_records')
    op.drop_index('ix_session_records_payment_id', table_name='session_records')
    op.drop_index('ix_session_records_status', table_name='session_records')
    op.drop_table('session_records')

    op.drop_index('ix_payment_attempts_payment_id', table_name='payment_attempts')
    op.drop_table('payment_attempts')

    op.drop_index('ix_payment_records_initiated_at', table_name='payment_records')
    op.drop_index('ix_payment_records_confirmed_at', table_name='payment_records')
    op.drop_index('ix_payment_records_status', table_name='payment_records')
    op.drop_index('ix_payment_records_external_transaction_ref', table_name='payment_records')
    op.drop_table('payment_records')
