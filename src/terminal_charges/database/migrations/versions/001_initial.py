"""Initial migration - create terminal charge, assignment and order tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

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
    # Create terminal_charges table
    op.create_table(
        'terminal_charges',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('provider_transaction_id', sa.String(255), nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('ticket_tier_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='COP'),
        sa.Column('terminal_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_details_json', sa.Text(), nullable=True),
        sa.Column('error_details_json', sa.Text(), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('last_poll_at', sa.DateTime(), nullable=True),
        sa.Column('poll_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reconciled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_terminal_charges_provider_transaction_id', 'terminal_charges', ['provider_transaction_id'])
    op.create_index('ix_terminal_charges_transaction_id', 'terminal_charges', ['transaction_id'])
    op.create_index('ix_terminal_charges_terminal_id', 'terminal_charges', ['terminal_id'])
    op.create_index('ix_terminal_charges_transaction_status', 'terminal_charges', ['transaction_id', 'status'])
    op.create_index('ix_terminal_charges_reconcile', 'terminal_charges', ['reconciled', 'status', 'created_at'])

    # Append-only status history
    op.create_table(
        'charge_status_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('charge_id', sa.String(64), sa.ForeignKey('terminal_charges.id'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('raw_payload_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('charge_id', 'sequence', name='uq_charge_status_history_sequence'),
    )
    op.create_index('ix_charge_status_history_charge_id', 'charge_status_history', ['charge_id'])

    # Webhook receipts
    op.create_table(
        'charge_webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('charge_id', sa.String(64), sa.ForeignKey('terminal_charges.id'), nullable=True),
        sa.Column('provider_transaction_id', sa.String(255), nullable=True),
        sa.Column('provider_event_id', sa.String(255), nullable=True, unique=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('received_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_charge_webhook_events_charge_id', 'charge_webhook_events', ['charge_id'])
    op.create_index('ix_charge_webhook_events_provider_transaction_id', 'charge_webhook_events', ['provider_transaction_id'])
    op.create_index('ix_charge_webhook_events_processed', 'charge_webhook_events', ['processed', 'received_at'])

    # Terminals registered to organizations
    op.create_table(
        'organization_terminals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(255), nullable=False),
        sa.Column('terminal_id', sa.String(255), nullable=False),
        sa.Column('serial_number', sa.String(255), nullable=False),
        sa.Column('location', sa.String(255), nullable=False, server_default=''),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('added_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('organization_id', 'terminal_id', name='uq_organization_terminals_terminal'),
    )
    op.create_index('ix_organization_terminals_organization_id', 'organization_terminals', ['organization_id'])

    # Terminal assignments
    op.create_table(
        'terminal_assignments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('terminal_id', sa.String(255), nullable=False),
        sa.Column('location', sa.String(255), nullable=False, server_default=''),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('assigned_at', sa.DateTime(), nullable=False),
        sa.Column('last_status_check', sa.DateTime(), nullable=False),
        sa.Column('last_status', sa.String(20), nullable=False, server_default='unknown'),
    )
    op.create_index('ix_terminal_assignments_organization_id', 'terminal_assignments', ['organization_id'])
    op.create_index('ix_terminal_assignments_event_terminal', 'terminal_assignments', ['event_id', 'terminal_id'])
    op.create_index('ix_terminal_assignments_user_event', 'terminal_assignments', ['user_id', 'event_id'])
    op.create_index('ix_terminal_assignments_active_assigned', 'terminal_assignments', ['active', 'assigned_at'])
    op.create_index(
        'uq_terminal_assignments_active_terminal',
        'terminal_assignments',
        ['terminal_id', 'event_id'],
        unique=True,
        sqlite_where=sa.text('active = 1'),
        postgresql_where=sa.text('active'),
    )
    op.create_index(
        'uq_terminal_assignments_active_user',
        'terminal_assignments',
        ['user_id', 'event_id'],
        unique=True,
        sqlite_where=sa.text('active = 1'),
        postgresql_where=sa.text('active'),
    )

    # Orders
    op.create_table(
        'orders',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=True),
        sa.Column('ticket_tier_id', sa.String(255), nullable=True),
        sa.Column('customer_id', sa.String(255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Integer(), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('payment_details_json', sa.Text(), nullable=True),
        sa.Column('last_payment_error_json', sa.Text(), nullable=True),
        sa.Column('last_payment_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_orders_event_id', 'orders', ['event_id'])


def downgrade() -> None:
    op.drop_table('orders')
    op.drop_table('terminal_assignments')
    op.drop_table('organization_terminals')
    op.drop_table('charge_webhook_events')
    op.drop_table('charge_status_history')
    op.drop_table('terminal_charges')
