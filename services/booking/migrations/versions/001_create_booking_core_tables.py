"""Create reservations, payment_transactions and idempotency_records tables

Revision ID: 001_create_booking_core_tables
Revises:
Create Date: 2025-10-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_booking_core_tables'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_SLOT_PREDICATE = "status IN ('pending', 'confirmed')"


def upgrade():
    op.create_table('reservations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('business_id', sa.String(), nullable=False),
        sa.Column('service_id', sa.String(), nullable=False),
        sa.Column('slot_date', sa.Date(), nullable=False),
        sa.Column('slot_time', sa.Time(), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(length=9), nullable=False),
        sa.Column('cancel_reason', sa.String(length=18), nullable=True),
        sa.Column('hold_expires_at', sa.DateTime(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_reservations_business_id', 'reservations', ['business_id'])
    op.create_index('ix_reservations_customer_id', 'reservations', ['customer_id'])
    op.create_index('ix_reservations_status_hold', 'reservations', ['status', 'hold_expires_at'])

    # At most one active reservation per slot
    op.create_index(
        'uq_reservations_active_slot',
        'reservations',
        ['business_id', 'service_id', 'slot_date', 'slot_time'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_SLOT_PREDICATE),
        sqlite_where=sa.text(ACTIVE_SLOT_PREDICATE),
    )

    op.create_table('payment_transactions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('reservation_id', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=9), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('gateway_payment_id', sa.String(), nullable=True),
        sa.Column('gateway_refund_id', sa.String(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_code', sa.String(length=100), nullable=True),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['reservation_id'], ['reservations.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_payment_transactions_reservation_id', 'payment_transactions', ['reservation_id'])
    op.create_index('ix_payment_transactions_idempotency_key', 'payment_transactions', ['idempotency_key'])
    op.create_index('ix_payment_transactions_gateway_payment_id', 'payment_transactions', ['gateway_payment_id'])
    op.create_index(
        'ix_payment_transactions_reservation_status',
        'payment_transactions',
        ['reservation_id', 'status'],
    )

    op.create_table('idempotency_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scope', sa.String(length=100), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=11), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scope', 'idempotency_key', name='uq_idempotency_scope_key')
    )
    op.create_index('ix_idempotency_records_id', 'idempotency_records', ['id'])
    op.create_index('idx_idempotency_created', 'idempotency_records', ['created_at'])


def downgrade():
    op.drop_index('idx_idempotency_created', table_name='idempotency_records')
    op.drop_index('ix_idempotency_records_id', table_name='idempotency_records')
    op.drop_table('idempotency_records')

    op.drop_index('ix_payment_transactions_reservation_status', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_gateway_payment_id', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_idempotency_key', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_reservation_id', table_name='payment_transactions')
    op.drop_table('payment_transactions')

    op.drop_index('uq_reservations_active_slot', table_name='reservations')
    op.drop_index('ix_reservations_status_hold', table_name='reservations')
    op.drop_index('ix_reservations_customer_id', table_name='reservations')
    op.drop_index('ix_reservations_business_id', table_name='reservations')
    op.drop_table('reservations')
