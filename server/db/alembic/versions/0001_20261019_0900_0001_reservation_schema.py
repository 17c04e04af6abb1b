"""Reservation engine schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Required for the vehicle/date-range exclusion constraint
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # Create vehicles table (catalog projection)
    op.create_table('vehicles',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('owner_id', sa.String(length=128), nullable=False),
        sa.Column('nightly_rate_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('location', sa.String(length=255), server_default='', nullable=False),
        sa.Column('is_available', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('timezone', sa.String(length=64), server_default='UTC', nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('nightly_rate_amount > 0', name='ck_vehicle_nightly_rate_positive'),
        sa.CheckConstraint('length(currency) = 3', name='ck_vehicle_currency_length'),
        sa.CheckConstraint('length(owner_id) > 0', name='ck_vehicle_owner_id_not_empty'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_vehicles_owner_id'), 'vehicles', ['owner_id'], unique=False)

    # Create bookings table
    op.create_table('bookings',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('vehicle_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('renter_id', sa.String(length=128), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('nights', sa.Integer(), nullable=False),
        sa.Column('nightly_rate_amount', sa.Integer(), nullable=False),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_session_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('payment_provider', sa.String(length=32), nullable=True),
        sa.Column('status_reason', sa.String(length=255), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('end_date > start_date', name='ck_booking_dates_ordered'),
        sa.CheckConstraint('nights >= 1', name='ck_booking_nights_positive'),
        sa.CheckConstraint('total_amount = nights * nightly_rate_amount', name='ck_booking_total_matches_rate'),
        sa.CheckConstraint('length(renter_id) > 0', name='ck_booking_renter_id_not_empty'),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled', 'completed', 'payment_failed')",
            name='ck_booking_status_valid'
        ),
        sa.ForeignKeyConstraint(['vehicle_id'], ['vehicles.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_bookings_vehicle_id'), 'bookings', ['vehicle_id'], unique=False)
    op.create_index(op.f('ix_bookings_renter_id'), 'bookings', ['renter_id'], unique=False)
    op.create_index(op.f('ix_bookings_status'), 'bookings', ['status'], unique=False)
    op.create_index(op.f('ix_bookings_created_at'), 'bookings', ['created_at'], unique=False)
    op.create_index(
        'ix_bookings_vehicle_dates_status', 'bookings',
        ['vehicle_id', 'start_date', 'end_date', 'status'], unique=False
    )

    # No two active bookings for a vehicle may share a night
    op.execute(
        "ALTER TABLE bookings ADD CONSTRAINT ex_bookings_vehicle_active_dates "
        "EXCLUDE USING gist (vehicle_id WITH =, daterange(start_date, end_date, '[)') WITH &&) "
        "WHERE (status IN ('pending', 'confirmed'))"
    )

    # Create payment_sessions table
    op.create_table('payment_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_session_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('redirect_url', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('amount >= 0', name='ck_payment_session_amount_non_negative'),
        sa.CheckConstraint('length(currency) = 3', name='ck_payment_session_currency_length'),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_session_id', name='uq_payment_session_provider_ref')
    )
    op.create_index(op.f('ix_payment_sessions_booking_id'), 'payment_sessions', ['booking_id'], unique=False)
    op.create_index(op.f('ix_payment_sessions_status'), 'payment_sessions', ['status'], unique=False)
    op.create_index(
        'uq_payment_sessions_active_booking', 'payment_sessions', ['booking_id'],
        unique=True, postgresql_where=sa.text("status = 'created'")
    )

    # Create booking_audit_entries table
    op.create_table('booking_audit_entries',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('event', sa.String(length=32), nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=True),
        sa.Column('to_status', sa.String(length=20), nullable=False),
        sa.Column('actor', sa.String(length=128), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('booking_id', 'sequence', name='uq_booking_audit_sequence')
    )
    op.create_index(
        op.f('ix_booking_audit_entries_booking_id'), 'booking_audit_entries', ['booking_id'], unique=False
    )

    # Create outbox_events table
    op.create_table('outbox_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('dispatched_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('booking_id', 'event_type', name='uq_outbox_booking_event_type')
    )
    op.create_index(op.f('ix_outbox_events_booking_id'), 'outbox_events', ['booking_id'], unique=False)
    op.create_index(op.f('ix_outbox_events_status'), 'outbox_events', ['status'], unique=False)
    op.create_index(op.f('ix_outbox_events_created_at'), 'outbox_events', ['created_at'], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('outbox_events')
    op.drop_table('booking_audit_entries')
    op.drop_index('uq_payment_sessions_active_booking', table_name='payment_sessions')
    op.drop_table('payment_sessions')
    op.drop_table('bookings')
    op.drop_table('vehicles')
