from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0001_initial_serials'
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_BOOKING = "status IN ('pending', 'accepted')"


def _schema():
    return os.getenv('DB_SCHEMA')


def upgrade() -> None:
    schema = _schema()
    op.create_table(
        'serial_configs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider_ref', sa.String(length=160), nullable=False),
        sa.Column('provider_kind', sa.String(length=32), nullable=False),
        sa.Column('provider_id', sa.String(length=64), nullable=False),
        sa.Column('parent_org_id', sa.String(length=64), nullable=True),
        sa.Column('total_slots_per_day', sa.Integer(), nullable=False, server_default='20'),
        sa.Column('start_minute', sa.Integer(), nullable=False),
        sa.Column('end_minute', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('available_days', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        schema=schema
    )
    op.create_index('ix_serial_configs_provider_ref', 'serial_configs', ['provider_ref'], unique=False, schema=schema)
    op.create_index(
        'uq_serial_configs_active_provider',
        'serial_configs',
        ['provider_ref'],
        unique=True,
        schema=schema,
        sqlite_where=sa.text('is_active = 1'),
        postgresql_where=sa.text('is_active'),
    )

    op.create_table(
        'serial_date_overrides',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('config_id', sa.Integer(), nullable=False),
        sa.Column('override_date', sa.Date(), nullable=False),
        sa.Column('total_slots_per_day', sa.Integer(), nullable=True),
        sa.Column('start_minute', sa.Integer(), nullable=True),
        sa.Column('end_minute', sa.Integer(), nullable=True),
        sa.Column('price_cents', sa.BigInteger(), nullable=True),
        sa.Column('admin_note', sa.String(length=500), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.ForeignKeyConstraint(['config_id'], [f"{schema}.serial_configs.id" if schema else 'serial_configs.id']),
        sa.UniqueConstraint('config_id', 'override_date', name='uq_serial_date_overrides_config_date'),
        schema=schema
    )
    op.create_index('ix_serial_date_overrides_config_id', 'serial_date_overrides', ['config_id'], unique=False, schema=schema)
    op.create_index('ix_serial_date_overrides_override_date', 'serial_date_overrides', ['override_date'], unique=False, schema=schema)

    op.create_table(
        'serial_bookings',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('provider_ref', sa.String(length=160), nullable=False),
        sa.Column('provider_kind', sa.String(length=32), nullable=False),
        sa.Column('provider_id', sa.String(length=64), nullable=False),
        sa.Column('parent_org_id', sa.String(length=64), nullable=True),
        sa.Column('booking_date', sa.Date(), nullable=False),
        sa.Column('serial_number', sa.Integer(), nullable=False),
        sa.Column('patient_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='self_service'),
        sa.Column('slot_start_minute', sa.Integer(), nullable=False),
        sa.Column('slot_end_minute', sa.Integer(), nullable=False),
        sa.Column('fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('appointment_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('reason', sa.String(length=200), nullable=True),
        sa.Column('admin_note', sa.String(length=500), nullable=True),
        sa.Column('cancelled_by', sa.String(length=16), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        schema=schema
    )
    op.create_index('ix_serial_bookings_patient_id', 'serial_bookings', ['patient_id'], unique=False, schema=schema)
    op.create_index('ix_serial_bookings_provider_date', 'serial_bookings', ['provider_ref', 'booking_date'], unique=False, schema=schema)
    # One active booking per serial per provider day; released on reject/cancel.
    op.create_index(
        'uq_serial_bookings_active_serial',
        'serial_bookings',
        ['provider_ref', 'booking_date', 'serial_number'],
        unique=True,
        schema=schema,
        sqlite_where=sa.text(_ACTIVE_BOOKING),
        postgresql_where=sa.text(_ACTIVE_BOOKING),
    )

    op.create_table(
        'serial_earnings',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('provider_ref', sa.String(length=160), nullable=False),
        sa.Column('booking_id', sa.String(length=36), nullable=False, unique=True),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('platform_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('net_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        schema=schema
    )
    op.create_index('ix_serial_earnings_provider_period', 'serial_earnings', ['provider_ref', 'year', 'month'], unique=False, schema=schema)

    op.create_table(
        'serial_idempotency',
        sa.Column('key', sa.String(length=120), primary_key=True),
        sa.Column('params_hash', sa.String(length=64), nullable=False),
        sa.Column('booking_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        schema=schema
    )


def downgrade() -> None:
    schema = _schema()
    op.drop_table('serial_idempotency', schema=schema)
    op.drop_index('ix_serial_earnings_provider_period', table_name='serial_earnings', schema=schema)
    op.drop_table('serial_earnings', schema=schema)
    op.drop_index('uq_serial_bookings_active_serial', table_name='serial_bookings', schema=schema)
    op.drop_index('ix_serial_bookings_provider_date', table_name='serial_bookings', schema=schema)
    op.drop_index('ix_serial_bookings_patient_id', table_name='serial_bookings', schema=schema)
    op.drop_table('serial_bookings', schema=schema)
    op.drop_index('ix_serial_date_overrides_override_date', table_name='serial_date_overrides', schema=schema)
    op.drop_index('ix_serial_date_overrides_config_id', table_name='serial_date_overrides', schema=schema)
    op.drop_table('serial_date_overrides', schema=schema)
    op.drop_index('uq_serial_configs_active_provider', table_name='serial_configs', schema=schema)
    op.drop_index('ix_serial_configs_provider_ref', table_name='serial_configs', schema=schema)
    op.drop_table('serial_configs', schema=schema)
