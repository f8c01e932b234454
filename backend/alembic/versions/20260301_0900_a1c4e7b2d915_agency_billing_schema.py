"""Agency billing schema: subscriptions, cycles, charges, attempts, mandates, fallback intents, batches, events, adjustments

Revision ID: a1c4e7b2d915
Revises:
Create Date: 2026-03-01 09:00:12.418305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7b2d915'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    'subscriptionstatus': ('ACTIVE', 'CANCELED'),
    'cyclestatus': ('OPEN', 'FROZEN', 'PAID', 'CANCELED'),
    'chargekind': ('RECURRING', 'EXTRA'),
    'chargestatus': ('PENDING', 'PRESENTED', 'PAID', 'REJECTED', 'ERROR', 'CANCELED'),
    'reconciliationstatus': ('PENDING', 'MATCHED', 'PARTIAL', 'UNMATCHED', 'ERROR'),
    'attemptchannel': ('DIRECT_DEBIT', 'FALLBACK'),
    'attemptstatus': ('PENDING', 'PROCESSING', 'PAID', 'REJECTED', 'ERROR', 'EXPIRED', 'CANCELED'),
    'paymentmethodtype': ('DIRECT_DEBIT', 'QR_FALLBACK', 'REDIRECT_FALLBACK'),
    'paymentmethodstatus': ('PENDING', 'ACTIVE', 'DISABLED'),
    'mandatestatus': ('PENDING', 'ACTIVE', 'REJECTED', 'REVOKED'),
    'fallbackintentstatus': ('CREATED', 'PENDING', 'PRESENTED', 'PAID', 'EXPIRED', 'CANCELED', 'FAILED'),
    'batchdirection': ('OUTBOUND', 'INBOUND'),
    'batchstatus': ('CREATING', 'EMPTY', 'READY', 'FAILED', 'PROCESSING', 'PROCESSED', 'RECONCILED', 'REJECTED'),
    'batchitemstatus': ('PENDING', 'PRESENTED', 'PAID', 'REJECTED', 'ERROR'),
    'adjustmentkind': ('DISCOUNT', 'TAX', 'SURCHARGE'),
    'adjustmentmode': ('PERCENT', 'ABSOLUTE'),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name)


def _base_columns() -> list:
    return [
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def _index(table: str, *columns: str, unique: bool = False) -> None:
    for column in columns:
        op.create_index(op.f(f'ix_{table}_{column}'), table, [column], unique=unique)


def upgrade() -> None:
    """Create all tables for agency billing."""
    # 1. Subscriptions (one per tenant)
    op.create_table(
        'billing_subscriptions',
        *_base_columns(),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('status', _enum('subscriptionstatus'), nullable=False, server_default='ACTIVE'),
        sa.Column('anchor_day', sa.Integer(), nullable=False, server_default='8'),
        sa.Column('timezone', sa.String(), nullable=False, server_default='America/Argentina/Buenos_Aires'),
        sa.Column('direct_debit_discount_pct', sa.Numeric(precision=5, scale=2), nullable=False, server_default='10'),
        sa.Column('next_anchor_date', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    _index('billing_subscriptions', 'id', 'created_at', 'status', 'next_anchor_date')
    _index('billing_subscriptions', 'tenant_id', unique=True)

    # 2. Billing cycles (depends on subscriptions)
    op.create_table(
        'billing_cycles',
        *_base_columns(),
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('anchor_date', sa.DateTime(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('status', _enum('cyclestatus'), nullable=False, server_default='OPEN'),
        sa.Column('fx_rate_date', sa.DateTime(), nullable=True),
        sa.Column('fx_rate', sa.Numeric(precision=18, scale=6), nullable=True),
        sa.Column('total_usd', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('total_local', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('pricing_snapshot', postgresql.JSONB(), nullable=True),
        sa.Column('frozen_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['billing_subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'anchor_date', name='uq_billing_cycle_anchor')
    )
    _index('billing_cycles', 'id', 'created_at', 'subscription_id', 'tenant_id', 'anchor_date')

    # 3. Charges (depends on cycles)
    op.create_table(
        'billing_charges',
        *_base_columns(),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('cycle_id', sa.UUID(), nullable=True),
        sa.Column('kind', _enum('chargekind'), nullable=False, server_default='RECURRING'),
        sa.Column('status', _enum('chargestatus'), nullable=False, server_default='PENDING'),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('amount_due', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('amount_paid', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ARS'),
        sa.Column('paid_currency', sa.String(length=3), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('paid_reference', sa.String(), nullable=True),
        sa.Column('paid_via_channel', sa.String(), nullable=True),
        sa.Column('reconciliation_status', _enum('reconciliationstatus'), nullable=False, server_default='PENDING'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.ForeignKeyConstraint(['cycle_id'], ['billing_cycles.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    _index('billing_charges', 'id', 'created_at', 'tenant_id', 'cycle_id', 'status', 'due_date')
    _index('billing_charges', 'idempotency_key', unique=True)

    # 4. Payment methods (depends on subscriptions)
    op.create_table(
        'billing_payment_methods',
        *_base_columns(),
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('method_type', _enum('paymentmethodtype'), nullable=False),
        sa.Column('status', _enum('paymentmethodstatus'), nullable=False, server_default='PENDING'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('holder_name', sa.String(), nullable=True),
        sa.Column('holder_tax_id', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['billing_subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'method_type', name='uq_billing_payment_method_type')
    )
    _index('billing_payment_methods', 'id', 'created_at', 'subscription_id')
    # At most one default method per subscription
    op.create_index(
        'uq_billing_payment_method_default',
        'billing_payment_methods',
        ['subscription_id'],
        unique=True,
        postgresql_where=sa.text('is_default'),
    )

    # 5. Attempts (depends on charges, payment methods)
    op.create_table(
        'billing_attempts',
        *_base_columns(),
        sa.Column('charge_id', sa.UUID(), nullable=False),
        sa.Column('attempt_no', sa.Integer(), nullable=False),
        sa.Column('channel', _enum('attemptchannel'), nullable=False, server_default='DIRECT_DEBIT'),
        sa.Column('status', _enum('attemptstatus'), nullable=False, server_default='PENDING'),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('external_reference', sa.String(), nullable=True),
        sa.Column('payment_method_id', sa.UUID(), nullable=True),
        sa.Column('rejection_code', sa.String(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('paid_reference', sa.String(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['charge_id'], ['billing_charges.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_method_id'], ['billing_payment_methods.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('charge_id', 'attempt_no', name='uq_billing_attempt_no')
    )
    _index('billing_attempts', 'id', 'created_at', 'charge_id', 'status', 'scheduled_for', 'external_reference')

    # 6. Mandates (1:1 with a payment method)
    op.create_table(
        'billing_mandates',
        *_base_columns(),
        sa.Column('payment_method_id', sa.UUID(), nullable=False),
        sa.Column('status', _enum('mandatestatus'), nullable=False, server_default='PENDING'),
        sa.Column('account_encrypted', sa.Text(), nullable=False),
        sa.Column('account_last4', sa.String(length=4), nullable=False),
        sa.Column('account_hash', sa.String(length=64), nullable=False),
        sa.Column('consent_version', sa.String(), nullable=False, server_default='v1'),
        sa.Column('consent_accepted_at', sa.DateTime(), nullable=False),
        sa.Column('consent_ip', sa.String(), nullable=True),
        sa.Column('bank_reference', sa.String(), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_code', sa.String(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('last_status_check_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['payment_method_id'], ['billing_payment_methods.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    _index('billing_mandates', 'id', 'created_at', 'status', 'account_hash')
    _index('billing_mandates', 'payment_method_id', unique=True)

    # 7. Fallback intents (depends on charges, attempts)
    op.create_table(
        'billing_fallback_intents',
        *_base_columns(),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('charge_id', sa.UUID(), nullable=False),
        sa.Column('attempt_id', sa.UUID(), nullable=True),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('status', _enum('fallbackintentstatus'), nullable=False, server_default='CREATED'),
        sa.Column('amount', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ARS'),
        sa.Column('external_reference', sa.String(), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('provider_payment_id', sa.String(), nullable=True),
        sa.Column('provider_status', sa.String(), nullable=True),
        sa.Column('payment_url', sa.Text(), nullable=True),
        sa.Column('qr_payload', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('failure_code', sa.String(), nullable=True),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('provider_raw_payload', postgresql.JSONB(), nullable=True),
        sa.ForeignKeyConstraint(['charge_id'], ['billing_charges.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['attempt_id'], ['billing_attempts.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    _index(
        'billing_fallback_intents',
        'id', 'created_at', 'tenant_id', 'charge_id', 'provider', 'status', 'external_reference', 'provider_payment_id',
    )
    _index('billing_fallback_intents', 'idempotency_key', unique=True)

    # 8. File batches (self-referencing: inbound -> outbound)
    op.create_table(
        'billing_file_batches',
        *_base_columns(),
        sa.Column('parent_batch_id', sa.UUID(), nullable=True),
        sa.Column('direction', _enum('batchdirection'), nullable=False),
        sa.Column('channel', sa.String(), nullable=False, server_default='DIRECT_DEBIT'),
        sa.Column('adapter', sa.String(), nullable=False),
        sa.Column('business_date', sa.DateTime(), nullable=False),
        sa.Column('status', _enum('batchstatus'), nullable=False, server_default='CREATING'),
        sa.Column('record_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount_total', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('checksum', sa.String(length=64), nullable=True),
        sa.Column('storage_key', sa.String(), nullable=True),
        sa.Column('sha256', sa.String(length=64), nullable=True),
        sa.Column('original_file_name', sa.String(), nullable=True),
        sa.Column('total_paid_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_rejected_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_error_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('meta', postgresql.JSONB(), nullable=True),
        sa.ForeignKeyConstraint(['parent_batch_id'], ['billing_file_batches.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    _index('billing_file_batches', 'id', 'created_at', 'parent_batch_id', 'direction', 'business_date', 'status', 'sha256')
    # One processed response file per content hash and outbound batch
    op.create_index(
        'uq_billing_file_batches_inbound_sha',
        'billing_file_batches',
        ['parent_batch_id', 'sha256'],
        unique=True,
        postgresql_where=sa.text("status = 'PROCESSED'"),
    )

    # 9. File batch items (depends on batches, attempts, charges)
    op.create_table(
        'billing_file_batch_items',
        *_base_columns(),
        sa.Column('batch_id', sa.UUID(), nullable=False),
        sa.Column('line_no', sa.Integer(), nullable=False),
        sa.Column('attempt_id', sa.UUID(), nullable=True),
        sa.Column('charge_id', sa.UUID(), nullable=True),
        sa.Column('external_reference', sa.String(), nullable=True),
        sa.Column('row_hash', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('status', _enum('batchitemstatus'), nullable=False, server_default='PENDING'),
        sa.Column('response_code', sa.String(), nullable=True),
        sa.Column('response_message', sa.Text(), nullable=True),
        sa.Column('paid_reference', sa.String(), nullable=True),
        sa.Column('row_payload', postgresql.JSONB(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['batch_id'], ['billing_file_batches.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['attempt_id'], ['billing_attempts.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['charge_id'], ['billing_charges.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    _index('billing_file_batch_items', 'id', 'created_at', 'batch_id', 'external_reference', 'row_hash')

    # 10. Billing events (append-only, no foreign keys)
    op.create_table(
        'billing_events',
        *_base_columns(),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    _index('billing_events', 'id', 'created_at', 'tenant_id', 'subscription_id', 'event_type')

    # 11. Adjustments (no dependencies)
    op.create_table(
        'billing_adjustments',
        *_base_columns(),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('kind', _enum('adjustmentkind'), nullable=False),
        sa.Column('mode', _enum('adjustmentmode'), nullable=False),
        sa.Column('value', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('label', sa.String(), nullable=True),
        sa.Column('starts_at', sa.DateTime(), nullable=True),
        sa.Column('ends_at', sa.DateTime(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id')
    )
    _index('billing_adjustments', 'id', 'created_at', 'tenant_id')

    # Composite index for the due-attempt selection
    op.create_index(
        'idx_billing_attempts_status_scheduled',
        'billing_attempts',
        ['status', 'scheduled_for'],
    )


def downgrade() -> None:
    """Drop all agency billing tables and enum types."""
    op.drop_index('idx_billing_attempts_status_scheduled', table_name='billing_attempts')
    op.drop_table('billing_adjustments')
    op.drop_table('billing_events')
    op.drop_table('billing_file_batch_items')
    op.drop_index('uq_billing_file_batches_inbound_sha', table_name='billing_file_batches')
    op.drop_table('billing_file_batches')
    op.drop_table('billing_fallback_intents')
    op.drop_table('billing_mandates')
    op.drop_table('billing_attempts')
    op.drop_index('uq_billing_payment_method_default', table_name='billing_payment_methods')
    op.drop_table('billing_payment_methods')
    op.drop_table('billing_charges')
    op.drop_table('billing_cycles')
    op.drop_table('billing_subscriptions')

    for name in reversed(list(ENUMS)):
        op.execute(f'DROP TYPE IF EXISTS {name}')
