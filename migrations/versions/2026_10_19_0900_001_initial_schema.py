"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create tenants, outbox, webhook receipt, exception and audit tables."""
    op.create_table(
        'tenants',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenants_slug', 'tenants', ['slug'], unique=True)

    op.create_table(
        'outbox_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('aggregate_type', sa.String(length=100), nullable=False),
        sa.Column('aggregate_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.CheckConstraint(
            "status IN ('PENDING')",
            name='outbox_events_status_check',
        ),
    )
    op.create_index('ix_outbox_events_tenant_id', 'outbox_events', ['tenant_id'], unique=False)
    op.create_index(
        'ix_outbox_events_tenant_idempotency_key',
        'outbox_events',
        ['tenant_id', 'idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
    )

    op.create_table(
        'outbox_dispatch_attempts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('outbox_event_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('occurred_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('next_attempt_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.String(length=500), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['outbox_event_id'], ['outbox_events.id']),
        sa.CheckConstraint('attempt_number > 0', name='outbox_dispatch_attempts_attempt_number_check'),
        sa.CheckConstraint(
            "status IN ('SENT', 'RETRY_SCHEDULED', 'DEAD_LETTER')",
            name='outbox_dispatch_attempts_status_check',
        ),
    )
    op.create_index('ix_outbox_dispatch_attempts_tenant_id', 'outbox_dispatch_attempts', ['tenant_id'], unique=False)
    op.create_index(
        'ix_outbox_dispatch_attempts_outbox_event_id',
        'outbox_dispatch_attempts',
        ['outbox_event_id'],
        unique=False,
    )
    op.create_index(
        'ix_outbox_dispatch_attempts_unique_attempt',
        'outbox_dispatch_attempts',
        ['tenant_id', 'outbox_event_id', 'attempt_number'],
        unique=True,
    )
    op.create_index(
        'ix_outbox_dispatch_attempts_retry_scan',
        'outbox_dispatch_attempts',
        ['tenant_id', 'status', 'next_attempt_at'],
        unique=False,
    )

    op.create_table(
        'provider_webhook_receipts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('provider_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=True),
        sa.Column('signature', sa.String(length=512), nullable=True),
        sa.Column('payload_sha256', sa.String(length=64), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('request_headers', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.String(length=500), nullable=True),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.CheckConstraint(
            "status IN ('PROCESSED', 'IGNORED', 'FAILED')",
            name='provider_webhook_receipts_status_check',
        ),
    )
    op.create_index('ix_provider_webhook_receipts_tenant_id', 'provider_webhook_receipts', ['tenant_id'], unique=False)
    op.create_index(
        'ix_provider_webhook_receipts_unique_event',
        'provider_webhook_receipts',
        ['tenant_id', 'provider', 'provider_event_id'],
        unique=True,
    )
    op.create_index(
        'ix_provider_webhook_receipts_lookup',
        'provider_webhook_receipts',
        ['tenant_id', 'provider', 'status', 'processed_at'],
        unique=False,
    )

    op.create_table(
        'reconciliation_exceptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('external_event_id', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=100), nullable=False),
        sa.Column('message', sa.String(length=500), nullable=False),
        sa.Column('payload_sha256', sa.String(length=64), nullable=True),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('occurrences_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('first_seen_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.CheckConstraint("status IN ('OPEN', 'RESOLVED')", name='reconciliation_exceptions_status_check'),
        sa.CheckConstraint('occurrences_count > 0', name='reconciliation_exceptions_occurrences_check'),
    )
    op.create_index('ix_reconciliation_exceptions_tenant_id', 'reconciliation_exceptions', ['tenant_id'], unique=False)
    op.create_index(
        'ix_reconciliation_exceptions_unique_signature',
        'reconciliation_exceptions',
        ['tenant_id', 'source', 'provider', 'external_event_id', 'code'],
        unique=True,
    )
    op.create_index(
        'ix_reconciliation_exceptions_open_lookup',
        'reconciliation_exceptions',
        ['tenant_id', 'status', 'last_seen_at'],
        unique=False,
    )

    op.create_table(
        'action_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('action_type', sa.String(length=100), nullable=False),
        sa.Column('channel', sa.String(length=20), nullable=False),
        sa.Column('endpoint_path', sa.String(length=255), nullable=True),
        sa.Column('http_method', sa.String(length=10), nullable=True),
        sa.Column('request_id', sa.String(length=100), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=False),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('target_type', sa.String(length=100), nullable=True),
        sa.Column('target_id', sa.String(length=255), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('occurred_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
    )
    op.create_index('ix_action_logs_tenant_id', 'action_logs', ['tenant_id'], unique=False)
    op.create_index('ix_action_logs_tenant_occurred_at', 'action_logs', ['tenant_id', 'occurred_at'], unique=False)
    op.create_index('ix_action_logs_tenant_action_type', 'action_logs', ['tenant_id', 'action_type'], unique=False)


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('action_logs')
    op.drop_table('reconciliation_exceptions')
    op.drop_table('provider_webhook_receipts')
    op.drop_table('outbox_dispatch_attempts')
    op.drop_table('outbox_events')
    op.drop_table('tenants')
