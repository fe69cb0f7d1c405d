"""Vault initial schema: tenants, ledger, catalog, orders, webhooks, API keys

MULTI-TENANT SCHEMA:
1. 'organizations' is the tenant root
2. Every other table except security_events carries a NOT NULL tenant_id
3. Uniqueness is tenant-scoped (member email, item slug, order number,
   idempotency key)
4. On PostgreSQL, row level security policies restrict every tenant table to
   current_setting('app.current_tenant'), which the application sets
   transaction-locally for each unit of work

Revision ID: v001_vault_initial
Revises:
Create Date: 2026-02-20
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'v001_vault_initial'
down_revision = None
branch_labels = None
depends_on = None


TENANT_TABLES = [
    'organization_members',
    'balances',
    'currency_transactions',
    'items',
    'item_variants',
    'orders',
    'order_lines',
    'webhook_endpoints',
    'webhook_deliveries',
    'integrations',
    'api_keys',
]


def _tenant_column():
    return sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False)


def upgrade():
    # ==========================================================================
    # Tenant root and members
    # ==========================================================================
    op.create_table('organizations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('plan', sa.String(length=32), nullable=False, server_default='pro'),
        sa.Column('currency_name', sa.String(length=50), nullable=False, server_default='Credits'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)
    op.create_index('ix_organizations_is_active', 'organizations', ['is_active'])

    op.create_table('organization_members',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=100), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='member'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_members_tenant_email')
    )
    op.create_index('ix_organization_members_tenant_id', 'organization_members', ['tenant_id'])
    op.create_index('ix_organization_members_is_active', 'organization_members', ['is_active'])

    # ==========================================================================
    # Ledger
    # ==========================================================================
    op.create_table('balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('organization_members.id'), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'user_id', name='uq_balances_tenant_user'),
        sa.CheckConstraint('balance >= 0', name='ck_balances_non_negative')
    )
    op.create_index('ix_balances_tenant_id', 'balances', ['tenant_id'])
    op.create_index('ix_balances_user_id', 'balances', ['user_id'])

    op.create_table('currency_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('organization_members.id'), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('reference_type', sa.String(length=50), nullable=True),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('performed_by', sa.String(length=64), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_currency_tx_idempotency')
    )
    op.create_index('ix_currency_transactions_tenant_id', 'currency_transactions', ['tenant_id'])
    op.create_index('ix_currency_transactions_user_id', 'currency_transactions', ['user_id'])
    op.create_index('ix_currency_transactions_type', 'currency_transactions', ['type'])
    op.create_index('ix_currency_transactions_created_at', 'currency_transactions', ['created_at'])
    op.create_index('ix_currency_tx_tenant_user', 'currency_transactions', ['tenant_id', 'user_id', 'id'])

    # ==========================================================================
    # Catalog
    # ==========================================================================
    op.create_table('items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('stock_quantity', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'slug', name='uq_items_tenant_slug'),
        sa.CheckConstraint('stock_quantity IS NULL OR stock_quantity >= 0', name='ck_items_stock_non_negative')
    )
    op.create_index('ix_items_tenant_id', 'items', ['tenant_id'])
    op.create_index('ix_items_is_active', 'items', ['is_active'])

    op.create_table('item_variants',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('options', sa.JSON(), nullable=False),
        sa.Column('price_override', sa.Integer(), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('stock_quantity IS NULL OR stock_quantity >= 0', name='ck_variants_stock_non_negative')
    )
    op.create_index('ix_item_variants_tenant_id', 'item_variants', ['tenant_id'])
    op.create_index('ix_item_variants_item_id', 'item_variants', ['item_id'])

    # ==========================================================================
    # Orders
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('order_number', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('organization_members.id'), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('total_cost', sa.Integer(), nullable=False),
        sa.Column('debit_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('debit_transaction_id', sa.Integer(), sa.ForeignKey('currency_transactions.id'), nullable=True),
        sa.Column('refund_transaction_id', sa.Integer(), sa.ForeignKey('currency_transactions.id'), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status_changed_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'order_number', name='uq_orders_tenant_number')
    )
    op.create_index('ix_orders_tenant_id', 'orders', ['tenant_id'])
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_debit_status', 'orders', ['debit_status'])
    op.create_index('ix_orders_tenant_status', 'orders', ['tenant_id', 'status'])

    op.create_table('order_lines',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('items.id'), nullable=False),
        sa.Column('variant_id', sa.Integer(), sa.ForeignKey('item_variants.id'), nullable=True),
        sa.Column('item_name', sa.String(length=255), nullable=False),
        sa.Column('variant_name', sa.String(length=255), nullable=True),
        sa.Column('unit_price', sa.Integer(), nullable=False),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_lines_tenant_id', 'order_lines', ['tenant_id'])
    op.create_index('ix_order_lines_order_id', 'order_lines', ['order_id'])
    op.create_index('ix_order_lines_item_id', 'order_lines', ['item_id'])

    # ==========================================================================
    # Webhooks and integrations
    # ==========================================================================
    op.create_table('webhook_endpoints',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('url', sa.String(length=500), nullable=False),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('secret', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_webhook_endpoints_tenant_id', 'webhook_endpoints', ['tenant_id'])
    op.create_index('ix_webhook_endpoints_is_active', 'webhook_endpoints', ['is_active'])

    op.create_table('webhook_deliveries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('endpoint_id', sa.Integer(), sa.ForeignKey('webhook_endpoints.id'), nullable=False),
        sa.Column('event', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_webhook_deliveries_tenant_id', 'webhook_deliveries', ['tenant_id'])
    op.create_index('ix_webhook_deliveries_endpoint_id', 'webhook_deliveries', ['endpoint_id'])
    op.create_index('ix_webhook_deliveries_status', 'webhook_deliveries', ['status'])
    op.create_index('ix_webhook_deliveries_retry', 'webhook_deliveries', ['status', 'next_retry_at'])

    op.create_table('integrations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('webhook_url', sa.String(length=500), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_integrations_tenant_id', 'integrations', ['tenant_id'])

    # ==========================================================================
    # API access and security audit
    # ==========================================================================
    op.create_table('api_keys',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _tenant_column(),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('key_hash', sa.String(length=128), nullable=False),
        sa.Column('key_prefix', sa.String(length=16), nullable=False),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('organization_members.id'), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_api_keys_tenant_id', 'api_keys', ['tenant_id'])
    op.create_index('ix_api_keys_key_hash', 'api_keys', ['key_hash'], unique=True)

    op.create_table('security_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('api_key_id', sa.Integer(), sa.ForeignKey('api_keys.id'), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('resource', sa.String(length=128), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_security_events_tenant_id', 'security_events', ['tenant_id'])
    op.create_index('ix_security_events_api_key_id', 'security_events', ['api_key_id'])
    op.create_index('ix_security_events_event_type', 'security_events', ['event_type'])
    op.create_index('ix_security_events_success', 'security_events', ['success'])
    op.create_index('ix_security_events_occurred_at', 'security_events', ['occurred_at'])
    op.create_index('ix_security_events_tenant_occurred', 'security_events', ['tenant_id', 'occurred_at'])

    # ==========================================================================
    # PostgreSQL row level security
    # ==========================================================================
    # Rows are visible only when tenant_id matches the transaction-local
    # app.current_tenant setting. Cross-tenant jobs (retry sweep, API key
    # lookup) must run as a role with BYPASSRLS.
    if op.get_bind().dialect.name == 'postgresql':
        for table_name in TENANT_TABLES:
            op.execute(f'ALTER TABLE {table_name} ENABLE ROW LEVEL SECURITY')
            op.execute(
                f"CREATE POLICY tenant_isolation ON {table_name} "
                f"USING (tenant_id = NULLIF(current_setting('app.current_tenant', true), '')::integer) "
                f"WITH CHECK (tenant_id = NULLIF(current_setting('app.current_tenant', true), '')::integer)"
            )


def downgrade():
    if op.get_bind().dialect.name == 'postgresql':
        for table_name in TENANT_TABLES:
            op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON {table_name}')
            op.execute(f'ALTER TABLE {table_name} DISABLE ROW LEVEL SECURITY')

    op.drop_table('security_events')
    op.drop_table('api_keys')
    op.drop_table('integrations')
    op.drop_table('webhook_deliveries')
    op.drop_table('webhook_endpoints')
    op.drop_table('order_lines')
    op.drop_table('orders')
    op.drop_table('item_variants')
    op.drop_table('items')
    op.drop_table('currency_transactions')
    op.drop_table('balances')
    op.drop_table('organization_members')
    op.drop_table('organizations')
