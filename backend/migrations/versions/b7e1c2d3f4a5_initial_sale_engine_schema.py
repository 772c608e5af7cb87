"""initial sale engine schema

Revision ID: b7e1c2d3f4a5
Revises:
Create Date: 2026-03-02 00:00:00.000000

Creates the complete resale POS schema:
- users, customers: actors and buyers referenced by sales
- sales, sale_items, sale_payments, warranties, trade_ins: the sale document
- stock_items: serialized units (one row per IMEI)
- audit_logs: append-only change history
- idempotency_keys: retried-write deduplication
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7e1c2d3f4a5'
down_revision = None
branch_labels = None
depends_on = None


def _enum_check(column, values, name):
    quoted = ", ".join(f"'{v}'" for v in values)
    return sa.CheckConstraint(f"{column} IN ({quoted})", name=name)


PAYMENT_METHODS = ('cash', 'transfer', 'card', 'mixed', 'trade_in')
CURRENCIES = ('ARS', 'USD')


def upgrade():
    # ============================================================================
    # users: staff known to the engine (auth lives upstream)
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='seller'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        _enum_check('role', ('seller', 'admin', 'owner'), 'ck_users_role'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # customers: looked up by phone at checkout (phone is not unique)
    # ============================================================================
    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customers_phone', 'customers', ['phone'])

    # ============================================================================
    # sales: document header with the receivable snapshot (ARS cents)
    # ============================================================================
    op.create_table(
        'sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='cash'),
        sa.Column('card_brand', sa.String(length=32), nullable=True),
        sa.Column('installments', sa.Integer(), nullable=True),
        sa.Column('surcharge_pct', sa.Numeric(7, 2), nullable=True),
        sa.Column('currency', sa.String(length=32), nullable=False, server_default='ARS'),
        sa.Column('fx_rate_used', sa.Numeric(14, 4), nullable=True),
        sa.Column('declared_total_cents', sa.Integer(), nullable=True),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_usd_cents', sa.Integer(), nullable=True),
        sa.Column('deposit_cents', sa.Integer(), nullable=True),
        sa.Column('paid_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('balance_due_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('receivable_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='completed'),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('cancelled_by_user_id', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_by_user_id', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.ForeignKeyConstraint(['seller_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['cancelled_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['updated_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("currency <> 'USD' OR fx_rate_used > 0", name='ck_sales_usd_requires_fx'),
        _enum_check('payment_method', PAYMENT_METHODS, 'ck_sales_payment_method'),
        _enum_check('currency', CURRENCIES, 'ck_sales_currency'),
        _enum_check('receivable_status', ('pending', 'partial', 'paid'), 'ck_sales_receivable_status'),
        _enum_check('status', ('completed', 'cancelled'), 'ck_sales_status'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sales_sale_date', 'sales', ['sale_date'])
    op.create_index('ix_sales_status_receivable', 'sales', ['status', 'receivable_status'])
    op.create_index('ix_sales_customer_id', 'sales', ['customer_id'])
    op.create_index('ix_sales_seller_id', 'sales', ['seller_id'])
    op.create_index('ix_sales_status', 'sales', ['status'])
    op.create_index('ix_sales_receivable_status', 'sales', ['receivable_status'])

    # ============================================================================
    # stock_items: serialized units
    # ============================================================================
    # INVARIANT: status = 'sold' <=> sale_id points to a non-cancelled sale
    op.create_table(
        'stock_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('brand', sa.String(length=64), nullable=False),
        sa.Column('model', sa.String(length=128), nullable=False),
        sa.Column('imei', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='available'),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('sold_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('purchase_cost_cents', sa.Integer(), nullable=True),
        sa.Column('warranty_days', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        _enum_check('status', ('available', 'reserved', 'sold', 'service_tech', 'drawer'), 'ck_stock_items_status'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_items_status_imei', 'stock_items', ['status', 'imei'])
    op.create_index('ix_stock_items_imei', 'stock_items', ['imei'])
    op.create_index('ix_stock_items_status', 'stock_items', ['status'])
    op.create_index('ix_stock_items_sale_id', 'stock_items', ['sale_id'])

    # ============================================================================
    # sale_items: one serialized unit per line
    # ============================================================================
    op.create_table(
        'sale_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('stock_item_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('unit_cost_cents', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['stock_item_id'], ['stock_items.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity = 1', name='ck_sale_items_serialized_qty'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sale_items_sale_stock', 'sale_items', ['sale_id', 'stock_item_id'])
    op.create_index('ix_sale_items_sale_id', 'sale_items', ['sale_id'])
    op.create_index('ix_sale_items_stock_item_id', 'sale_items', ['stock_item_id'])

    # ============================================================================
    # sale_payments: immutable money received
    # ============================================================================
    op.create_table(
        'sale_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False),
        sa.Column('currency', sa.String(length=32), nullable=False, server_default='ARS'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('card_brand', sa.String(length=32), nullable=True),
        sa.Column('installments', sa.Integer(), nullable=True),
        sa.Column('surcharge_pct', sa.Numeric(7, 2), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('amount_cents > 0', name='ck_sale_payments_amount_positive'),
        sa.CheckConstraint('installments IS NULL OR installments >= 1', name='ck_sale_payments_installments'),
        sa.CheckConstraint('surcharge_pct IS NULL OR surcharge_pct >= 0', name='ck_sale_payments_surcharge'),
        _enum_check('method', PAYMENT_METHODS, 'ck_sale_payments_method'),
        _enum_check('currency', CURRENCIES, 'ck_sale_payments_currency'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sale_payments_sale_created', 'sale_payments', ['sale_id', 'created_at'])
    op.create_index('ix_sale_payments_sale_id', 'sale_payments', ['sale_id'])
    op.create_index('ix_sale_payments_method', 'sale_payments', ['method'])
    op.create_index('ix_sale_payments_created_by_user_id', 'sale_payments', ['created_by_user_id'])
    op.create_index('ix_sale_payments_created_at', 'sale_payments', ['created_at'])

    # ============================================================================
    # warranties: one per sold unit, removed with the sale's items
    # ============================================================================
    op.create_table(
        'warranties',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('stock_item_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('warranty_days', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['stock_item_id'], ['stock_items.id'], ),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_warranties_sale_id', 'warranties', ['sale_id'])
    op.create_index('ix_warranties_stock_item_id', 'warranties', ['stock_item_id'])
    op.create_index('ix_warranties_customer_id', 'warranties', ['customer_id'])

    # ============================================================================
    # trade_ins: device accepted at checkout, valued in USD
    # ============================================================================
    op.create_table(
        'trade_ins',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('device', sa.JSON(), nullable=False),
        sa.Column('trade_value_usd_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fx_rate_used', sa.Numeric(14, 4), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='valued'),
        sa.Column('customer_name', sa.String(length=160), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_trade_ins_sale_id', 'trade_ins', ['sale_id'])

    # ============================================================================
    # audit_logs: append-only
    # ============================================================================
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('before_json', sa.JSON(), nullable=True),
        sa.Column('after_json', sa.JSON(), nullable=True),
        sa.Column('meta_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_audit_logs_entity_created', 'audit_logs', ['entity_type', 'entity_id', 'created_at'])
    op.create_index('ix_audit_logs_actor_created', 'audit_logs', ['actor_user_id', 'created_at'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])

    # ============================================================================
    # idempotency_keys: one row per (actor, route, client key)
    # ============================================================================
    op.create_table(
        'idempotency_keys',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=False),
        sa.Column('route', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('actor_user_id', 'route', 'key', name='uq_idempotency_actor_route_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_idempotency_keys_expires_at', 'idempotency_keys', ['expires_at'])


def downgrade():
    op.drop_table('idempotency_keys')
    op.drop_table('audit_logs')
    op.drop_table('trade_ins')
    op.drop_table('warranties')
    op.drop_table('sale_payments')
    op.drop_table('sale_items')
    op.drop_table('stock_items')
    op.drop_table('sales')
    op.drop_table('customers')
    op.drop_table('users')
