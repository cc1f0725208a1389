from alembic import op
import sqlalchemy as sa

revision = "20250301090000"
down_revision = None

NOW = sa.text("(now() at time zone 'utc')")

def upgrade():
    op.create_table(
        'checkout_sessions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=64), index=True, nullable=True),
        sa.Column('anonymous_id', sa.String(length=255), nullable=True),
        sa.Column('guest_email', sa.String(length=255), nullable=True),
        sa.Column('guest_phone', sa.String(length=32), nullable=True),
        sa.Column('cart_snapshot', sa.JSON(), nullable=False),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        sa.Column('totals', sa.JSON(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('promo_codes', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='in_progress'),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True, unique=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('order_number', sa.String(length=50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_checkout_sessions_status_expires', 'checkout_sessions', ['status', 'expires_at'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_number', sa.String(length=50), nullable=False, unique=True),
        sa.Column('user_id', sa.String(length=64), index=True, nullable=True),
        sa.Column('guest_email', sa.String(length=255), nullable=True),
        sa.Column('guest_phone', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('subtotal_cents', sa.BigInteger(), nullable=False),
        sa.Column('tax_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shipping_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.BigInteger(), nullable=False),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        sa.Column('checkout_session_id', sa.String(length=36), index=True, nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('total_cents >= 0', name='ck_orders_total_non_negative'),
    )

    op.create_table(
        'order_line_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), index=True, nullable=False),
        sa.Column('merchant_id', sa.String(length=64), index=True, nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('variant_id', sa.String(length=64), nullable=True),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=32), index=True, nullable=False, server_default='pending'),
        sa.Column('title_snapshot', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('sku_snapshot', sa.String(length=100), nullable=True),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('line_total_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('fulfillment_data', sa.JSON(), nullable=False),
        sa.Column('status_history', sa.JSON(), nullable=False),
        sa.Column('last_status_change', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW),
    )

    op.create_table(
        'order_status_transitions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), index=True, nullable=False),
        sa.Column('line_item_id', sa.Integer(), index=True, nullable=False),
        sa.Column('from_status', sa.String(length=32), nullable=True),
        sa.Column('to_status', sa.String(length=32), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
    )

    op.create_table(
        'order_outbox',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('aggregate_id', sa.String(length=64), nullable=False),
        sa.Column('aggregate_kind', sa.String(length=32), nullable=False),
        sa.Column('event_type', sa.String(length=100), index=True, nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_history', sa.JSON(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True, unique=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('latency_ms', sa.BigInteger(), nullable=True),
    )
    op.create_index('ix_order_outbox_status_created', 'order_outbox', ['status', 'created_at'])
    op.create_index('ix_order_outbox_aggregate', 'order_outbox', ['aggregate_kind', 'aggregate_id'])

    op.create_table(
        'order_outbox_dlq',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('original_event_id', sa.Integer(), index=True, nullable=False),
        sa.Column('aggregate_id', sa.String(length=64), nullable=False),
        sa.Column('aggregate_kind', sa.String(length=32), nullable=False),
        sa.Column('event_type', sa.String(length=100), index=True, nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=False),
        sa.Column('error_history', sa.JSON(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('first_failed_at', sa.DateTime(), nullable=False),
        sa.Column('moved_to_dlq_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('reprocessed', sa.Boolean(), index=True, nullable=False, server_default=sa.false()),
        sa.Column('reprocessed_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'order_number_allocations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('allocated_at', sa.DateTime(), nullable=False, server_default=NOW),
    )

    op.create_table(
        'variant_stock',
        sa.Column('variant_id', sa.String(length=64), primary_key=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('inventory_policy', sa.String(length=16), nullable=False, server_default='deny'),
        sa.Column('slot_capacity', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.CheckConstraint('quantity >= 0', name='ck_variant_stock_quantity_non_negative'),
    )

    op.create_table(
        'inventory_commits',
        sa.Column('checkout_session_id', sa.String(length=36), primary_key=True),
        sa.Column('committed_at', sa.DateTime(), nullable=False, server_default=NOW),
    )

def downgrade():
    op.drop_table('inventory_commits')
    op.drop_table('variant_stock')
    op.drop_table('order_number_allocations')
    op.drop_table('order_outbox_dlq')
    op.drop_index('ix_order_outbox_aggregate', table_name='order_outbox')
    op.drop_index('ix_order_outbox_status_created', table_name='order_outbox')
    op.drop_table('order_outbox')
    op.drop_table('order_status_transitions')
    op.drop_table('order_line_items')
    op.drop_table('orders')
    op.drop_index('ix_checkout_sessions_status_expires', table_name='checkout_sessions')
    op.drop_table('checkout_sessions')
