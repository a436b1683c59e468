"""create_payment_tables

Revision ID: 3b8e61c2d4a7
Revises:
Create Date: 2025-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b8e61c2d4a7'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create payment_transactions table
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.String(length=36), nullable=False, comment='交易ID (uuid4)'),
        sa.Column('order_id', sa.String(length=100), nullable=True, comment='订单ID'),
        sa.Column('method', sa.String(length=20), nullable=False, comment='支付方式: cash/card/qr/wallet'),
        sa.Column('provider', sa.String(length=50), nullable=True, comment='支付渠道，现金为空'),
        sa.Column('provider_transaction_id', sa.String(length=200), nullable=True, comment='渠道交易号（webhook 对账键）'),
        sa.Column('payment_method_id', sa.String(length=255), nullable=True, comment='渠道侧支付令牌（不含卡数据）'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='收款金额（含小费）'),
        sa.Column('tip_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='小费'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD', comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='交易状态: pending/succeeded/failed/refunded'),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False, comment='幂等键'),
        sa.Column('provider_response', sa.JSON(), nullable=True, comment='渠道响应快照'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payment_transactions')),
        comment='支付交易表，每次收款请求一行'
    )
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'], unique=False)
    op.create_index('ix_payment_transactions_provider', 'payment_transactions', ['provider'], unique=False)
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'], unique=False)
    op.create_index('ix_payment_transactions_idempotency_key', 'payment_transactions', ['idempotency_key'], unique=False)
    op.create_index('ix_payment_transactions_provider_ref', 'payment_transactions', ['provider', 'provider_transaction_id'], unique=False)
    op.create_index('ix_payment_transactions_provider_tx', 'payment_transactions', ['provider_transaction_id'], unique=False)
    op.create_index('ix_payment_transactions_created_at', 'payment_transactions', ['created_at'], unique=False)

    # Create refunds table
    op.create_table(
        'refunds',
        sa.Column('id', sa.String(length=36), nullable=False, comment='退款ID (uuid4)'),
        sa.Column('transaction_id', sa.String(length=36), nullable=False, comment='关联的交易ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='退款金额'),
        sa.Column('reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='退款状态: pending/processing/succeeded/failed'),
        sa.Column('provider_refund_id', sa.String(length=200), nullable=True, comment='渠道退款ID'),
        sa.Column('provider_response', sa.JSON(), nullable=True, comment='渠道响应快照'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='渠道处理完成时间'),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ondelete='CASCADE', name=op.f('fk_refunds_transaction_id_payment_transactions')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_refunds')),
        comment='退款表，归属于某一笔交易'
    )
    op.create_index('ix_refunds_transaction_id', 'refunds', ['transaction_id'], unique=False)
    op.create_index('ix_refunds_status', 'refunds', ['status'], unique=False)
    op.create_index('ix_refunds_provider_refund_id', 'refunds', ['provider_refund_id'], unique=False)
    op.create_index('ix_refunds_transaction_status', 'refunds', ['transaction_id', 'status'], unique=False)

    # Create processed_webhook_events table
    op.create_table(
        'processed_webhook_events',
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付渠道'),
        sa.Column('event_id', sa.String(length=255), nullable=False, comment='渠道事件ID'),
        sa.Column('event_type', sa.String(length=100), nullable=False, comment='事件类型'),
        sa.Column('status', sa.String(length=20), server_default='processed', nullable=False, comment='processed / parked'),
        sa.Column('kind', sa.String(length=50), nullable=True, comment='归一化事件类别'),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=True, comment='渠道交易ID'),
        sa.Column('provider_refund_id', sa.String(length=255), nullable=True, comment='渠道退款ID'),
        sa.Column('order_id', sa.String(length=255), nullable=True, comment='订单ID'),
        sa.Column('payload', sa.JSON(), nullable=True, comment='事件数据（仅 parked 时保存）'),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='接收时间'),
        sa.PrimaryKeyConstraint('provider', 'event_id', name=op.f('pk_processed_webhook_events')),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_provider_event'),
        comment='已接收的 webhook 事件（按渠道事件ID去重，parked 行等待重放）'
    )
    op.create_index('ix_webhook_events_parked_tx', 'processed_webhook_events', ['status', 'provider_transaction_id'], unique=False)
    op.create_index('ix_webhook_events_parked_refund', 'processed_webhook_events', ['status', 'provider_refund_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_webhook_events_parked_refund', table_name='processed_webhook_events')
    op.drop_index('ix_webhook_events_parked_tx', table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')

    op.drop_index('ix_refunds_transaction_status', table_name='refunds')
    op.drop_index('ix_refunds_provider_refund_id', table_name='refunds')
    op.drop_index('ix_refunds_status', table_name='refunds')
    op.drop_index('ix_refunds_transaction_id', table_name='refunds')
    op.drop_table('refunds')

    op.drop_index('ix_payment_transactions_created_at', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_provider_tx', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_provider_ref', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_idempotency_key', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_status', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_provider', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_order_id', table_name='payment_transactions')
    op.drop_table('payment_transactions')
