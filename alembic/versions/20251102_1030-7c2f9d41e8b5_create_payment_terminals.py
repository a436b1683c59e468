"""create_payment_terminals

Revision ID: 7c2f9d41e8b5
Revises: 3b8e61c2d4a7
Create Date: 2025-11-02 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7c2f9d41e8b5'
down_revision: Union[str, None] = '3b8e61c2d4a7'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'payment_terminals',
        sa.Column('terminal_id', sa.String(length=100), nullable=False, comment='终端ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付渠道'),
        sa.Column('device_type', sa.String(length=50), nullable=True, comment='设备类型'),
        sa.Column('location_id', sa.String(length=100), nullable=True, comment='门店/位置ID'),
        sa.Column('status', sa.String(length=20), server_default='active', nullable=False, comment='终端状态'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='首次配对时间'),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True, comment='最近一次配对时间'),
        sa.PrimaryKeyConstraint('terminal_id', name=op.f('pk_payment_terminals')),
        comment='已配对的收款终端'
    )


def downgrade() -> None:
    op.drop_table('payment_terminals')
