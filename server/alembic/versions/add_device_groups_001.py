"""add_device_groups_and_event_tables

Revision ID: dg0001a1b2c3
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'dg0001a1b2c3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'accounts' not in existing_tables:
        op.create_table('accounts',
            sa.Column('account_id', sa.String(length=32), nullable=False),
            sa.Column('description', sa.String(), nullable=False, server_default=''),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('retained_event_age', sa.BigInteger(), nullable=False, server_default='0'),
            sa.Column('allow_notify', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('device_title', sa.String(), nullable=False, server_default='Device'),
            sa.Column('device_title_plural', sa.String(), nullable=False, server_default='Devices'),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('account_id')
        )

    if 'devices' not in existing_tables:
        op.create_table('devices',
            sa.Column('account_id', sa.String(length=32), nullable=False),
            sa.Column('device_id', sa.String(length=32), nullable=False),
            sa.Column('description', sa.String(), nullable=False, server_default=''),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('account_id', 'device_id')
        )
        op.create_index('idx_device_account_active', 'devices', ['account_id', 'is_active'], unique=False)

    if 'device_groups' not in existing_tables:
        op.create_table('device_groups',
            sa.Column('account_id', sa.String(length=32), nullable=False),
            sa.Column('group_id', sa.String(length=32), nullable=False),
            sa.Column('display_name', sa.String(), nullable=False, server_default=''),
            sa.Column('description', sa.String(), nullable=False, server_default=''),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('allow_notify', sa.Boolean(), nullable=True),
            sa.Column('notify_email', sa.String(), nullable=True),
            sa.Column('work_order_id', sa.String(length=512), nullable=True),
            sa.Column('last_update_time', sa.DateTime(), nullable=False),
            sa.Column('creation_time', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('account_id', 'group_id')
        )

    if 'device_list' not in existing_tables:
        op.create_table('device_list',
            sa.Column('account_id', sa.String(length=32), nullable=False),
            sa.Column('group_id', sa.String(length=32), nullable=False),
            sa.Column('device_id', sa.String(length=32), nullable=False),
            sa.PrimaryKeyConstraint('account_id', 'group_id', 'device_id')
        )
        op.create_index('idx_device_list_device', 'device_list', ['account_id', 'device_id'], unique=False)

    if 'device_ulist' not in existing_tables:
        op.create_table('device_ulist',
            sa.Column('account_id', sa.String(length=32), nullable=False),
            sa.Column('group_id', sa.String(length=32), nullable=False),
            sa.Column('device_account_id', sa.String(length=32), nullable=False),
            sa.Column('device_id', sa.String(length=32), nullable=False),
            sa.PrimaryKeyConstraint('account_id', 'group_id', 'device_account_id', 'device_id')
        )
        op.create_index('idx_device_ulist_device', 'device_ulist', ['device_account_id', 'device_id'], unique=False)

    if 'event_data' not in existing_tables:
        op.create_table('event_data',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('account_id', sa.String(length=32), nullable=False),
            sa.Column('device_id', sa.String(length=32), nullable=False),
            sa.Column('timestamp', sa.BigInteger(), nullable=False),
            sa.Column('status_code', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('latitude', sa.Float(), nullable=True),
            sa.Column('longitude', sa.Float(), nullable=True),
            sa.Column('speed_kph', sa.Float(), nullable=True),
            sa.Column('address', sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_event_device_time', 'event_data', ['account_id', 'device_id', 'timestamp'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_event_device_time', table_name='event_data')
    op.drop_table('event_data')
    op.drop_index('idx_device_ulist_device', table_name='device_ulist')
    op.drop_table('device_ulist')
    op.drop_index('idx_device_list_device', table_name='device_list')
    op.drop_table('device_list')
    op.drop_table('device_groups')
    op.drop_index('idx_device_account_active', table_name='devices')
    op.drop_table('devices')
    op.drop_table('accounts')
