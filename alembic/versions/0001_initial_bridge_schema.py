"""initial bridge schema

Revision ID: 0001_initial_bridge_schema
Revises:
Create Date: 2026-10-17 09:12:41.318502

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_bridge_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('subdomain', sa.String(length=100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_tenants_id', 'tenants', ['id'])
    op.create_index('ix_tenants_subdomain', 'tenants', ['subdomain'], unique=True)

    op.create_table(
        'contacts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('canonical_address', sa.String(length=20), nullable=True),
        sa.Column('canonical_protocol_id', sa.String(length=100), nullable=True),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('avatar_ref', sa.String(length=1024), nullable=True),
        sa.Column('reply_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_contacts_id', 'contacts', ['id'])
    op.create_index('ix_contacts_tenant_id', 'contacts', ['tenant_id'])
    op.create_index('ix_contacts_canonical_address', 'contacts', ['canonical_address'])
    op.create_index('ix_contacts_canonical_protocol_id', 'contacts', ['canonical_protocol_id'])
    op.create_index('ix_contacts_status', 'contacts', ['status'])
    op.create_index('ix_contacts_updated_at', 'contacts', ['updated_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id'), nullable=False),
        sa.Column('direction', sa.String(length=20), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('delivery_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_messages_id', 'messages', ['id'])
    op.create_index('ix_messages_tenant_id', 'messages', ['tenant_id'])
    op.create_index('ix_messages_contact_id', 'messages', ['contact_id'])
    op.create_index('ix_messages_timestamp', 'messages', ['timestamp'])
    op.create_index('ix_messages_external_id', 'messages', ['external_id'])

    op.create_table(
        'tenant_bot_configs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('auto_reply_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('bot_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('min_delay_seconds', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('max_delay_seconds', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('view_delay_min_seconds', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('view_delay_max_seconds', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('typing_indicator_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('max_replies_per_contact', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('keyword_replies', sa.JSON(), nullable=True),
        sa.Column('saved_audios', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_tenant_bot_configs_id', 'tenant_bot_configs', ['id'])
    op.create_index('ix_tenant_bot_configs_tenant_id', 'tenant_bot_configs', ['tenant_id'], unique=True)

    op.create_table(
        'session_credentials',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('key_name', sa.String(length=255), nullable=False),
        sa.Column('data', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'key_name', name='uq_session_credentials_tenant_key'),
    )
    op.create_index('ix_session_credentials_id', 'session_credentials', ['id'])
    op.create_index('ix_session_credentials_tenant_id', 'session_credentials', ['tenant_id'])

    op.create_table(
        'activity_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_activity_logs_id', 'activity_logs', ['id'])
    op.create_index('ix_activity_logs_tenant_id', 'activity_logs', ['tenant_id'])
    op.create_index('ix_activity_logs_action', 'activity_logs', ['action'])
    op.create_index('ix_activity_logs_created_at', 'activity_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('activity_logs')
    op.drop_table('session_credentials')
    op.drop_table('tenant_bot_configs')
    op.drop_table('messages')
    op.drop_table('contacts')
    op.drop_table('tenants')
