"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create pool_accounts and api_keys."""

    # ========================================================================
    # Create pool_accounts table
    # ========================================================================
    op.create_table(
        'pool_accounts',
        sa.Column('account_id', sa.String(64), primary_key=True),
        sa.Column('owner_user_id', sa.String(255), nullable=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('account_name', sa.String(255), nullable=False),
        sa.Column('is_shared', sa.Boolean(), nullable=False, server_default=sa.text('false')),

        # Credentials (epoch milliseconds for expires_at)
        sa.Column('access_token', sa.Text(), nullable=False, server_default=''),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.BigInteger(), nullable=True),
        sa.Column('client_id', sa.String(255), nullable=True),
        sa.Column('client_secret', sa.Text(), nullable=True),
        sa.Column('region', sa.String(32), nullable=True),
        sa.Column('profile_arn', sa.String(512), nullable=True),
        sa.Column('resource_url', sa.String(255), nullable=True),

        # State
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('need_refresh', sa.Boolean(), nullable=False, server_default=sa.text('false')),

        # Provider identity
        sa.Column('remote_user_id', sa.String(255), nullable=True),
        sa.Column('machine_id', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),

        # Usage snapshot
        sa.Column('subscription', sa.String(100), nullable=False, server_default='unknown'),
        sa.Column('current_usage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('usage_limit', sa.Float(), nullable=False, server_default='0'),
        sa.Column('reset_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('free_trial_status', sa.Boolean(), nullable=True),
        sa.Column('free_trial_usage', sa.Float(), nullable=True),
        sa.Column('free_trial_limit', sa.Float(), nullable=True),
        sa.Column('free_trial_expiry', sa.DateTime(timezone=True), nullable=True),
        sa.Column('bonus_usage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('bonus_limit', sa.Float(), nullable=False, server_default='0'),
        sa.Column('bonus_available', sa.Float(), nullable=False, server_default='0'),
        sa.Column('bonus_details', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),

        # Timestamps
        sa.Column('last_refresh', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("provider IN ('kiro_idc', 'kiro_social', 'qwen')", name='ck_pool_accounts_provider'),
        sa.CheckConstraint("status IN ('active', 'disabled')", name='ck_pool_accounts_status'),
    )

    # Identity uniqueness per provider (only where the identity is known)
    op.create_index(
        'uq_pool_accounts_provider_remote_user', 'pool_accounts', ['provider', 'remote_user_id'],
        unique=True, postgresql_where=sa.text('remote_user_id IS NOT NULL'),
    )
    op.create_index(
        'uq_pool_accounts_provider_machine', 'pool_accounts', ['provider', 'machine_id'],
        unique=True, postgresql_where=sa.text('machine_id IS NOT NULL'),
    )
    op.create_index('idx_pool_accounts_owner', 'pool_accounts', ['owner_user_id'])
    op.create_index('idx_pool_accounts_selection', 'pool_accounts', ['provider', 'is_shared', 'status'])

    # ========================================================================
    # Create api_keys table
    # ========================================================================
    op.create_table(
        'api_keys',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('key_hash', sa.Text(), nullable=False),
        sa.Column('key_prefix', sa.String(20), nullable=False, unique=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),

        sa.CheckConstraint("status IN ('active', 'revoked')", name='ck_api_keys_status'),
    )

    op.create_index(
        'idx_api_keys_prefix_active', 'api_keys', ['key_prefix'],
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index('idx_api_keys_user_id', 'api_keys', ['user_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('api_keys')
    op.drop_table('pool_accounts')
