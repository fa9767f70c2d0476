"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table('users',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False, server_default=sa.text("''")),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()')),
        sa.Column('last_login', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('data_provider', sa.String(length=20), nullable=True),

        # Fyers credential group
        sa.Column('fyers_client_id', sa.String(length=255), nullable=True),
        sa.Column('fyers_secret_key', sa.String(length=255), nullable=True),
        sa.Column('fyers_auth_code', sa.String(length=2048), nullable=True),
        sa.Column('fyers_access_token', sa.String(length=2048), nullable=True),
        sa.Column('fyers_refresh_token', sa.String(length=2048), nullable=True),
        sa.Column('fyers_redirect_uri', sa.String(length=512), nullable=True),
        sa.Column('fyers_user_id', sa.String(length=100), nullable=True),
        sa.Column('fyers_auth_date', sa.TIMESTAMP(timezone=True), nullable=True),

        # Zerodha credential group
        sa.Column('zerodha_api_key', sa.String(length=255), nullable=True),
        sa.Column('zerodha_api_secret', sa.String(length=255), nullable=True),
        sa.Column('zerodha_request_token', sa.String(length=255), nullable=True),
        sa.Column('zerodha_access_token', sa.String(length=255), nullable=True),
        sa.Column('zerodha_public_token', sa.String(length=255), nullable=True),
        sa.Column('zerodha_user_id', sa.String(length=100), nullable=True),
        sa.Column('zerodha_auth_date', sa.TIMESTAMP(timezone=True), nullable=True),

        # Trading configuration
        sa.Column('trading_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('paper_trading_mode', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('max_daily_loss', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('max_position_size', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('stop_loss_percentage', sa.Float(), nullable=False, server_default=sa.text('0')),

        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("data_provider IN ('fyers', 'zerodha')", name='valid_data_provider'),
        sa.CheckConstraint('stop_loss_percentage BETWEEN 0 AND 100', name='valid_stop_loss_percentage'),
    )
    op.create_index('idx_users_email', 'users', ['email'])
    op.create_index('idx_users_pending', 'users', ['created_at'], postgresql_where=sa.text('is_verified = false'))
    op.create_unique_constraint(None, 'users', ['email'])


def downgrade() -> None:
    op.drop_index('idx_users_pending', table_name='users')
    op.drop_index('idx_users_email', table_name='users')
    op.drop_table('users')
