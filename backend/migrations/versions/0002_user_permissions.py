"""user_permissions: page access and visible columns per role

Revision ID: 0002_user_permissions
Revises: 0001_crud_permissions
Create Date: 2026-10-19
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0002_user_permissions'
down_revision = '0001_crud_permissions'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('user_permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('role', sa.String(length=64), nullable=False),
        sa.Column('page', sa.String(length=64), nullable=False),
        sa.Column('columns', sa.JSON(), nullable=False),
        sa.Column('can_access', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('role', 'page', name='uq_user_permission'),
    )
    op.create_index('ix_user_permissions_role', 'user_permissions', ['role'])


def downgrade():
    op.drop_index('ix_user_permissions_role', table_name='user_permissions')
    op.drop_table('user_permissions')
