"""Add work order comments

Revision ID: b3d9e5f1c6a2
Revises: a1f4c2e8d7b3
Create Date: 2026-10-19T14:03:27.551930
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'b3d9e5f1c6a2'
down_revision: Union[str, None] = 'a1f4c2e8d7b3'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'work_order_comments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('work_order_id', sa.String(), sa.ForeignKey('work_orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('parent_id', sa.String(), sa.ForeignKey('work_order_comments.id'), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_comment_wo_created', 'work_order_comments', ['work_order_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('idx_comment_wo_created', table_name='work_order_comments')
    op.drop_table('work_order_comments')
