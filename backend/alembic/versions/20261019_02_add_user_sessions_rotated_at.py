"""add user_sessions.rotated_at

Revision ID: 20261019_02
Revises: 20261019_01
Create Date: 2026-10-19 12:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '20261019_02'
down_revision: Union[str, None] = '20261019_01'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('user_sessions', sa.Column('rotated_at', sa.DateTime(), nullable=True))
    # Rotation used to restart created_at, so it is the best estimate available
    op.execute("UPDATE user_sessions SET rotated_at = created_at")


def downgrade() -> None:
    with op.batch_alter_table('user_sessions') as batch_op:
        batch_op.drop_column('rotated_at')
