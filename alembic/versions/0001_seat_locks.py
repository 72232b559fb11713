"""seat locks

Revision ID: 0001_seat_locks
Revises: 
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_seat_locks'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('seat_locks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('trip_id', sa.String(length=64), nullable=False),
        sa.Column('seat_code', sa.String(length=32), nullable=False),
        sa.Column('owner_kind', sa.String(length=16), nullable=False),
        sa.Column('owner_id', sa.String(length=128), nullable=False),
        sa.Column('session_id', sa.String(length=128), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('trip_id', 'seat_code', name='uq_seat_lock_trip_seat'),
    )
    op.create_index('ix_seat_locks_expires_at', 'seat_locks', ['expires_at'], unique=False)
    op.create_index('ix_seat_lock_trip_owner', 'seat_locks', ['trip_id', 'owner_kind', 'owner_id'], unique=False)


def downgrade():
    op.drop_index('ix_seat_lock_trip_owner', table_name='seat_locks')
    op.drop_index('ix_seat_locks_expires_at', table_name='seat_locks')
    op.drop_table('seat_locks')
