"""Initial auth schema: users, registrations, events

Learn: Uniqueness of email and username lives in named constraints
(users_email_key, users_username_key). The credential store reads the
constraint name from the IntegrityError to tell the caller which field
collided, so keep these names stable.

Revision ID: 3f1c2a9b7d10
Revises:
Create Date: 2026-10-19 09:12:41.503120
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9b7d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ─── Users ───────────────────────────────────────────
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('password_salt', sa.String(length=64), nullable=True),
        sa.Column('roles', sa.JSON(), nullable=False),
        sa.Column('email_confirmed', sa.DateTime(timezone=True), nullable=True),
        sa.Column('email_confirmation_token', sa.String(length=64), nullable=True),
        sa.Column('email_confirmation_token_expires', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_token', sa.String(length=1024), nullable=True),
        sa.Column('refresh_token_expires', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', name='users_email_key'),
        sa.UniqueConstraint('username', name='users_username_key'),
    )

    # ─── Registrations ───────────────────────────────────
    op.create_table(
        'registrations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('course_code', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_registrations_email', 'registrations', ['email'])

    # ─── Events ──────────────────────────────────────────
    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stream_id', sa.String(length=200), nullable=False),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_events_stream', 'events', ['stream_id', 'id'])
    op.create_index('idx_events_type', 'events', ['type'])


def downgrade() -> None:
    op.drop_index('idx_events_type', table_name='events')
    op.drop_index('idx_events_stream', table_name='events')
    op.drop_table('events')
    op.drop_index('idx_registrations_email', table_name='registrations')
    op.drop_table('registrations')
    op.drop_table('users')
