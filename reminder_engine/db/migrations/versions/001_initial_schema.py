"""Initial reminder engine schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates:
- push_subscriptions: Web Push endpoints, keys and lead-time preference
- scheduled_reminders: client reminder backlog with claim columns
- notified_reminders: idempotency ledger keyed by (event_id, lead_time_minutes)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the three reminder engine tables and their indexes."""
    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('endpoint', sa.String(length=1024), nullable=False),
        sa.Column('p256dh_key', sa.String(length=255), nullable=False),
        sa.Column('auth_key', sa.String(length=255), nullable=False),
        sa.Column('lead_time_minutes', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('device_name', sa.String(length=100), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('endpoint', name='uq_push_subscriptions_endpoint'),
        sa.CheckConstraint(
            'lead_time_minutes > 0 AND lead_time_minutes <= 1440',
            name='ck_push_subscriptions_lead_time',
        ),
    )

    op.create_table(
        'scheduled_reminders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('client_phone', sa.String(length=50), nullable=False),
        sa.Column('client_name', sa.String(length=200), nullable=False),
        sa.Column('service_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('appointment_time', sa.DateTime(), nullable=False),
        sa.Column('reminder_time', sa.DateTime(), nullable=False),
        sa.Column('sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_by', sa.String(length=64), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('skip_reason', sa.String(length=100), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_scheduled_reminders_event_id', 'scheduled_reminders', ['event_id'])
    op.create_index(
        'ix_scheduled_reminders_pending',
        'scheduled_reminders',
        ['sent', 'claimed_by', 'reminder_time'],
    )

    op.create_table(
        'notified_reminders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('lead_time_minutes', sa.Integer(), nullable=False),
        sa.Column('claimed_by', sa.String(length=64), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('notified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'event_id', 'lead_time_minutes',
            name='uq_notified_reminders_event_lead',
        ),
    )
    op.create_index('ix_notified_reminders_notified_at', 'notified_reminders', ['notified_at'])


def downgrade() -> None:
    """Drop all reminder engine tables."""
    op.drop_index('ix_notified_reminders_notified_at', table_name='notified_reminders')
    op.drop_table('notified_reminders')
    op.drop_index('ix_scheduled_reminders_pending', table_name='scheduled_reminders')
    op.drop_index('ix_scheduled_reminders_event_id', table_name='scheduled_reminders')
    op.drop_table('scheduled_reminders')
    op.drop_table('push_subscriptions')
