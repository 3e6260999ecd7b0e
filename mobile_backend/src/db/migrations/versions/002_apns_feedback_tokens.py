"""Add APNS feedback tokens

Revision ID: 002_apns_feedback_tokens
Revises: 001_initial_schema
Create Date: 2026-10-17

Creates:
- apns_feedback_tokens: device tokens rejected by APNS, drained by
  feedback polling
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002_apns_feedback_tokens'
down_revision = '001_initial_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'apns_feedback_tokens',
        sa.Column('device_token', sa.String(length=200), nullable=False),
        sa.Column('reported_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('device_token')
    )


def downgrade() -> None:
    op.drop_table('apns_feedback_tokens')
