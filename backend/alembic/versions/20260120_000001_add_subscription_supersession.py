"""Add Stripe creation time and superseded ids to subscriptions

Revision ID: 20260120_000001
Revises: 20260112_000001
Create Date: 2026-01-20 09:00:00.000000

Purpose:
    A plan switch reuses the user's subscription row for the new Stripe
    subscription. These columns let the webhook engine recognise late
    deliveries for the subscription that was replaced, so they cannot point
    the row back at it.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260120_000001'
down_revision = '20260112_000001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('subscriptions', sa.Column('stripe_created_at', sa.DateTime(timezone=True), nullable=True))
    op.add_column('subscriptions', sa.Column('superseded_stripe_ids', sa.JSON(), nullable=True))


def downgrade() -> None:
    op.drop_column('subscriptions', 'superseded_stripe_ids')
    op.drop_column('subscriptions', 'stripe_created_at')
