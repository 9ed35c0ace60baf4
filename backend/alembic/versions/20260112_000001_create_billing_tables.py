"""Create billing tables (users, businesses, subscriptions, ledger, webhook journal)

Revision ID: 20260112_000001
Revises:
Create Date: 2026-01-12 10:00:00.000000

WHAT:
    Creates the billing schema:
    - subscriptions: Local mirror of Stripe subscriptions (unique stripe_id)
    - users: Account owners with denormalized plan, trial and grace dates
    - businesses / business_users: Storefronts and their members
    - stripe_transactions: Invoice ledger, unique per invoice id
    - stripe_webhook_events: One journal row per webhook delivery
    - system_logs: Structured audit trail

WHY:
    Entitlements are read from local state; Stripe is only consulted when a
    webhook arrives.

REFERENCES:
    - waveorder/models.py
    - waveorder/services/billing/
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260112_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enums
    # =========================================================================
    plan_enum = postgresql.ENUM("STARTER", "PRO", "BUSINESS", name="planenum", create_type=False)
    business_status_enum = postgresql.ENUM(
        "ACTIVE", "INACTIVE", "CANCELLED", "TRIAL_EXPIRED",
        name="businessstatusenum", create_type=False,
    )
    business_role_enum = postgresql.ENUM("OWNER", "MANAGER", "STAFF", name="businessroleenum", create_type=False)
    transaction_status_enum = postgresql.ENUM("paid", "failed", name="transactionstatusenum", create_type=False)
    log_severity_enum = postgresql.ENUM("info", "warning", "error", name="logseverityenum", create_type=False)

    for enum in (plan_enum, business_status_enum, business_role_enum, transaction_status_enum, log_severity_enum):
        enum.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # STEP 2: subscriptions
    # =========================================================================
    # WHAT: One row per Stripe subscription id, never hard-deleted
    # WHY: Created before users because users.subscription_id references it
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("stripe_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("price_id", sa.String(), nullable=True),
        sa.Column("plan", plan_enum, nullable=False, server_default="STARTER"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_stripe_id", "subscriptions", ["stripe_id"], unique=True)

    # =========================================================================
    # STEP 3: users, businesses, business_users
    # =========================================================================
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("plan", plan_enum, nullable=False, server_default="STARTER"),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"], unique=True)

    op.create_table(
        "businesses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("subscription_plan", plan_enum, nullable=False, server_default="STARTER"),
        sa.Column("subscription_status", business_status_enum, nullable=False, server_default="ACTIVE"),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )

    op.create_table(
        "business_users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", business_role_enum, nullable=False, server_default="OWNER"),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.UniqueConstraint("business_id", "user_id", name="uq_business_user"),
    )
    op.create_index("ix_business_users_business_id", "business_users", ["business_id"])
    op.create_index("ix_business_users_user_id", "business_users", ["user_id"])

    # =========================================================================
    # STEP 4: stripe_transactions (invoice ledger)
    # =========================================================================
    op.create_table(
        "stripe_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("stripe_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="invoice"),
        sa.Column("status", transaction_status_enum, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("plan", sa.String(), nullable=True),
        sa.Column("billing_type", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("stripe_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_stripe_transactions_stripe_id", "stripe_transactions", ["stripe_id"], unique=True)
    op.create_index("ix_stripe_transactions_stripe_customer_id", "stripe_transactions", ["stripe_customer_id"])
    op.create_index("ix_stripe_transactions_stripe_subscription_id", "stripe_transactions", ["stripe_subscription_id"])

    # =========================================================================
    # STEP 5: stripe_webhook_events (journal) and system_logs
    # =========================================================================
    # WHAT: Journal rows are append-only; redeliveries get their own rows
    op.create_table(
        "stripe_webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("stripe_object_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_stripe_webhook_events_event_id", "stripe_webhook_events", ["event_id"])
    op.create_index("ix_stripe_webhook_events_event_type", "stripe_webhook_events", ["event_type"])
    op.create_index("ix_stripe_webhook_events_stripe_object_id", "stripe_webhook_events", ["stripe_object_id"])

    op.create_table(
        "system_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("log_type", sa.String(), nullable=False),
        sa.Column("severity", log_severity_enum, nullable=False, server_default="info"),
        sa.Column("endpoint", sa.String(), nullable=True),
        sa.Column("method", sa.String(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_system_logs_log_type", "system_logs", ["log_type"])


def downgrade() -> None:
    op.drop_table("system_logs")
    op.drop_table("stripe_webhook_events")
    op.drop_table("stripe_transactions")
    op.drop_table("business_users")
    op.drop_table("businesses")
    op.drop_table("users")
    op.drop_table("subscriptions")

    op.execute("DROP TYPE IF EXISTS logseverityenum;")
    op.execute("DROP TYPE IF EXISTS transactionstatusenum;")
    op.execute("DROP TYPE IF EXISTS businessroleenum;")
    op.execute("DROP TYPE IF EXISTS businessstatusenum;")
    op.execute("DROP TYPE IF EXISTS planenum;")
