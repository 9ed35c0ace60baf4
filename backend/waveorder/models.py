"""SQLAlchemy ORM models and enums.

This module defines the billing slice of the WaveOrder schema: users and the
businesses they own, the local mirror of Stripe subscriptions, the invoice
ledger, the webhook event journal and the system log.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class PlanEnum(str, enum.Enum):
    starter = "STARTER"
    pro = "PRO"
    business = "BUSINESS"


class BusinessStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    inactive = "INACTIVE"
    cancelled = "CANCELLED"
    trial_expired = "TRIAL_EXPIRED"


class BusinessRoleEnum(str, enum.Enum):
    owner = "OWNER"
    manager = "MANAGER"
    staff = "STAFF"


class TransactionStatusEnum(str, enum.Enum):
    paid = "paid"
    failed = "failed"


class LogSeverityEnum(str, enum.Enum):
    info = "info"
    warning = "warning"
    error = "error"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# Accounts ------------------------------------------------------

class User(Base):
    """A person who owns or staffs one or more businesses.

    `plan` is a denormalized copy of the linked subscription's plan (STARTER
    when there is none). `trial_ends_at` and `grace_ends_at` are only set while
    the user is on trial or inside the post-trial grace window.
    """
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)

    # Billing
    stripe_customer_id = Column(String, unique=True, index=True, nullable=True)
    plan = Column(
        Enum(PlanEnum, values_callable=_enum_values),
        nullable=False,
        default=PlanEnum.starter,
    )
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    grace_ends_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscription = relationship("Subscription", back_populates="users")
    memberships = relationship("BusinessUser", back_populates="user", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.email} ({self.plan.value if self.plan else 'no plan'})"


class Business(Base):
    """A storefront. Mirrors its owners' plan and subscription status."""
    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)

    subscription_plan = Column(
        Enum(PlanEnum, values_callable=_enum_values),
        nullable=False,
        default=PlanEnum.starter,
    )
    subscription_status = Column(
        Enum(BusinessStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=BusinessStatusEnum.active,
    )
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    grace_ends_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("BusinessUser", back_populates="business", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class BusinessUser(Base):
    """Join between users and businesses."""
    __tablename__ = "business_users"
    __table_args__ = (
        UniqueConstraint("business_id", "user_id", name="uq_business_user"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(
        Enum(BusinessRoleEnum, values_callable=_enum_values),
        nullable=False,
        default=BusinessRoleEnum.owner,
    )
    created_at = Column(DateTime, default=datetime.utcnow)

    business = relationship("Business", back_populates="members")
    user = relationship("User", back_populates="memberships")


# Billing -------------------------------------------------------

class Subscription(Base):
    """Local mirror of a Stripe subscription.

    WHAT: One row per Stripe subscription id, never hard-deleted
    WHY: Local state is the source of truth for entitlements; Stripe is only
         consulted when a webhook arrives

    `status` holds the raw Stripe status (trialing, active, past_due, paused,
    canceled, ...). When a user switches plans through a new checkout the row
    is reused and `stripe_id` is reassigned.
    """
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stripe_id = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, nullable=False)
    price_id = Column(String, nullable=True)
    plan = Column(
        Enum(PlanEnum, values_callable=_enum_values),
        nullable=False,
        default=PlanEnum.starter,
    )
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    # Stripe's `created` for the subscription currently in stripe_id
    stripe_created_at = Column(DateTime(timezone=True), nullable=True)
    # Stripe ids this row carried before a plan switch, oldest first
    superseded_stripe_ids = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("User", back_populates="subscription")

    def __str__(self):
        return f"{self.stripe_id} ({self.plan.value if self.plan else '?'}, {self.status})"


class StripeTransaction(Base):
    """Billing-history row for one Stripe invoice of this product line.

    Append-only and deduplicated by invoice id. Not consulted for entitlements.
    """
    __tablename__ = "stripe_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stripe_id = Column(String, unique=True, index=True, nullable=False)
    type = Column(String, nullable=False, default="invoice")
    status = Column(
        Enum(TransactionStatusEnum, values_callable=_enum_values),
        nullable=False,
    )
    amount = Column(Integer, nullable=False, default=0)  # cents
    currency = Column(String, nullable=False, default="usd")

    stripe_customer_id = Column(String, index=True, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    plan = Column(String, nullable=True)
    billing_type = Column(String, nullable=True)  # monthly | yearly | free
    stripe_subscription_id = Column(String, index=True, nullable=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    stripe_created_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class StripeWebhookEvent(Base):
    """Journal entry for one inbound Stripe webhook delivery.

    WHAT: Written before processing with processed=False, then flipped to
          processed=True or given an error message
    WHY: Audit trail of every delivery; redeliveries get their own rows
    """
    __tablename__ = "stripe_webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String, index=True, nullable=True)
    event_type = Column(String, index=True, nullable=False)
    stripe_object_id = Column(String, index=True, nullable=True)
    payload_json = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)


class SystemLog(Base):
    """Structured audit trail row (subscription changes, handler failures)."""
    __tablename__ = "system_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    log_type = Column(String, index=True, nullable=False)
    severity = Column(
        Enum(LogSeverityEnum, values_callable=_enum_values),
        nullable=False,
        default=LogSeverityEnum.info,
    )
    endpoint = Column(String, nullable=True)
    method = Column(String, nullable=True)
    status_code = Column(Integer, nullable=True)
    url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
