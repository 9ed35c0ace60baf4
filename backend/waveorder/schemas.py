"""Pydantic schemas for the billing API.

WHAT:
    - Typed Stripe webhook payloads, decoded once after signature verification
    - Response models for the webhook and health endpoints

WHY:
    Stripe payload shapes vary by event type and API version. Decoding them
    into explicit models here keeps field fallbacks (expanded objects, period
    bounds moved onto subscription items, invoice parent details) in one place
    instead of scattered `.get()` chains in the handlers.

REFERENCES:
    - https://docs.stripe.com/api/events/object
    - https://docs.stripe.com/api/subscriptions/object
    - https://docs.stripe.com/api/invoices/object
    - waveorder/services/billing/event_authenticator.py (decode_event)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe Unix timestamp (seconds) to an aware UTC datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _object_id(value: Any) -> Any:
    """Collapse an expanded Stripe object to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


# =============================================================================
# EVENT TYPES
# =============================================================================

class StripeEventType(str, Enum):
    checkout_session_completed = "checkout.session.completed"
    subscription_created = "customer.subscription.created"
    subscription_updated = "customer.subscription.updated"
    subscription_deleted = "customer.subscription.deleted"
    subscription_paused = "customer.subscription.paused"
    subscription_resumed = "customer.subscription.resumed"
    subscription_trial_will_end = "customer.subscription.trial_will_end"
    invoice_payment_succeeded = "invoice.payment_succeeded"
    invoice_payment_failed = "invoice.payment_failed"


HANDLED_EVENT_TYPES = frozenset(e.value for e in StripeEventType)


# =============================================================================
# STRIPE OBJECTS
# =============================================================================

class StripePrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    unit_amount: Optional[int] = None
    currency: Optional[str] = None


class StripeSubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    price: StripePrice
    # Newer API versions report period bounds per item
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class StripeList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(BaseModel):
    """The subset of a Stripe subscription the reconciler reads."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: str
    status: str
    items: StripeList = Field(default_factory=StripeList)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    trial_end: Optional[int] = None
    created: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_customer(cls, value: Any) -> Any:
        return _object_id(value)

    @property
    def price_id(self) -> Optional[str]:
        if not self.items.data:
            return None
        return self.items.data[0].price.id

    @property
    def period_start(self) -> Optional[datetime]:
        if self.current_period_start is not None:
            return to_datetime(self.current_period_start)
        if self.items.data:
            return to_datetime(self.items.data[0].current_period_start)
        return None

    @property
    def period_end(self) -> Optional[datetime]:
        if self.current_period_end is not None:
            return to_datetime(self.current_period_end)
        if self.items.data:
            return to_datetime(self.items.data[0].current_period_end)
        return None

    @property
    def trial_ends_at(self) -> Optional[datetime]:
        return to_datetime(self.trial_end)

    @property
    def created_at(self) -> Optional[datetime]:
        return to_datetime(self.created)

    @property
    def canceled_at_datetime(self) -> Optional[datetime]:
        return to_datetime(self.canceled_at)


class StripeInvoiceLinePrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: Optional[StripePrice] = None

    @model_validator(mode="before")
    @classmethod
    def price_from_pricing_details(cls, data: Any) -> Any:
        # 2025 API versions replace line.price with line.pricing.price_details.price
        if isinstance(data, dict) and not data.get("price"):
            details = (data.get("pricing") or {}).get("price_details") or {}
            if details.get("price"):
                return {**data, "price": {"id": _object_id(details["price"])}}
        return data


class StripeInvoiceLines(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[StripeInvoiceLinePrice] = Field(default_factory=list)


class StripeInvoice(BaseModel):
    """The subset of a Stripe invoice the ledger and dunning emails read."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    billing_reason: Optional[str] = None
    status: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    description: Optional[str] = None
    created: Optional[int] = None
    next_payment_attempt: Optional[int] = None
    lines: StripeInvoiceLines = Field(default_factory=StripeInvoiceLines)
    subscription_metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_customer(cls, value: Any) -> Any:
        return _object_id(value)

    @field_validator("subscription", mode="before")
    @classmethod
    def collapse_subscription(cls, value: Any) -> Any:
        return _object_id(value)

    @model_validator(mode="before")
    @classmethod
    def lift_subscription_details(cls, data: Any) -> Any:
        # 2025 API versions move the subscription under parent.subscription_details
        if not isinstance(data, dict):
            return data
        details = (data.get("parent") or {}).get("subscription_details") or data.get("subscription_details") or {}
        merged = dict(data)
        if not merged.get("subscription") and details.get("subscription"):
            merged["subscription"] = details["subscription"]
        if details.get("metadata"):
            merged["subscription_metadata"] = details["metadata"]
        return merged

    @property
    def price_id(self) -> Optional[str]:
        for line in self.lines.data:
            if line.price is not None:
                return line.price.id
        return None


class StripeCheckoutSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    mode: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_customer(cls, value: Any) -> Any:
        return _object_id(value)

    @field_validator("subscription", mode="before")
    @classmethod
    def collapse_subscription(cls, value: Any) -> Any:
        return _object_id(value)


# =============================================================================
# EVENT ENVELOPES (tagged union on `type`)
# =============================================================================

class _SubscriptionData(BaseModel):
    object: StripeSubscription


class _InvoiceData(BaseModel):
    object: StripeInvoice


class _CheckoutSessionData(BaseModel):
    object: StripeCheckoutSession


class SubscriptionEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.paused",
        "customer.subscription.resumed",
        "customer.subscription.trial_will_end",
    ]
    data: _SubscriptionData

    @property
    def object(self) -> StripeSubscription:
        return self.data.object


class InvoiceEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: Literal["invoice.payment_succeeded", "invoice.payment_failed"]
    data: _InvoiceData

    @property
    def object(self) -> StripeInvoice:
        return self.data.object


class CheckoutSessionEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: Literal["checkout.session.completed"]
    data: _CheckoutSessionData

    @property
    def object(self) -> StripeCheckoutSession:
        return self.data.object


class UnhandledEvent(BaseModel):
    """Any event type this service does not subscribe to."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    object_id: Optional[str] = None


StripeEvent = Annotated[
    Union[SubscriptionEvent, InvoiceEvent, CheckoutSessionEvent],
    Field(discriminator="type"),
]


# =============================================================================
# RESPONSES
# =============================================================================

class WebhookResponse(BaseModel):
    """Standard webhook response.

    WHAT: Acknowledges webhook receipt
    WHY: Stripe treats any 2xx as delivered; anything else is redelivered
    """

    received: bool = Field(default=True, description="Webhook received successfully")
    event_type: Optional[str] = Field(None, description="Event type processed")
    action: Optional[str] = Field(None, description="Action taken (processed, stale, recorded, ignored, not_found)")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
    version: Optional[str] = Field(None, description="Backend version")
