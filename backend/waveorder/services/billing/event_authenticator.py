"""Stripe webhook authentication and decoding.

WHAT:
    - Verifies the Stripe-Signature header over the raw request body
    - Decodes the verified JSON into the typed event union from schemas

WHY:
    Nothing downstream may run (not even journaling) for a request whose
    signature does not check out. The secret and tolerance are constructor
    arguments so tests can sign payloads with a known secret.

REFERENCES:
    - https://docs.stripe.com/webhooks#verify-events
    - waveorder/routers/stripe_webhooks.py (caller)
"""

import json
import logging
from typing import Any, Dict, Optional, Union

import stripe
from pydantic import TypeAdapter

from ...schemas import HANDLED_EVENT_TYPES, StripeEvent, UnhandledEvent

logger = logging.getLogger(__name__)

_event_adapter = TypeAdapter(StripeEvent)


class WebhookAuthenticationError(Exception):
    """Raised when a delivery is unsigned, tampered with or too old."""


class EventAuthenticator:
    """Checks Stripe webhook signatures against a shared secret.

    Usage:
        authenticator = EventAuthenticator(secret="whsec_...", tolerance=300)
        payload = authenticator.verify(body, request.headers.get("stripe-signature"))
        event = decode_event(payload)
    """

    def __init__(self, secret: str, tolerance: int = 300):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Return the parsed JSON body once the signature is verified.

        Raises:
            WebhookAuthenticationError: missing header, bad signature, stale
                timestamp or a body that is not JSON
        """
        if not signature:
            raise WebhookAuthenticationError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(body, signature, self.secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookAuthenticationError(str(e)) from e
        except ValueError as e:
            raise WebhookAuthenticationError(f"Invalid payload: {e}") from e

        # Use the raw JSON, not the StripeObject, so the journal stores plain data
        return json.loads(body)


def decode_event(payload: Dict[str, Any]) -> Union[StripeEvent, UnhandledEvent]:
    """Decode a verified payload into its typed event.

    Event types this service does not handle decode to UnhandledEvent.

    Raises:
        pydantic.ValidationError: a handled event type with a malformed object
    """
    event_type = payload.get("type")
    if event_type not in HANDLED_EVENT_TYPES:
        data_object = (payload.get("data") or {}).get("object") or {}
        return UnhandledEvent(
            id=payload.get("id") or "",
            type=event_type or "unknown",
            object_id=data_object.get("id"),
        )
    return _event_adapter.validate_python(payload)
