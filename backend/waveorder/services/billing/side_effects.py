"""Non-critical side effects of a subscription transition.

WHAT:
    - attempt(): runs one best-effort operation, logging instead of raising
    - SideEffectDispatcher: billing emails, billing portal links and the
      subscription-change audit row

WHY:
    By the time these run the state transition is committed. A Resend outage
    or a failed portal session must never turn a delivered webhook into a 500
    (Stripe would redeliver and the user would get duplicate emails).

REFERENCES:
    - waveorder/services/notification_service.py
    - waveorder/telemetry/system_log.py
"""

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ...models import LogSeverityEnum, PlanEnum, User
from ...telemetry.system_log import log_system_event

logger = logging.getLogger(__name__)

WEBHOOK_ENDPOINT = "/api/webhooks/stripe"


async def attempt(operation: Callable[[], Any], on_failure_log: str, default: Any = None) -> Any:
    """Run `operation` (sync or async) and swallow any exception.

    Returns:
        The operation's result, or `default` when it raised

    Example:
        url = await attempt(
            lambda: gateway.create_billing_portal_session(customer_id, return_url),
            f"Billing portal session for {customer_id} failed",
        )
    """
    try:
        result = operation()
        if inspect.isawaitable(result):
            result = await result
        return result
    except Exception as e:
        logger.warning(f"[BILLING] {on_failure_log}: {e}", exc_info=True)
        return default


@dataclass(frozen=True)
class NotificationTarget:
    """Who to email, captured while the transition's rows are loaded."""

    email: str
    name: Optional[str] = None
    customer_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "NotificationTarget":
        return cls(email=user.email, name=user.name, customer_id=user.stripe_customer_id)


class SideEffectDispatcher:
    """Sends the user-facing and audit side effects of a transition.

    Every public method is safe to call after commit: none of them raise.
    """

    def __init__(self, notifier, gateway, frontend_url: str):
        self._notifier = notifier
        self._gateway = gateway
        self._frontend_url = frontend_url.rstrip("/")

    @property
    def billing_page_url(self) -> str:
        return f"{self._frontend_url}/admin/settings/billing"

    async def billing_portal_url(self, customer_id: Optional[str]) -> str:
        """Stripe billing portal URL, or the dashboard billing page on failure."""
        if not customer_id:
            return self.billing_page_url
        url = await attempt(
            lambda: self._gateway.create_billing_portal_session(customer_id, self.billing_page_url),
            f"Billing portal session for {customer_id} failed",
        )
        return url or self.billing_page_url

    async def notify_subscription_change(
        self,
        target: NotificationTarget,
        *,
        change_type: str,
        new_plan: PlanEnum,
        old_plan: Optional[PlanEnum] = None,
        billing_interval: Optional[str] = None,
        amount: Optional[float] = None,
        next_billing_date: Optional[datetime] = None,
        update_payment_url: Optional[str] = None,
    ) -> bool:
        result = await attempt(
            lambda: self._notifier.send_subscription_change_email(
                to=target.email,
                name=target.name,
                change_type=change_type,
                new_plan=new_plan,
                old_plan=old_plan,
                billing_interval=billing_interval,
                amount=amount,
                next_billing_date=next_billing_date,
                update_payment_url=update_payment_url,
            ),
            f"{change_type} email to {target.email} failed",
        )
        if result is None:
            return False
        if not result.success:
            logger.warning(f"[BILLING] {change_type} email to {target.email} not sent: {result.error}")
        return result.success

    async def notify_payment_failed(
        self,
        target: NotificationTarget,
        *,
        amount: float,
        next_retry_date: Optional[datetime] = None,
    ) -> bool:
        update_payment_url = await self.billing_portal_url(target.customer_id)
        result = await attempt(
            lambda: self._notifier.send_payment_failed_email(
                to=target.email,
                name=target.name,
                amount=amount,
                next_retry_date=next_retry_date,
                update_payment_url=update_payment_url,
            ),
            f"Payment failed email to {target.email} failed",
        )
        if result is None:
            return False
        if not result.success:
            logger.warning(f"[BILLING] Payment failed email to {target.email} not sent: {result.error}")
        return result.success

    def record_subscription_change(
        self,
        db: Session,
        *,
        event_type: str,
        stripe_subscription_id: Optional[str],
        old_plan: Optional[PlanEnum],
        new_plan: Optional[PlanEnum],
        change_type: Optional[str],
        status: Optional[str],
    ) -> None:
        log_system_event(
            db,
            log_type="subscription_changed",
            severity=LogSeverityEnum.info,
            endpoint=WEBHOOK_ENDPOINT,
            method="POST",
            status_code=200,
            url=f"{self._frontend_url}{WEBHOOK_ENDPOINT}",
            metadata={
                "event_type": event_type,
                "stripe_subscription_id": stripe_subscription_id,
                "old_plan": old_plan.value if old_plan else None,
                "new_plan": new_plan.value if new_plan else None,
                "change_type": change_type,
                "status": status,
            },
        )
