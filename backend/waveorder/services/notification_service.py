"""
Subscription Notification Service.

WHAT:
    Sends billing emails to WaveOrder account owners through Resend:
    - Subscription changes (created, upgraded, downgraded, canceled, renewed,
      trial converted, trial ending, trial expired, resumed)
    - Payment failures with a link to update the payment method

WHY:
    Users need to know when their plan or access changes, and dunning emails
    give them a chance to fix a card before the subscription is paused.

DESIGN:
    - HTML emails with inline styles plus plain text fallbacks
    - One subject per change type, headers tag the change for mailbox filters
    - Graceful fallback when Resend is not configured (logged, mock success)
    - Send failures come back as NotificationResult(success=False)

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
    - waveorder/services/billing/side_effects.py (caller)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import resend

from ..models import PlanEnum

logger = logging.getLogger(__name__)


CHANGE_TYPES = (
    "created",
    "upgraded",
    "downgraded",
    "canceled",
    "renewed",
    "trial_converted",
    "trial_ending",
    "trial_expired",
    "resumed",
)

PLAN_NAMES: Dict[PlanEnum, str] = {
    PlanEnum.starter: "Starter",
    PlanEnum.pro: "Pro",
    PlanEnum.business: "Business",
}


# =============================================================================
# EMAIL TEMPLATES - HTML with inline styles
# =============================================================================

EMAIL_HEADER = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title} - WaveOrder</title>
</head>
<body style="margin: 0; padding: 0; background-color: #f9fafb; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif;">
    <table role="presentation" style="width: 100%; border-collapse: collapse;">
        <tr>
            <td align="center" style="padding: 40px 20px;">
                <table role="presentation" style="width: 100%; max-width: 600px; border-collapse: collapse; background-color: #ffffff; border-radius: 12px; box-shadow: 0 4px 6px -1px rgba(0, 0, 0, 0.1);">
                    <tr>
                        <td style="padding: 24px 32px; background: linear-gradient(135deg, #0d9488 0%, #14b8a6 100%); border-radius: 12px 12px 0 0;">
                            <h1 style="margin: 0; color: #ffffff; font-size: 22px; font-weight: 700;">WaveOrder</h1>
                        </td>
                    </tr>
"""

EMAIL_FOOTER = """
                    <!-- Footer -->
                    <tr>
                        <td style="padding: 24px 32px; border-top: 1px solid #e5e7eb;">
                            <p style="margin: 0 0 8px; color: #6b7280; font-size: 13px;">Questions about your subscription? Just reply to this email.</p>
                            <p style="margin: 0;">
                                <a href="{billing_url}" style="color: #0d9488; text-decoration: none;">Manage billing</a>
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
"""


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.strftime("%B %d, %Y") if value else None


def _subject_for(change_type: str, new_plan: PlanEnum) -> str:
    plan_name = PLAN_NAMES[new_plan]
    subjects = {
        "created": f"🎉 Welcome to WaveOrder {plan_name}!",
        "upgraded": f"🎉 Welcome to WaveOrder {plan_name}!",
        "downgraded": "Your WaveOrder Subscription Has Changed",
        "canceled": "Your WaveOrder Subscription Has Been Canceled",
        "renewed": f"✅ Your WaveOrder {plan_name} Subscription Has Been Renewed",
        "trial_converted": f"🎉 Your WaveOrder {plan_name} Trial Has Been Converted",
        "trial_ending": "⏰ Your WaveOrder Free Trial is Ending Soon!",
        "trial_expired": "📋 Your WaveOrder Free Trial Has Ended",
        "resumed": f"✅ Your WaveOrder {plan_name} Subscription Is Active Again",
    }
    return subjects[change_type]


def _change_copy(
    change_type: str,
    old_plan: Optional[PlanEnum],
    new_plan: PlanEnum,
    next_billing_date: Optional[str],
    grace_days: int,
) -> tuple[str, str, str]:
    """Return (title, message, accent color) for a subscription change."""
    plan_name = PLAN_NAMES[new_plan]
    old_plan_name = PLAN_NAMES[old_plan] if old_plan else "your current plan"

    if change_type == "trial_ending":
        return (
            "⏰ Your Free Trial is Ending Soon!",
            f"Your free trial will end on {next_billing_date or 'soon'}. To keep every {plan_name} "
            "feature, add a payment method before your trial expires.",
            "#f59e0b",
        )
    if change_type == "trial_expired":
        return (
            "📋 Your Free Trial Has Ended",
            "Your free trial has expired and your account now has Starter limits. "
            f"You have a {grace_days}-day grace period to subscribe and restore full access to your data.",
            "#ef4444",
        )
    if change_type in ("created", "upgraded", "trial_converted"):
        verb = "converted from trial to" if change_type == "trial_converted" else "upgraded to"
        if change_type == "created":
            verb = "subscribed to"
        return (
            f"🎉 Welcome to WaveOrder {plan_name}!",
            f"Your account has been successfully {verb} the {plan_name} plan.",
            "#7c3aed",
        )
    if change_type == "downgraded":
        return (
            "Subscription Changed",
            f"Your subscription moved from {old_plan_name} to {plan_name}. "
            f"{plan_name} limits apply from now on.",
            "#6b7280",
        )
    if change_type == "canceled":
        return (
            "Subscription Canceled",
            f"Your {old_plan_name} subscription has been canceled. You'll keep access until "
            f"{next_billing_date or 'the end of your billing period'}, after which your account "
            "moves to Starter.",
            "#6b7280",
        )
    if change_type == "resumed":
        return (
            "✅ Subscription Resumed",
            f"Your {plan_name} subscription is active again. Welcome back!",
            "#0d9488",
        )
    return (
        "✅ Subscription Renewed",
        f"Your {plan_name} subscription has been successfully renewed. Thank you for continuing with WaveOrder!",
        "#0d9488",
    )


def _build_subscription_change_email(
    name: str,
    title: str,
    message: str,
    accent_color: str,
    details: List[tuple[str, str]],
    cta_url: Optional[str],
    cta_label: str,
    billing_url: str,
) -> str:
    """Build subscription change HTML email."""
    detail_rows = ""
    for label, value in details:
        detail_rows += f"""
            <tr>
                <td style="padding: 8px 0; border-bottom: 1px solid #f3f4f6; color: #6b7280; font-size: 14px;">{label}</td>
                <td style="padding: 8px 0; border-bottom: 1px solid #f3f4f6; text-align: right; font-weight: 600; color: #111827; font-size: 14px;">{value}</td>
            </tr>
        """

    cta_html = ""
    if cta_url:
        cta_html = f"""
                    <tr>
                        <td align="center" style="padding: 0 32px 32px;">
                            <a href="{cta_url}" style="display: inline-block; background-color: {accent_color}; padding: 14px 32px; color: #ffffff; font-size: 14px; font-weight: 600; text-decoration: none; border-radius: 8px;">
                                {cta_label} &rarr;
                            </a>
                        </td>
                    </tr>
        """

    content = f"""
                    <tr>
                        <td style="padding: 32px 32px 16px;">
                            <h2 style="margin: 0 0 16px; font-size: 24px; font-weight: 600; color: #1f2937;">{title}</h2>
                            <p style="margin: 0; font-size: 16px; color: #6b7280; line-height: 1.6;">Hi {name}! {message}</p>
                        </td>
                    </tr>
                    <tr>
                        <td style="padding: 8px 32px 24px;">
                            <table role="presentation" style="width: 100%; border-collapse: collapse;">
                                {detail_rows}
                            </table>
                        </td>
                    </tr>
                    {cta_html}
    """

    return (
        EMAIL_HEADER.format(title=title) +
        content +
        EMAIL_FOOTER.format(billing_url=billing_url)
    )


# =============================================================================
# NOTIFICATION SERVICE
# =============================================================================

@dataclass
class NotificationResult:
    """
    Result of sending a notification.

    Attributes:
        success: Whether notification was sent
        message_id: Provider message ID if successful
        error: Error message if failed
        recipients: List of recipients
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    recipients: Optional[List[str]] = None


class SubscriptionNotificationService:
    """
    Service for sending billing notifications.

    WHAT: Sends subscription change and payment failure emails via Resend
    WHY: Keep account owners informed when their plan or access changes

    Usage:
        service = SubscriptionNotificationService.from_settings(get_settings())
        await service.send_subscription_change_email(...)
    """

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        from_email: str = "WaveOrder <noreply@waveorder.app>",
        reply_to: str = "contact@waveorder.app",
        dashboard_base_url: str = "https://waveorder.app",
        grace_period_days: int = 7,
    ):
        """
        Initialize notification service.

        Parameters:
            resend_api_key: Resend API key (optional for testing)
            from_email: From address for emails
            reply_to: Reply-To address
            dashboard_base_url: Base URL for dashboard links
            grace_period_days: Grace window mentioned in trial-expired emails
        """
        self.resend_api_key = resend_api_key
        self.from_email = from_email
        self.reply_to = reply_to
        self.dashboard_base_url = dashboard_base_url.rstrip('/')
        self.grace_period_days = grace_period_days

        self.resend_client = None
        if resend_api_key:
            resend.api_key = resend_api_key
            self.resend_client = resend
            logger.info("[NOTIFICATIONS] Resend client initialized")

    @classmethod
    def from_settings(cls, settings) -> "SubscriptionNotificationService":
        """
        Create service instance from application settings.

        Returns:
            SubscriptionNotificationService configured from environment
        """
        return cls(
            resend_api_key=settings.RESEND_API_KEY,
            from_email=settings.RESEND_FROM_EMAIL,
            reply_to=settings.RESEND_REPLY_TO,
            dashboard_base_url=settings.FRONTEND_URL,
            grace_period_days=settings.GRACE_PERIOD_DAYS,
        )

    @property
    def billing_url(self) -> str:
        return f"{self.dashboard_base_url}/admin/settings/billing"

    async def send_subscription_change_email(
        self,
        *,
        to: str,
        name: Optional[str],
        change_type: str,
        new_plan: PlanEnum,
        old_plan: Optional[PlanEnum] = None,
        billing_interval: Optional[str] = None,
        amount: Optional[float] = None,
        next_billing_date: Optional[datetime] = None,
        update_payment_url: Optional[str] = None,
    ) -> NotificationResult:
        """
        Send an email describing a subscription change.

        Parameters:
            to: Recipient address
            name: Recipient display name
            change_type: One of CHANGE_TYPES
            new_plan: Plan after the change
            old_plan: Plan before the change
            billing_interval: "monthly" or "annual"
            amount: Price in dollars
            next_billing_date: Next charge (or trial end / access end)
            update_payment_url: Billing portal link for trial emails

        Returns:
            NotificationResult
        """
        if change_type not in CHANGE_TYPES:
            raise ValueError(f"Unknown subscription change type: {change_type}")

        display_name = name or "there"
        next_date = _format_date(next_billing_date)
        title, message, accent = _change_copy(
            change_type, old_plan, new_plan, next_date, self.grace_period_days
        )

        details = [("Plan", PLAN_NAMES[new_plan])]
        if old_plan and old_plan != new_plan:
            details.insert(0, ("Previous plan", PLAN_NAMES[old_plan]))
        if billing_interval:
            details.append(("Billing", billing_interval.capitalize()))
        if amount is not None:
            per = "year" if billing_interval == "annual" else "month"
            details.append(("Amount", f"${amount:,.2f}/{per}"))
        if next_date and change_type not in ("trial_expired",):
            label = "Access until" if change_type == "canceled" else "Next billing date"
            if change_type == "trial_ending":
                label = "Trial ends"
            details.append((label, next_date))

        cta_url = update_payment_url if change_type in ("trial_ending", "trial_expired") else None
        if change_type == "trial_expired" and not cta_url:
            cta_url = self.billing_url
        cta_label = "Choose a plan" if change_type in ("trial_ending", "trial_expired") else "Open dashboard"

        html_body = _build_subscription_change_email(
            name=display_name,
            title=title,
            message=message,
            accent_color=accent,
            details=details,
            cta_url=cta_url,
            cta_label=cta_label,
            billing_url=self.billing_url,
        )

        detail_text = chr(10).join(f"  {label}: {value}" for label, value in details)
        text_body = f"""
{title}

Hi {display_name}! {message}

{detail_text}

{f"Choose a plan: {cta_url}" if cta_url else f"Manage billing: {self.billing_url}"}

— The WaveOrder Team
        """

        return await self._send_email(
            to=[to],
            subject=_subject_for(change_type, new_plan),
            html=html_body,
            text=text_body,
            headers={
                "X-Change-Type": change_type,
                "X-New-Plan": new_plan.value,
            },
        )

    async def send_payment_failed_email(
        self,
        *,
        to: str,
        name: Optional[str],
        amount: float,
        update_payment_url: str,
        next_retry_date: Optional[datetime] = None,
    ) -> NotificationResult:
        """
        Send a dunning email after a failed invoice payment.

        Parameters:
            to: Recipient address
            name: Recipient display name
            amount: Amount due in dollars
            update_payment_url: Billing portal link
            next_retry_date: When Stripe will retry the charge

        Returns:
            NotificationResult
        """
        display_name = name or "there"
        retry = _format_date(next_retry_date)
        message = (
            f"We couldn't process your payment of ${amount:,.2f}. "
            "Please update your payment method to keep your storefront running without interruption."
        )
        if retry:
            message += f" We'll retry the charge on {retry}."

        details = [("Amount due", f"${amount:,.2f}")]
        if retry:
            details.append(("Next attempt", retry))

        html_body = _build_subscription_change_email(
            name=display_name,
            title="⚠️ Payment Failed",
            message=message,
            accent_color="#ef4444",
            details=details,
            cta_url=update_payment_url,
            cta_label="Update payment method",
            billing_url=self.billing_url,
        )
        text_body = f"""
⚠️ Payment Failed

Hi {display_name}! {message}

Update your payment method: {update_payment_url}

— The WaveOrder Team
        """

        return await self._send_email(
            to=[to],
            subject="⚠️ Payment Failed - Action Required for WaveOrder",
            html=html_body,
            text=text_body,
            headers={"X-Payment-Failed": "true"},
        )

    async def _send_email(
        self,
        to: List[str],
        subject: str,
        html: str,
        text: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> NotificationResult:
        """
        Send email via Resend.

        Parameters:
            to: Recipients
            subject: Email subject
            html: HTML body
            text: Plain text body
            headers: Extra email headers

        Returns:
            NotificationResult
        """
        if not self.resend_client:
            logger.warning(f"[NOTIFICATIONS] Resend not configured, would send: {subject} to {to}")
            return NotificationResult(
                success=True,
                message_id="mock-" + str(abs(hash(subject)))[:8],
                recipients=to,
            )

        try:
            response = self.resend_client.Emails.send({
                "from": self.from_email,
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
                "reply_to": self.reply_to,
                "headers": headers or {},
            })

            message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
            logger.info(f"[NOTIFICATIONS] Email sent: {subject} to {to}, id={message_id}")

            return NotificationResult(
                success=True,
                message_id=message_id,
                recipients=to,
            )

        except Exception as e:
            logger.exception(f"[NOTIFICATIONS] Failed to send email: {e}")
            return NotificationResult(
                success=False,
                error=str(e),
                recipients=to,
            )
