"""
Sentry Error Tracking
=====================

Centralized error tracking for the billing backend.

Related files:
- waveorder/main.py: Initializes Sentry on app startup
- waveorder/routers/stripe_webhooks.py: Reports webhook processing failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str], environment: str = "development", release: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Should be called once during application startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.

    Example:
        settings = get_settings()
        init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)
    """
    if not dsn:
        logger.debug("[SENTRY] No DSN configured - error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Webhook payloads carry customer emails
            send_default_pii=False,
            release=release,
        )

        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and turned into an HTTP response
    but should still be tracked.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        except Exception as e:
            capture_exception(e, extra={"event_type": event.type})
            raise HTTPException(status_code=500, detail="Webhook handler failed")
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
