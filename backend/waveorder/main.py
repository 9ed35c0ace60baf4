"""FastAPI application entrypoint.

Initializes error tracking, includes the Stripe webhook router, and exposes a
healthcheck endpoint.
"""

from fastapi import FastAPI
import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import __version__
from .deps import get_settings
from .routers import stripe_webhooks as stripe_webhooks_router
from .telemetry import init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    settings = get_settings()

    # Before FastAPI() so the integration instruments the app
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT, settings.RELEASE_VERSION)

    app = FastAPI(
        title="WaveOrder Billing API",
        description="""
        Subscription billing backend for WaveOrder.

        This API provides endpoints for:
        - Receiving Stripe subscription and invoice webhooks
        - Health checks for the load balancer

        ## Data Model

        - **Users**: Account owners, each linked to at most one subscription
        - **Businesses**: Storefronts that mirror their owners' plan and status
        - **Subscriptions**: Local mirror of Stripe subscriptions
        - **Stripe transactions**: Invoice ledger for billing history
        """,
        version=__version__,
        contact={
            "name": "WaveOrder Support",
            "email": "contact@waveorder.app",
        },
        license_info={
            "name": "Proprietary",
        },
    )

    app.include_router(stripe_webhooks_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        This endpoint:
        - Does not require authentication
        - Does not touch the database or Stripe
        """
    )
    def health():
        return schemas.HealthResponse(status="ok", version=__version__)

    logger.info(f"[STARTUP] WaveOrder billing API {__version__} ({settings.ENVIRONMENT})")
    return app


app = create_app()
