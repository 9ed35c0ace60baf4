"""
Telemetry Module
================

Observability for the billing backend.

Components:
- sentry.py: Error tracking for webhook processing failures
- system_log.py: Structured audit rows (subscription changes) in system_logs

Environment Variables:
- SENTRY_DSN: Sentry project DSN (optional)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from .sentry import capture_exception, init_sentry
from .system_log import log_system_event

__all__ = ["capture_exception", "init_sentry", "log_system_event"]
