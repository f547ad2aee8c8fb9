"""
Sentry error tracking for the MPI merge service.

Optional: nothing is sent unless SENTRY_DSN is set, and a failed
initialization is logged while the service starts normally.

Merge payloads carry patient demographics, so every event passes through
``_before_send``, which replaces profile fields and credentials with
"[Filtered]" before anything leaves the process. Local variables are never
attached to stack traces for the same reason.

Environment Variables:
    SENTRY_DSN: Sentry Data Source Name (required to enable)
    SENTRY_ENVIRONMENT: Environment tag (default: "development")
    SENTRY_TRACES_SAMPLE_RATE: Trace sampling rate (default: 0.1)

Usage:
    from mpi.sentry import init_sentry
    from mpi.core.config import settings

    init_sentry(settings)
"""

import logging
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


# Patient profile fields and credentials (case-insensitive keys)
PHI_FIELDS = frozenset({
    "first_name",
    "last_name",
    "middle_name",
    "date_of_birth",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "zip",
    "emergency_contact_name",
    "emergency_contact_phone",
    "emergency_contact_relationship",
    "caregiver_email",
    "health_conditions",
    "medications",
    "profile",
    "surviving_record_snapshot",
    "deprecated_record_snapshot",
    "merged_record_snapshot",
    "related_data_snapshot",
    "password",
    "token",
    "api_key",
    "secret",
})

SENSITIVE_HEADERS = frozenset({
    "authorization",
    "x-api-key",
    "cookie",
    "set-cookie",
})


def _filter_dict(data: dict[str, Any], sensitive_keys: frozenset[str]) -> None:
    """Replace sensitive values in place, descending into nested dicts."""
    for key in list(data.keys()):
        if key.lower() in sensitive_keys:
            data[key] = "[Filtered]"
        elif isinstance(data[key], dict):
            _filter_dict(data[key], sensitive_keys)


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Strip PHI from request bodies, headers, breadcrumbs, extras and contexts."""
    request_data = event.get("request")
    if isinstance(request_data, dict):
        if isinstance(request_data.get("data"), dict):
            _filter_dict(request_data["data"], PHI_FIELDS)
        if isinstance(request_data.get("headers"), dict):
            _filter_dict(request_data["headers"], SENSITIVE_HEADERS)

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict):
        for breadcrumb in breadcrumbs.get("values", []):
            if isinstance(breadcrumb.get("data"), dict):
                _filter_dict(breadcrumb["data"], PHI_FIELDS)

    if isinstance(event.get("extra"), dict):
        _filter_dict(event["extra"], PHI_FIELDS)

    if isinstance(event.get("contexts"), dict):
        for context_data in event["contexts"].values():
            if isinstance(context_data, dict):
                _filter_dict(context_data, PHI_FIELDS)

    return event


def init_sentry(settings: Any) -> bool:
    """
    Initialize the Sentry SDK with FastAPI, SQLAlchemy and logging integrations.

    Args:
        settings: Application settings (SENTRY_DSN, SENTRY_ENVIRONMENT,
                  SENTRY_TRACES_SAMPLE_RATE, APP_VERSION)

    Returns:
        True if Sentry was initialized, False otherwise
    """
    if not settings.SENTRY_DSN:
        logger.info("SENTRY_DSN not configured - error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.SENTRY_ENVIRONMENT,
            release=settings.APP_VERSION,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[
                # Group errors by route pattern, not by patient-specific URL
                FastApiIntegration(transaction_style="url"),
                SqlalchemyIntegration(),
                AsyncioIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send=_before_send,
            before_send_transaction=_before_send,
            send_default_pii=False,
            include_local_variables=False,
            max_breadcrumbs=50,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    logger.info(f"Sentry initialized - environment: {settings.SENTRY_ENVIRONMENT}")
    return True
