"""Sentry error tracking.

``init_sentry`` is a no-op without SENTRY_DSN, so it is safe to call
unconditionally. Unexpected pipeline failures are reported through
``capture_node_failure`` with the ontology, node and run as tags.
"""

import logging
import uuid

from app.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        # Generated SQL and prompts can quote customer data
        max_request_body_size="never",
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            CeleryIntegration(monitor_beat_tasks=False),
        ],
    )
    sentry_sdk.set_tag("service", "ontology-engine")
    logger.info("Sentry initialized (env=%s)", settings.app_env)


def capture_node_failure(exc: BaseException, *, ontology_id: uuid.UUID, node: str, run_id: uuid.UUID) -> None:
    """Report a node that crashed with an unexpected exception."""
    if not settings.sentry_dsn:
        return

    import sentry_sdk

    sentry_sdk.capture_exception(
        exc,
        tags={"ontology_id": str(ontology_id), "node": node, "run_id": str(run_id)},
    )
