"""
Observability side-channel: Sentry reporting and Prometheus counters.

Webhook failures never reach the provider (it always gets a 200), so this
module is where operators see them.
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from flask import Flask, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from sentry_sdk.integrations.flask import FlaskIntegration

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TOTAL = Counter(
    "billing_webhook_events_total",
    "Webhook deliveries by provider and outcome",
    ["provider", "outcome"],
)

PROVIDER_ERRORS_TOTAL = Counter(
    "billing_provider_errors_total",
    "Failed provider API calls",
    ["provider", "operation"],
)

ENFORCEMENT_DECISIONS_TOTAL = Counter(
    "billing_enforcement_decisions_total",
    "Plan limit decisions",
    ["resource", "decision"],
)


def init_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking when a DSN is configured."""
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn:
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=app.config.get("ENVIRONMENT"),
        send_default_pii=False,
    )
    app.logger.info("Sentry error tracking initialized")


def init_metrics(app: Flask) -> None:
    if not app.config.get("METRICS_ENABLED"):
        return

    @app.route("/metrics")
    def metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


def report_failure(
    exc: BaseException,
    tags: Dict[str, str],
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log an exception and send it to Sentry with tags and context attached."""
    logger.error(
        "Billing failure: %s",
        exc,
        exc_info=exc,
        extra={"tags": tags, "context": context or {}},
    )
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        if context:
            scope.set_context("billing", context)
        sentry_sdk.capture_exception(exc)


def record_webhook(provider: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(provider=provider, outcome=outcome).inc()


def record_provider_error(provider: str, operation: str) -> None:
    PROVIDER_ERRORS_TOTAL.labels(provider=provider, operation=operation).inc()


def record_decision(resource: str, decision: str) -> None:
    ENFORCEMENT_DECISIONS_TOTAL.labels(resource=resource, decision=decision).inc()
