"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter
instance is created in courier_onboarding/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from courier_onboarding.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

UPLOAD_LIMIT = "20/minute"
CALLBACK_LIMIT = "300/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Document uploads:    20/minute
        - Provider callbacks: 300/minute
        - Onboarding API:      60/minute
        - Metrics:            200/minute
        - Health check:        exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("documents")
    if bp:
        limiter.limit(UPLOAD_LIMIT, methods=["POST"])(bp)

    bp = app.blueprints.get("callbacks")
    if bp:
        limiter.limit(CALLBACK_LIMIT)(bp)

    bp = app.blueprints.get("onboarding")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("metrics")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — uploads: %s, callbacks: %s, write: %s, read: %s",
        UPLOAD_LIMIT, CALLBACK_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
