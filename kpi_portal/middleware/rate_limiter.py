"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in kpi_portal/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from kpi_portal.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Resolution workflow:   60/minute (commits hit the system of record)
        - Drop request review:   60/minute
        - Health check:          exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("resolution", "drop_requests"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — resolution: %s, drop requests: %s",
                    WRITE_LIMIT, WRITE_LIMIT)
