"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter.
The Limiter instance is created in kpi_dashboard/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from kpi_dashboard.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

HIERARCHY_READ_LIMIT = "200/minute"
MANUAL_SYNC_LIMIT = "5/hour"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Hierarchy reads:   200/minute (GET, served from cache)
        - Manual sync:       5/hour     (each call hits the central system)
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("hierarchy")
    if bp:
        limiter.limit(HIERARCHY_READ_LIMIT)(bp)

    sync_view = app.view_functions.get("hierarchy.trigger_sync")
    if sync_view:
        limiter.limit(MANUAL_SYNC_LIMIT)(sync_view)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: hierarchy reads %s, manual sync %s",
        HIERARCHY_READ_LIMIT, MANUAL_SYNC_LIMIT,
    )
