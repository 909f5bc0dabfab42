"""
KPI Dashboard Backend
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - hierarchy_sync: Pulls the central organization hierarchy and
      reconciles the local copy (cron: HIERARCHY_SYNC_CRON)
"""

from __future__ import annotations

import logging
from typing import Any

from kpi_dashboard.services.hierarchy_sync_service import run_hierarchy_sync
from kpi_dashboard.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("hierarchy_sync", cron_setting="HIERARCHY_SYNC_CRON")
def sync_organization_hierarchy_job(app) -> dict[str, Any]:
    """Synchronise the organization hierarchy from the central system."""
    logger.info("Starting organization hierarchy sync", extra={"job_name": "hierarchy_sync"})
    return run_hierarchy_sync()
