"""Organization hierarchy blueprint.

Endpoint groups
───────────────
  Reads (cached)   GET  /api/v1/hierarchy/levels
                   GET  /api/v1/hierarchy/nodes[?level_id=port]
  Synchronisation  POST /api/v1/hierarchy/sync
                   GET  /api/v1/hierarchy/sync/status
"""

import logging

from flask import Blueprint, jsonify, request

from kpi_dashboard.services import organization_hierarchy_service as hierarchy_svc
from kpi_dashboard.services.scheduler_service import SchedulerService
from kpi_dashboard.utils.errors import E, api_error

logger = logging.getLogger(__name__)

hierarchy_bp = Blueprint("hierarchy", __name__, url_prefix="/api/v1/hierarchy")

SYNC_JOB = "hierarchy_sync"


# ══════════════════════════════════════════════════════════════════
# 1.  Cached reads
# ══════════════════════════════════════════════════════════════════

@hierarchy_bp.route("/levels", methods=["GET"])
def list_levels():
    """Local hierarchy level definitions, top-down."""
    return jsonify({"items": hierarchy_svc.list_levels_cached()})


@hierarchy_bp.route("/nodes", methods=["GET"])
def list_nodes():
    """Hierarchy nodes, optionally filtered by level id."""
    level_id = (request.args.get("level_id") or "").strip() or None
    items = hierarchy_svc.list_nodes_cached(level_id)
    return jsonify({"items": items, "total": len(items)})


# ══════════════════════════════════════════════════════════════════
# 2.  Synchronisation
# ══════════════════════════════════════════════════════════════════

@hierarchy_bp.route("/sync", methods=["POST"])
def trigger_sync():
    """Run the hierarchy sync job now, outside its cron schedule."""
    run = SchedulerService.run_job(SYNC_JOB)
    status = run.get("status")
    result = run.get("result") or {}

    if status == "error":
        return api_error(E.SERVICE_UNAVAILABLE, run.get("error") or "Scheduler unavailable")
    if status == "skipped" and result.get("reason") == "already_running":
        return api_error(E.SYNC_IN_PROGRESS, "Hierarchy sync already in progress", details=run)
    if status == "skipped":
        return api_error(E.SERVICE_UNAVAILABLE, "Hierarchy sync is not configured", details=run)
    if status == "failed":
        logger.warning("Manual hierarchy sync failed: %s", run.get("error"),
                       extra={"job_name": SYNC_JOB})
        return api_error(E.SYNC_FAILED, run.get("error") or "Hierarchy sync failed", details=run)
    return jsonify(run)


@hierarchy_bp.route("/sync/status", methods=["GET"])
def sync_status():
    """Persisted run history of the hierarchy sync job."""
    record = SchedulerService.get_job_status(SYNC_JOB)
    if record is None:
        return api_error(E.NOT_FOUND, "Hierarchy sync job has not been registered")
    next_runs = {j["job_name"]: j["next_run_at"] for j in SchedulerService.list_jobs()}
    return jsonify({**record, "next_run_at": next_runs.get(SYNC_JOB),
                    "scheduler_running": SchedulerService.is_running()})
