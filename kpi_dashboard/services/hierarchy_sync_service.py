"""
Organization Hierarchy Sync Service.

Business logic for keeping the local organization hierarchy in step with the
central hierarchy system of record:

  - run_hierarchy_sync(): full pipeline (fetch → parse → adapt → sync),
    guarded by a run lock so only one sync is in flight per process
  - sync_organization_hierarchy(): reconcile adapter output with the
    persisted snapshot, persist, invalidate the hierarchy cache, cascade
  - Project-pause cascade with two named policies (see CASCADE_POLICIES)

Nodes are never deleted here. A node that disappears upstream simply stops
being updated; its disappearance may put dependent projects on hold.

All outbound HTTP: delegated to
`kpi_dashboard.integrations.central_hierarchy_gateway.central_hierarchy_gateway`.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

import requests
from flask import current_app

from kpi_dashboard.core.exceptions import HierarchySyncError
from kpi_dashboard.integrations import central_hierarchy_gateway as gw_module
from kpi_dashboard.models import db
from kpi_dashboard.models.hierarchy import LEVEL_PORTFOLIO, LEVEL_PROJECT, OrganizationHierarchy
from kpi_dashboard.services import organization_hierarchy_service as store
from kpi_dashboard.services.hierarchy_adapter import convert_to_organization_hierarchy, identity_key
from kpi_dashboard.services.hierarchy_parser import get_parser
from kpi_dashboard.utils.retry import RetryHelper

logger = logging.getLogger(__name__)

SYSTEM_USER = "SYSTEM"

CASCADE_ORPHANED_PORT = "orphaned_port"
CASCADE_MISSING_EXTERNAL_PORT = "missing_external_port"
CASCADE_NONE = "none"

# Fields copied from the incoming node onto an existing row.
_SYNC_FIELDS = ("node_name", "node_display_name", "hierarchy_level_id", "parent_id")

# One sync in flight per process; overlapping triggers are skipped.
_run_lock = threading.Lock()


@dataclass
class SyncResult:
    """Counters of one reconciliation pass."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    paused_projects: int = 0
    pause_error: str | None = None

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def to_dict(self) -> dict:
        return asdict(self)


# ═════════════════════════════════════════════════════════════════════════════
# Cascade policies
# ═════════════════════════════════════════════════════════════════════════════


def _is_level(node: OrganizationHierarchy, level_id: str) -> bool:
    return (node.hierarchy_level_id or "").lower() == level_id


def projects_under_orphaned_ports(
    incoming: Iterable[OrganizationHierarchy],
    existing_nodes: Iterable[OrganizationHierarchy],
) -> set[str]:
    """Project node ids whose parent is a persisted port without external id."""
    existing_nodes = list(existing_nodes)
    orphan_ports = {
        n.node_id for n in existing_nodes
        if _is_level(n, LEVEL_PORTFOLIO) and not n.external_id
    }
    return {
        n.node_id for n in existing_nodes
        if _is_level(n, LEVEL_PROJECT) and n.parent_id in orphan_ports
    }


def projects_under_missing_external_ports(
    incoming: Iterable[OrganizationHierarchy],
    existing_nodes: Iterable[OrganizationHierarchy],
) -> set[str]:
    """Project node ids whose port was externally known but is gone upstream.

    A port id that now arrives at another level counts as gone.
    """
    incoming_keys = {
        identity_key(n.hierarchy_level_id, n.external_id)
        for n in incoming if n.external_id is not None
    }
    existing_nodes = list(existing_nodes)
    by_node_id = {n.node_id: n for n in existing_nodes}

    paused = set()
    for node in existing_nodes:
        if not _is_level(node, LEVEL_PROJECT):
            continue
        parent = by_node_id.get(node.parent_id)
        if (
            parent is not None
            and _is_level(parent, LEVEL_PORTFOLIO)
            and parent.external_id is not None
            and identity_key(parent.hierarchy_level_id, parent.external_id) not in incoming_keys
        ):
            paused.add(node.node_id)
    return paused


CASCADE_POLICIES: dict[str, Callable[..., set[str]]] = {
    CASCADE_ORPHANED_PORT: projects_under_orphaned_ports,
    CASCADE_MISSING_EXTERNAL_PORT: projects_under_missing_external_ports,
    CASCADE_NONE: lambda incoming, existing_nodes: set(),
}


def pause_projects(project_node_ids: Iterable[str], *, now: datetime | None = None) -> int:
    """Put the projects linked to the given node ids on hold.

    Projects already on hold are left untouched.

    Returns:
        Number of projects newly paused.
    """
    project_node_ids = set(project_node_ids)
    if not project_node_ids:
        return 0
    now = now or datetime.now(timezone.utc)

    to_pause = [
        p for p in store.find_projects_by_node_ids(project_node_ids)
        if not p.project_on_hold
    ]
    for project in to_pause:
        project.project_on_hold = True
        project.updated_at = now
        project.updated_by = SYSTEM_USER
    store.save_all_projects(to_pause)
    if to_pause:
        logger.info("Paused %d projects with invalid parent ports", len(to_pause))
    return len(to_pause)


# ═════════════════════════════════════════════════════════════════════════════
# Reconciliation
# ═════════════════════════════════════════════════════════════════════════════


def sync_organization_hierarchy(
    incoming: Iterable[OrganizationHierarchy],
    existing_nodes: list[OrganizationHierarchy],
    *,
    cascade_policy: str = CASCADE_MISSING_EXTERNAL_PORT,
    cache_invalidator: Callable[[], None] = store.clear_cache,
) -> SyncResult:
    """Persist adapter output against the snapshot taken at the start of the run.

    Args:
        incoming: Canonical nodes from the adapter.
        existing_nodes: All persisted nodes, fetched once for this run.
        cascade_policy: Key of CASCADE_POLICIES.
        cache_invalidator: Called after a successful hierarchy write.

    Returns:
        SyncResult counters.

    Raises:
        ValueError: unknown cascade policy.
        sqlalchemy.exc.SQLAlchemyError: the hierarchy write failed (rolled back).
    """
    policy = CASCADE_POLICIES.get(cascade_policy)
    if policy is None:
        raise ValueError(f"Unknown cascade policy: {cascade_policy!r}")

    incoming = list(incoming)
    result = SyncResult()
    now = datetime.now(timezone.utc)

    # Decided on the untouched snapshot, applied after the hierarchy write.
    projects_to_pause = policy(incoming, existing_nodes)

    # Same key as the adapter, so a reused node_id always lands on its own row.
    by_identity: dict[tuple[str, str], OrganizationHierarchy] = {}
    for n in existing_nodes:
        if n.external_id is not None:
            by_identity.setdefault(identity_key(n.hierarchy_level_id, n.external_id), n)

    to_save: list[OrganizationHierarchy] = []
    processed: set[tuple[str, str]] = set()

    for node in incoming:
        if node.external_id is None:
            logger.warning("Skipping node with null external id: %r", node)
            result.skipped += 1
            continue
        key = identity_key(node.hierarchy_level_id, node.external_id)
        if key in processed:
            logger.warning("Skipping duplicate %s node in this run: %s",
                           node.hierarchy_level_id, node.external_id,
                           extra={"external_id": node.external_id})
            result.skipped += 1
            continue
        processed.add(key)

        db_node = by_identity.get(key)
        if db_node is None:
            node.created_date = now
            node.modified_date = now
            to_save.append(node)
            result.inserted += 1
            continue

        changed = False
        for attr in _SYNC_FIELDS:
            value = getattr(node, attr)
            if getattr(db_node, attr) != value:
                setattr(db_node, attr, value)
                changed = True
        if changed:
            db_node.modified_date = now
            to_save.append(db_node)
            result.updated += 1
        else:
            result.unchanged += 1

    if to_save:
        store.save_all_nodes(to_save)
        cache_invalidator()

    logger.info(
        "Hierarchy sync: inserted=%d updated=%d unchanged=%d skipped=%d",
        result.inserted, result.updated, result.unchanged, result.skipped,
    )

    # Independent of the hierarchy write: a failure here leaves it in place.
    try:
        result.paused_projects = pause_projects(projects_to_pause, now=now)
    except Exception as exc:
        db.session.rollback()
        result.pause_error = str(exc)
        logger.exception("Failed to pause projects after hierarchy sync: %s", exc)

    return result


# ═════════════════════════════════════════════════════════════════════════════
# Pipeline
# ═════════════════════════════════════════════════════════════════════════════


def _retry_helper(config) -> RetryHelper:
    return RetryHelper(
        max_attempts=config.get("HIERARCHY_SYNC_RETRY_MAX_ATTEMPTS", 3),
        backoff_seconds=config.get("HIERARCHY_SYNC_RETRY_BACKOFF", [1, 4]),
        retry_on=(requests.RequestException,),
    )


def _run_pipeline(run_id: str) -> dict:
    config = current_app.config
    url = config.get("CENTRAL_HIERARCHY_URL")
    if not url:
        logger.warning("CENTRAL_HIERARCHY_URL not configured; hierarchy sync skipped")
        return {"status": "skipped", "reason": "not_configured"}

    start = time.monotonic()
    fetch = gw_module.central_hierarchy_gateway.fetch_hierarchy(
        url,
        config.get("CENTRAL_HIERARCHY_API_KEY", ""),
        retry_helper=_retry_helper(config),
        timeout=config.get("CENTRAL_HIERARCHY_TIMEOUT", 30),
    )
    if not fetch.ok:
        logger.error("Central hierarchy fetch failed: %s", fetch.error, extra={"run_id": run_id})
        return {"status": "failed", "stage": "fetch", "error": fetch.error, **fetch.to_log_dict()}

    stage = "parse"
    try:
        details = get_parser(config.get("CENTRAL_HIERARCHY_FORMAT", "sf360")).parse(fetch.body)

        stage = "adapt"
        existing_nodes = store.get_all_nodes()
        incoming = convert_to_organization_hierarchy(
            details, existing_nodes, store.get_top_hierarchy_levels(),
        )

        stage = "sync"
        result = sync_organization_hierarchy(
            incoming,
            existing_nodes,
            cascade_policy=config.get("HIERARCHY_SYNC_CASCADE_POLICY", CASCADE_MISSING_EXTERNAL_PORT),
        )
    except (HierarchySyncError, ValueError) as exc:
        db.session.rollback()
        logger.error("Hierarchy sync aborted at %s: %s", stage, exc, extra={"run_id": run_id})
        return {"status": "failed", "stage": stage, "error": str(exc)}

    return {
        "status": "success",
        "central_nodes": len(details.nodes),
        "canonical_nodes": len(incoming),
        "duration_ms": int((time.monotonic() - start) * 1000),
        **result.to_dict(),
    }


def run_hierarchy_sync() -> dict:
    """Run one full synchronisation; must be called inside an app context.

    Returns:
        Summary dict with ``status`` in {"success", "failed", "skipped"}.
    """
    if not _run_lock.acquire(blocking=False):
        logger.warning("Hierarchy sync already in progress; trigger skipped")
        return {"status": "skipped", "reason": "already_running"}
    try:
        run_id = uuid.uuid4().hex[:12]
        logger.info("Hierarchy sync started", extra={"run_id": run_id})
        return {"run_id": run_id, **_run_pipeline(run_id)}
    finally:
        _run_lock.release()
