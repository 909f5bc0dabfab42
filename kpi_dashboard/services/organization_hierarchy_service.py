"""
Organization Hierarchy Service.

Store-level operations the hierarchy synchronisation depends on, plus the
cached read side used by the rest of the dashboard:

  Reads:   get_all_nodes, get_top_hierarchy_levels, find_projects_by_node_ids
  Writes:  save_all_nodes, save_all_projects, clear_cache
  Cached:  list_nodes_cached, list_levels_cached

Write helpers commit their own transaction; callers that need to keep two
writes independent (hierarchy vs project pause) call them separately.
"""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select

from kpi_dashboard.models import db
from kpi_dashboard.models.hierarchy import HierarchyLevel, OrganizationHierarchy
from kpi_dashboard.models.project import ProjectBasicConfig
from kpi_dashboard.services import cache_service

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_all_nodes() -> list[OrganizationHierarchy]:
    """Return every persisted hierarchy node (one consistent snapshot)."""
    return list(db.session.execute(select(OrganizationHierarchy)).scalars())


def get_top_hierarchy_levels() -> list[HierarchyLevel]:
    """Return the local hierarchy level definitions ordered top-down."""
    stmt = select(HierarchyLevel).order_by(HierarchyLevel.level)
    return list(db.session.execute(stmt).scalars())


def find_projects_by_node_ids(node_ids: Iterable[str]) -> list[ProjectBasicConfig]:
    """Return project configs linked to any of the given hierarchy node ids."""
    node_ids = list(node_ids)
    if not node_ids:
        return []
    stmt = select(ProjectBasicConfig).where(ProjectBasicConfig.project_node_id.in_(node_ids))
    return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════


def _commit_all(objects: list) -> None:
    db.session.add_all(objects)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def save_all_nodes(nodes: list[OrganizationHierarchy]) -> None:
    """Insert or update hierarchy nodes in one transaction."""
    if not nodes:
        return
    _commit_all(nodes)
    logger.info("Saved %d hierarchy nodes", len(nodes))


def save_all_projects(projects: list[ProjectBasicConfig]) -> None:
    """Persist project config changes in one transaction."""
    if not projects:
        return
    _commit_all(projects)
    logger.info("Saved %d project configs", len(projects))


def clear_cache() -> None:
    """Drop cached hierarchy reads so the next request sees fresh data."""
    cache_service.invalidate_hierarchy_cache()


# ═════════════════════════════════════════════════════════════════════════════
# Cached read side
# ═════════════════════════════════════════════════════════════════════════════


def list_nodes_cached(level_id: str | None = None) -> list[dict]:
    """Serialised hierarchy nodes, optionally filtered by level, cache-aside."""

    def _load():
        stmt = select(OrganizationHierarchy).order_by(OrganizationHierarchy.id)
        if level_id:
            stmt = stmt.where(OrganizationHierarchy.hierarchy_level_id == level_id)
        return [n.to_dict() for n in db.session.execute(stmt).scalars()]

    return cache_service.get_cached(
        cache_service.hierarchy_nodes_key(level_id),
        ttl=cache_service.HIERARCHY_TTL,
        loader=_load,
    )


def list_levels_cached() -> list[dict]:
    """Serialised top hierarchy levels, cache-aside."""
    return cache_service.get_cached(
        cache_service.hierarchy_levels_key(),
        ttl=cache_service.HIERARCHY_TTL,
        loader=lambda: [lvl.to_dict() for lvl in get_top_hierarchy_levels()],
    )
