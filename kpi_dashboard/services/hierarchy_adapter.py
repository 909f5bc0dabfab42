"""
Organization Hierarchy Adapter.

Maps a parsed central hierarchy (HierarchyDetails) onto canonical
OrganizationHierarchy nodes, reusing the identity of nodes that are already
persisted.

Pipeline:
  1. resolve_levels()  - central level display names → local level ids
  2. build_hierarchy() - walk every flat HierarchyNode from the shallowest
     resolved level to the deepest, resolving each level's parent and
     reusing or creating the node for it

The adapter holds no state between calls. Everything produced during one run
lives in a BuildContext created by convert_to_organization_hierarchy(), so
two runs (or two threads) never see each other's nodes.

Returned nodes are transient ORM instances: nothing is added to the session
here. The synchronizer decides what gets inserted and what is copied onto an
existing row.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from operator import attrgetter
from typing import Callable, Iterable

from kpi_dashboard.core.exceptions import (
    HierarchyConflictError,
    HierarchyResolutionError,
    MissingParentError,
)
from kpi_dashboard.models.hierarchy import (
    LEVEL_ACCOUNT,
    LEVEL_BU,
    LEVEL_PORTFOLIO,
    LEVEL_VERTICAL,
    OrganizationHierarchy,
    generate_node_id,
)
from kpi_dashboard.services.hierarchy_parser import (
    ExternalHierarchyLevel,
    HierarchyDetails,
    HierarchyNode,
)

logger = logging.getLogger(__name__)

_LEVEL_NAME_SPLIT = re.compile(r"[/\s]+")


# ═══════════════════════════════════════════════════════════════════════════
#  Level table
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class LevelFields:
    """How one local level reads from a flat HierarchyNode."""

    parent: str | None
    external_id: Callable[[HierarchyNode], str | None]
    name: Callable[[HierarchyNode], str | None]


# New levels are added here; nothing else in the adapter branches on level ids.
LEVEL_TABLE: dict[str, LevelFields] = {
    LEVEL_BU: LevelFields(None, attrgetter("bu_unique_id"), attrgetter("bu")),
    LEVEL_VERTICAL: LevelFields(LEVEL_BU, attrgetter("vertical_unique_id"), attrgetter("vertical")),
    LEVEL_ACCOUNT: LevelFields(LEVEL_VERTICAL, attrgetter("account_unique_id"), attrgetter("account")),
    LEVEL_PORTFOLIO: LevelFields(LEVEL_ACCOUNT, attrgetter("portfolio_unique_id"), attrgetter("portfolio")),
}


def placeholder_external_id(level_id: str) -> str:
    """Synthesize an external id for a level the central system left blank."""
    return f"{level_id}_unique_{uuid.uuid4().hex}"


# ═══════════════════════════════════════════════════════════════════════════
#  Level resolution
# ═══════════════════════════════════════════════════════════════════════════


def get_matching_value(data_map: dict[str, str], input_key: str) -> str:
    """Return the value of the first token of ``input_key`` found in ``data_map``.

    ``input_key`` is split on "/" and whitespace, so "BU/BUSINESS_UNIT" and
    "UNIT BUSINESS" both resolve as long as one token is a known key.

    Raises:
        HierarchyResolutionError: no token matches.
    """
    for token in _LEVEL_NAME_SPLIT.split(input_key):
        if token in data_map:
            return data_map[token]
    raise HierarchyResolutionError("Hierarchy missing", level_name=input_key)


def resolve_levels(
    external_levels: Iterable[ExternalHierarchyLevel],
    local_levels: Iterable,
) -> dict[str, str]:
    """Map central level display names (upper-cased) to local level ids.

    Args:
        external_levels: Levels from the central payload; level 0 (root) is ignored.
        local_levels: Local HierarchyLevel rows ordered top-down; only as many
                      as there are central levels are considered.

    Returns:
        Ordered dict, shallowest level first, e.g. {"BU": "bu", "VERTICAL": "ver"}.

    Raises:
        HierarchyResolutionError: a name matches no local level, or matches a
            level the adapter cannot read from a HierarchyNode.
    """
    central_names = [
        lvl.display_name.upper()
        for lvl in sorted((lvl for lvl in external_levels if lvl.level > 0), key=attrgetter("level"))
    ]
    local_map = {
        lvl.hierarchy_level_name.upper(): lvl.hierarchy_level_id
        for lvl in list(local_levels)[:len(central_names)]
    }

    resolved: dict[str, str] = {}
    for name in central_names:
        level_id = get_matching_value(local_map, name)
        if level_id not in LEVEL_TABLE:
            raise HierarchyResolutionError("Unsupported hierarchy level", level_name=level_id)
        resolved[name] = level_id
    logger.info("Resolved central hierarchy levels: %s", resolved)
    return resolved


# ═══════════════════════════════════════════════════════════════════════════
#  Build context
# ═══════════════════════════════════════════════════════════════════════════


def identity_key(level_id: str, external_id: str) -> tuple[str, str]:
    """Key a node is matched on across runs: level plus case-folded external id."""
    return (level_id or "").lower(), external_id.lower()


@dataclass
class BuildContext:
    """Per-run state of the adapter.

    Attributes:
        existing: Persisted nodes keyed by (level, lower-cased external id).
        built:    Nodes emitted so far in this run, same key.
        now:      Timestamp stamped on every node built in this run.
    """

    existing: dict[tuple[str, str], OrganizationHierarchy] = field(default_factory=dict)
    built: dict[tuple[str, str], OrganizationHierarchy] = field(default_factory=dict)
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_existing(cls, existing_nodes: Iterable[OrganizationHierarchy] | None) -> "BuildContext":
        ctx = cls()
        for node in existing_nodes or []:
            if node.external_id:
                ctx.existing.setdefault(identity_key(node.hierarchy_level_id, node.external_id), node)
        return ctx

    def find_existing(self, level_id: str, external_id: str | None) -> OrganizationHierarchy | None:
        if not external_id:
            return None
        return self.existing.get(identity_key(level_id, external_id))


# ═══════════════════════════════════════════════════════════════════════════
#  Node building
# ═══════════════════════════════════════════════════════════════════════════


def _external_ids(node: HierarchyNode) -> dict[str, str]:
    """External id per level, with placeholders for the missing ones."""
    return {
        level_id: fields.external_id(node) or placeholder_external_id(level_id)
        for level_id, fields in LEVEL_TABLE.items()
    }


def _resolve_parent_id(
    parent_level: str | None,
    line: dict[str, OrganizationHierarchy],
    id_map: dict[str, str],
    ctx: BuildContext,
) -> str | None:
    if parent_level is None:
        return None
    if parent_level in line:
        return line[parent_level].node_id
    parent_external_id = id_map.get(parent_level)
    if not parent_external_id:
        return None
    parent = ctx.built.get(identity_key(parent_level, parent_external_id)) or ctx.find_existing(
        parent_level, parent_external_id
    )
    return parent.node_id if parent is not None else None


def create_or_reuse_node(
    ctx: BuildContext,
    pending: dict[tuple[str, str], OrganizationHierarchy],
    level_id: str,
    external_id: str,
    node_name: str | None,
    parent_id: str | None,
) -> OrganizationHierarchy:
    """Return the node for (level, external id), creating it if needed.

    A node already emitted in this run is returned as-is, provided it was
    built with the same parent. A persisted node lends its node_id and
    created_date to the new canonical node.

    Raises:
        HierarchyConflictError: the external id was already built with a
            different parent in this run.
    """
    key = identity_key(level_id, external_id)
    prior = pending.get(key) or ctx.built.get(key)
    if prior is not None:
        if prior.parent_id != parent_id:
            raise HierarchyConflictError(external_id, prior.parent_id, parent_id)
        return prior

    existing = ctx.find_existing(level_id, external_id)
    if existing is not None:
        name = node_name or existing.node_name
        node = OrganizationHierarchy(
            node_id=existing.node_id,
            external_id=existing.external_id,
            node_name=name,
            node_display_name=name,
            hierarchy_level_id=level_id,
            parent_id=parent_id,
            created_date=existing.created_date,
            modified_date=ctx.now,
        )
    else:
        node = OrganizationHierarchy(
            node_id=generate_node_id(),
            external_id=external_id,
            node_name=node_name,
            node_display_name=node_name,
            hierarchy_level_id=level_id,
            parent_id=parent_id,
            created_date=ctx.now,
            modified_date=ctx.now,
        )
    pending[key] = node
    return node


def build_line(
    node: HierarchyNode,
    levels: list[str],
    ctx: BuildContext,
) -> list[OrganizationHierarchy]:
    """Build the chain of canonical nodes for one flat HierarchyNode.

    Nodes are registered in ``ctx.built`` only once the whole line succeeds,
    so a rejected line leaves no trace for later lines.

    Raises:
        MissingParentError: a non-root level has no resolvable parent.
        HierarchyConflictError: see create_or_reuse_node().
    """
    id_map = _external_ids(node)
    line: dict[str, OrganizationHierarchy] = {}
    pending: dict[tuple[str, str], OrganizationHierarchy] = {}

    for level_id in levels:
        fields = LEVEL_TABLE[level_id]
        parent_id = _resolve_parent_id(fields.parent, line, id_map, ctx)
        if fields.parent is not None and parent_id is None:
            raise MissingParentError(level_id, fields.parent)

        line[level_id] = create_or_reuse_node(
            ctx, pending, level_id, id_map[level_id], fields.name(node), parent_id,
        )

    ctx.built.update(pending)
    return list(line.values())


def build_hierarchy(
    nodes: Iterable[HierarchyNode],
    levels: list[str],
    ctx: BuildContext,
) -> list[OrganizationHierarchy]:
    """Build canonical nodes for every flat node, skipping the ones that fail.

    Returns:
        Distinct nodes in first-seen order.
    """
    result: dict[int, OrganizationHierarchy] = {}
    skipped = 0

    for node in nodes:
        tracking_id = node.opportunity_unique_id or node.portfolio_unique_id
        try:
            for built in build_line(node, levels, ctx):
                result.setdefault(id(built), built)
        except MissingParentError as exc:
            skipped += 1
            logger.warning("Skipping hierarchy node %s: %s", tracking_id, exc,
                           extra={"external_id": tracking_id})
        except HierarchyConflictError as exc:
            skipped += 1
            logger.error("Rejecting hierarchy node %s: %s", tracking_id, exc,
                         extra={"external_id": tracking_id})
        except Exception as exc:
            skipped += 1
            logger.exception("Error processing hierarchy node %s: %s", tracking_id, exc)

    if skipped:
        logger.warning("Hierarchy adapter skipped %d of the central nodes", skipped)
    return list(result.values())


def convert_to_organization_hierarchy(
    details: HierarchyDetails,
    existing_nodes: Iterable[OrganizationHierarchy] | None,
    local_levels: Iterable,
) -> list[OrganizationHierarchy]:
    """Convert a parsed central hierarchy into canonical nodes.

    Args:
        details: Parsed payload.
        existing_nodes: Snapshot of all persisted nodes (identity source).
        local_levels: Local HierarchyLevel rows ordered top-down.

    Raises:
        HierarchyResolutionError: the central levels cannot be mapped; no
            node is processed.
    """
    levels = list(resolve_levels(details.levels, local_levels).values())
    ctx = BuildContext.from_existing(existing_nodes)
    return build_hierarchy(details.nodes, levels, ctx)
