"""
KPI Dashboard Backend
Organization hierarchy models.

Models:
    - HierarchyLevel: Local level definitions (bu, ver, acc, port, project, ...)
    - OrganizationHierarchy: One node of the organization tree

Nodes reference their parent by ``node_id`` (not the surrogate ``id``), so a
node keeps its place in the tree however the row is rewritten.
"""

import uuid
from datetime import datetime, timezone

from kpi_dashboard.models import db


# ── Constants ────────────────────────────────────────────────────────────────

LEVEL_BU = "bu"
LEVEL_VERTICAL = "ver"
LEVEL_ACCOUNT = "acc"
LEVEL_PORTFOLIO = "port"
LEVEL_PROJECT = "project"


def generate_node_id() -> str:
    """Return a fresh, never reused node identifier."""
    return str(uuid.uuid4())


class HierarchyLevel(db.Model):
    """
    Local hierarchy level definition.

    ``level`` orders the rungs from the top of the tree (1 = business unit).
    ``hierarchy_level_name`` is matched against the central system's level
    display names during synchronisation.
    """

    __tablename__ = "hierarchy_levels"

    id = db.Column(db.Integer, primary_key=True)
    level = db.Column(db.Integer, nullable=False, index=True)
    hierarchy_level_id = db.Column(db.String(50), unique=True, nullable=False,
                                   comment="Internal level id: bu, ver, acc, port, project")
    hierarchy_level_name = db.Column(db.String(100), nullable=False,
                                     comment="Display name: BU, Vertical, Account, ...")

    def to_dict(self):
        return {
            "id": self.id,
            "level": self.level,
            "hierarchy_level_id": self.hierarchy_level_id,
            "hierarchy_level_name": self.hierarchy_level_name,
        }

    def __repr__(self):
        return f"<HierarchyLevel {self.level}:{self.hierarchy_level_id}>"


class OrganizationHierarchy(db.Model):
    """
    A node of the organization tree.

    ``node_id`` is generated locally and never changes. ``external_id`` is the
    central system's identifier and is the key used to correlate a node across
    synchronisation runs; it is NULL for nodes created locally.
    """

    __tablename__ = "organization_hierarchy"

    id = db.Column(db.Integer, primary_key=True)
    node_id = db.Column(db.String(64), unique=True, nullable=False, index=True,
                        default=generate_node_id)
    external_id = db.Column(db.String(255), nullable=True, index=True,
                            comment="Identifier assigned by the central hierarchy")
    node_name = db.Column(db.String(255), nullable=True)
    node_display_name = db.Column(db.String(255), nullable=True)
    hierarchy_level_id = db.Column(db.String(50), nullable=False, index=True)
    parent_id = db.Column(db.String(64), nullable=True, index=True,
                          comment="node_id of the parent node")

    created_date = db.Column(db.DateTime(timezone=True),
                             default=lambda: datetime.now(timezone.utc))
    modified_date = db.Column(db.DateTime(timezone=True),
                              default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "node_id": self.node_id,
            "external_id": self.external_id,
            "node_name": self.node_name,
            "node_display_name": self.node_display_name,
            "hierarchy_level_id": self.hierarchy_level_id,
            "parent_id": self.parent_id,
            "created_date": self.created_date.isoformat() if self.created_date else None,
            "modified_date": self.modified_date.isoformat() if self.modified_date else None,
        }

    def __repr__(self):
        return f"<OrganizationHierarchy {self.hierarchy_level_id}:{self.node_id} ext={self.external_id}>"
