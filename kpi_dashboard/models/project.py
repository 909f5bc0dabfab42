"""
KPI Dashboard Backend
Project configuration model.

Only the fields the hierarchy synchronisation touches are modelled here: the
link to the hierarchy node, the on-hold flag and the audit columns.
"""

from datetime import datetime, timezone

from kpi_dashboard.models import db


class ProjectBasicConfig(db.Model):
    """Basic configuration of a dashboard project."""

    __tablename__ = "project_basic_config"

    id = db.Column(db.Integer, primary_key=True)
    project_name = db.Column(db.String(255), nullable=False)
    project_node_id = db.Column(db.String(64), nullable=True, index=True,
                                comment="node_id of the project's hierarchy node")
    project_on_hold = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_by = db.Column(db.String(150), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_name": self.project_name,
            "project_node_id": self.project_node_id,
            "project_on_hold": self.project_on_hold,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "updated_by": self.updated_by,
        }

    def __repr__(self):
        state = "on hold" if self.project_on_hold else "active"
        return f"<ProjectBasicConfig {self.project_name} [{state}]>"
