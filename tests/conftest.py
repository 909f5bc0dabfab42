"""
Shared pytest fixtures for the KPI Dashboard backend test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - hierarchy_levels: Local level rows bu/ver/acc/port/project
    - sf360_body: Factory for SF360 response bodies
"""

import json

import pytest

from kpi_dashboard import create_app
from kpi_dashboard.models import db as _db
from kpi_dashboard.models.hierarchy import HierarchyLevel
from kpi_dashboard.services import cache_service

LOCAL_LEVELS = [
    (1, "bu", "BU"),
    (2, "ver", "Vertical"),
    (3, "acc", "Account"),
    (4, "port", "Portfolio"),
    (5, "project", "Project"),
]

CENTRAL_LEVELS = [
    {"level": 0, "name": "root", "displayName": "Root"},
    {"level": 1, "name": "bu", "displayName": "BU"},
    {"level": 2, "name": "vertical", "displayName": "Vertical"},
    {"level": 3, "name": "account", "displayName": "Account"},
    {"level": 4, "name": "portfolio", "displayName": "Portfolio"},
]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def hierarchy_levels():
    """Persist the standard local hierarchy levels and return them top-down."""
    levels = [
        HierarchyLevel(level=lvl, hierarchy_level_id=level_id, hierarchy_level_name=name)
        for lvl, level_id, name in LOCAL_LEVELS
    ]
    _db.session.add_all(levels)
    _db.session.commit()
    return levels


@pytest.fixture()
def sf360_body():
    """Return a builder for SF360 response bodies.

    Usage:
        body = sf360_body([{"BU": "Retail", "BU_unique_id": "BU1", ...}])
    """

    def _build(nodes, levels=None):
        return json.dumps({
            "data": [{
                "hierarchyGroup": "SF360Hierarchy",
                "hierarchyDetails": {
                    "hierarchyLevels": CENTRAL_LEVELS if levels is None else levels,
                    "hierarchyNode": nodes,
                },
            }],
        })

    return _build
