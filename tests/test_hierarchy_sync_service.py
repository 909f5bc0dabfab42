"""Unit tests for kpi_dashboard.services.hierarchy_sync_service.

Test strategy
-------------
Reconciliation and cascade tests call sync_organization_hierarchy() directly
with adapter output built from an in-memory HierarchyDetails. Pipeline tests
call run_hierarchy_sync() with the module-level `central_hierarchy_gateway`
singleton patched, so no central hierarchy system is needed.

Each test creates its own data and tears down via the `session` autouse
fixture (rollback + recreate tables).
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

import kpi_dashboard.integrations.central_hierarchy_gateway as gw_module
import kpi_dashboard.services.hierarchy_sync_service as sync_svc
from kpi_dashboard.integrations.central_hierarchy_gateway import (
    CentralHierarchyGateway,
    GatewayResult,
)
from kpi_dashboard.models import db
from kpi_dashboard.models.hierarchy import OrganizationHierarchy
from kpi_dashboard.models.project import ProjectBasicConfig
from kpi_dashboard.services import cache_service
from kpi_dashboard.services import organization_hierarchy_service as store
from kpi_dashboard.services.hierarchy_adapter import convert_to_organization_hierarchy
from kpi_dashboard.services.hierarchy_parser import (
    ExternalHierarchyLevel,
    HierarchyDetails,
    HierarchyNode,
)

CENTRAL_LEVELS = [
    ExternalHierarchyLevel(level=0, display_name="Root"),
    ExternalHierarchyLevel(level=1, display_name="BU"),
    ExternalHierarchyLevel(level=2, display_name="Vertical"),
    ExternalHierarchyLevel(level=3, display_name="Account"),
    ExternalHierarchyLevel(level=4, display_name="Portfolio"),
]


# ── Helper factories ─────────────────────────────────────────────────────────


def _line(portfolio_id="P1", portfolio="Stores", bu="Retail", account_parent="V1"):
    return HierarchyNode(
        bu=bu, bu_unique_id="BU1",
        vertical="Grocery", vertical_unique_id=account_parent,
        account="Acme", account_unique_id="A1",
        portfolio=portfolio, portfolio_unique_id=portfolio_id,
    )


def _adapt(*lines):
    """Run the adapter against the current DB snapshot."""
    existing = store.get_all_nodes()
    incoming = convert_to_organization_hierarchy(
        HierarchyDetails(levels=CENTRAL_LEVELS, nodes=list(lines)),
        existing,
        store.get_top_hierarchy_levels(),
    )
    return incoming, existing


def _sync(*lines, **kwargs):
    kwargs.setdefault("cache_invalidator", Mock())
    incoming, existing = _adapt(*lines)
    return sync_svc.sync_organization_hierarchy(incoming, existing, **kwargs)


def _node(external_id):
    return db.session.execute(
        select(OrganizationHierarchy).where(OrganizationHierarchy.external_id == external_id)
    ).scalar_one()


def _node_count():
    return db.session.execute(select(func.count(OrganizationHierarchy.id))).scalar_one()


def _dangling_parents():
    """(level, external id) of persisted nodes whose parent row does not exist."""
    nodes = store.get_all_nodes()
    node_ids = {n.node_id for n in nodes}
    return [
        (n.hierarchy_level_id, n.external_id) for n in nodes
        if n.parent_id is not None and n.parent_id not in node_ids
    ]


def _make_project_under(port: OrganizationHierarchy, name="Rollout", on_hold=False,
                        updated_by="alice") -> ProjectBasicConfig:
    """Persist a project-level node below ``port`` and its project config."""
    project_node = OrganizationHierarchy(
        external_id=None,
        node_name=name,
        node_display_name=name,
        hierarchy_level_id="project",
        parent_id=port.node_id,
    )
    db.session.add(project_node)
    db.session.flush()
    project = ProjectBasicConfig(
        project_name=name,
        project_node_id=project_node.node_id,
        project_on_hold=on_hold,
        updated_by=updated_by,
    )
    db.session.add(project)
    db.session.commit()
    return project


def _ok_result(body: str) -> GatewayResult:
    return GatewayResult(ok=True, status_code=200, body=body, error=None, duration_ms=12)


def _err_result(status_code=503, error="HTTP 503: unavailable") -> GatewayResult:
    return GatewayResult(ok=False, status_code=status_code, body=None, error=error, duration_ms=40)


# ── Reconciliation ───────────────────────────────────────────────────────────


class TestSyncOrganizationHierarchy:
    def test_inserts_new_chain_and_invalidates_cache(self, hierarchy_levels):
        invalidator = Mock()

        result = _sync(_line(), cache_invalidator=invalidator)

        assert result.inserted == 4
        assert result.updated == 0
        assert _node_count() == 4
        assert _node("P1").parent_id == _node("A1").node_id
        assert _node("BU1").created_date is not None
        invalidator.assert_called_once_with()

    def test_rerun_with_unchanged_snapshot_writes_nothing(self, hierarchy_levels):
        """Re-running on the same central snapshot performs zero writes.

        Given: a first run has persisted BU1/V1/A1/P1
        When:  the same snapshot is synchronised again
        Then:  nothing is saved, the cache is left alone, dates do not move
        """
        _sync(_line())
        modified_before = {n.external_id: n.modified_date for n in store.get_all_nodes()}
        invalidator = Mock()

        with patch.object(store, "save_all_nodes", wraps=store.save_all_nodes) as mock_save:
            result = _sync(_line(), cache_invalidator=invalidator)

        mock_save.assert_not_called()
        invalidator.assert_not_called()
        assert result.written == 0
        assert result.unchanged == 4
        assert {n.external_id: n.modified_date for n in store.get_all_nodes()} == modified_before

    def test_renamed_node_keeps_its_identity(self, hierarchy_levels):
        _sync(_line())
        original = _node("BU1")
        node_id, created = original.node_id, original.created_date

        result = _sync(_line(bu="Retail & Consumer"))

        renamed = _node("BU1")
        assert result.updated == 1
        assert renamed.node_id == node_id
        assert renamed.created_date == created
        assert renamed.node_name == "Retail & Consumer"
        assert renamed.node_display_name == "Retail & Consumer"
        assert _node_count() == 4

    def test_account_moved_to_another_vertical_is_reparented(self, hierarchy_levels):
        _sync(_line())
        account_id = _node("A1").node_id

        _sync(_line(account_parent="V2"))

        moved = _node("A1")
        assert moved.node_id == account_id
        assert moved.parent_id == _node("V2").node_id

    def test_node_missing_upstream_is_not_deleted(self, hierarchy_levels):
        _sync(_line())

        _sync(_line(portfolio_id="P2", portfolio="Online"))

        assert _node("P1") is not None
        assert _node("P2").parent_id == _node("A1").node_id
        assert _node_count() == 5

    def test_null_external_id_is_skipped(self):
        stray = OrganizationHierarchy(node_id="n-stray", external_id=None,
                                      hierarchy_level_id="bu", node_name="Stray")

        result = sync_svc.sync_organization_hierarchy([stray], [], cache_invalidator=Mock())

        assert result.skipped == 1
        assert _node_count() == 0

    def test_same_external_id_at_two_levels_keeps_both_nodes(self, hierarchy_levels):
        line = HierarchyNode(
            bu="Retail", bu_unique_id="X",
            vertical="Grocery", vertical_unique_id="V1",
            account="Acme", account_unique_id="X",
            portfolio="Stores", portfolio_unique_id="P1",
        )

        result = _sync(line)

        assert result.inserted == 4
        assert result.skipped == 0
        assert _dangling_parents() == []
        x_rows = {n.hierarchy_level_id: n for n in store.get_all_nodes() if n.external_id == "X"}
        assert set(x_rows) == {"bu", "acc"}
        assert _node("P1").parent_id == x_rows["acc"].node_id
        assert _node("V1").parent_id == x_rows["bu"].node_id

    def test_external_id_moved_to_another_level_leaves_no_dangling_parent(self, hierarchy_levels):
        """An id that changes level becomes a new node; its children point at it.

        Given: a first run persisted A1 as an account
        When:  the next snapshot sends A1 as a vertical with account A2 below it
        Then:  the vertical A1 is inserted, the old account row is kept, and
               every persisted parent_id resolves to a stored node
        """
        _sync(_line())
        old_account_id = _node("A1").node_id

        moved = HierarchyNode(
            bu="Retail", bu_unique_id="BU1",
            vertical="Acme Group", vertical_unique_id="A1",
            account="Acme Online", account_unique_id="A2",
            portfolio="Stores", portfolio_unique_id="P1",
        )
        result = _sync(moved)

        assert result.inserted == 2
        assert result.updated == 1
        assert _dangling_parents() == []
        a1_rows = {n.hierarchy_level_id: n for n in store.get_all_nodes() if n.external_id == "A1"}
        assert a1_rows["acc"].node_id == old_account_id
        assert _node("A2").parent_id == a1_rows["ver"].node_id
        assert _node("P1").parent_id == _node("A2").node_id

    def test_unknown_cascade_policy_raises(self):
        with pytest.raises(ValueError, match="Unknown cascade policy"):
            sync_svc.sync_organization_hierarchy([], [], cascade_policy="everything")


# ── Project-pause cascade ────────────────────────────────────────────────────


class TestProjectPauseCascade:
    def test_project_paused_when_port_disappears_upstream(self, hierarchy_levels):
        """missing_external_port: P1 vanished from the snapshot → its project is paused."""
        _sync(_line())
        project = _make_project_under(_node("P1"))

        result = _sync(_line(portfolio_id="P2", portfolio="Online"))

        paused = db.session.get(ProjectBasicConfig, project.id)
        assert result.paused_projects == 1
        assert paused.project_on_hold is True
        assert paused.updated_by == sync_svc.SYSTEM_USER
        assert paused.updated_at is not None

    def test_project_paused_when_port_id_reappears_at_another_level(self, hierarchy_levels):
        _sync(_line())
        project = _make_project_under(_node("P1"))
        relabelled = HierarchyNode(
            bu="Retail", bu_unique_id="BU1",
            vertical="Grocery", vertical_unique_id="V1",
            account="Stores Account", account_unique_id="P1",
            portfolio="Online", portfolio_unique_id="P2",
        )

        result = _sync(relabelled)

        assert result.paused_projects == 1
        assert db.session.get(ProjectBasicConfig, project.id).project_on_hold is True
        assert _dangling_parents() == []

    def test_project_untouched_when_port_still_present(self, hierarchy_levels):
        _sync(_line())
        project = _make_project_under(_node("P1"))

        result = _sync(_line())

        kept = db.session.get(ProjectBasicConfig, project.id)
        assert result.paused_projects == 0
        assert kept.project_on_hold is False
        assert kept.updated_by == "alice"

    def test_project_already_on_hold_is_left_alone(self, hierarchy_levels):
        _sync(_line())
        project = _make_project_under(_node("P1"), on_hold=True)

        result = _sync(_line(portfolio_id="P2"))

        assert result.paused_projects == 0
        assert db.session.get(ProjectBasicConfig, project.id).updated_by == "alice"

    def test_orphaned_port_policy_pauses_projects_under_local_ports(self, hierarchy_levels):
        """orphaned_port: any project under a port without external id is paused."""
        _sync(_line())
        local_port = OrganizationHierarchy(external_id=None, node_name="Local",
                                           hierarchy_level_id="port",
                                           parent_id=_node("A1").node_id)
        db.session.add(local_port)
        db.session.commit()
        orphaned = _make_project_under(local_port, name="Orphaned")
        healthy = _make_project_under(_node("P1"), name="Healthy")

        result = _sync(_line(), cascade_policy=sync_svc.CASCADE_ORPHANED_PORT)

        assert result.paused_projects == 1
        assert db.session.get(ProjectBasicConfig, orphaned.id).project_on_hold is True
        assert db.session.get(ProjectBasicConfig, healthy.id).project_on_hold is False

    def test_none_policy_never_pauses(self, hierarchy_levels):
        _sync(_line())
        project = _make_project_under(_node("P1"))

        result = _sync(_line(portfolio_id="P2"), cascade_policy=sync_svc.CASCADE_NONE)

        assert result.paused_projects == 0
        assert db.session.get(ProjectBasicConfig, project.id).project_on_hold is False

    def test_pause_failure_keeps_hierarchy_write(self, hierarchy_levels):
        """A failing pause is logged and rolled back on its own."""
        _sync(_line())
        project = _make_project_under(_node("P1"))

        with patch.object(store, "save_all_projects", side_effect=SQLAlchemyError("db down")):
            result = _sync(_line(portfolio_id="P2", portfolio="Online"))

        assert result.inserted == 1
        assert "db down" in result.pause_error
        assert _node("P2") is not None
        assert db.session.get(ProjectBasicConfig, project.id).project_on_hold is False


# ── Pipeline ─────────────────────────────────────────────────────────────────


_LINE = {
    "BU": "Retail", "BU_unique_id": "BU1",
    "Vertical": "Grocery", "Vertical_unique_id": "V1",
    "Account": "Acme", "Account_unique_id": "A1",
    "Portfolio": "Stores", "Portfolio_unique_id": "P1",
    "Opportunity": "Rollout", "Opportunity_unique_id": "O1",
}


class TestRunHierarchySync:
    def test_full_run_persists_nodes(self, app, hierarchy_levels, sf360_body):
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_ok_result(sf360_body([_LINE]))) as mock_fetch:
            summary = sync_svc.run_hierarchy_sync()

        assert summary["status"] == "success"
        assert summary["central_nodes"] == 1
        assert summary["inserted"] == 4
        assert _node_count() == 4
        args, kwargs = mock_fetch.call_args
        assert args == (app.config["CENTRAL_HIERARCHY_URL"], app.config["CENTRAL_HIERARCHY_API_KEY"])
        assert kwargs["retry_helper"].max_attempts == app.config["HIERARCHY_SYNC_RETRY_MAX_ATTEMPTS"]

    def test_second_run_is_a_no_op(self, hierarchy_levels, sf360_body):
        body = sf360_body([_LINE])
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_ok_result(body)):
            sync_svc.run_hierarchy_sync()
            summary = sync_svc.run_hierarchy_sync()

        assert summary["status"] == "success"
        assert summary["inserted"] == 0
        assert summary["updated"] == 0
        assert summary["unchanged"] == 4

    def test_successful_write_invalidates_cached_reads(self, hierarchy_levels, sf360_body):
        assert store.list_nodes_cached() == []
        assert cache_service.get_cached(cache_service.hierarchy_nodes_key()) == []

        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_ok_result(sf360_body([_LINE]))):
            sync_svc.run_hierarchy_sync()

        assert cache_service.get_cached(cache_service.hierarchy_nodes_key()) is None
        assert len(store.list_nodes_cached()) == 4

    def test_fetch_failure_aborts_without_writes(self, hierarchy_levels):
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_err_result()):
            summary = sync_svc.run_hierarchy_sync()

        assert summary["status"] == "failed"
        assert summary["stage"] == "fetch"
        assert summary["http_status_code"] == 503
        assert _node_count() == 0

    def test_exhausted_retries_surface_final_error(self, hierarchy_levels, monkeypatch):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("connection refused")
        monkeypatch.setattr(gw_module, "central_hierarchy_gateway",
                            CentralHierarchyGateway(session=session))

        summary = sync_svc.run_hierarchy_sync()

        assert summary["status"] == "failed"
        assert "connection refused" in summary["error_message"]
        assert session.get.call_count == 3

    def test_invalid_payload_aborts_at_parse(self, hierarchy_levels):
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_ok_result("<html>gateway timeout</html>")):
            summary = sync_svc.run_hierarchy_sync()

        assert summary["status"] == "failed"
        assert summary["stage"] == "parse"
        assert _node_count() == 0

    def test_unresolvable_level_aborts_before_any_node(self, hierarchy_levels, sf360_body):
        body = sf360_body([_LINE], levels=[
            {"level": 1, "displayName": "BU"},
            {"level": 2, "displayName": "Region"},
        ])
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_ok_result(body)):
            summary = sync_svc.run_hierarchy_sync()

        assert summary["status"] == "failed"
        assert summary["stage"] == "adapt"
        assert "REGION" in summary["error"]
        assert _node_count() == 0

    def test_missing_url_skips_run(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "CENTRAL_HIERARCHY_URL", "")

        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy") as mock_fetch:
            summary = sync_svc.run_hierarchy_sync()

        assert summary["status"] == "skipped"
        assert summary["reason"] == "not_configured"
        assert summary["run_id"]
        mock_fetch.assert_not_called()

    def test_overlapping_trigger_is_skipped(self):
        """A run started while another holds the lock returns skipped immediately."""
        assert sync_svc._run_lock.acquire(blocking=False)
        try:
            with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy") as mock_fetch:
                summary = sync_svc.run_hierarchy_sync()
        finally:
            sync_svc._run_lock.release()

        assert summary == {"status": "skipped", "reason": "already_running"}
        mock_fetch.assert_not_called()

    def test_lock_is_released_after_a_run(self, hierarchy_levels):
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_err_result()):
            sync_svc.run_hierarchy_sync()

        assert not sync_svc._run_lock.locked()
