"""HTTP tests for the hierarchy and health blueprints."""

from unittest.mock import patch

import kpi_dashboard.integrations.central_hierarchy_gateway as gw_module
import kpi_dashboard.services.hierarchy_sync_service as sync_svc
from kpi_dashboard.integrations.central_hierarchy_gateway import GatewayResult
from kpi_dashboard.services.scheduler_service import SchedulerService

_LINE = {
    "BU": "Retail", "BU_unique_id": "BU1",
    "Vertical": "Grocery", "Vertical_unique_id": "V1",
    "Account": "Acme", "Account_unique_id": "A1",
    "Portfolio": "Stores", "Portfolio_unique_id": "P1",
}


def _ok_result(body):
    return GatewayResult(ok=True, status_code=200, body=body, error=None, duration_ms=5)


class TestHierarchyReads:
    def test_levels_are_listed_top_down(self, client, hierarchy_levels):
        res = client.get("/api/v1/hierarchy/levels")

        assert res.status_code == 200
        ids = [lvl["hierarchy_level_id"] for lvl in res.get_json()["items"]]
        assert ids == ["bu", "ver", "acc", "port", "project"]

    def test_nodes_empty_before_first_sync(self, client):
        res = client.get("/api/v1/hierarchy/nodes")

        assert res.status_code == 200
        assert res.get_json() == {"items": [], "total": 0}


class TestManualSync:
    def test_sync_then_read_nodes(self, client, hierarchy_levels, sf360_body):
        SchedulerService.ensure_jobs_registered()
        client.get("/api/v1/hierarchy/nodes")  # prime the cache

        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_ok_result(sf360_body([_LINE]))):
            res = client.post("/api/v1/hierarchy/sync")

        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "success"
        assert body["result"]["inserted"] == 4

        nodes = client.get("/api/v1/hierarchy/nodes?level_id=port").get_json()
        assert nodes["total"] == 1
        assert nodes["items"][0]["external_id"] == "P1"

    def test_failed_sync_returns_bad_gateway(self, client, hierarchy_levels):
        failed = GatewayResult(ok=False, status_code=500, body=None,
                               error="HTTP 500: boom", duration_ms=5)
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=failed):
            res = client.post("/api/v1/hierarchy/sync")

        assert res.status_code == 502
        assert res.get_json()["code"] == "SYNC_FAILED"

    def test_overlapping_sync_returns_conflict(self, client):
        assert sync_svc._run_lock.acquire(blocking=False)
        try:
            res = client.post("/api/v1/hierarchy/sync")
        finally:
            sync_svc._run_lock.release()

        assert res.status_code == 409
        assert res.get_json()["code"] == "SYNC_IN_PROGRESS"

    def test_sync_status_reports_last_run(self, client, hierarchy_levels, sf360_body):
        SchedulerService.ensure_jobs_registered()
        with patch.object(gw_module.central_hierarchy_gateway, "fetch_hierarchy",
                          return_value=_ok_result(sf360_body([_LINE]))):
            client.post("/api/v1/hierarchy/sync")

        res = client.get("/api/v1/hierarchy/sync/status")

        assert res.status_code == 200
        status = res.get_json()
        assert status["job_name"] == "hierarchy_sync"
        assert status["last_run_status"] == "success"
        assert status["run_count"] == 1
        assert status["scheduler_running"] is False

    def test_sync_status_404_without_job_record(self, client):
        res = client.get("/api/v1/hierarchy/sync/status")

        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestHealth:
    def test_simple_health(self, client):
        assert client.get("/api/v1/health").get_json()["status"] == "ok"

    def test_live_reports_dependencies(self, client):
        res = client.get("/api/v1/health/live")

        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["cache"] == {"status": "ok", "backend": "memory"}

    def test_unknown_api_path_is_json_404(self, client):
        res = client.get("/api/v1/nope")

        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nope"


class TestRequestTiming:
    def test_responses_carry_timing_headers(self, client):
        res = client.get("/api/v1/hierarchy/levels", headers={"X-Request-ID": "req-42"})

        assert res.headers["X-Request-ID"] == "req-42"
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_status_polling_is_not_logged(self, client, caplog):
        with caplog.at_level("DEBUG", logger="kpi_dashboard.middleware.timing"):
            res = client.get("/api/v1/hierarchy/sync/status")

        assert "X-Request-ID" in res.headers
        assert not [r for r in caplog.records if r.name == "kpi_dashboard.middleware.timing"]

    def test_manual_sync_is_logged_with_outcome(self, client, caplog):
        with patch.object(SchedulerService, "run_job",
                          return_value={"status": "success", "result": {"status": "success"}}):
            with caplog.at_level("INFO", logger="kpi_dashboard.middleware.timing"):
                client.post("/api/v1/hierarchy/sync")

        messages = [r.getMessage() for r in caplog.records
                    if r.name == "kpi_dashboard.middleware.timing"]
        assert any(m.startswith("Manual hierarchy sync: POST /api/v1/hierarchy/sync -> 200")
                   for m in messages)
