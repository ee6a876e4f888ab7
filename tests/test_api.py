"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from scriptimport.api.main import app
from scriptimport.api.storage import import_storage


@pytest.fixture
def client():
    import_storage.clear()
    yield TestClient(app)
    import_storage.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestCatalogPreview:
    """Tests for POST /api/catalog/preview."""

    def test_preview(self, client, source_tree):
        response = client.post("/api/catalog/preview", json={"source_dir": str(source_tree)})

        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "Dev"
        assert body["total_units"] == 10
        assert body["counts"]["Programmability"] == 2
        assert {"folder": "99_Notes", "reason": "unrecognised"} in body["skipped_folders"]

    def test_preview_with_filters(self, client, source_tree):
        response = client.post("/api/catalog/preview", json={
            "source_dir": str(source_tree),
            "mode": "Prod",
            "include_object_types": ["SecurityPolicy"],
        })

        assert response.status_code == 200
        assert [u["path"] for u in response.json()["units"]] == [
            "19_Security/Sales.TenantPolicy.securitypolicy.sql"
        ]

    def test_preview_missing_directory(self, client, tmp_path):
        response = client.post("/api/catalog/preview", json={"source_dir": str(tmp_path / "missing")})

        assert response.status_code == 400
        assert "does not exist" in response.json()["detail"]["message"]

    def test_preview_unknown_type(self, client, source_tree):
        response = client.post("/api/catalog/preview", json={
            "source_dir": str(source_tree),
            "include_object_types": ["Widget"],
        })
        assert response.status_code == 400


class TestImports:
    """Tests for the import endpoints."""

    def test_dry_run_import(self, client, source_tree):
        """Test a dry-run import runs in the background and reports its ledger."""
        response = client.post("/api/imports", json={
            "source_dir": str(source_tree),
            "database": "TestDb",
        })

        assert response.status_code == 202
        import_id = response.json()["id"]

        response = client.get(f"/api/imports/{import_id}")
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "completed"
        assert body["dry_run"] is True
        assert body["succeeded"] == 10
        assert body["exit_code"] == 0
        assert [s["stage"] for s in body["stages"]] == [
            "Security", "DatabaseConfig", "Schema", "Programmability", "SecurityPolicy", "Data",
        ]
        assert "00_FileGroups (excluded in Dev mode)" in body["skipped_folders"]

    def test_list_imports(self, client, source_tree):
        client.post("/api/imports", json={"source_dir": str(source_tree), "database": "A"})
        client.post("/api/imports", json={"source_dir": str(source_tree), "database": "B"})

        body = client.get("/api/imports").json()

        assert body["total"] == 2
        assert {i["database"] for i in body["imports"]} == {"A", "B"}

    def test_failures_of_completed_import(self, client, tmp_path):
        """Test a run that fails setup lists its error as a failure."""
        response = client.post("/api/imports", json={
            "source_dir": str(tmp_path / "missing"),
            "database": "TestDb",
        })
        import_id = response.json()["id"]

        body = client.get(f"/api/imports/{import_id}/failures").json()

        assert body["total"] == 1
        assert body["failures"][0]["kind"] == "configuration_error"
        assert client.get(f"/api/imports/{import_id}").json()["status"] == "failed"

    def test_invalid_request_rejected(self, client, source_tree):
        response = client.post("/api/imports", json={
            "source_dir": str(source_tree),
            "database": "TestDb",
            "dry_run": False,
        })

        assert response.status_code == 400
        assert "server is required" in response.json()["detail"]["message"]

    def test_retry_bounds_rejected(self, client, source_tree):
        response = client.post("/api/imports", json={
            "source_dir": str(source_tree),
            "database": "TestDb",
            "retry_max_attempts": 50,
        })
        assert response.status_code == 400

    def test_unknown_import(self, client):
        assert client.get("/api/imports/nope").status_code == 404
        assert client.get("/api/imports/nope/failures").status_code == 404
