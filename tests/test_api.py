"""Tests for the REST API."""

import pytest
from fastapi.testclient import TestClient

from automation_engine.core.exceptions import (
    EnrollmentError,
    GraphValidationError,
    PermanentExecutionError,
    StorageError,
    TransientExecutionError,
    WorkflowNotFoundError,
    create_error_response,
)
from automation_engine.core.middleware import http_status_for_error
from automation_engine.factory import create_app


def _definition(**settings):
    return {
        "name": "Welcome series",
        "nodes": [
            {"id": "start", "type": "trigger", "config": {"trigger_type": "tag_added", "tag": "lead"}},
            {"id": "hello", "type": "message", "config": {"content": "Hi {{first_name}}"}},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "hello"},
        ],
        "settings": settings,
    }


@pytest.fixture
def client(test_config, contact_store, messaging, ai_provider, clock):
    """Test client with the application lifespan running."""
    app = create_app(test_config, contact_store, messaging, ai_provider, clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def active_workflow(client):
    created = client.post("/api/v1/workflows", json={"organization_id": "org-1", "definition": _definition()})
    workflow_id = created.json()["workflow"]["id"]
    published = client.post(f"/api/v1/workflows/{workflow_id}/publish")
    assert published.status_code == 200
    return published.json()


class TestHealth:
    """Test cases for the health endpoints."""

    def test_root_and_health(self, client):
        assert client.get("/").status_code == 200

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")

        assert response.status_code == 200
        assert response.json()["overall_status"] == "healthy"


class TestWorkflowEndpoints:
    """Test cases for workflow lifecycle endpoints."""

    def test_create_workflow_reports_validation(self, client):
        response = client.post(
            "/api/v1/workflows",
            json={"organization_id": "org-1", "definition": _definition()}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["workflow"]["status"] == "draft"
        assert data["workflow"]["version"] == 0
        assert data["validation"]["is_valid"] is True

    def test_validate_endpoint(self, client):
        definition = _definition()
        definition["edges"] = []

        response = client.post("/api/v1/workflows/validate", json=definition)

        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is False
        assert any(issue["node_id"] == "start" for issue in data["issues"])

    def test_publish_bumps_version(self, client, active_workflow):
        assert active_workflow["status"] == "active"
        assert active_workflow["version"] == 1

        again = client.post(f"/api/v1/workflows/{active_workflow['id']}/publish")

        assert again.json()["version"] == 2

    def test_publish_invalid_workflow(self, client):
        definition = _definition()
        definition["edges"] = []
        created = client.post("/api/v1/workflows", json={"organization_id": "org-1", "definition": definition})
        workflow_id = created.json()["workflow"]["id"]

        response = client.post(f"/api/v1/workflows/{workflow_id}/publish")

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "GraphValidationError"
        assert detail["details"]["issues"]

    def test_unknown_workflow(self, client):
        response = client.get("/api/v1/workflows/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "WorkflowNotFoundError"

    def test_pause_and_resume(self, client, active_workflow):
        workflow_id = active_workflow["id"]

        paused = client.post(f"/api/v1/workflows/{workflow_id}/pause")
        paused_again = client.post(f"/api/v1/workflows/{workflow_id}/pause")
        resumed = client.post(f"/api/v1/workflows/{workflow_id}/resume")

        assert paused.json()["status"] == "paused"
        assert paused_again.status_code == 409
        assert resumed.json()["status"] == "active"

    def test_list_workflows_by_status(self, client, active_workflow):
        client.post("/api/v1/workflows", json={"organization_id": "org-1", "definition": _definition()})

        response = client.get("/api/v1/workflows", params={"organization_id": "org-1", "status": "active"})

        assert [workflow["id"] for workflow in response.json()] == [active_workflow["id"]]


class TestEnrollmentEndpoints:
    """Test cases for enrollment endpoints and the manual sweep."""

    def test_enroll_sweep_and_status(self, client, active_workflow, messaging):
        workflow_id = active_workflow["id"]

        enrolled = client.post(f"/api/v1/workflows/{workflow_id}/enrollments", json={"contact_id": "contact-1"})
        assert enrolled.status_code == 200
        enrollment_id = enrolled.json()["enrollment"]["id"]

        sweep = client.post("/api/v1/scheduler/sweep")
        assert sweep.json()["claimed"] == 1
        assert sweep.json()["outcomes"] == {"completed": 1}

        status_response = client.get(f"/api/v1/enrollments/{enrollment_id}")
        assert status_response.json()["enrollment"]["status"] == "completed"
        assert status_response.json()["workflow_status"] == "active"
        assert messaging.contents() == ["Hi Ada"]

        log = client.get(f"/api/v1/enrollments/{enrollment_id}/log").json()
        assert [entry["node_id"] for entry in log] == ["start", "hello"]

    def test_duplicate_enrollment_is_skipped(self, client, active_workflow):
        url = f"/api/v1/workflows/{active_workflow['id']}/enrollments"
        client.post(url, json={"contact_id": "contact-1"})

        second = client.post(url, json={"contact_id": "contact-1"})

        assert second.status_code == 200
        assert second.json()["enrolled"] is False
        assert second.json()["reason"] == "already enrolled"

    def test_bulk_enroll(self, client, active_workflow):
        response = client.post(
            f"/api/v1/workflows/{active_workflow['id']}/enrollments/bulk",
            json={"contact_ids": ["contact-1", "contact-2", "contact-1"]}
        )

        assert response.json()["enrolled"] == 2
        assert response.json()["skipped"] == 0

    def test_drop_enrollment(self, client, active_workflow):
        enrolled = client.post(
            f"/api/v1/workflows/{active_workflow['id']}/enrollments",
            json={"contact_id": "contact-2"}
        )
        enrollment_id = enrolled.json()["enrollment"]["id"]

        dropped = client.post(f"/api/v1/enrollments/{enrollment_id}/drop", json={"reason": "asked by sales"})
        again = client.post(f"/api/v1/enrollments/{enrollment_id}/drop")

        assert dropped.json()["status"] == "dropped"
        assert dropped.json()["drop_reason"] == "asked by sales"
        assert again.status_code == 409

    def test_unknown_enrollment(self, client):
        assert client.get("/api/v1/enrollments/missing").status_code == 404

    def test_event_endpoint_enrolls_by_trigger(self, client, active_workflow):
        response = client.post("/api/v1/events", json={
            "type": "tag_added",
            "organization_id": "org-1",
            "contact_id": "contact-2",
            "tag": "lead",
        })

        assert response.status_code == 200
        results = response.json()["enrollments"]
        assert len(results) == 1
        assert results[0]["enrolled"] is True

    def test_analytics(self, client, active_workflow):
        workflow_id = active_workflow["id"]
        client.post(f"/api/v1/workflows/{workflow_id}/enrollments", json={"contact_id": "contact-3"})
        client.post("/api/v1/scheduler/sweep")

        analytics = client.get(f"/api/v1/workflows/{workflow_id}/analytics").json()

        assert analytics["enrollments"]["dropped"] == 1
        assert analytics["drop_reasons"] == {"message step 'hello' failed: Contact has no phone number": 1}
        assert analytics["nodes"]["hello"]["failed"] == 1


class TestErrorMapping:
    """Test cases for mapping engine errors onto HTTP responses."""

    @pytest.mark.parametrize("error, status_code", [
        (GraphValidationError("invalid graph"), 400),
        (WorkflowNotFoundError("wf-1"), 404),
        (EnrollmentError("already finished"), 409),
        (TransientExecutionError("gateway timed out"), 503),
        (StorageError("database is locked"), 503),
        (PermanentExecutionError("no phone number"), 500),
    ])
    def test_status_codes(self, error, status_code):
        assert http_status_for_error(error) == status_code

    def test_error_response_carries_context(self):
        error = TransientExecutionError("gateway timed out", node_id="hello", enrollment_id="enrollment-1")

        body = create_error_response(error)

        assert body["error"] == "TransientExecutionError"
        assert body["details"]["recoverable"] is True
        assert body["context"] == {"node_id": "hello", "enrollment_id": "enrollment-1"}
