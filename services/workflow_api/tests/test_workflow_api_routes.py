"""Tests for workflow API routes."""

import time

import numpy as np
import pandas as pd
import pytest
from fastapi.testclient import TestClient

from libs.workflow_automation import WorkflowEngineSettings, register_score_function
from services.workflow_api.main import create_app

register_score_function("api_constant_critical", lambda reference, current: 0.5)

FINISHED = {"completed", "failed", "cancelled"}


@pytest.fixture
def client():
    """Test client with an isolated engine and no background trigger loop."""
    settings = WorkflowEngineSettings(
        _env_file=None,
        persistence_retry_delay_seconds=0.0,
        configure_logging=False,
        start_trigger_loop=False,
    )
    with TestClient(create_app(settings)) as client:
        yield client


def lead_scoring_workflow(workflow_id="lead-scoring", review=False):
    steps = [
        {"step_id": "ingest", "step_type": "ingestion", "parameters": {"record_count": 250}},
        {"step_id": "train", "step_type": "training", "dependencies": ["ingest"]},
    ]
    if review:
        steps.append(
            {
                "step_id": "approve",
                "step_type": "human_review",
                "dependencies": ["train"],
                "parameters": {"reviewer_id": "compliance-officer"},
            }
        )
    return {"workflow_id": workflow_id, "name": "Lead scoring", "steps": steps}


def wait_for_status(client, execution_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/api/v1/executions/{execution_id}").json()["data"]
        if data["status"] in statuses:
            return data
        time.sleep(0.02)
    raise AssertionError(f"Execution {execution_id} never reached {statuses}")


def wait_for_review(client, execution_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        reviews = client.get(
            "/api/v1/reviews", params={"status": "pending", "execution_id": execution_id}
        ).json()["data"]
        if reviews:
            return reviews[0]
        time.sleep(0.02)
    raise AssertionError(f"No review request opened for {execution_id}")


class TestWorkflowRoutes:
    """Tests for workflow definition routes."""

    def test_root(self, client):
        """Test the service root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "workflow_api"

    def test_activate_and_list(self, client):
        """Test activating a workflow definition."""
        response = client.post("/api/v1/workflows", json=lead_scoring_workflow())

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["workflow_id"] == "lead-scoring"

        listed = client.get("/api/v1/workflows").json()["data"]
        assert [d["workflow_id"] for d in listed] == ["lead-scoring"]

    def test_invalid_graph_rejected(self, client):
        """Test that a dependency on an unknown step is rejected at activation."""
        definition = lead_scoring_workflow()
        definition["steps"][1]["dependencies"] = ["missing-step"]

        response = client.post("/api/v1/workflows", json=definition)

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_WORKFLOW_GRAPH"

    def test_conflicting_redefinition(self, client):
        """Test that an active workflow cannot be silently replaced."""
        client.post("/api/v1/workflows", json=lead_scoring_workflow())
        changed = lead_scoring_workflow()
        changed["name"] = "Lead scoring v2"

        response = client.post("/api/v1/workflows", json=changed)

        assert response.status_code == 409

    def test_request_validation_error(self, client):
        """Test the error envelope for malformed definitions."""
        response = client.post(
            "/api/v1/workflows", json={"workflow_id": "empty", "name": "Empty"}
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestExecutionRoutes:
    """Tests for execution routes."""

    def test_submit_and_follow_execution(self, client):
        """Test submitting an execution and reading its status and log."""
        client.post("/api/v1/workflows", json=lead_scoring_workflow())

        response = client.post(
            "/api/v1/executions",
            json={"workflow_id": "lead-scoring", "inputs": {"source": "crm"}},
        )

        assert response.status_code == 202
        execution_id = response.json()["data"]["execution_id"]
        assert response.headers["X-Request-ID"]

        status = wait_for_status(client, execution_id, FINISHED)
        assert status["status"] == "completed"
        assert status["completed_steps"] == 2
        assert status["progress_percent"] == 100.0

        log = client.get(f"/api/v1/executions/{execution_id}/log").json()["data"]
        assert log

        listed = client.get(
            "/api/v1/executions", params={"workflow_id": "lead-scoring"}
        ).json()["data"]
        assert [e["execution_id"] for e in listed] == [execution_id]

    def test_unknown_workflow(self, client):
        """Test submitting an execution of an unknown workflow."""
        response = client.post("/api/v1/executions", json={"workflow_id": "nope"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "WORKFLOW_NOT_FOUND"

    def test_unknown_execution(self, client):
        """Test reading an unknown execution."""
        response = client.get("/api/v1/executions/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "EXECUTION_NOT_FOUND"

    def test_cancel_finished_execution(self, client):
        """Test that cancelling a finished execution is reported as a no-op."""
        client.post("/api/v1/workflows", json=lead_scoring_workflow())
        execution_id = client.post(
            "/api/v1/executions", json={"workflow_id": "lead-scoring"}
        ).json()["data"]["execution_id"]
        wait_for_status(client, execution_id, FINISHED)

        response = client.post(f"/api/v1/executions/{execution_id}/cancel")

        assert response.status_code == 200
        assert response.json()["data"]["cancellation_requested"] is False


class TestReviewRoutes:
    """Tests for the human review routes."""

    def test_approve_pending_review(self, client):
        """Test that an approval resumes the suspended execution."""
        client.post("/api/v1/workflows", json=lead_scoring_workflow(review=True))
        execution_id = client.post(
            "/api/v1/executions", json={"workflow_id": "lead-scoring"}
        ).json()["data"]["execution_id"]

        review = wait_for_review(client, execution_id)
        assert review["reviewer_id"] == "compliance-officer"
        assert review["step_id"] == "approve"

        response = client.post(
            f"/api/v1/reviews/{review['review_id']}/decision",
            json={
                "decision": "approved",
                "reviewer_id": "compliance-officer",
                "comments": "Looks good",
            },
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "approved"
        assert wait_for_status(client, execution_id, FINISHED)["status"] == "completed"

        second = client.post(
            f"/api/v1/reviews/{review['review_id']}/decision",
            json={"decision": "rejected", "reviewer_id": "compliance-officer"},
        )
        assert second.status_code == 409

    def test_reject_fails_execution(self, client):
        """Test that a rejection fails the execution."""
        client.post("/api/v1/workflows", json=lead_scoring_workflow(review=True))
        execution_id = client.post(
            "/api/v1/executions", json={"workflow_id": "lead-scoring"}
        ).json()["data"]["execution_id"]
        review = wait_for_review(client, execution_id)

        client.post(
            f"/api/v1/reviews/{review['review_id']}/decision",
            json={"decision": "rejected", "reviewer_id": "compliance-officer"},
        )

        status = wait_for_status(client, execution_id, FINISHED)
        assert status["status"] == "failed"

    def test_unknown_review(self, client):
        """Test deciding an unknown review request."""
        response = client.post(
            "/api/v1/reviews/missing/decision",
            json={"decision": "approved", "reviewer_id": "someone"},
        )
        assert response.status_code == 404

    def test_reviewers_cannot_cancel(self, client):
        """Test that the engine-only cancelled status is not accepted as a decision."""
        response = client.post(
            "/api/v1/reviews/missing/decision",
            json={"decision": "cancelled", "reviewer_id": "someone"},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestDriftRoutes:
    """Tests for drift monitoring routes."""

    @pytest.fixture
    def drift_data(self, client):
        rng = np.random.default_rng(11)
        frame = pd.DataFrame({"lead_score": rng.normal(0.5, 0.1, 200)})
        source = client.app.state.engine.drift_data_source
        source.set_baseline("lead-scoring-v2", frame)
        source.set_recent("lead-scoring-v2", frame.copy())
        return source

    def test_critical_drift_starts_retraining(self, client, drift_data):
        """Test that critical drift submits the retraining workflow."""
        client.post(
            "/api/v1/workflows",
            json={
                "workflow_id": "retrain",
                "name": "Retrain lead scoring",
                "steps": [{"step_id": "train", "step_type": "training"}],
            },
        )
        profile = client.put(
            "/api/v1/models/lead-scoring-v2/drift-profile",
            json={
                "threshold": 0.1,
                "features": [{"name": "lead_score", "method": "api_constant_critical"}],
                "retraining_workflow_id": "retrain",
            },
        )
        assert profile.status_code == 200

        response = client.post("/api/v1/models/lead-scoring-v2/drift")

        assert response.status_code == 200
        data = response.json()["data"]
        assert [s["severity"] for s in data["signals"]] == ["critical"]
        assert data["retraining_execution_id"]
        status = wait_for_status(client, data["retraining_execution_id"], FINISHED)
        assert status["workflow_id"] == "retrain"

        history = client.get("/api/v1/models/lead-scoring-v2/drift").json()["data"]
        assert len(history) == 1

        signal_id = history[0]["signal_id"]
        update = client.post(
            f"/api/v1/drift-signals/{signal_id}/status",
            json={"status": "investigating", "actor": "data-scientist"},
        )
        assert update.status_code == 200
        assert update.json()["data"]["status"] == "investigating"

    def test_unknown_profile_method(self, client, drift_data):
        """Test that profiles naming unknown score functions are rejected."""
        response = client.put(
            "/api/v1/models/lead-scoring-v2/drift-profile",
            json={"threshold": 0.1, "features": [{"name": "lead_score", "method": "nope"}]},
        )
        assert response.status_code == 422

    def test_drift_without_profile(self, client):
        """Test drift detection for a model with no profile."""
        response = client.post("/api/v1/models/unknown/drift")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "DRIFT_PROFILE_NOT_FOUND"

    def test_unknown_signal(self, client):
        """Test updating an unknown drift signal."""
        response = client.post(
            "/api/v1/drift-signals/missing/status",
            json={"status": "resolved", "actor": "data-scientist"},
        )
        assert response.status_code == 404


class TestEventAndHealthRoutes:
    """Tests for event publishing and health routes."""

    def test_publish_event(self, client):
        """Test that a matching event starts the workflow."""
        definition = lead_scoring_workflow()
        definition["triggers"] = [
            {"trigger_type": "event", "event_type": "lead_batch_ready"}
        ]
        client.post("/api/v1/workflows", json=definition)

        response = client.post("/api/v1/events", json={"type": "lead_batch_ready"})

        assert response.status_code == 202
        execution_ids = response.json()["data"]["execution_ids"]
        assert len(execution_ids) == 1
        assert wait_for_status(client, execution_ids[0], FINISHED)["status"] == "completed"

    def test_event_without_type(self, client):
        """Test that events must carry a type."""
        response = client.post("/api/v1/events", json={"source": "crm"})
        assert response.status_code == 400

    def test_health(self, client):
        """Test the engine health report."""
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["health_status"] == "healthy"
        assert data["active_executions"] == 0
