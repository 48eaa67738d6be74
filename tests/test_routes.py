"""API tests: request flow and error responses."""

import uuid

from app.models.asset import OPPOSITE
from app.services.retry_controller import get_or_create_step_state


def _create_run(client):
    response = client.post("/runs", json={"source_ref": "artifact://uploads/plan.png"})
    assert response.status_code == 200
    return response.json()["run_id"]


def test_health(client):
    """Test health endpoint."""
    assert client.get("/health").json() == {"status": "healthy"}


def test_create_and_get_run(client):
    """Test run creation and status."""
    run_id = _create_run(client)

    response = client.get(f"/runs/{run_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["phase"] == "upload"
    assert data["current_step"] == 0
    assert len(data["steps"]) == 8
    assert data["steps"][5]["name"] == "renders"
    assert data["steps"][0]["max_attempts"] == 5
    assert data["asset_counts"]["pending"] == 0


def test_unknown_run_is_404(client):
    """Test the NotFound error shape."""
    response = client.get(f"/runs/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


def test_illegal_transition_is_409(client):
    """Test the InvalidTransition error shape."""
    run_id = _create_run(client)

    response = client.post(f"/runs/{run_id}/transition", json={"target_phase": "renders_review"})

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "InvalidTransition"
    assert body["from_phase"] == "upload"
    assert body["to_phase"] == "renders_review"


def test_unknown_step_is_validation_error(client):
    """Test that step indices outside the table are rejected."""
    run_id = _create_run(client)

    response = client.get(f"/runs/{run_id}/steps/9/assets")

    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


def test_start_step_and_idempotent_generate(client):
    """Test creating, starting and re-requesting a run-level asset."""
    run_id = _create_run(client)
    client.post(f"/runs/{run_id}/transition", json={"target_phase": "space_analysis_pending"})

    created = client.post(f"/runs/{run_id}/steps/0/assets", json={"items": [{"prompt": "Analyze the plan"}]})
    assert created.status_code == 200
    asset_id = created.json()[0]["asset_id"]

    started = client.post(f"/runs/{run_id}/steps/0/start")
    assert started.status_code == 200
    assert started.json()["phase"] == "space_analysis_running"
    assert started.json()["results"][0]["status"] == "queued"

    again = client.post(f"/assets/{asset_id}/generate")
    assert again.status_code == 200
    assert again.json()["idempotent"] is True
    assert again.json()["status"] == "queued"


def test_opposite_before_primary_is_409(client, make_run, make_space, make_asset):
    """Test the DependencyNotReady error shape."""
    run = make_run(step=5, phase="renders_in_progress")
    space = make_space(run)
    primary = make_asset(run, 5, space=space, status="generating")
    opposite = make_asset(run, 5, kind=OPPOSITE, space=space)

    response = client.post(
        f"/assets/{opposite.asset_id}/generate",
        json={"primary_output_ref": "artifact://guess"},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "DependencyNotReady"
    assert body["primary_asset_id"] == str(primary.asset_id)
    assert body["primary_status"] == "generating"

    asset = client.get(f"/assets/{opposite.asset_id}").json()
    assert asset["status"] == "blocked"
    assert asset["block_reason"]["code"] == "PRIMARY_DEPENDENCY_REQUIRED"


def test_duplicate_in_progress_is_409(client, make_run, make_space, make_asset):
    """Test the DuplicateInProgress error shape."""
    run = make_run(step=5, phase="renders_in_progress")
    space = make_space(run)
    busy = make_asset(run, 5, space=space, status="queued")
    second = make_asset(run, 5, space=space)

    response = client.post(f"/assets/{second.asset_id}/generate")

    assert response.status_code == 409
    assert response.json() == {
        "error": "DuplicateInProgress",
        "message": response.json()["message"],
        "existing_id": str(busy.asset_id),
    }


def test_retry_budget_exhausted_is_409(client, test_db, make_run, make_space, make_asset):
    """Test the BudgetExhausted error shape."""
    run = make_run(step=5, phase="renders_review")
    space = make_space(run)
    make_asset(run, 5, space=space, status="failed", attempt_count=5)
    state = get_or_create_step_state(test_db, run, 5)
    state.attempt_count = 5
    test_db.commit()

    response = client.post(f"/runs/{run.run_id}/steps/5/retry")

    assert response.status_code == 409
    assert response.json()["error"] == "BudgetExhausted"
    assert response.json()["scope"] == "step"


def test_evaluate_endpoint(client, make_run, fail_verdict):
    """Test verdict evaluation through the API."""
    run = make_run(step=5, phase="renders_in_progress")

    response = client.post(f"/runs/{run.run_id}/steps/5/evaluate", json={"verdict": fail_verdict})

    assert response.status_code == 200
    data = response.json()
    assert data["decision"] == "retry"
    assert data["delay_seconds"] == 2.0
    assert data["step_status"] == "qa_fail"
    assert data["retry_delta"]["new_seed"] is not None


def test_evaluate_malformed_is_422(client, make_run):
    """Test the QAParseFailed error shape."""
    run = make_run(step=5, phase="renders_in_progress")

    response = client.post(f"/runs/{run.run_id}/steps/5/evaluate", json={"verdict": {"pass": True}})

    assert response.status_code == 422
    assert response.json()["error"] == "QAParseFailed"

    status = client.get(f"/runs/{run.run_id}").json()
    assert status["steps"][5]["status"] == "blocked_for_human"


def test_auto_retry_toggle(client, make_run):
    """Test stopping and enabling auto-retry."""
    run = make_run(step=5, phase="renders_in_progress")

    stopped = client.post(f"/runs/{run.run_id}/steps/5/auto-retry/stop")
    assert stopped.json() == {"step_index": 5, "auto_retry_enabled": False}

    enabled = client.post(f"/runs/{run.run_id}/steps/5/auto-retry/enable")
    assert enabled.json()["auto_retry_enabled"] is True


def test_restart_and_events(client, make_run, make_asset):
    """Test restart through the API and the event log."""
    run = make_run(step=2, phase="style_review")
    make_asset(run, 2, status="needs_review", output_ref="artifact://styled")

    response = client.post(f"/runs/{run.run_id}/steps/1/restart", json={"auto_start": False})

    assert response.status_code == 200
    data = response.json()
    assert data["reset_epoch"] == 1
    assert data["phase"] == "top_down_3d_pending"
    assert data["auto_started"] is False
    assert client.get(f"/runs/{run.run_id}/steps/2/assets").json() == []

    client.post(f"/runs/{run.run_id}/steps/1/auto-retry/stop")
    events = client.get(f"/runs/{run.run_id}/events", params={"step": 1}).json()
    assert [e["type"] for e in events] == ["auto_retry_stopped"]


def test_rollback(client, make_run):
    """Test rollback through the API."""
    run = make_run(step=5, phase="renders_pending")

    response = client.post(f"/runs/{run.run_id}/steps/3/rollback")

    assert response.status_code == 200
    assert response.json()["phase"] == "spaces_detected"


def test_delete_run(client):
    """Test run deletion."""
    run_id = _create_run(client)

    assert client.delete(f"/runs/{run_id}").status_code == 200
    assert client.get(f"/runs/{run_id}").status_code == 404
