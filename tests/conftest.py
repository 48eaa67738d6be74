"""Pytest configuration and fixtures."""

import copy
import json
import os

# Settings are read at import time; keep the app off Postgres and the worker off
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("START_WORKER", "false")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base, get_db
from app.models.asset import PRIMARY, GenerationAsset
from app.models.run import PipelineRun
from app.models.space import Space

PASS_VERDICT = {
    "pass": True,
    "score": 91,
    "confidence": 0.9,
    "issues": [],
    "retry_suggestion": {"type": "seed_change", "instruction": ""},
    "approval_reasons": [
        "North wall angle matches the floor plan at the window bay",
        "Sofa and coffee table sit where the plan places them",
        "Oak flooring continues from the styled reference without seams",
    ],
}

FAIL_VERDICT = {
    "pass": False,
    "score": 42,
    "confidence": 0.6,
    "issues": [
        {"category": "GEOMETRY_DISTORTION", "severity": "medium", "evidence": "left wall bows outward"},
    ],
    "retry_suggestion": {"type": "seed_change", "instruction": "try another seed"},
    "failure_categories": ["GEOMETRY_DISTORTION"],
    "failure_explanation": "The left wall is curved although the plan shows a straight wall",
}


class FakeLLMClient:
    """Stands in for LLMClient; judge replies are taken from `verdicts` in order."""

    def __init__(self, verdicts=None, image_error=None):
        self.verdicts = list(verdicts or [])
        self.image_error = image_error
        self.image_calls = []
        self.judge_calls = []
        self.on_generate = None

    def generate_image(self, model, prompt, reference_refs, seed=None, parameters=None):
        self.image_calls.append(
            {
                "model": model,
                "prompt": prompt,
                "reference_refs": list(reference_refs),
                "seed": seed,
                "parameters": parameters,
            }
        )
        if self.on_generate is not None:
            self.on_generate()
        if self.image_error is not None:
            raise self.image_error
        return {"artifact_ref": f"artifact://render/{len(self.image_calls)}", "model": model}

    def chat_completion(self, model, messages, temperature=0.2, max_tokens=4000, json_mode=False):
        self.judge_calls.append(messages)
        verdict = self.verdicts.pop(0) if self.verdicts else PASS_VERDICT
        return verdict if isinstance(verdict, str) else json.dumps(verdict)


@pytest.fixture(scope="function")
def test_db():
    """Create a test database for each test."""
    # Single shared in-memory connection so the app's sessions see the same data
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    yield db

    db.close()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def pass_verdict():
    return copy.deepcopy(PASS_VERDICT)


@pytest.fixture
def fail_verdict():
    return copy.deepcopy(FAIL_VERDICT)


@pytest.fixture
def client(test_db):
    """API client bound to the test database."""
    from app.main import app

    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_run(test_db):
    """Factory for runs positioned at a given step and phase."""

    def _make(step=0, phase=None, **fields):
        from app.services import phases

        fields.setdefault("status", "active")
        fields.setdefault("reset_epoch", 0)
        fields.setdefault("total_attempts", 0)
        run = PipelineRun(
            source_ref="artifact://uploads/floorplan.png",
            phase=phase or phases.get_step(step).pending,
            current_step=step,
            **fields,
        )
        test_db.add(run)
        test_db.commit()
        return run

    return _make


@pytest.fixture
def make_space(test_db):
    def _make(run, name="Living Room"):
        space = Space(run_id=run.run_id, name=name, space_type="living_room")
        test_db.add(space)
        test_db.commit()
        return space

    return _make


@pytest.fixture
def make_asset(test_db):
    """Factory for assets in any status."""

    def _make(run, step, kind=PRIMARY, space=None, status="pending", **fields):
        asset = GenerationAsset(
            run_id=run.run_id,
            space_id=space.space_id if space is not None else None,
            step_index=step,
            kind=kind,
            status=status,
            attempt_count=fields.pop("attempt_count", 0),
            base_prompt=fields.pop("base_prompt", "Eye-level render of the room"),
            **fields,
        )
        test_db.add(asset)
        test_db.commit()
        return asset

    return _make
