"""Tests for the generation/judgment service client."""

import json

import httpx
import pytest

from app.errors import GenerationServiceError
from app.services.llm_client import LLMClient

IMAGE_MODEL = "google/gemini-2.5-flash-image-preview"
JUDGE_MODEL = "google/gemini-2.5-pro"


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Skip tenacity's waits between retries."""
    monkeypatch.setattr("time.sleep", lambda seconds: None)


def _client(responses):
    """Client whose transport replays `responses` (Response objects or exceptions) in order."""
    requests = []

    def handler(request):
        requests.append(request)
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return LLMClient(transport=httpx.MockTransport(handler)), requests


def test_generate_image():
    """Test a successful image generation call."""
    client, requests = _client(
        [httpx.Response(200, json={"model": IMAGE_MODEL, "data": [{"url": "https://cdn.example/render.png"}]})]
    )

    result = client.generate_image(
        IMAGE_MODEL,
        "Render the kitchen",
        ["artifact://source"],
        seed=42,
        parameters={"temperature": 0.3},
    )

    assert result == {"artifact_ref": "https://cdn.example/render.png", "model": IMAGE_MODEL}
    body = json.loads(requests[0].content)
    assert requests[0].url.path.endswith("/images/generations")
    assert body["seed"] == 42
    assert body["images"] == ["artifact://source"]
    assert body["temperature"] == 0.3
    assert requests[0].headers["Authorization"].startswith("Bearer ")


def test_chat_completion_adds_security_preamble():
    """Test the judge request carries the security warnings and JSON mode."""
    client, requests = _client(
        [httpx.Response(200, json={"choices": [{"message": {"content": "{\"pass\": true}"}}]})]
    )

    content = client.chat_completion(
        JUDGE_MODEL,
        [{"role": "system", "content": "Judge strictly."}, {"role": "user", "content": "image"}],
        json_mode=True,
    )

    assert content == "{\"pass\": true}"
    body = json.loads(requests[0].content)
    assert body["messages"][0]["content"].startswith("SECURITY WARNINGS:")
    assert body["messages"][0]["content"].endswith("Judge strictly.")
    assert body["response_format"] == {"type": "json_object"}


def test_transient_status_is_retried():
    """Test that a 503 is retried and a later success returned."""
    client, requests = _client(
        [
            httpx.Response(503),
            httpx.Response(200, json={"data": [{"id": "artifact-7"}]}),
        ]
    )

    result = client.generate_image(IMAGE_MODEL, "prompt", [])

    assert result["artifact_ref"] == "artifact-7"
    assert len(requests) == 2


def test_persistent_transient_failure_raises_after_retries():
    """Test that retries stop after three attempts."""
    client, requests = _client([httpx.Response(429) for _ in range(3)])

    with pytest.raises(GenerationServiceError) as exc_info:
        client.generate_image(IMAGE_MODEL, "prompt", [])

    assert exc_info.value.retryable
    assert exc_info.value.status == 429
    assert len(requests) == 3


def test_client_error_not_retried():
    """Test that a 400 fails immediately as non-retryable."""
    client, requests = _client([httpx.Response(400, json={"error": "bad prompt"})])

    with pytest.raises(GenerationServiceError) as exc_info:
        client.generate_image(IMAGE_MODEL, "prompt", [])

    assert not exc_info.value.retryable
    assert exc_info.value.status == 400
    assert len(requests) == 1


def test_timeout_is_retryable():
    """Test that timeouts map to a retryable service error."""
    client, requests = _client([httpx.ConnectTimeout("timed out") for _ in range(3)])

    with pytest.raises(GenerationServiceError) as exc_info:
        client.chat_completion(JUDGE_MODEL, [{"role": "user", "content": "hi"}])

    assert exc_info.value.retryable
    assert len(requests) == 3


def test_model_whitelist():
    """Test that models outside the whitelist are refused without a request."""
    client, requests = _client([])

    with pytest.raises(GenerationServiceError) as exc_info:
        client.generate_image("acme/unknown-model", "prompt", [])

    assert not exc_info.value.retryable
    assert requests == []


def test_missing_artifact_is_retryable():
    """Test that a response without an artifact is treated as transient."""
    client, requests = _client([httpx.Response(200, json={"data": []}) for _ in range(3)])

    with pytest.raises(GenerationServiceError) as exc_info:
        client.generate_image(IMAGE_MODEL, "prompt", [])

    assert exc_info.value.retryable
