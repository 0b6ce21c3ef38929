"""Tests for the worker's topic intake route and its auth guard."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from contactly.api.factory import create_app
from contactly.tasks.contracts import TopicEnvelopeV1
from helpers import build_pipeline, make_record

SECRET = "test-secret"


@pytest.fixture
def pipeline():
    return build_pipeline(role="worker")


@pytest.fixture
def client(pipeline, monkeypatch):
    monkeypatch.setenv("INTERNAL_TASK_SECRET", SECRET)
    return TestClient(create_app(role="worker", pipeline=pipeline))


def _envelope(record_id: str = "r1", topic: str = "raw-messages") -> dict:
    record = make_record("Rahul Sharma", "9876543210")
    return TopicEnvelopeV1(
        topic=topic, key=record.sender_number, record_id=record_id, payload=record.to_dict()
    ).to_dict()


def _post(client, body, secret=SECRET, topic="raw-messages"):
    headers = {"X-Internal-Task-Secret": secret} if secret is not None else {}
    return client.post(f"/tasks/topics/{topic}", json=body, headers=headers)


class TestTopicIntake:
    def test_accepted_envelope_lands_in_local_topic(self, client, pipeline):
        response = _post(client, _envelope())

        assert response.status_code == 202
        assert response.text == "accepted"
        records = pipeline.queue.broker.records("raw-messages")
        assert len(records) == 1
        assert records[0].key == "919876500001"

    def test_repeated_record_id_is_duplicate(self, client, pipeline):
        _post(client, _envelope("same"))
        response = _post(client, _envelope("same"))

        assert response.status_code == 200
        assert response.text == "duplicate"
        assert len(pipeline.queue.broker.records("raw-messages")) == 1

    def test_malformed_envelope(self, client):
        body = _envelope()
        body["version"] = "v9"

        assert _post(client, body).status_code == 400

    def test_invalid_json(self, client):
        response = client.post(
            "/tasks/topics/raw-messages",
            content=b"nope",
            headers={"X-Internal-Task-Secret": SECRET, "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_topic_mismatch(self, client):
        assert _post(client, _envelope(topic="parsed-messages")).status_code == 400

    def test_worker_queue_is_local_even_with_http_backend(self):
        pipeline = build_pipeline(role="worker", queue_backend="http")
        assert pipeline.queue.backend == "inline"
        assert pipeline.runs_consumers


class TestTaskAuthGuard:
    def test_wrong_secret(self, client, pipeline):
        assert _post(client, _envelope(), secret="wrong").status_code == 401
        assert pipeline.queue.broker.records("raw-messages") == []

    def test_missing_header(self, client):
        assert _post(client, _envelope(), secret=None).status_code == 401

    def test_fails_closed_without_configured_secret(self, pipeline, monkeypatch):
        monkeypatch.delenv("INTERNAL_TASK_SECRET", raising=False)
        client = TestClient(create_app(role="worker", pipeline=pipeline))

        assert _post(client, _envelope()).status_code == 401
