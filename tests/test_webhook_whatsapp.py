"""Tests for the Evolution webhook route."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from contactly.api.factory import create_app
from helpers import SENDER_JID, build_pipeline, evolution_revoke, evolution_upsert

WEBHOOK = "/webhooks/whatsapp/evolution"


@pytest.fixture
def pipeline(scheduler, clock):
    return build_pipeline(scheduler=scheduler, clock=clock)


@pytest.fixture
def client(pipeline):
    return TestClient(create_app(role="public", pipeline=pipeline))


class TestEvolutionWebhook:
    def test_text_message_reaches_correlator(self, client, pipeline):
        response = client.post(WEBHOOK, json=evolution_upsert("Rahul Sharma"))

        assert response.status_code == 200
        assert response.text == "ok"
        session = pipeline.correlator.store.get(SENDER_JID)
        assert [m.text for m in session.messages] == ["Rahul Sharma"]

    def test_raw_message_is_stored(self, client, pipeline):
        client.post(WEBHOOK, json=evolution_upsert("Rahul Sharma", message_id="RAW1"))

        assert pipeline.store.save_raw_message(
            pipeline.correlator.store.get(SENDER_JID).messages[0]
        ) is False

    def test_duplicate_delivery_is_ignored(self, client, pipeline):
        client.post(WEBHOOK, json=evolution_upsert("Rahul Sharma"))
        response = client.post(WEBHOOK, json=evolution_upsert("Rahul Sharma"))

        assert response.status_code == 200
        assert response.text == "ignored"
        assert len(pipeline.correlator.store.get(SENDER_JID).messages) == 1

    def test_own_messages_ignored(self, client, pipeline):
        response = client.post(WEBHOOK, json=evolution_upsert("Rahul Sharma", from_me=True))

        assert response.text == "ignored"
        assert len(pipeline.correlator.store) == 0

    def test_noise_ignored(self, client, pipeline):
        response = client.post(WEBHOOK, json=evolution_upsert("hi"))

        assert response.status_code == 200
        assert response.text == "ignored"

    def test_revocation_removes_buffered_message(self, client, pipeline):
        client.post(WEBHOOK, json=evolution_upsert("please note this", message_id="A"))
        client.post(WEBHOOK, json=evolution_upsert("another line here", message_id="B"))

        response = client.post(WEBHOOK, json=evolution_revoke("A"))

        assert response.text == "ok"
        session = pipeline.correlator.store.get(SENDER_JID)
        assert [m.id for m in session.messages] == ["B"]

    def test_allowed_sender_filter(self, scheduler, clock):
        pipeline = build_pipeline(
            scheduler=scheduler, clock=clock, allowed_sender="+91 91234 00000"
        )
        client = TestClient(create_app(role="public", pipeline=pipeline))

        response = client.post(WEBHOOK, json=evolution_upsert("Rahul Sharma"))

        assert response.text == "ignored"
        assert len(pipeline.correlator.store) == 0

    def test_invalid_json(self, client):
        response = client.post(
            WEBHOOK, content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_invalid_shape(self, client, pipeline):
        payload = evolution_upsert("Rahul Sharma")
        del payload["data"]["key"]

        response = client.post(WEBHOOK, json=payload)

        assert response.status_code == 400
        assert len(pipeline.correlator.store) == 0


class TestWebhookSecret:
    def test_secret_mismatch_rejected(self, client, monkeypatch):
        monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "expected")

        response = client.post(
            WEBHOOK,
            json=evolution_upsert("Rahul Sharma"),
            headers={"X-Webhook-Secret": "wrong"},
        )

        assert response.status_code == 401

    def test_missing_secret_header_rejected(self, client, monkeypatch):
        monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "expected")

        response = client.post(WEBHOOK, json=evolution_upsert("Rahul Sharma"))

        assert response.status_code == 401

    def test_matching_secret_accepted(self, client, monkeypatch):
        monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "expected")

        response = client.post(
            WEBHOOK,
            json=evolution_upsert("Rahul Sharma"),
            headers={"X-Webhook-Secret": "expected"},
        )

        assert response.status_code == 200
