"""Tests for the HTTP surface: webhooks, publishing, sessions and operator views."""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from channels.recording import RecordingGateway
from config.settings import ChannelConfig, Settings
from database.store_memory import InMemoryFlowStore


def _whatsapp_text(sender, text, message_id):
    return {"entry": [{"changes": [{"value": {"messages": [
        {"from": sender, "id": message_id, "type": "text", "text": {"body": text}},
    ]}}]}]}


def _whatsapp_status(message_id, status):
    return {"entry": [{"changes": [{"value": {"statuses": [
        {"id": message_id, "status": status, "recipient_id": "15551234567"},
    ]}}]}]}


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def client(gateway):
    settings = Settings(channels={"whatsapp": ChannelConfig(credentials={"verify_token": "tok"})})
    app = create_app(settings=settings, store=InMemoryFlowStore(), gateway=gateway, run_timers=False)
    with TestClient(app) as c:
        yield c


def _drain(client):
    client.portal.call(client.app.state.services.dispatcher.drain)


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["gateway"]["gateway"] == "recording"


class TestWorkflowEndpoints:
    def test_publish_and_list(self, client, greeting_record):
        resp = client.post("/api/v1/workflows", json=greeting_record)
        assert resp.status_code == 201
        body = resp.json()
        assert (body["id"], body["version"], body["is_active"]) == ("greeting", 1, True)
        assert body["trigger_keywords"] == ["hi"]
        assert body["warnings"] == []

        listed = client.get("/api/v1/workflows").json()
        assert [w["id"] for w in listed] == ["greeting"]

    def test_publish_invalid(self, client, greeting_record):
        greeting_record["edges"].append({"id": "bad", "source": "hello", "target": "ghost"})
        resp = client.post("/api/v1/workflows", json=greeting_record)
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["workflow_id"] == "greeting"
        assert any("ghost" in e for e in detail["errors"])

    def test_publish_inactive_then_activate(self, client, greeting_record):
        resp = client.post("/api/v1/workflows", params={"activate": "false"}, json=greeting_record)
        assert resp.json()["is_active"] is False
        resp = client.post("/api/v1/workflows/greeting/activate")
        assert resp.status_code == 200
        assert resp.json()["is_active"] is True

    def test_deactivate(self, client, greeting_record):
        client.post("/api/v1/workflows", json=greeting_record)
        assert client.post("/api/v1/workflows/greeting/deactivate").status_code == 200
        assert client.post("/api/v1/workflows/nope/deactivate").status_code == 404

    def test_publish_non_object(self, client):
        assert client.post("/api/v1/workflows", json=[1, 2]).status_code == 400


class TestWhatsAppWebhook:
    def test_verify(self, client):
        params = {"hub.mode": "subscribe", "hub.verify_token": "tok", "hub.challenge": "42"}
        resp = client.get("/webhooks/whatsapp", params=params)
        assert resp.status_code == 200
        assert resp.text == "42"

    def test_verify_rejected(self, client):
        params = {"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"}
        assert client.get("/webhooks/whatsapp", params=params).status_code == 403

    def test_conversation_over_webhook(self, client, gateway, greeting_record):
        client.post("/api/v1/workflows", json=greeting_record)

        resp = client.post("/webhooks/whatsapp", json=_whatsapp_text("15551234567", "Hi", "wamid.1"))
        assert resp.json() == {"status": "ok", "messages": 1}
        _drain(client)
        client.post("/webhooks/whatsapp", json=_whatsapp_text("15551234567", "Ann", "wamid.2"))
        _drain(client)

        assert gateway.texts("15551234567") == ["What's your name?", "Hello Ann"]

    def test_status_webhook(self, client, gateway, greeting_record):
        client.post("/api/v1/workflows", json=greeting_record)
        client.post("/webhooks/whatsapp", json=_whatsapp_text("15551234567", "hi", "wamid.1"))
        _drain(client)
        sent_id = gateway.sent[0].channel_message_id

        client.post("/webhooks/whatsapp", json=_whatsapp_status(sent_id, "read"))
        store = client.app.state.services.store
        action = client.portal.call(store.find_action_by_channel_message_id, sent_id)
        assert action.delivery_status.value == "read"

    def test_invalid_json(self, client):
        resp = client.post("/webhooks/whatsapp", content=b"{nope", headers={"content-type": "application/json"})
        assert resp.status_code == 400


class TestSessionEndpoints:
    def test_inbound_and_session_view(self, client, greeting_record):
        client.post("/api/v1/workflows", json=greeting_record)
        resp = client.post("/api/v1/messages/inbound", json={"contact_id": "c1", "text": "hi"})
        assert resp.status_code == 202
        _drain(client)

        session = client.get("/api/v1/sessions/c1").json()
        assert session["workflow_id"] == "greeting"
        assert session["awaiting"]["kind"] == "input"

    def test_inbound_requires_content(self, client):
        assert client.post("/api/v1/messages/inbound", json={"contact_id": "c1"}).status_code == 422

    def test_selection_inbound(self, client, gateway, menu_record):
        client.post("/api/v1/workflows", json=menu_record)
        client.post("/api/v1/messages/inbound", json={"contact_id": "c1", "text": "menu"})
        _drain(client)
        client.post("/api/v1/messages/inbound", json={"contact_id": "c1", "selection": "option-1"})
        _drain(client)
        assert gateway.texts("c1")[-1] == "Y"

    def test_reset(self, client, greeting_record):
        client.post("/api/v1/workflows", json=greeting_record)
        client.post("/api/v1/messages/inbound", json={"contact_id": "c1", "text": "hi"})
        _drain(client)

        resp = client.post("/api/v1/sessions/c1/reset")
        assert resp.json()["status"] == "reset"
        assert client.get("/api/v1/sessions/c1").status_code == 404
        assert client.post("/api/v1/sessions/c1/reset").status_code == 404


class TestOperatorEndpoints:
    def test_failed_deliveries(self, client, gateway, greeting_record):
        gateway.fail_contacts.add("c1")
        client.post("/api/v1/workflows", json=greeting_record)
        client.post("/api/v1/messages/inbound", json={"contact_id": "c1", "text": "hi"})
        _drain(client)

        failed = client.get("/api/v1/operator/failed-deliveries").json()
        assert len(failed) == 1
        assert failed[0]["delivery_error"] == "rejected by recipient"

    def test_stalled_empty(self, client):
        assert client.get("/api/v1/operator/stalled").json() == []
