"""Tests for the checkout assistant HTTP API."""

import pytest
from conftest import FakeLLM, scenario_blob
from httpx import ASGITransport, AsyncClient

from checkout_assistant.api import create_app
from checkout_assistant.orchestrator import create_orchestrator

EVERYTHING = "João Silva, joao@ex.com, CEP 01310-100, Av. Paulista 1000, Pix"


@pytest.fixture
def fake_llm():
    return FakeLLM(
        {
            EVERYTHING: {
                "name": "João Silva",
                "email": "joao@ex.com",
                "cep": "01310-100",
                "address": "Av. Paulista 1000",
                "paymentType": "pix",
            },
        }
    )


@pytest.fixture
def app(llm_settings, process_model_store, fake_llm):
    orchestrator = create_orchestrator(
        llm_settings, process_models=process_model_store, llm=fake_llm
    )
    return create_app(llm_settings, orchestrator)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestHealth:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["service"] == "checkout-assistant"


class TestCheckoutDialog:
    async def test_start_turn_complete(self, client):
        resp = await client.post(
            "/api/v1/checkout/start", json={"user_id": "u1", "product_key": "tv-oled55"}
        )
        assert resp.status_code == 200
        started = resp.json()
        assert started["state"] == "collecting_info"
        assert started["progress"] == 0
        assert [f["name"] for f in started["missing_fields"]] == ["name", "email"]

        resp = await client.post(
            "/api/v1/checkout/turn", json={"user_id": "u1", "utterance": EVERYTHING}
        )
        assert resp.status_code == 200
        turn = resp.json()
        assert turn["state"] == "ready_for_checkout"
        assert turn["progress"] == 100
        assert "productId=tv-oled55" in turn["deeplink"]["url"]

        resp = await client.post("/api/v1/checkout/complete", json={"user_id": "u1"})
        assert resp.status_code == 200
        completed = resp.json()
        assert completed["state"] == "completed"
        assert completed["session_id"] == started["session_id"]
        assert completed["deeplink"]["url"] == turn["deeplink"]["url"]

    async def test_turn_without_session(self, client):
        resp = await client.post(
            "/api/v1/checkout/turn", json={"user_id": "nobody", "utterance": "oi"}
        )
        assert resp.status_code == 404
        data = resp.json()
        assert data["error"] == "no_active_session"
        assert data["status_code"] == 404

    async def test_complete_before_ready(self, client):
        await client.post("/api/v1/checkout/start", json={"user_id": "u1", "product_key": "p1"})
        resp = await client.post("/api/v1/checkout/complete", json={"user_id": "u1"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "checkout_not_ready"

    async def test_cancel(self, client):
        await client.post("/api/v1/checkout/start", json={"user_id": "u1", "product_key": "p1"})
        resp = await client.post("/api/v1/checkout/cancel", json={"user_id": "u1"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "cancelled"
        assert data["snapshot"]["state"] == "cancelled"

        resp = await client.post(
            "/api/v1/checkout/turn", json={"user_id": "u1", "utterance": EVERYTHING}
        )
        assert resp.status_code == 404

    async def test_cancel_without_session(self, client):
        resp = await client.post("/api/v1/checkout/cancel", json={"user_id": "ghost"})
        assert resp.status_code == 200
        assert resp.json()["snapshot"] is None


class TestSessions:
    async def test_list_live_sessions(self, client):
        for user in ("u1", "u2"):
            await client.post(
                "/api/v1/checkout/start", json={"user_id": user, "product_key": "p1"}
            )
        await client.post("/api/v1/checkout/cancel", json={"user_id": "u2"})

        resp = await client.get("/api/v1/checkout/sessions")
        assert resp.status_code == 200
        sessions = resp.json()
        assert [s["user_id"] for s in sessions] == ["u1"]
        assert sessions[0]["progress"] == 0

    async def test_get_session(self, client):
        await client.post("/api/v1/checkout/start", json={"user_id": "u1", "product_key": "p1"})
        resp = await client.get("/api/v1/checkout/sessions/u1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["product_key"] == "p1"
        assert data["cpm_ref"] == "default"

    async def test_get_unknown_session(self, client):
        resp = await client.get("/api/v1/checkout/sessions/ghost")
        assert resp.status_code == 404


class TestProcessModels:
    async def test_list_keys(self, client):
        resp = await client.get("/api/v1/process-models")
        assert resp.status_code == 200
        assert resp.json()["keys"] == ["default"]

    async def test_put_then_get(self, client):
        resp = await client.put("/api/v1/process-models/tv-oled55", json=scenario_blob("tv-oled55"))
        assert resp.status_code == 200
        saved = resp.json()
        assert saved["productKey"] == "tv-oled55"
        assert "createdAt" in saved["_meta"]

        resp = await client.get("/api/v1/process-models/tv-oled55")
        assert resp.status_code == 200
        assert [step["stepId"] for step in resp.json()["steps"]] == [
            "personal",
            "shipping",
            "payment",
        ]

    async def test_get_missing(self, client):
        resp = await client.get("/api/v1/process-models/unknown")
        assert resp.status_code == 404

    async def test_put_invalid(self, client):
        blob = scenario_blob("bad")
        blob["steps"][1]["order"] = 1
        resp = await client.put("/api/v1/process-models/bad", json=blob)
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_process_model"

    async def test_stored_model_is_used_for_new_sessions(self, client):
        blob = scenario_blob("tv-oled55")
        blob["steps"] = blob["steps"][2:]
        blob["steps"][0]["order"] = 1
        await client.put("/api/v1/process-models/tv-oled55", json=blob)

        resp = await client.post(
            "/api/v1/checkout/start", json={"user_id": "u1", "product_key": "tv-oled55"}
        )
        assert [f["name"] for f in resp.json()["missing_fields"]] == ["paymentType"]
