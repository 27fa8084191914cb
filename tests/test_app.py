"""
HTTP tests for the router service: routing middleware and control plane
"""
import asyncio
import pytest
from fastapi.testclient import TestClient

from app import create_app
from deployment import InMemoryAssignmentStore, RolloutController


@pytest.fixture
def controller():
    return RolloutController(default_version="v1", canary_stages=[5, 25, 100])


@pytest.fixture
def store():
    return InMemoryAssignmentStore(ttl_seconds=600)


@pytest.fixture
def client(controller, store):
    app = create_app(controller=controller, store=store, background_sweeps=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def secured_client(controller, store):
    app = create_app(controller=controller, store=store, api_key="operator-key", background_sweeps=False)
    with TestClient(app) as client:
        yield client


def start(client, candidate="v2", baseline="v1", pct=0):
    return client.post("/rollouts", json={
        "candidate": candidate,
        "baseline": baseline,
        "initial_percentage": pct,
    })


class TestControlPlane:
    def test_initial_status(self, client):
        response = client.get("/rollouts/status")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "idle"
        assert data["baseline_version"] == "v1"
        assert data["candidate_version"] is None

    def test_start_rollout(self, client):
        response = start(client, pct=5)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ramping"
        assert data["candidate_version"] == "v2"
        assert data["target_percentage"] == 5

    def test_start_while_ramping_conflicts(self, client):
        start(client)
        response = start(client, candidate="v3")
        assert response.status_code == 409
        assert "detail" in response.json()

    def test_start_same_versions_rejected(self, client):
        response = start(client, candidate="v1", baseline="v1")
        assert response.status_code == 400

    def test_set_percentage(self, client):
        start(client)
        response = client.put("/rollouts/percentage", json={"percentage": 40})
        assert response.status_code == 200
        assert response.json()["target_percentage"] == 40

    def test_percentage_out_of_range(self, client):
        start(client)
        response = client.put("/rollouts/percentage", json={"percentage": 150})
        assert response.status_code == 422

    def test_percentage_without_rollout_conflicts(self, client):
        response = client.put("/rollouts/percentage", json={"percentage": 10})
        assert response.status_code == 409

    def test_advance_and_promote(self, client):
        start(client)
        assert client.post("/rollouts/advance").json()["target_percentage"] == 5
        assert client.post("/rollouts/advance").json()["target_percentage"] == 25
        response = client.post("/rollouts/promote")
        assert response.json()["status"] == "live"
        assert response.json()["target_percentage"] == 100

    def test_rollback_with_reason(self, client):
        start(client, pct=25)
        response = client.post("/rollouts/rollback", json={"reason": "p99 latency"})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "rolled_back"
        assert data["target_percentage"] == 0
        assert data["reason"] == "p99 latency"

        report = client.get("/rollouts/rollbacks").json()
        assert report["stats"]["total_rollbacks"] == 1
        assert report["history"][0]["candidate_version"] == "v2"

    def test_rollback_without_body(self, client):
        start(client, pct=25)
        assert client.post("/rollouts/rollback").status_code == 200
        assert client.post("/rollouts/rollback").status_code == 409

    def test_history(self, client):
        start(client)
        client.post("/rollouts/promote")
        start(client, candidate="v3", baseline="v2")
        client.post("/rollouts/rollback")
        start(client, candidate="v4", baseline="v2")

        history = client.get("/rollouts/history").json()
        assert [h["candidate_version"] for h in history] == ["v3", "v2"]
        assert client.get("/rollouts/history?limit=0").status_code == 400


class TestRouting:
    def test_no_rollout_serves_default(self, client):
        response = client.get("/route", headers={"X-User-ID": "alice"})
        assert response.status_code == 200
        assert response.headers["X-Served-Version"] == "v1"
        assert "set-cookie" not in response.headers

    def test_bucketed_then_sticky(self, client):
        start(client, pct=100 - 1)
        headers = {"X-User-ID": "alice"}

        first = client.get("/route", headers=headers)
        assert first.json()["reason"] == "bucketed"
        version = first.json()["version"]
        assert first.headers["X-Served-Version"] == version
        assert "canary_assignment=" + version in first.headers["set-cookie"]

        second = client.get("/route", headers=headers)
        assert second.json() == {
            "version": version,
            "reason": "sticky",
            "request_id": second.headers["X-Request-ID"],
        }

    def test_zero_percent_serves_baseline(self, client):
        start(client, pct=0)
        for i in range(20):
            response = client.get("/route", headers={"X-User-ID": f"user-{i}"})
            assert response.headers["X-Served-Version"] == "v1"

    def test_override_header(self, client, store):
        start(client, pct=0)
        response = client.get("/route", headers={"X-User-ID": "bob", "X-Canary-Version": "v2"})
        assert response.headers["X-Served-Version"] == "v2"
        assert response.json()["reason"] == "override"
        assert "set-cookie" not in response.headers
        assert store.get("user:bob") is None

    def test_rollback_returns_clients_to_baseline(self, client):
        start(client, pct=99)
        headers = {"X-User-ID": "alice"}
        # bucket_of("user:alice") is 13, inside 99%
        assert client.get("/route", headers=headers).headers["X-Served-Version"] == "v2"

        client.post("/rollouts/rollback")
        response = client.get("/route", headers=headers)
        assert response.headers["X-Served-Version"] == "v1"
        assert response.json()["reason"] == "bucketed"

    def test_anonymous_client_is_routed(self, client):
        start(client, pct=50)
        response = client.get("/route")
        assert response.headers["X-Served-Version"] in ("v1", "v2")

    def test_anonymous_client_is_minted_an_id_cookie(self, client, store):
        start(client, pct=50)
        first = client.get("/route")
        cookies = first.headers.get_list("set-cookie")
        minted = [c for c in cookies if c.startswith("canary_client_id=")]
        assert len(minted) == 1
        client_cookie = minted[0].split(";")[0].split("=", 1)[1]
        assert store.get(f"cookie:{client_cookie}") is not None

        # The returning client is identified by its cookie and stays sticky
        second = client.get("/route", headers={"Cookie": f"canary_client_id={client_cookie}"})
        assert second.json()["reason"] == "sticky"
        assert second.headers["X-Served-Version"] == first.headers["X-Served-Version"]
        assert not any(
            c.startswith("canary_client_id=") for c in second.headers.get_list("set-cookie")
        )

    def test_identified_user_is_not_minted_a_cookie(self, client):
        start(client, pct=50)
        response = client.get("/route", headers={"X-User-ID": "carol"})
        assert not any(
            c.startswith("canary_client_id=") for c in response.headers.get_list("set-cookie")
        )

    def test_control_plane_is_not_routed(self, client):
        response = client.get("/rollouts/status")
        assert "X-Served-Version" not in response.headers


class TestAuth:
    def test_missing_key_rejected(self, secured_client):
        response = secured_client.get("/rollouts/status")
        assert response.status_code in (401, 403)

    def test_wrong_key_rejected(self, secured_client):
        response = secured_client.get(
            "/rollouts/status", headers={"Authorization": "Bearer wrong"}
        )
        assert response.status_code == 401

    def test_valid_key(self, secured_client):
        response = secured_client.get(
            "/rollouts/status", headers={"Authorization": "Bearer operator-key"}
        )
        assert response.status_code == 200

    def test_routing_needs_no_key(self, secured_client):
        assert secured_client.get("/route").status_code == 200


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["assignment_store"] == "healthy"
        assert data["services"]["rollout"] == "idle"

    def test_health_degraded_when_store_down(self, client, store, monkeypatch):
        monkeypatch.setattr(store, "check_health", lambda: False)
        assert client.get("/health").json()["status"] == "degraded"

    def test_health_check_runs_off_the_event_loop(self, client, store, monkeypatch):
        calls = []

        def check_health():
            try:
                asyncio.get_running_loop()
                calls.append("event loop")
            except RuntimeError:
                calls.append("worker thread")
            return True

        monkeypatch.setattr(store, "check_health", check_health)
        assert client.get("/health").json()["status"] == "healthy"
        assert calls == ["worker thread"]

    def test_metrics(self, client):
        start(client, pct=10)
        client.get("/route", headers={"X-User-ID": "alice"})
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "canary_routing_decisions_total" in response.text
        assert "canary_rollout_percentage" in response.text
