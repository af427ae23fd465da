"""HTTP-level tests against an in-memory SQLite database.

Tests cover:
- Health check and catalog listing
- Select -> rate loop persisted across requests
- Validation and lookup errors mapped to 422 / 404
- Insights, metrics, recommendations and hierarchy endpoints
- Clearing a user's state
"""

import pytest
from fastapi.testclient import TestClient

from dosewise.main import app

API = "/api/v1"


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


def _select(client, user, goal="calm"):
    resp = client.post(f"{API}/users/{user}/selection", json={"goal": goal})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _rate(client, user, item_id, delta, seconds, goal="calm"):
    return client.post(
        f"{API}/users/{user}/feedback",
        json={"item_id": item_id, "delta": delta, "session_seconds": seconds, "goal": goal},
    )


# ======================================================================
# Health and catalog
# ======================================================================


class TestCatalogEndpoints:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_list_protocols(self, client):
        resp = client.get(f"{API}/protocols")
        assert resp.status_code == 200
        assert len(resp.json()) == 5

    def test_filter_by_goal(self, client):
        ids = {p["id"] for p in client.get(f"{API}/protocols", params={"goal": "focus"}).json()}
        assert ids == {"box-breathing", "eye-break", "alternate-nostril"}

    def test_unknown_goal_rejected(self, client):
        assert client.get(f"{API}/protocols", params={"goal": "energy"}).status_code == 422


# ======================================================================
# Selection and feedback
# ======================================================================


class TestSessionFlow:
    """State survives between requests for the same user key."""

    def test_first_selection_is_untried(self, client):
        body = _select(client, "flow-first")
        assert body["trace"]["phase"] == "untried"
        assert body["dose_seconds"] == body["item"]["base_seconds"]
        assert "calm" in body["item"]["supports"]

    def test_feedback_updates_posterior(self, client):
        chosen = _select(client, "flow-feedback")
        resp = _rate(client, "flow-feedback", chosen["item"]["id"], 1, chosen["dose_seconds"])
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["trials"] == 1
        assert body["posterior_mean"] > 0.6
        assert body["dose_seconds"] == chosen["dose_seconds"] - 10

    def test_loop_accumulates_history(self, client):
        user = "flow-loop"
        for _ in range(12):
            chosen = _select(client, user, goal="focus")
            resp = _rate(client, user, chosen["item"]["id"], 1, chosen["dose_seconds"], goal="focus")
            assert resp.status_code == 200

        metrics = client.get(f"{API}/users/{user}/metrics").json()
        assert metrics["total_sessions"] == 12
        assert metrics["unique_items"] == 3
        assert metrics["streak"] == 1
        assert metrics["summary"].startswith("Algorithm Performance Summary")

        rows = client.get(f"{API}/users/{user}/insights").json()
        assert {r["item_id"] for r in rows} == {"box-breathing", "eye-break", "alternate-nostril"}
        assert sum(r["trials"] for r in rows) == 12

        recs = client.get(f"{API}/users/{user}/recommendations", params={"goal": "focus", "hour": 9}).json()
        assert set(recs["predictions"]) == {"box-breathing", "eye-break", "alternate-nostril"}
        assert isinstance(recs["contextual"], list)
        assert all(r["trials"] >= 3 for r in recs["top"])

        hierarchy = client.get(f"{API}/users/{user}/hierarchy").json()
        assert "focus" in hierarchy["best_by_goal"]
        assert hierarchy["diagnostics"]["data_sufficiency"] in {"excellent", "good", "fair", "poor"}

    def test_users_are_isolated(self, client):
        _rate(client, "iso-a", "eye-break", 1, 60, goal="focus")
        metrics = client.get(f"{API}/users/iso-b/metrics").json()
        assert metrics["total_sessions"] == 0


# ======================================================================
# Errors
# ======================================================================


class TestErrors:

    def test_unknown_protocol(self, client):
        resp = _rate(client, "err-user", "cold-plunge", 1, 60)
        assert resp.status_code == 404

    def test_invalid_delta(self, client):
        assert _rate(client, "err-user", "eye-break", 2, 60).status_code == 422

    def test_negative_seconds(self, client):
        assert _rate(client, "err-user", "eye-break", 1, -1).status_code == 422

    def test_goal_not_supported_by_catalog(self, client):
        resp = client.post(f"{API}/users/err-user/selection", json={"goal": "sleepy"})
        assert resp.status_code == 422

    def test_invalid_user_key(self, client):
        resp = client.get(f"{API}/users/bad key!/metrics")
        assert resp.status_code == 422

    def test_errors_leave_no_state(self, client):
        assert client.get(f"{API}/users/err-user/metrics").json()["total_sessions"] == 0


# ======================================================================
# Reset
# ======================================================================


class TestReset:

    def test_delete_state(self, client):
        user = "reset-user"
        _rate(client, user, "box-breathing", 1, 120)
        assert client.get(f"{API}/users/{user}/metrics").json()["total_sessions"] == 1

        assert client.delete(f"{API}/users/{user}/state").status_code == 204
        assert client.get(f"{API}/users/{user}/metrics").json()["total_sessions"] == 0
        assert client.delete(f"{API}/users/{user}/state").status_code == 404
