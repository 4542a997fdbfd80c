"""HTTP-level tests: routes, response shapes and error mapping.

Services are swapped for instances backed by the in-memory graph through
``app.dependency_overrides``; the lifespan (database, Redis, scheduler) is
not started.
"""
import uuid

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_discovery_service, get_opportunity_service, get_swipe_service
from app.main import app
from tests.fakes import T0


def _id(name):
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"swapmatch-test/{name}"))


U1, U2, U3 = _id("U1"), _id("U2"), _id("U3")
I1, I2, I3 = _id("I1"), _id("I2"), _id("I3")


@pytest.fixture
def client(graph, swipe_service, opportunity_service, discovery_service):
    graph.add_user(U1, "Ada")
    graph.add_user(U2, "Bo")
    graph.add_user(U3, "Cy")
    graph.add_item(I1, U1, "books", ["games"])
    graph.add_item(I2, U2, "games", ["electronics"])
    graph.add_item(I3, U3, "electronics", ["books"])

    app.dependency_overrides[get_swipe_service] = lambda: swipe_service
    app.dependency_overrides[get_opportunity_service] = lambda: opportunity_service
    app.dependency_overrides[get_discovery_service] = lambda: discovery_service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _swipe(client, swiper, swiped, liked=True, **extra):
    body = {"swiping_item_id": swiper, "swiped_item_id": swiped, "liked": liked, **extra}
    return client.post("/api/v1/swipes/", json=body)


def _discover(client):
    return client.post("/api/v1/discovery/run", json={"snapshot_time": T0.isoformat()})


class TestSwipesApi:

    def test_like_then_reciprocal_like(self, client):
        first = _swipe(client, I1, I3)
        assert first.status_code == 200
        assert first.json()["match_created"] is False

        second = _swipe(client, I3, I1)
        assert second.status_code == 200
        body = second.json()
        assert body["match_created"] is True
        assert body["match_id"]

    def test_duplicate_swipe_rejected(self, client):
        _swipe(client, I1, I2, liked=False)
        response = _swipe(client, I1, I2, liked=False)

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"
        assert response.json()["reason"] == "duplicate_swipe"

    def test_not_owner_rejected(self, client):
        response = _swipe(client, I1, I2, user_id=U2)
        assert response.status_code == 422
        assert response.json()["reason"] == "not_owner"

    def test_unknown_target(self, client):
        response = _swipe(client, I1, _id("missing"))
        assert response.status_code == 422
        assert response.json()["reason"] == "invalid_target"

    @pytest.mark.parametrize("body", [
        {"swiping_item_id": "not-a-uuid", "swiped_item_id": I2, "liked": True},
        {"swiping_item_id": I1, "swiped_item_id": I2, "liked": "yes"},
        {"swiping_item_id": I1, "liked": True},
    ])
    def test_malformed_body(self, client, body):
        response = client.post("/api/v1/swipes/", json=body)
        assert response.status_code == 422
        assert response.json()["reason"] == "malformed"
        assert response.json()["context"]["errors"]


class TestOpportunitiesApi:

    def test_discovery_then_list(self, client):
        run = _discover(client)
        assert run.status_code == 200
        assert run.json()["created"] == 1

        response = client.get("/api/v1/opportunities/", params={"user_id": U1})
        assert response.status_code == 200
        (opportunity,) = response.json()["opportunities"]
        assert opportunity["cycle_type"] == "3-way"
        assert opportunity["status"] == "active"
        assert 0.0 < opportunity["confidence_score"] <= 1.0
        mine = [p for p in opportunity["participants"] if p["is_mine"]]
        assert [p["item_id"] for p in mine] == [I1]
        assert mine[0]["display_name"] == "Ada"

    def test_get_and_dismiss(self, client):
        _discover(client)
        (opportunity,) = client.get("/api/v1/opportunities/", params={"user_id": U2}).json()["opportunities"]
        path = f"/api/v1/opportunities/{opportunity['id']}"

        assert client.get(path, params={"user_id": U2}).status_code == 200
        assert client.get(path, params={"user_id": _id("stranger")}).status_code == 404

        dismissed = client.post(f"{path}/dismiss", json={"user_id": U2, "scope": "all"})
        assert dismissed.status_code == 200
        assert dismissed.json()["result"] == "success"

        again = client.post(f"{path}/dismiss", json={"user_id": U3})
        assert again.json()["result"] == "already_terminal"
        assert client.get("/api/v1/opportunities/", params={"user_id": U1}).json()["opportunities"] == []

    def test_dismiss_unknown_is_404(self, client):
        response = client.post(
            f"/api/v1/opportunities/{_id('nothing')}/dismiss", json={"user_id": U1}
        )
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_bad_scope(self, client):
        response = client.post(
            f"/api/v1/opportunities/{_id('nothing')}/dismiss",
            json={"user_id": U1, "scope": "everyone"},
        )
        assert response.status_code == 422

    def test_list_requires_user_id(self, client):
        assert client.get("/api/v1/opportunities/").status_code == 422


class TestDiscoveryApi:

    def test_run_without_body(self, client):
        response = client.post("/api/v1/discovery/run")
        assert response.status_code == 200
        body = response.json()
        assert body["skipped"] is False
        assert body["partitions_total"] == 2

    def test_store_outage_reported_as_skipped(self, client, graph):
        graph.fail("load_snapshot", 3)
        response = _discover(client)
        assert response.status_code == 200
        assert response.json()["skipped"] is True


def test_liveness(client):
    assert client.get("/health").json() == {"status": "healthy"}
