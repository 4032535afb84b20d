"""
Tests for the HTTP and WebSocket API.

Validates:
- Error mapping to {"error": ...} with 400/401/403/404/409
- The amendment lifecycle end to end over HTTP
- Motions, chair actions, discussion posts and the speaker queue
- The live socket: presence:update on join and heartbeat, queue:update
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from helpers import add_country, add_thread, add_treaty, make_database
from league_assembly.api.app import AppState, create_app
from league_assembly.config import AssemblySettings
from league_assembly.store.database import Database


@pytest.fixture
def database():
    return make_database()


@pytest.fixture
def client(database):
    state = AppState(AssemblySettings(expiry_sweep_interval_seconds=0)).build(database)
    with TestClient(create_app(state)) as test_client:
        yield test_client


@pytest.fixture
def countries(database):
    return {
        slug: add_country(database, slug, has_veto=slug == "britain")
        for slug in ("france", "italy", "britain")
    }


def as_country(country_id: str) -> dict[str, str]:
    return {"X-Country-Id": country_id}


ADD_GERMANY = {
    "title": "Admit Germany", "op": "ADD", "new_heading": "Germany", "new_body": "Germany joins the League.",
}


class TestErrors:

    def test_missing_identity_is_401(self, client):
        response = client.post("/api/amendments", json=ADD_GERMANY)
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_unknown_country_is_403(self, client):
        response = client.post("/api/amendments", json=ADD_GERMANY, headers=as_country("nobody"))
        assert response.status_code == 403

    def test_malformed_body_is_400_with_fields(self, client, countries):
        response = client.post(
            "/api/amendments", json={"op": "RENAME"}, headers=as_country(countries["france"])
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid request"
        assert {"title", "op"} <= set(body["fields"])

    def test_unknown_amendment_is_404(self, client):
        response = client.get("/api/amendments/amendment-7")
        assert response.status_code == 404
        assert response.json() == {"error": "Amendment not found"}

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAmendmentRoutes:

    def test_lifecycle(self, client, database, countries):
        treaty_id, _ = add_treaty(database)
        created = client.post("/api/amendments", json=ADD_GERMANY, headers=as_country(countries["france"]))
        assert created.status_code == 201
        amendment = created.json()["amendment"]
        assert amendment["slug"] == "amendment-1"
        assert amendment["resolution"] == {"state": "open"}
        assert amendment["treaty_id"] == treaty_id

        for country_id in countries.values():
            voted = client.post(
                "/api/amendments/amendment-1/vote", json={"choice": "AYE"}, headers=as_country(country_id)
            )
            assert voted.status_code == 200
        assert voted.json()["tally"]["aye"] == 3

        closed = client.post("/api/amendments/amendment-1/close", headers=as_country(countries["italy"]))
        assert closed.status_code == 200
        assert closed.json()["result"] == "PASSED"

        applied = client.post("/api/amendments/amendment-1/apply", headers=as_country(countries["italy"]))
        assert applied.status_code == 200
        assert applied.json()["amendment"]["applied_at"] is not None
        assert applied.json()["amendment"]["resolution"] == {
            "state": "closed", "result": "PASSED", "reason": None,
        }

        again = client.post("/api/amendments/amendment-1/apply", headers=as_country(countries["italy"]))
        assert again.status_code == 409
        assert again.json() == {"error": "Amendment already applied"}

    def test_vote_after_close_is_409(self, client, database, countries):
        add_treaty(database)
        client.post("/api/amendments", json=ADD_GERMANY, headers=as_country(countries["france"]))
        client.post("/api/amendments/amendment-1/close", headers=as_country(countries["france"]))
        response = client.post(
            "/api/amendments/amendment-1/vote", json={"choice": "NAY"}, headers=as_country(countries["italy"])
        )
        assert response.status_code == 409
        assert response.json() == {"error": "Voting is closed"}

    @pytest.mark.parametrize("action", ["close", "apply"])
    def test_unknown_country_cannot_finalize(self, client, database, countries, action):
        add_treaty(database)
        client.post("/api/amendments", json=ADD_GERMANY, headers=as_country(countries["france"]))

        response = client.post(f"/api/amendments/amendment-1/{action}", headers=as_country("no-such-country"))
        assert response.status_code == 403
        assert response.json() == {"error": "Assigned country not found"}

        amendment = client.get("/api/amendments/amendment-1").json()["amendment"]
        assert amendment["status"] == "OPEN"
        assert amendment["resolution"] == {"state": "open"}

    def test_cron_sweep_with_nothing_due(self, client):
        response = client.post("/api/cron/close-expired-amendments")
        assert response.status_code == 200
        assert response.json() == {"closed": 0, "amendments": []}

    def test_discussion_thread_and_posts(self, client, database, countries):
        add_treaty(database)
        client.post("/api/amendments", json=ADD_GERMANY, headers=as_country(countries["france"]))

        opened = client.post("/api/amendments/amendment-1/discussions", headers=as_country(countries["italy"]))
        assert opened.status_code == 201
        thread_id = opened.json()["thread"]["id"]
        reopened = client.post("/api/amendments/amendment-1/discussions", headers=as_country(countries["italy"]))
        assert reopened.status_code == 200
        assert reopened.json()["created"] is False

        posted = client.post(
            f"/api/discussions/{thread_id}/posts", json={"body": "We object."},
            headers=as_country(countries["italy"]),
        )
        assert posted.status_code == 201
        post_id = posted.json()["post"]["id"]

        edited = client.patch(
            f"/api/discussions/{thread_id}/posts/{post_id}", json={"body": "We abstain."},
            headers=as_country(countries["italy"]),
        )
        assert edited.json()["post"]["is_edited"] is True

        forbidden = client.delete(
            f"/api/discussions/{thread_id}/posts/{post_id}", headers=as_country(countries["france"])
        )
        assert forbidden.status_code == 403

        listed = client.get(f"/api/discussions/{thread_id}/posts")
        assert [p["body"] for p in listed.json()["posts"]] == ["We abstain."]


class TestMotionAndChairRoutes:

    def test_motion_quorum_unmet_is_409(self, client, database):
        france = add_country(database, "france")
        add_country(database, "italy")
        response = client.post(
            "/api/motions", json={"type": "LOCK_THREAD", "title": "Lock it"}, headers=as_country(france)
        )
        assert response.status_code == 409
        assert response.json()["error"].startswith("Quorum not met")

    def test_motion_flow(self, client, database, countries):
        thread_id = add_thread(database)
        created = client.post(
            "/api/motions",
            json={"type": "LOCK_THREAD", "title": "Lock it", "target_thread_id": thread_id},
            headers=as_country(countries["france"]),
        )
        assert created.status_code == 201
        motion_id = created.json()["motion"]["id"]

        seconded = client.post(f"/api/motions/{motion_id}/second", headers=as_country(countries["italy"]))
        assert seconded.json()["motion"]["status"] == "VOTING"

        for country_id in countries.values():
            outcome = client.post(
                f"/api/motions/{motion_id}/vote", json={"choice": "APPROVE"},
                headers=as_country(country_id),
            )
        assert outcome.json()["motion"]["status"] == "PASSED"
        assert outcome.json()["motion"]["resolution_note"] == "Motion passed 3-0-0"
        assert outcome.json()["quorum"] == 3

        withdrawn = client.post(
            f"/api/motions/{motion_id}/withdraw", json={"note": "Too late"},
            headers=as_country(countries["france"]),
        )
        assert withdrawn.status_code == 409

    def test_chair_emergency_and_log(self, client, database, countries):
        thread_id = add_thread(database)
        locked = client.post(
            "/api/chair/emergency", json={"action": "LOCK_THREAD", "thread_id": thread_id},
            headers=as_country(countries["britain"]),
        )
        assert locked.status_code == 200
        assert locked.json()["thread"]["is_locked"] is True

        log = client.get("/api/chair/log")
        assert [entry["type"] for entry in log.json()["actions"]] == ["LOCK_THREAD"]

    def test_chair_emergency_requires_chair(self, client, database, countries):
        thread_id = add_thread(database)
        response = client.post(
            "/api/chair/emergency", json={"action": "LOCK_THREAD", "thread_id": thread_id},
            headers=as_country(countries["italy"]),
        )
        assert response.status_code == 403

    def test_unknown_emergency_action_is_400(self, client, countries):
        response = client.post(
            "/api/chair/emergency", json={"action": "DISSOLVE_LEAGUE"},
            headers=as_country(countries["britain"]),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid emergency action"


class TestLiveSession:

    def test_queue_over_http(self, client):
        requested = client.post("/api/queue/request", json={"thread_id": "t1", "country_id": "fr"})
        assert requested.json()["queue"]["queue"] == ["fr"]

        recognized = client.post("/api/queue/recognize", json={"thread_id": "t1"})
        assert recognized.json()["queue"]["recognized"] == "fr"

        snapshot = client.get("/api/queue/t1").json()["queue"]
        assert snapshot["threadId"] == "t1"
        assert snapshot["queue"] == []
        assert isinstance(snapshot["updatedAt"], int)

    def test_queue_request_requires_thread(self, client):
        response = client.post("/api/queue/request", json={"country_id": "fr"})
        assert response.status_code == 400
        assert response.json()["error"] == "threadId is required"

    def test_socket_presence_and_queue(self, client):
        with client.websocket_connect("/api/socket?room=thread-1") as ws:
            joined = ws.receive_json()
            assert joined["event"] == "presence:update"
            assert joined["payload"]["presentCount"] == 0

            ws.send_json({"event": "presence:heartbeat", "payload": {"countryId": "fr"}})
            beat = ws.receive_json()
            assert beat["payload"]["presentCountries"] == ["fr"]
            assert beat["payload"]["motionsSuspended"] is True

            presence = client.get("/api/presence/thread-1").json()
            assert presence["presentCountries"] == ["fr"]

            ws.send_json({"event": "queue:request", "payload": {}})
            update = ws.receive_json()
            assert update["event"] == "queue:update"
            assert update["payload"]["threadId"] == "thread-1"
            assert update["payload"]["queue"] == ["fr"]


class TestExpirySweeper:

    def test_in_memory_database_runs_no_sweeper(self):
        state = AppState(AssemblySettings(expiry_sweep_interval_seconds=30)).build(make_database())
        app = create_app(state)
        with TestClient(app):
            assert app.state.sweeper is None

    def test_file_database_starts_sweeper(self, tmp_path):
        database = Database(f"sqlite:///{tmp_path / 'assembly.db'}")
        state = AppState(AssemblySettings(expiry_sweep_interval_seconds=30)).build(database)
        app = create_app(state)
        try:
            with TestClient(app):
                assert app.state.sweeper is not None
                assert not app.state.sweeper.done()
            assert app.state.sweeper is None
        finally:
            database.dispose()
