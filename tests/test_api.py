import pytest
from fastapi.testclient import TestClient

import main
from conftest import TRUTHS, point_at_distance
from database import get_store
from progress_store import MemoryProgressStore


@pytest.fixture
def client(store):
    main.app.dependency_overrides[get_store] = lambda: store
    shared = MemoryProgressStore()
    main.app.dependency_overrides[main.get_progress_store] = lambda: shared
    main.sessions.clear()
    with TestClient(main.app) as c:
        yield c
    main.sessions.clear()
    main.app.dependency_overrides.clear()


def post_challenges(client, truths=TRUTHS):
    ids = []
    for n, truth in enumerate(truths):
        resp = client.post("/api/challenges", json={
            "image_ref": f"img/{n}.jpg",
            "location": truth.model_dump(),
            "location_name": f"Place {n}",
            "author_id": "author-1",
            "author_name": "Ada",
        })
        assert resp.status_code == 200
        ids.append(resp.json()["id"])
    return ids


def post_collection(client, ids):
    resp = client.post("/api/collections", json={
        "name": "Trip", "challenge_ids": ids, "author_id": "author-1", "author_name": "Ada"})
    assert resp.status_code == 200
    return resp.json()["id"]


def test_root(client):
    assert client.get("/").json()["message"] == "Photo Location Guess API running"


def test_challenge_location_is_hidden_until_played(client):
    cid = post_challenges(client, TRUTHS[:1])[0]

    card = client.get(f"/api/challenges/{cid}", params={"user_id": "player-1"}).json()
    assert "location" not in card
    assert card["image_ref"] == "img/0.jpg"

    own = client.get(f"/api/challenges/{cid}", params={"user_id": "author-1"}).json()
    assert own["location"] == {"lat": 10.0, "lng": 20.0}

    guess = {"user_id": "player-1", "user_name": "Lin", "location": TRUTHS[0].model_dump()}
    resp = client.post(f"/api/challenges/{cid}/guesses", json=guess)
    assert resp.status_code == 200
    body = resp.json()
    assert body["guess"]["score"] == 5000
    assert body["distance_label"] == "0m"
    assert body["truth"] == {"lat": 10.0, "lng": 20.0}

    assert client.post(f"/api/challenges/{cid}/guesses", json=guess).status_code == 409
    played = client.get(f"/api/challenges/{cid}", params={"user_id": "player-1"}).json()
    assert played["location"] == {"lat": 10.0, "lng": 20.0}

    assert client.get("/api/challenges/missing").status_code == 404


def test_like_and_next(client):
    first, second = post_challenges(client, TRUTHS[:2])
    assert client.post(f"/api/challenges/{first}/like", json={"liked": True}).json()["likes"] == 1
    assert client.post("/api/challenges/missing/like", json={"liked": True}).status_code == 404

    nxt = client.get("/api/challenges/next", params={"user_id": "player-1"}).json()
    assert nxt["challenge"]["id"] == second
    assert client.get("/api/challenges/next", params={"user_id": "author-1"}).json() == {"challenge": None}


def test_invalid_collection_is_rejected(client):
    ids = post_challenges(client, TRUTHS[:1])
    resp = client.post("/api/collections", json={
        "name": "far too long a name", "challenge_ids": ids, "author_id": "a", "author_name": "A"})
    assert resp.status_code == 400
    assert resp.json()["kind"] == "invalid"


def test_collection_playthrough(client):
    ids = post_challenges(client)
    coll = post_collection(client, ids)
    who = {"user_id": "player-1"}

    view = client.post(f"/api/collections/{coll}/play", json={**who, "user_name": "Lin"}).json()
    assert view["state"] == "playing"
    assert view["total"] == 3
    assert "location" not in view["challenge"]

    for n, d in enumerate([10, 2_000_000, 60]):
        view = client.post(f"/api/collections/{coll}/play/guess", json={
            **who, "user_name": "Lin", "location": point_at_distance(TRUTHS[n], d).model_dump()}).json()
        assert view["state"] == "reviewing"
        view = client.post(f"/api/collections/{coll}/play/next", json=who).json()

    assert view["state"] == "completed"
    assert view["progress"]["total_score"] == 5000 + 1839 + 5000
    assert view["attempt"]["total_score"] == 11839
    # a finished run no longer holds a session
    assert client.get(f"/api/collections/{coll}/play", params=who).status_code == 404
    assert coll not in {key[0] for key in main.sessions}

    detail = client.get(f"/api/collections/{coll}", params=who).json()
    assert detail["item_count"] == 3
    assert detail["resume_index"] == 3
    assert detail["progress"]["is_completed"] is True

    board = client.get(f"/api/collections/{coll}/leaderboard", params=who).json()
    assert [a["user_id"] for a in board["top"]] == ["player-1"]
    assert board["mine"]["rank"] == 1

    stats = client.get(f"/api/collections/{coll}/stats").json()
    assert stats["total_completions"] == 1
    assert stats["avg_total_score"] == 11839

    played = client.get("/api/users/player-1/played").json()
    assert [p["id"] for p in played] == [coll]


def test_play_actions_need_a_session(client):
    assert client.post("/api/collections/x/play/next", json={"user_id": "u"}).status_code == 404


def test_unknown_collection(client):
    assert client.get("/api/collections/missing").status_code == 404
    assert client.get("/api/collections/missing/stats").status_code == 404
    view = client.post("/api/collections/missing/play", json={"user_id": "u", "user_name": "U"}).json()
    assert view["state"] == "unavailable"
    assert not main.sessions


def test_map_endpoints(client):
    assert client.get("/api/map/frame", params={"lat": 39.9042, "lng": 116.4074}).json() == {
        "frame": "regional_shifted", "in_region": True}
    assert client.get("/api/map/frame", params={"lat": 48.85, "lng": 2.35}).json()["frame"] == "geodetic"
    assert client.get("/api/map/frame", params={"lat": 120, "lng": 0}).status_code == 422

    review = client.post("/api/map/review", json={
        "truth": {"lat": 39.9042, "lng": 116.4074},
        "guesses": [{"lat": 31.2304, "lng": 121.4737}],
    }).json()
    assert review["frame"] == "regional_shifted"
    assert review["truth"] != {"lat": 39.9042, "lng": 116.4074}
    assert review["lines"][0]["end"] == review["truth"]
    assert review["bounds"]["north_east"]["lat"] > review["bounds"]["south_west"]["lat"]

    click = client.post("/api/map/click", json={"point": review["truth"], "frame": "regional_shifted"}).json()
    assert click["location"]["lat"] == pytest.approx(39.9042, abs=1e-7)
    assert click["location"]["lng"] == pytest.approx(116.4074, abs=1e-7)


def test_leaving_drops_the_session(client):
    coll = post_collection(client, post_challenges(client))
    who = {"user_id": "player-1"}
    client.post(f"/api/collections/{coll}/play", json={**who, "user_name": "Lin"})
    assert client.get(f"/api/collections/{coll}/play", params=who).json()["state"] == "playing"

    assert client.delete(f"/api/collections/{coll}/play", params=who).status_code == 200
    assert client.get(f"/api/collections/{coll}/play", params=who).status_code == 404


def test_session_kept_while_attempt_can_be_retried(client, gated):
    main.app.dependency_overrides[get_store] = lambda: gated
    coll = post_collection(client, post_challenges(client, TRUTHS[:1]))
    who = {"user_id": "player-1"}
    client.post(f"/api/collections/{coll}/play", json={**who, "user_name": "Lin"})
    client.post(f"/api/collections/{coll}/play/guess", json={
        **who, "user_name": "Lin", "location": TRUTHS[0].model_dump()})

    gated.fail_writes.add("collection_attempt")
    view = client.post(f"/api/collections/{coll}/play/next", json=who).json()
    assert view["state"] == "completed"
    assert view["can_retry"] is True
    assert client.get(f"/api/collections/{coll}/play", params=who).status_code == 200

    gated.fail_writes.clear()
    view = client.post(f"/api/collections/{coll}/play/retry", json=who).json()
    assert view["attempt"]["total_score"] == 5000
    assert client.get(f"/api/collections/{coll}/play", params=who).status_code == 404
