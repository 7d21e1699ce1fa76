"""HTTP and WebSocket surface."""

from collections.abc import Iterator
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from core.config import Settings
from core.serialization import unpack_event
from server.app import battle_error_handler, create_app
from server.services.engine import BattleEngine


@pytest.fixture
def client(settings: Settings) -> Iterator[TestClient]:
    app = create_app(settings, BattleEngine(settings))
    with TestClient(app) as test_client:
        yield test_client


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def start_battle(client: TestClient) -> dict:
    response = client.post("/api/lobbies", json={"format": "1v1"}, headers=as_user("U1"))
    assert response.status_code == 201
    lobby = response.json()
    response = client.post(f"/api/lobbies/{lobby['id']}/join", json={}, headers=as_user("U2"))
    assert response.status_code == 200
    assert response.json()["status"] == "paired"
    match_id = response.json()["match_id"]
    return client.get(f"/api/matches/{match_id}", headers=as_user("U1")).json()


def test_battle_over_http(client: TestClient) -> None:
    match = start_battle(client)
    assert match["team_a_leader_id"] == "U1"

    for recipient, amount in (("U1", "50"), ("U2", "30")):
        response = client.post(
            f"/api/matches/{match['id']}/gifts",
            json={"recipient_id": recipient, "amount_sek": amount},
            headers=as_user("viewer"),
        )
        assert response.status_code == 200

    response = client.post(f"/api/matches/{match['id']}/end", headers=as_user("U2"))
    assert response.status_code == 200
    assert response.json()["winner_team"] == "team_a"

    rewards = client.get(f"/api/matches/{match['id']}/rewards").json()
    assert {r["player_id"]: r["reward_amount_sek"] for r in rewards} == {
        "U1": "35.00",
        "U2": "21.00",
    }

    response = client.post(f"/api/matches/{match['id']}/exit", headers=as_user("U1"))
    assert response.json() == {"kind": "home", "stream_id": None}

    history = client.get("/api/matches/history", headers=as_user("U2")).json()
    assert [h["match_id"] for h in history] == [match["id"]]


def test_identity_is_required(client: TestClient) -> None:
    response = client.post("/api/lobbies", json={"format": "1v1"})
    assert response.status_code == 401


def test_unknown_format_is_a_bad_request(client: TestClient) -> None:
    response = client.post("/api/lobbies", json={"format": "9v9"}, headers=as_user("U1"))
    assert response.status_code == 400
    assert response.json()["code"] == "unsupported_format"


def test_blocked_player_gets_retry_after(client: TestClient) -> None:
    match = start_battle(client)
    response = client.post(f"/api/matches/{match['id']}/decline", headers=as_user("U2"))
    assert response.status_code == 200

    response = client.post("/api/lobbies", json={"format": "1v1"}, headers=as_user("U2"))
    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "matchmaking_blocked"
    assert 0 < body["cooldown_remaining_seconds"] <= 180
    assert response.headers["Retry-After"] == str(body["cooldown_remaining_seconds"])

    gate = client.get("/api/lobbies/gate", headers=as_user("U2")).json()
    assert gate["allowed"] is False


def test_unknown_ids(client: TestClient) -> None:
    assert client.get("/api/lobbies/nope").status_code == 404
    assert client.get("/api/matches/nope").status_code == 404
    response = client.post("/api/lobbies/nope/join", json={}, headers=as_user("U1"))
    assert response.status_code == 404


def test_only_leaders_end_the_match(client: TestClient) -> None:
    match = start_battle(client)
    response = client.post(f"/api/matches/{match['id']}/end", headers=as_user("viewer"))
    assert response.status_code == 403
    assert response.json()["code"] == "permission_denied"


def test_second_lobby_is_refused(client: TestClient) -> None:
    client.post("/api/lobbies", json={"format": "2v2"}, headers=as_user("U1"))
    response = client.post("/api/lobbies", json={"format": "2v2"}, headers=as_user("U1"))
    assert response.status_code == 400
    assert response.json()["code"] == "already_in_lobby"

    mine = client.get("/api/lobbies/me", headers=as_user("U1")).json()
    assert mine["host_id"] == "U1"


def test_match_socket_streams_scores(client: TestClient) -> None:
    match = start_battle(client)

    with client.websocket_connect(
        f"/ws/matches/{match['id']}", headers=as_user("U1")
    ) as websocket:
        snapshot = unpack_event(websocket.receive_bytes())
        assert snapshot["id"] == match["id"]

        client.post(
            f"/api/matches/{match['id']}/gifts",
            json={"recipient_id": "U2", "amount_sek": "7"},
            headers=as_user("viewer"),
        )
        event = unpack_event(websocket.receive_bytes())
        assert event["event"] == "score_updated"
        assert event["team_b_score"] == "7"


def test_client_cannot_choose_gift_weight(client: TestClient) -> None:
    match = start_battle(client)

    response = client.post(
        f"/api/matches/{match['id']}/gifts",
        json={"recipient_id": "U1", "amount_sek": "10", "weight": "1000"},
        headers=as_user("viewer"),
    )

    assert response.status_code == 200
    assert Decimal(response.json()["team_a_score"]) == Decimal("10")


def test_declined_match_is_cancelled(client: TestClient) -> None:
    match = start_battle(client)

    response = client.post(f"/api/matches/{match['id']}/decline", headers=as_user("U2"))

    assert response.json()["status"] == "cancelled"
    assert response.json()["winner_team"] is None
    assert client.get(f"/api/matches/{match['id']}/rewards").json() == []


def test_invitation_over_http(client: TestClient) -> None:
    lobby = client.post(
        "/api/lobbies", json={"format": "1v1", "is_private": True}, headers=as_user("U1")
    ).json()

    response = client.post(
        f"/api/lobbies/{lobby['id']}/invitations",
        json={"invitee_id": "U2"},
        headers=as_user("U1"),
    )
    assert response.status_code == 201
    invitation = response.json()
    assert invitation["status"] == "pending"

    pending = client.get("/api/invitations", headers=as_user("U2")).json()
    assert [i["id"] for i in pending] == [invitation["id"]]

    response = client.post(
        f"/api/invitations/{invitation['id']}/accept", json={}, headers=as_user("U3")
    )
    assert response.status_code == 403

    response = client.post(
        f"/api/invitations/{invitation['id']}/accept", json={}, headers=as_user("U2")
    )
    assert response.status_code == 200
    assert response.json()["status"] == "paired"
    assert client.get("/api/invitations", headers=as_user("U2")).json() == []


async def test_error_handler_leaves_other_exceptions_alone() -> None:
    request = Request({"type": "http", "method": "GET", "path": "/", "headers": []})
    with pytest.raises(RuntimeError):
        await battle_error_handler(request, RuntimeError("boom"))
