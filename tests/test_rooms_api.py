import re

import pytest
import redis
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import create_app
from backend import RedisRoomStore
from pubsub import LocalPubSub, RedisPubSub
from tests.conftest import BrokenRedis


def create_room(client, owner_name="Alice"):
    resp = client.post("/rooms/", json={"owner_name": owner_name})
    assert resp.status_code == 201
    return resp.json()


def join(client, room_id, name, token=None):
    headers = {"X-Participant-Token": token} if token else {}
    return client.post(f"/rooms/{room_id}/join", json={"name": name}, headers=headers)


def select(client, room_id, count, owner_token):
    return client.post(f"/rooms/{room_id}/select", json={"count": count}, headers={"X-Owner-Token": owner_token})


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "backend": "memory"}


def test_create_room(client):
    body = create_room(client)
    assert re.match(r"^[a-z0-9]{6}$", body["room_id"])
    assert len(bytes.fromhex(body["owner_token"])) >= 16
    assert body["ws_url"] == f"ws://testserver/rooms/{body['room_id']}/ws"


@pytest.mark.parametrize("payload", [{}, {"owner_name": ""}, {"owner_name": "   "}, {"owner_name": "x" * 51}])
def test_create_room_validates_owner_name(client, payload):
    assert client.post("/rooms/", json=payload).status_code == 422


def test_scenario(client):
    room = create_room(client, "Alice")
    room_id = room["room_id"]
    bob = join(client, room_id, "Bob")
    carol = join(client, room_id, "Carol")
    assert bob.status_code == 200 and carol.status_code == 200
    assert bob.json()["participant_token"] != carol.json()["participant_token"]

    snapshot = client.get(f"/rooms/{room_id}").json()
    assert snapshot == {
        "participants": [{"name": "Bob"}, {"name": "Carol"}, {"name": "Alice"}],
        "selection": None,
    }

    resp = select(client, room_id, 2, room["owner_token"])
    assert resp.status_code == 200
    drawn = resp.json()
    assert drawn["requested_count"] == 2
    assert len(set(drawn["selected_names"])) == 2
    assert set(drawn["selected_names"]) <= {"Alice", "Bob", "Carol"}

    snapshot = client.get(f"/rooms/{room_id}").json()
    assert snapshot["selection"]["requested_count"] == 2
    assert snapshot["selection"]["selected_names"] == drawn["selected_names"]


def test_poll_endpoint_matches_snapshot(client):
    room = create_room(client)
    join(client, room["room_id"], "Bob")
    select(client, room["room_id"], 1, room["owner_token"])

    first = client.get(f"/rooms/{room['room_id']}/updates").json()
    second = client.get(f"/rooms/{room['room_id']}/updates").json()
    assert first == second == client.get(f"/rooms/{room['room_id']}").json()


def test_unknown_room(client):
    assert join(client, "nope00", "Bob").status_code == 404
    assert client.get("/rooms/nope00").status_code == 404
    assert client.get("/rooms/nope00/updates").status_code == 404
    assert select(client, "nope00", 1, "token").status_code == 404


def test_rejoin_returns_existing_token(client, caplog):
    room = create_room(client)
    token = join(client, room["room_id"], "Bob").json()["participant_token"]

    with caplog.at_level("INFO"):
        again = join(client, room["room_id"], "Bobby", token=token)

    assert f"Bob rejoined room {room['room_id']}" in caplog.text
    assert again.json()["participant_token"] == token
    assert len(client.get(f"/rooms/{room['room_id']}").json()["participants"]) == 2


def test_selection_forbidden_for_participant(client):
    room = create_room(client)
    token = join(client, room["room_id"], "Bob").json()["participant_token"]
    assert select(client, room["room_id"], 1, token).status_code == 403
    resp = client.post(f"/rooms/{room['room_id']}/select", json={"count": 1})
    assert resp.status_code == 403


def test_owner_token_as_query_param(client):
    room = create_room(client)
    resp = client.post(f"/rooms/{room['room_id']}/select?owner_token={room['owner_token']}", json={"count": 1})
    assert resp.status_code == 200
    assert resp.json()["selected_names"] == ["Alice"]


@pytest.mark.parametrize("count, reason", [(0, "count_not_positive"), (3, "count_exceeds_members")])
def test_selection_validation(client, count, reason):
    room = create_room(client)
    join(client, room["room_id"], "Bob")

    resp = select(client, room["room_id"], count, room["owner_token"])

    assert resp.status_code == 422
    assert resp.json()["detail"]["reason"] == reason
    assert resp.json()["detail"]["member_count"] == 2
    assert client.get(f"/rooms/{room['room_id']}").json()["selection"] is None


def test_select_everyone(client):
    room = create_room(client)
    for name in ("Bob", "Carol"):
        join(client, room["room_id"], name)
    resp = select(client, room["room_id"], 3, room["owner_token"])
    assert sorted(resp.json()["selected_names"]) == ["Alice", "Bob", "Carol"]


def test_whoami(client):
    room = create_room(client)
    token = join(client, room["room_id"], "Bob").json()["participant_token"]
    room_id = room["room_id"]

    owner = client.get(f"/rooms/{room_id}/me", headers={"X-Owner-Token": room["owner_token"]})
    assert owner.json() == {"role": "owner", "name": "Alice"}
    participant = client.get(f"/rooms/{room_id}/me?participant_token={token}")
    assert participant.json() == {"role": "participant", "name": "Bob"}
    assert client.get(f"/rooms/{room_id}/me").status_code == 403
    assert client.get("/rooms/nope00/me").status_code == 404


def test_websocket_rejects_unknown_room(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/rooms/nope00/ws") as ws:
            ws.receive_json()
    assert excinfo.value.code == 1008


def test_websocket_initial_state_and_updates(client):
    room = create_room(client)
    room_id = room["room_id"]

    with client.websocket_connect(f"/rooms/{room_id}/ws") as ws:
        assert ws.receive_json()["type"] == "ping"
        assert ws.receive_json() == {"type": "participants", "participants": [{"name": "Alice"}]}

        join(client, room_id, "Bob")
        assert ws.receive_json() == {"type": "participants", "participants": [{"name": "Bob"}, {"name": "Alice"}]}

        drawn = select(client, room_id, 2, room["owner_token"]).json()
        message = ws.receive_json()
        assert message["type"] == "selection"
        assert message["count"] == 2
        assert [p["name"] for p in message["selected"]] == drawn["selected_names"]


def test_websocket_replays_last_selection(client):
    room = create_room(client)
    select(client, room["room_id"], 1, room["owner_token"])

    with client.websocket_connect(f"/rooms/{room['room_id']}/ws") as ws:
        assert ws.receive_json()["type"] == "ping"
        assert ws.receive_json()["type"] == "participants"
        assert ws.receive_json() == {"type": "selection", "selected": [{"name": "Alice"}], "count": 1}


def test_backend_unavailable_maps_to_503(clock):
    store = RedisRoomStore(BrokenRedis(), ttl_seconds=3600, clock=clock)
    app = create_app(store=store, pubsub=LocalPubSub(), sweep_interval=3600)
    with TestClient(app) as client:
        assert client.post("/rooms/", json={"owner_name": "Alice"}).status_code == 503
        assert client.get("/rooms/abc123").status_code == 503
        assert client.post("/rooms/abc123/join", json={"name": "Bob"}).status_code == 503
        assert client.post("/rooms/abc123/select", json={"count": 1}).status_code == 503


def test_websocket_closes_when_update_stream_fails(store, fake_redis):
    fake_redis.pubsub_error = redis.exceptions.ConnectionError("Connection reset by peer")
    app = create_app(store=store, pubsub=RedisPubSub(fake_redis), sweep_interval=3600)
    with TestClient(app) as client:
        room = create_room(client)
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(f"/rooms/{room['room_id']}/ws") as ws:
                assert ws.receive_json()["type"] == "ping"
                assert ws.receive_json() == {"type": "participants", "participants": [{"name": "Alice"}]}
                ws.receive_json()
    assert excinfo.value.code == 1011
    assert fake_redis.channels[0].closed is True
