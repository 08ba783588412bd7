"""
Tests for the board HTTP API (Flask test client, in-memory store).
"""
import pytest

from board_server import app
from pkg.board.config import BoardConfig
from pkg.board.docstore import MemoryDocumentStore

KEY = {"X-API-Key": "secret"}


@pytest.fixture
def client():
    app.config["TESTING"] = True
    app.config["BOARD_CONFIG"] = BoardConfig(store="memory", api_secret="secret", retry_delay=0)
    app.config["BOARD_STORE"] = MemoryDocumentStore()
    with app.test_client() as c:
        yield c


def headers(user_id):
    return {**KEY, "X-User-Id": user_id}


def login(client, name="Alice", lucky=7):
    resp = client.post("/api/login", json={"name": name, "luckyNumber": lucky}, headers=KEY)
    assert resp.status_code == 200
    return resp.get_json()["userId"]


def new_board(client, user_id, name="Home"):
    resp = client.post("/api/boards", json={"name": name}, headers=headers(user_id))
    assert resp.status_code == 201
    return resp.get_json()["board"]["id"]


def add_tasks(client, user_id, board_id, titles, category):
    resp = client.post(f"/api/boards/{board_id}/tasks",
                       json={"titles": titles, "category": category}, headers=headers(user_id))
    assert resp.status_code == 201
    return resp.get_json()


def titles(data, category):
    return [t["title"] for t in data["columns"][category]]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok", "store": "memory"}


def test_missing_api_key(client):
    resp = client.post("/api/login", json={"name": "A", "luckyNumber": 1})
    assert resp.status_code == 401


def test_wrong_api_key(client):
    resp = client.post("/api/login", json={"name": "A", "luckyNumber": 1}, headers={"X-API-Key": "nope"})
    assert resp.status_code == 403


def test_api_secret_not_configured(client):
    app.config["BOARD_CONFIG"] = BoardConfig(store="memory")
    resp = client.post("/api/login", json={"name": "A", "luckyNumber": 1}, headers=KEY)
    assert resp.status_code == 503


def test_login_validation(client):
    resp = client.post("/api/login", json={"name": "", "luckyNumber": 1}, headers=KEY)
    assert resp.status_code == 400
    assert resp.get_json()["type"] == "ValidationError"


def test_login_is_deterministic(client):
    assert login(client, "Alice", 7) == login(client, " alice ", 7)


def test_board_requires_user_header(client):
    resp = client.post("/api/boards", json={"name": "x"}, headers=KEY)
    assert resp.status_code == 401


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Boards and tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_task_lifecycle(client):
    alice = login(client)
    board_id = new_board(client, alice)

    data = add_tasks(client, alice, board_id, ["one", "two", "three"], "Now")
    assert [t["tag"] for t in data["created"]] == ["N1", "N2", "N3"]
    data = add_tasks(client, alice, board_id, "four\nfive", "day")
    assert titles(data, "Day") == ["four", "five"]

    ids = {t["title"]: t["id"] for t in data["columns"]["Now"] + data["columns"]["Day"]}

    resp = client.post(f"/api/boards/{board_id}/tasks/{ids['three']}/move",
                       json={"index": 0}, headers=headers(alice))
    assert titles(resp.get_json(), "Now") == ["three", "one", "two"]

    resp = client.post(f"/api/boards/{board_id}/tasks/{ids['one']}/move",
                       json={"category": "Week"}, headers=headers(alice))
    assert titles(resp.get_json(), "Week") == ["one"]

    resp = client.post(f"/api/boards/{board_id}/tasks/{ids['two']}/drop",
                       json={"over": ids["five"]}, headers=headers(alice))
    data = resp.get_json()
    assert titles(data, "Day") == ["four", "two", "five"]
    assert [t["tag"] for t in data["columns"]["Day"]] == ["D1", "D2", "D3"]

    resp = client.post(f"/api/boards/{board_id}/tasks/{ids['four']}/archive", headers=headers(alice))
    data = resp.get_json()
    assert titles(data, "Day") == ["two", "five"]
    assert data["archive"][0]["tasks"][0]["title"] == "four"

    resp = client.delete(f"/api/boards/{board_id}/tasks/{ids['five']}", headers=headers(alice))
    assert titles(resp.get_json(), "Day") == ["two"]

    board = client.get(f"/api/boards/{board_id}", headers={"X-User-Id": alice}).get_json()
    assert board["board"]["name"] == "Home"
    assert titles(board, "Now") == ["three"]
    assert titles(board, "Week") == ["one"]


def test_task_errors(client):
    alice = login(client)
    board_id = new_board(client, alice)
    add_tasks(client, alice, board_id, ["one"], "Now")
    url = f"/api/boards/{board_id}/tasks"

    resp = client.post(url, json={"titles": ["x"], "category": "Someday"}, headers=headers(alice))
    assert resp.status_code == 400
    resp = client.post(url, json={"titles": [], "category": "Now"}, headers=headers(alice))
    assert resp.status_code == 400
    resp = client.post(f"{url}/ghost/archive", headers=headers(alice))
    assert resp.status_code == 404
    resp = client.post(f"{url}/ghost/move", json={}, headers=headers(alice))
    assert resp.status_code == 400


def test_missing_board(client):
    alice = login(client)
    resp = client.get("/api/boards/nope", headers={"X-User-Id": alice})
    assert resp.status_code == 404


def test_user_boards(client):
    alice = login(client)
    first = new_board(client, alice, "First")
    resp = client.get(f"/api/users/{alice}/boards", headers={"X-User-Id": alice})
    data = resp.get_json()
    assert data["count"] == 1
    assert data["boards"][0]["id"] == first
    assert data["boards"][0]["role"] == "owner"

    resp = client.get(f"/api/users/{alice}/boards", headers={"X-User-Id": "someone"})
    assert resp.status_code == 403


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Sharing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_non_member_denied(client):
    alice = login(client, "Alice", 7)
    bob = login(client, "Bob", 3)
    board_id = new_board(client, alice)

    assert client.get(f"/api/boards/{board_id}", headers={"X-User-Id": bob}).status_code == 403
    resp = client.post(f"/api/boards/{board_id}/tasks",
                       json={"titles": ["x"], "category": "Now"}, headers=headers(bob))
    assert resp.status_code == 403
    assert resp.get_json()["type"] == "AccessDenied"
    assert client.post(f"/api/boards/{board_id}/invites", headers=headers(bob)).status_code == 403


def test_invite_flow(client):
    alice = login(client, "Alice", 7)
    bob = login(client, "Bob", 3)
    board_id = new_board(client, alice)

    resp = client.post(f"/api/boards/{board_id}/invites", headers=headers(alice))
    assert resp.status_code == 201
    token = resp.get_json()["token"]

    resp = client.post(f"/api/invites/{token}/accept", headers=headers(bob))
    assert resp.get_json() == {"boardId": board_id}

    resp = client.post(f"/api/invites/{token}/accept", headers=headers(bob))
    assert resp.status_code == 404

    add_tasks(client, bob, board_id, ["from bob"], "Month")
    members = client.get(f"/api/boards/{board_id}/members", headers={"X-User-Id": bob}).get_json()
    assert [(m["name"], m["role"]) for m in members["members"]] == [("Alice", "owner"), ("Bob", "member")]
