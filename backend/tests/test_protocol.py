from contextlib import ExitStack, contextmanager
from types import SimpleNamespace

import pytest
from starlette.websockets import WebSocketDisconnect

from rabble.exceptions import StoreError
from rabble.services.store import GameStore

FOODS = ["Pizza", "Sushi", "Tacos", "Ramen"]


def ws_url(room_id, user_id):
    return f"/ws?roomId={room_id}&userId={user_id}"


def create_room(client, nickname="Host"):
    data = client.post("/api/room/create", json={"nickname": nickname}).json()
    return data["room"], data["user"]


def join_room(client, code, nickname):
    response = client.post("/api/room/join", json={"code": code, "nickname": nickname})
    assert response.status_code == 200
    return response.json()["user"]


def collect_until(ws, type_, predicate=lambda payload: True):
    received = []
    while True:
        msg = ws.receive_json()
        received.append(msg)
        if msg["type"] == type_ and predicate(msg["payload"]):
            return received


def wait_for(ws, type_, predicate=lambda payload: True):
    return collect_until(ws, type_, predicate)[-1]["payload"]


def flush(ws):
    """Send a message that always gets an error reply and return everything before it."""
    ws.send_json({"type": "ping"})
    received = collect_until(ws, "error", lambda p: p["message"] == "Unknown message type")
    return received[:-1]


@contextmanager
def open_table(client, player_count=4):
    room, host = create_room(client)
    players = [join_room(client, room["code"], f"Player {n}") for n in range(1, player_count + 1)]
    with ExitStack() as stack:
        host_ws = stack.enter_context(client.websocket_connect(ws_url(room["id"], host["id"])))
        wait_for(host_ws, "room_state")
        sockets = {}
        for player in players:
            ws = stack.enter_context(client.websocket_connect(ws_url(room["id"], player["id"])))
            wait_for(ws, "room_state")
            sockets[player["id"]] = ws
        yield SimpleNamespace(
            room=room,
            host=host,
            host_ws=host_ws,
            players=players,
            sockets=sockets,
            stack=stack,
        )
        # Let every session finish its in-flight handler before the sockets close.
        for _ in range(2):
            for ws in [host_ws, *sockets.values()]:
                flush(ws)


def start_game(table, items=FOODS):
    table.host_ws.send_json({"type": "start_game", "payload": {"items": items}})
    wait_for(table.host_ws, "game_started")
    return {
        user_id: wait_for(ws, "assignment")["guess_item_id"]
        for user_id, ws in table.sockets.items()
    }


def submit_all(table):
    for user_id, ws in table.sockets.items():
        ws.send_json({"type": "submit_association", "payload": {"value": f"clue {user_id}"}})
    return wait_for(table.host_ws, "round_started")


def room_state(client, table):
    return client.get(f"/api/room/{table.room['code']}").json()


def test_unknown_user_is_rejected(client):
    room, _ = create_room(client)

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(ws_url(room["id"], 99999)):
            pass

    assert exc.value.code == 1008


def test_user_from_another_room_is_rejected(client):
    room, _ = create_room(client)
    other_room, other_host = create_room(client, "Other")

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(ws_url(room["id"], other_host["id"])):
            pass

    assert exc.value.code == 1008


def test_connect_sends_snapshot(client):
    room, host = create_room(client)

    with client.websocket_connect(ws_url(room["id"], host["id"])) as ws:
        first = ws.receive_json()

    assert first["type"] == "room_state"
    assert first["payload"]["room"]["code"] == room["code"]
    assert first["payload"]["guessItems"] == []
    assert first["payload"]["currentRound"] is None


def test_malformed_messages_get_errors(client):
    room, host = create_room(client)

    with client.websocket_connect(ws_url(room["id"], host["id"])) as ws:
        ws.send_text("{not json")
        assert wait_for(ws, "error") == {"message": "Invalid message format"}

        ws.send_json({"payload": {}})
        assert wait_for(ws, "error") == {"message": "Invalid message format"}

        ws.send_json({"type": "dance"})
        assert wait_for(ws, "error") == {"message": "Unknown message type"}


def test_players_cannot_start_the_game(client):
    with open_table(client) as table:
        ws = next(iter(table.sockets.values()))
        ws.send_json({"type": "start_game", "payload": {"items": FOODS}})

        received = flush(ws)

        assert "game_started" not in {msg["type"] for msg in received}
        assert room_state(client, table)["room"]["status"] == "lobby"


@pytest.mark.parametrize(
    ("player_count", "items", "error"),
    [
        (3, FOODS, "Need at least 4 players to start"),
        (4, [" Pizza ", "Pizza", "", "Sushi", "Tacos"], "Please enter at least 4 items"),
        (4, FOODS + ["Curry"], "Number of items cannot exceed number of players"),
    ],
)
def test_start_game_validation(client, player_count, items, error):
    with open_table(client, player_count=player_count) as table:
        table.host_ws.send_json({"type": "start_game", "payload": {"items": items}})

        assert wait_for(table.host_ws, "error") == {"message": error}
        assert room_state(client, table)["room"]["status"] == "lobby"


def test_host_cancels_in_lobby(client):
    with open_table(client) as table:
        table.host_ws.send_json({"type": "cancel_game"})
        payload = wait_for(next(iter(table.sockets.values())), "game_cancelled")

        assert payload == {"message": "The host cancelled the game."}
        assert room_state(client, table)["room"]["status"] == "finished"

    response = client.post("/api/room/join", json={"code": table.room["code"], "nickname": "Late"})
    assert response.status_code == 400


def test_game_starts_and_moves_to_guessing(client):
    with open_table(client) as table:
        assignments = start_game(table, [" Pizza", "Sushi ", "Tacos", "Ramen", "Pizza"])

        assert sorted(assignments) == sorted(table.sockets)
        state = room_state(client, table)
        assert state["room"]["status"] == "submitting"
        assert [item["name"] for item in state["guessItems"]] == FOODS
        assert set(assignments.values()) == {item["id"] for item in state["guessItems"]}

        round_info = submit_all(table)

        assert round_info["round_number"] == 1
        assert round_info["phase"] == "guessing"
        assert len(round_info["associations"]) == 1
        assert len(round_info["options"]) == 4
        assert len(round_info["eligible_user_ids"]) == 3

        state = room_state(client, table)
        assert state["room"]["status"] == "guessing"
        assert state["currentRound"]["round_number"] == 1
        assert state["currentRound"]["status"] == "active"
        assert len(state["associations"]) == 4


def test_reconnecting_tab_gets_assignment_and_round(client):
    with open_table(client) as table:
        assignments = start_game(table)
        user_id = next(iter(table.sockets))

        with client.websocket_connect(ws_url(table.room["id"], user_id)) as tab:
            assert wait_for(tab, "assignment")["guess_item_id"] == assignments[user_id]
            wait_for(tab, "room_state")

        round_info = submit_all(table)

        with client.websocket_connect(ws_url(table.room["id"], user_id)) as tab:
            rejoined = wait_for(tab, "round_started")
            wait_for(tab, "room_state")

        assert rejoined["round_number"] == round_info["round_number"]
        assert [o["id"] for o in rejoined["options"]] == [o["id"] for o in round_info["options"]]


def test_round_scores_exactly_once(client):
    with open_table(client) as table:
        assignments = start_game(table)
        round_info = submit_all(table)

        eligible = round_info["eligible_user_ids"]
        (author,) = [user_id for user_id in assignments if user_id not in eligible]
        correct = assignments[author]
        wrong = next(o["id"] for o in round_info["options"] if o["id"] != correct)
        right_guesser, *wrong_guessers = eligible

        # Authors of the item may not guess it.
        table.sockets[author].send_json({"type": "submit_guess", "payload": {"guessed_item_id": correct}})
        received = flush(table.sockets[author])
        assert not [
            m for m in received if m["type"] == "guess_submitted" and m["payload"]["user_id"] == author
        ]

        picks = [(right_guesser, correct)] + [(user_id, wrong) for user_id in wrong_guessers]
        for user_id, pick in picks:
            table.sockets[user_id].send_json({"type": "submit_guess", "payload": {"guessed_item_id": pick}})
            progress = wait_for(table.host_ws, "guess_submitted", lambda p, uid=user_id: p["user_id"] == uid)
        assert progress["all_guessed"] is True
        assert progress["guess_count"] == progress["total_eligible"] == 3

        table.host_ws.send_json({"type": "reveal_votes"})
        tallies = wait_for(table.host_ws, "votes_revealed")["tallies"]
        assert {t["guess_item_id"]: t["vote_count"] for t in tallies} == {correct: 1, wrong: 2}

        table.host_ws.send_json({"type": "reveal_answer"})
        answer = wait_for(table.host_ws, "answer_revealed")
        assert answer["correct_item"]["id"] == correct
        scores = {user["id"]: user["score"] for user in answer["users"]}
        assert scores[right_guesser] == 10
        assert all(scores[user_id] == 0 for user_id in wrong_guessers + [author])

        table.host_ws.send_json({"type": "reveal_answer"})
        received = flush(table.host_ws)
        assert "answer_revealed" not in {msg["type"] for msg in received}

        users = {user["id"]: user["score"] for user in room_state(client, table)["users"]}
        assert users[right_guesser] == 10


def test_second_guess_is_ignored(client):
    with open_table(client) as table:
        start_game(table)
        round_info = submit_all(table)
        user_id = round_info["eligible_user_ids"][0]
        first, second = round_info["options"][0]["id"], round_info["options"][1]["id"]
        ws = table.sockets[user_id]

        ws.send_json({"type": "submit_guess", "payload": {"guessed_item_id": first}})
        ws.send_json({"type": "submit_guess", "payload": {"guessed_item_id": second}})
        ws.send_json({"type": "submit_guess", "payload": {"guessed_item_id": 99999}})
        received = flush(ws)

        mine = [m for m in received if m["type"] == "guess_submitted" and m["payload"]["user_id"] == user_id]
        assert len(mine) == 1
        guesses = room_state(client, table)["guesses"]
        assert [(g["user_id"], g["guessed_item_id"]) for g in guesses] == [(user_id, first)]


def test_host_skips_through_a_short_game(client):
    with open_table(client) as table:
        assignments = start_game(table)
        author, item_id = next(iter(assignments.items()))
        table.sockets[author].send_json({"type": "submit_association", "payload": {"value": "  cheesy  "}})
        submitted = wait_for(table.host_ws, "association_submitted")
        assert submitted == {"user_id": author, "all_submitted": False}

        table.host_ws.send_json({"type": "skip_stage"})
        round_info = wait_for(table.host_ws, "round_started")
        assert round_info["round_number"] == 1
        assert round_info["associations"] == [{"value": "cheesy"}]
        assert author not in round_info["eligible_user_ids"]

        table.host_ws.send_json({"type": "skip_stage"})
        assert wait_for(table.host_ws, "votes_revealed") == {"tallies": []}

        table.host_ws.send_json({"type": "skip_stage"})
        assert wait_for(table.host_ws, "answer_revealed")["correct_item"]["id"] == item_id

        table.host_ws.send_json({"type": "skip_stage"})
        final = wait_for(table.host_ws, "game_finished")["final_scores"]
        assert sorted(user["id"] for user in final) == sorted(table.sockets)
        assert room_state(client, table)["room"]["status"] == "finished"


def test_players_cannot_drive_rounds(client):
    with open_table(client) as table:
        start_game(table)
        round_info = submit_all(table)
        ws = table.sockets[round_info["eligible_user_ids"][0]]

        for action in ("reveal_votes", "reveal_answer", "next_round", "skip_stage"):
            ws.send_json({"type": action})
        received = flush(ws)

        assert "votes_revealed" not in {msg["type"] for msg in received}
        assert room_state(client, table)["currentRound"]["status"] == "active"


def test_binary_frames_get_an_error(client):
    room, host = create_room(client)

    with client.websocket_connect(ws_url(room["id"], host["id"])) as ws:
        ws.send_bytes(b"\x00\x01")
        assert wait_for(ws, "error") == {"message": "Invalid message format"}

        # The session keeps serving text frames afterwards.
        ws.send_json({"type": "dance"})
        assert wait_for(ws, "error") == {"message": "Unknown message type"}


def _break(monkeypatch, method):
    async def broken(self, *args, **kwargs):
        raise StoreError("disk full")

    monkeypatch.setattr(GameStore, method, broken)


def _drain(table):
    # The first pass lets every session finish its handler, the second empties what they sent.
    for _ in range(2):
        for ws in [table.host_ws, *table.sockets.values()]:
            flush(ws)


@pytest.mark.parametrize("method", ["create_guess_items", "set_assignments"])
def test_failed_start_leaves_room_in_lobby(client, monkeypatch, method):
    with open_table(client) as table:
        _break(monkeypatch, method)
        table.host_ws.send_json({"type": "start_game", "payload": {"items": FOODS}})

        received = flush(table.host_ws)

        assert not {"game_started", "assignment"} & {msg["type"] for msg in received}
        state = room_state(client, table)
        assert state["room"]["status"] == "lobby"
        assert state["guessItems"] == []

        monkeypatch.undo()
        assert sorted(start_game(table)) == sorted(table.sockets)


def test_storage_error_on_submission_broadcasts_nothing(client, monkeypatch):
    with open_table(client) as table:
        start_game(table)
        _drain(table)
        ws = next(iter(table.sockets.values()))

        _break(monkeypatch, "create_association")
        ws.send_json({"type": "submit_association", "payload": {"value": "cheesy"}})
        assert flush(ws) == []

        for peer in [table.host_ws, *table.sockets.values()]:
            assert flush(peer) == []
        state = room_state(client, table)
        assert state["associations"] == []
        assert state["room"]["status"] == "submitting"


def test_storage_error_on_reveal_keeps_round_and_scores(client, monkeypatch):
    with open_table(client) as table:
        assignments = start_game(table)
        round_info = submit_all(table)
        eligible = round_info["eligible_user_ids"]
        (author,) = [user_id for user_id in assignments if user_id not in eligible]
        correct = assignments[author]
        guesser = eligible[0]
        table.sockets[guesser].send_json({"type": "submit_guess", "payload": {"guessed_item_id": correct}})
        wait_for(table.host_ws, "guess_submitted", lambda p: p["user_id"] == guesser)
        table.host_ws.send_json({"type": "reveal_votes"})
        wait_for(table.host_ws, "votes_revealed")
        _drain(table)

        _break(monkeypatch, "update_user_score")
        table.host_ws.send_json({"type": "reveal_answer"})
        assert flush(table.host_ws) == []

        for peer in table.sockets.values():
            assert flush(peer) == []
        state = room_state(client, table)
        assert state["currentRound"]["status"] == "voting"
        assert all(user["score"] == 0 for user in state["users"])

        monkeypatch.undo()
        table.host_ws.send_json({"type": "reveal_answer"})
        answer = wait_for(table.host_ws, "answer_revealed")
        assert {user["id"]: user["score"] for user in answer["users"]}[guesser] == 10
        flush(table.host_ws)
