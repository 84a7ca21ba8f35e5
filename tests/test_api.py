from __future__ import annotations

from fastapi.testclient import TestClient
import pytest

from conftest import LEARNER, TEACHER
from quiz_arena.core.name_assigner import NameAssigner
from quiz_arena.server.api_server import create_api_app

TEACHER_HEADERS = {"X-User-Id": TEACHER}
LEARNER_HEADERS = {"X-User-Id": LEARNER}

QUIZ = {
    "title": "Arithmetic",
    "is_draft": False,
    "show_answers": True,
    "exam_mode": True,
    "questions": [
        {"title": "2 + 2 = ?", "type": "SHORT_ANSWER", "correct_answers": ["4"]},
        {"title": "Pick the even numbers", "type": "MULTIPLE_CHOICE", "options": ["1", "2", "4"], "correct_answers": ["2", "4"]},
        {"title": "Explain zero", "type": "OPEN_QUESTION", "weight": 2},
    ],
}


@pytest.fixture
def client(database, broadcaster, notifier, clock):
    app = create_api_app(
        database,
        broadcaster=broadcaster,
        notifier=notifier,
        name_assigner=NameAssigner(["Guest"]),
        clock=clock,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def quiz(client):
    response = client.post("/tests", json=QUIZ, headers=TEACHER_HEADERS)
    assert response.status_code == 201
    return response.json()


def test_errors_carry_a_stable_category(client, quiz):
    missing = client.get("/tests/nope")
    assert missing.status_code == 404
    assert missing.json() == {"category": "not_found", "detail": "Test not found"}

    anonymous = client.post("/tests", json=QUIZ)
    assert anonymous.status_code == 403
    assert anonymous.json()["category"] == "forbidden"

    invalid = client.post(
        "/tests",
        json={"title": "Bad", "questions": [{"title": "q", "type": "MULTIPLE_CHOICE", "options": ["a"]}]},
        headers=TEACHER_HEADERS,
    )
    assert invalid.status_code == 422
    assert invalid.json()["category"] == "validation_error"


def test_learners_do_not_see_correct_answers(client, quiz):
    as_learner = client.get(f"/tests/{quiz['id']}", headers=LEARNER_HEADERS).json()
    as_teacher = client.get(f"/tests/{quiz['id']}", headers=TEACHER_HEADERS).json()

    assert as_learner["questions"][0]["correct_answers"] is None
    assert as_teacher["questions"][0]["correct_answers"] == ["4"]


def test_exam_flow_with_review(client, quiz, clock):
    short_q, choice_q, open_q = quiz["questions"]

    started = client.post(f"/tests/{quiz['id']}/attempts", json={"mode": "EXAM"}, headers=LEARNER_HEADERS)
    assert started.status_code == 201
    attempt_id = started.json()["attempt_id"]

    progress = client.put(
        f"/attempts/{attempt_id}/progress",
        json={"question_id": short_q["id"], "user_answer": " 4 "},
        headers=LEARNER_HEADERS,
    )
    assert progress.json()["next_question_id"] == choice_q["id"]

    clock.advance(minutes=3)
    submitted = client.post(
        f"/attempts/{attempt_id}/submit",
        json={"answers": [
            {"question_id": choice_q["id"], "selected_answers": ["4", "2"]},
            {"question_id": open_q["id"], "user_answer": "Nothing at all"},
        ]},
        headers=LEARNER_HEADERS,
    )
    body = submitted.json()
    assert submitted.status_code == 200
    assert (body["status"], body["score"], body["time_elapsed"], body["time_limit"]) == ("COMPLETED", 100, 3, 10)
    assert [r["is_correct"] for r in body["detailed_results"]] == [True, True, None]

    again = client.post(f"/attempts/{attempt_id}/submit", json={"answers": []}, headers=LEARNER_HEADERS)
    assert again.status_code == 409
    assert again.json()["category"] == "conflict"

    [pending] = client.get("/reviews/pending", headers=TEACHER_HEADERS).json()
    denied = client.post(f"/answers/{pending['answer_id']}/review", json={"is_correct": False}, headers=LEARNER_HEADERS)
    assert denied.status_code == 403
    reviewed = client.post(f"/answers/{pending['answer_id']}/review", json={"is_correct": False}, headers=TEACHER_HEADERS)
    assert reviewed.json()["score"] == 50

    results = client.get(f"/attempts/{attempt_id}/results", headers=LEARNER_HEADERS).json()
    assert results["mode"] == "EXAM"
    assert results["score"] == 50
    assert results["results"][2]["is_correct"] is None

    exported = client.get(f"/attempts/{attempt_id}/export", headers=TEACHER_HEADERS)
    assert exported.headers["content-disposition"] == f'attachment; filename="attempt-{attempt_id}.json"'
    assert [a["is_correct"] for a in exported.json()["answers"]] == [True, True, False]


def test_competition_over_http_and_websocket(client, quiz):
    created = client.post("/competitions", json={"test_id": quiz["id"]}, headers=TEACHER_HEADERS).json()
    code, competition_id = created["code"], created["id"]
    team_x, team_y = created["teams"]

    assert client.get(f"/competitions/code/{code}").json()["can_join"] is True
    guest = client.post("/competitions/join", json={"code": code}).json()
    learner = client.post("/competitions/join", json={"code": code, "display_name": "Lee"}, headers=LEARNER_HEADERS).json()
    assert guest["display_name"] == "Guest"
    guest_id, learner_id = guest["participant_id"], learner["participant_id"]

    with client.websocket_connect(f"/ws/competitions/{competition_id}?participant_id={guest_id}") as socket:
        joined = socket.receive_json()
        assert joined["event"] == "competitionJoined"
        assert joined["payload"]["user_participation"]["id"] == guest_id

        for team, participant in ((team_x, guest_id), (team_y, learner_id)):
            payload = {"team_id": team["id"], "participant_id": participant}
            assert client.post(f"/competitions/{competition_id}/select-team", json=payload).status_code == 200
            assert client.post(f"/competitions/{competition_id}/select-player", json=payload).status_code == 200

        socket.send_json({"event": "teamMessage", "message": "ready?"})
        events = []
        while not events or events[-1]["event"] != "teamMessage":
            events.append(socket.receive_json())
        assert events[-1]["room"] == f"team:{team_x['id']}"
        assert events[-1]["payload"]["message"] == "ready?"

    started = client.post(f"/competitions/{competition_id}/start", headers=TEACHER_HEADERS)
    assert started.json()["status"] == "IN_PROGRESS"

    question = client.get(f"/participants/{guest_id}/current-question").json()
    assert question["number"] == 1
    answered = client.post(
        f"/participants/{guest_id}/answers",
        json={"question_id": question["id"], "user_answer": "4"},
    )
    assert answered.status_code == 201
    assert answered.json()["team_score"] == 1

    blocked = client.post(
        f"/participants/{learner_id}/answers",
        json={"question_id": "unknown", "user_answer": "4"},
    )
    assert blocked.status_code == 404

    board = client.get(f"/competitions/{competition_id}/leaderboard").json()
    assert board["teams"][0]["team_id"] == team_x["id"]

    chat = client.get(
        f"/competitions/{competition_id}/teams/{team_x['id']}/messages", params={"participant_id": guest_id}
    ).json()
    assert [m["message"] for m in chat["messages"]] == ["ready?"]


def test_websocket_rejects_unknown_participants(client, quiz):
    created = client.post("/competitions", json={"test_id": quiz["id"]}, headers=TEACHER_HEADERS).json()

    with client.websocket_connect(f"/ws/competitions/{created['id']}?participant_id=ghost") as socket:
        message = socket.receive_json()

    assert message["event"] == "error"
    assert message["payload"]["category"] == "not_found"


def test_closing_a_socket_releases_its_subscription(client, quiz, broadcaster):
    created = client.post("/competitions", json={"test_id": quiz["id"]}, headers=TEACHER_HEADERS).json()
    guest = client.post("/competitions/join", json={"code": created["code"]}).json()
    room = f"competition:{created['id']}"

    with client.websocket_connect(f"/ws/competitions/{created['id']}?participant_id={guest['participant_id']}") as socket:
        assert socket.receive_json()["event"] == "competitionJoined"
        assert broadcaster.subscriber_count(room) == 1
        socket.send_json({"event": "shout"})
        assert socket.receive_json()["payload"]["category"] == "validation_error"

    assert broadcaster.subscriber_count(room) == 0
