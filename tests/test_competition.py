from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from conftest import LEARNER, TEACHER, mc, open_question
from quiz_arena.constants.quiz_constants import JOIN_CODE_ALPHABET, JOIN_CODE_LENGTH, TEAM_COLORS
from quiz_arena.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from quiz_arena.core.models import CompetitionStatus
from quiz_arena.core.schemas import AnswerInput


@pytest.fixture
def quiz(make_test):
    return make_test([mc(f"Question {n}", ["A", "B"], ["A"]) for n in range(1, 4)], title="Battle")


@pytest.fixture
def lobby(coordinator, quiz):
    """Two teams, one member each, both with a selected player."""
    competition = coordinator.create_competition(TEACHER, quiz.id, max_teams=2)
    team_x, team_y = competition.teams
    x = coordinator.join(competition.code, "Xena")
    y = coordinator.join(competition.code, "Yuri")
    coordinator.select_team(competition.id, team_x.id, x.participant_id)
    coordinator.select_team(competition.id, team_y.id, y.participant_id)
    coordinator.select_player(competition.id, team_x.id, x.participant_id)
    coordinator.select_player(competition.id, team_y.id, y.participant_id)
    return competition, team_x, team_y, x, y


def _answer_all(coordinator, participant_id, questions, choices):
    results = []
    for question, choice in zip(questions, choices):
        results.append(coordinator.submit_answer(participant_id, question.id, [choice]))
    return results


# --- Creation and lobby ---


def test_create_competition_prepares_teams_and_code(coordinator, quiz):
    competition = coordinator.create_competition(TEACHER, quiz.id, max_teams=3)

    assert len(competition.code) == JOIN_CODE_LENGTH
    assert set(competition.code) <= set(JOIN_CODE_ALPHABET)
    assert competition.title == "Battle Competition"
    assert competition.status == CompetitionStatus.WAITING
    assert [t.name for t in competition.teams] == ["Team 1", "Team 2", "Team 3"]
    assert [t.color for t in competition.teams] == list(TEAM_COLORS[:3])
    assert competition.is_creator is True
    assert competition.can_start is False


def test_create_competition_preconditions(coordinator, make_test, quiz):
    draft = make_test([mc("q", ["A", "B"], ["A"])], is_draft=True)

    with pytest.raises(ConflictError):
        coordinator.create_competition(TEACHER, draft.id)
    with pytest.raises(ForbiddenError):
        coordinator.create_competition(LEARNER, quiz.id)
    with pytest.raises(NotFoundError):
        coordinator.create_competition(TEACHER, "missing")
    with pytest.raises(ValidationError):
        coordinator.create_competition(TEACHER, quiz.id, max_teams=1)
    with pytest.raises(ValidationError):
        coordinator.create_competition(TEACHER, quiz.id, max_teams=11)


def test_join_codes_are_unique(coordinator, quiz):
    codes = {coordinator.create_competition(TEACHER, quiz.id).code for _ in range(20)}
    assert len(codes) == 20


def test_guests_without_a_name_get_an_alias(coordinator, quiz):
    competition = coordinator.create_competition(TEACHER, quiz.id)

    joined = coordinator.join(competition.code.lower(), "   ")

    assert joined.display_name in {"Guest Alpha", "Guest Beta"}
    assert joined.competition.user_participation.is_guest is True


def test_guest_aliases_do_not_repeat_within_a_competition(coordinator, quiz):
    competition = coordinator.create_competition(TEACHER, quiz.id)

    names = [coordinator.join(competition.code).display_name for _ in range(4)]

    assert len(set(names)) == 4
    assert {name.rsplit(" ", 1)[0] for name in names if name[-1].isdigit()} <= {"Guest Alpha", "Guest Beta"}
    assert sum(name[-1].isdigit() for name in names) == 2


def test_users_join_once(coordinator, quiz):
    competition = coordinator.create_competition(TEACHER, quiz.id)
    coordinator.join(competition.code, "Learner", user_id=LEARNER)

    with pytest.raises(ConflictError):
        coordinator.join(competition.code, "Learner again", user_id=LEARNER)


def test_find_by_code(coordinator, quiz):
    competition = coordinator.create_competition(TEACHER, quiz.id)

    preview = coordinator.find_by_code(competition.code)
    assert preview.can_join is True
    assert preview.test_title == "Battle"
    with pytest.raises(NotFoundError):
        coordinator.find_by_code("ZZZZZZ" if competition.code != "ZZZZZZ" else "YYYYYY")


def test_selected_player_must_be_on_the_team(coordinator, lobby):
    competition, team_x, _, _, y = lobby

    with pytest.raises(ValidationError):
        coordinator.select_player(competition.id, team_x.id, y.participant_id)


def test_switching_team_drops_the_player_selection(coordinator, lobby):
    competition, _, team_y, x, _ = lobby

    view = coordinator.select_team(competition.id, team_y.id, x.participant_id)

    teams = {t.id: t for t in view.teams}
    assert teams[team_y.id].participant_count == 2
    assert all(t.selected_player is None or t.selected_player.id != x.participant_id for t in view.teams)
    assert view.can_start is False


def test_cancel_only_while_waiting(coordinator, quiz):
    competition = coordinator.create_competition(TEACHER, quiz.id)

    with pytest.raises(ForbiddenError):
        coordinator.cancel(competition.id, LEARNER)
    assert coordinator.cancel(competition.id, TEACHER).status == CompetitionStatus.CANCELLED
    with pytest.raises(ConflictError):
        coordinator.cancel(competition.id, TEACHER)
    with pytest.raises(ConflictError):
        coordinator.join(competition.code, "Late")


# --- Start ---


def test_start_requires_two_ready_teams(coordinator, quiz):
    competition = coordinator.create_competition(TEACHER, quiz.id)
    team_x = competition.teams[0]
    x = coordinator.join(competition.code, "Xena")
    coordinator.select_team(competition.id, team_x.id, x.participant_id)
    coordinator.select_player(competition.id, team_x.id, x.participant_id)

    with pytest.raises(ConflictError):
        coordinator.start(competition.id, TEACHER)
    assert coordinator.get_competition(competition.id).status == CompetitionStatus.WAITING


def test_start_binds_one_attempt_per_ready_team(coordinator, lobby):
    competition, team_x, team_y, x, _ = lobby

    with pytest.raises(ForbiddenError):
        coordinator.start(competition.id, LEARNER)
    started = coordinator.start(competition.id, TEACHER)

    assert started.status == CompetitionStatus.IN_PROGRESS
    assert started.started_at is not None
    assert all(team.attempt_id for team in started.teams)
    with pytest.raises(ConflictError):
        coordinator.start(competition.id, TEACHER)
    with pytest.raises(ConflictError):
        coordinator.select_team(competition.id, team_y.id, x.participant_id)
    with pytest.raises(ConflictError):
        coordinator.join(competition.code, "Late")


# --- Live play ---


def test_team_attempts_cannot_be_closed_as_solo_attempts(coordinator, attempts, lobby, quiz):
    competition, team_x, _, x, y = lobby
    started = coordinator.start(competition.id, TEACHER)
    team_attempt = next(t.attempt_id for t in started.teams if t.id == team_x.id)

    with pytest.raises(ConflictError):
        attempts.save_progress(x.participant_id, team_attempt, AnswerInput(question_id=quiz.questions[0].id))
    with pytest.raises(ConflictError):
        attempts.submit_attempt(x.participant_id, team_attempt, [])

    _answer_all(coordinator, y.participant_id, quiz.questions, ["A", "A", "A"])
    last = _answer_all(coordinator, x.participant_id, quiz.questions, ["A", "B", "A"])[-1]

    assert last.is_competition_completed is True
    assert coordinator.get_competition(competition.id).status == CompetitionStatus.COMPLETED


def test_leaderboard_ranks_by_correct_answers(coordinator, lobby, quiz):
    competition, team_x, team_y, x, y = lobby
    coordinator.start(competition.id, TEACHER)

    x_results = _answer_all(coordinator, x.participant_id, quiz.questions, ["A", "A", "A"])
    y_results = _answer_all(coordinator, y.participant_id, quiz.questions, ["A", "B", "B"])

    assert x_results[-1].is_test_completed is True
    assert x_results[-1].is_competition_completed is False
    assert y_results[-1].is_competition_completed is True

    board = coordinator.leaderboard(competition.id)
    assert board.status == CompetitionStatus.COMPLETED
    assert [(e.team_id, e.position, e.score) for e in board.teams] == [(team_x.id, 1, 3), (team_y.id, 2, 1)]
    assert board.teams[1].correct_answers == 1
    assert board.teams[1].answered_questions == 3

    final = coordinator.get_competition(competition.id)
    assert final.ended_at is not None
    assert {t.id: t.position for t in final.teams} == {team_x.id: 1, team_y.id: 2}


def test_equal_scores_rank_earlier_finisher_first(coordinator, lobby, quiz, clock):
    competition, team_x, team_y, x, y = lobby
    coordinator.start(competition.id, TEACHER)

    _answer_all(coordinator, y.participant_id, quiz.questions, ["A", "B", "A"])
    clock.advance(minutes=2)
    _answer_all(coordinator, x.participant_id, quiz.questions[:2], ["A", "A"])

    board = coordinator.leaderboard(competition.id)
    assert [e.team_id for e in board.teams] == [team_y.id, team_x.id]
    assert board.teams[0].completion_time == 0
    assert board.teams[1].completion_time is None


def test_only_the_selected_player_answers(coordinator, lobby, quiz):
    competition, team_x, _, _, _ = lobby
    helper = coordinator.join(competition.code, "Helper")
    coordinator.select_team(competition.id, team_x.id, helper.participant_id)
    coordinator.start(competition.id, TEACHER)

    with pytest.raises(ForbiddenError):
        coordinator.submit_answer(helper.participant_id, quiz.questions[0].id, ["A"])
    # Teammates can still follow along.
    assert coordinator.current_question(helper.participant_id).number == 1


def test_answers_before_start_conflict(coordinator, lobby, quiz):
    _, _, _, x, _ = lobby
    with pytest.raises(ConflictError):
        coordinator.submit_answer(x.participant_id, quiz.questions[0].id, ["A"])


def test_a_question_is_answered_once(coordinator, lobby, quiz):
    competition, _, _, x, _ = lobby
    coordinator.start(competition.id, TEACHER)
    coordinator.submit_answer(x.participant_id, quiz.questions[0].id, ["B"])

    with pytest.raises(ConflictError):
        coordinator.submit_answer(x.participant_id, quiz.questions[0].id, ["A"])
    assert coordinator.team_progress(x.participant_id).total_score == 0


def test_racing_answers_accept_only_the_first(coordinator, lobby, quiz):
    competition, _, _, x, _ = lobby
    coordinator.start(competition.id, TEACHER)
    question = quiz.questions[0]
    barrier = Barrier(4)

    def answer(choice):
        barrier.wait()
        try:
            return coordinator.submit_answer(x.participant_id, question.id, [choice])
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(answer, ["A", "B", "A", "B"]))

    accepted = [o for o in outcomes if not isinstance(o, ConflictError)]
    assert len(accepted) == 1
    progress = coordinator.team_progress(x.participant_id)
    assert progress.answered_questions == 1
    assert progress.total_score == (1 if accepted[0].is_correct else 0)


def test_current_question_and_progress_follow_the_team(coordinator, lobby, quiz):
    competition, _, _, x, _ = lobby
    coordinator.start(competition.id, TEACHER)

    first = coordinator.current_question(x.participant_id)
    assert (first.id, first.number, first.answered_count, first.total_questions) == (quiz.questions[0].id, 1, 0, 3)
    assert first.title_html.startswith("<p>")

    result = coordinator.submit_answer(x.participant_id, first.id, ["A"])
    assert result.is_correct is True
    assert result.next_question_id == quiz.questions[1].id

    progress = coordinator.team_progress(x.participant_id)
    assert (progress.answered_questions, progress.correct_answers, progress.progress) == (1, 1, 33)

    _answer_all(coordinator, x.participant_id, quiz.questions[1:], ["A", "A"])
    assert coordinator.current_question(x.participant_id) is None
    assert coordinator.team_progress(x.participant_id).is_completed is True


def test_open_questions_do_not_block_play(coordinator, make_test):
    test = make_test([open_question("Describe it"), mc("Pick A", ["A", "B"], ["A"])])
    competition = coordinator.create_competition(TEACHER, test.id)
    members = [coordinator.join(competition.code, name) for name in ("Xena", "Yuri")]
    for team, member in zip(competition.teams, members):
        coordinator.select_team(competition.id, team.id, member.participant_id)
        coordinator.select_player(competition.id, team.id, member.participant_id)
    coordinator.start(competition.id, TEACHER)

    x = members[0].participant_id
    result = coordinator.submit_answer(x, test.questions[0].id, user_answer="Free text")
    assert result.is_correct is None
    assert result.team_score == 0
    assert coordinator.submit_answer(x, test.questions[1].id, ["A"]).team_score == 1


# --- Team chat ---


def test_team_chat_is_for_members_only(coordinator, lobby):
    competition, team_x, _, x, y = lobby

    sent = coordinator.send_team_message(competition.id, team_x.id, x.participant_id, "  hello team ")
    assert sent.message == "hello team"
    assert sent.participant_name == "Xena"

    with pytest.raises(ForbiddenError):
        coordinator.send_team_message(competition.id, team_x.id, y.participant_id, "spy")
    with pytest.raises(ForbiddenError):
        coordinator.team_chat(competition.id, team_x.id, y.participant_id)
    with pytest.raises(ValidationError):
        coordinator.send_team_message(competition.id, team_x.id, x.participant_id, "   ")


def test_team_chat_returns_recent_history_oldest_first(coordinator, lobby, clock, monkeypatch):
    monkeypatch.setattr("quiz_arena.core.services.team_chat.TEAM_CHAT_HISTORY_LIMIT", 3)
    competition, team_x, _, x, _ = lobby
    for n in range(5):
        clock.advance(seconds=1)
        coordinator.send_team_message(competition.id, team_x.id, x.participant_id, f"message {n}")

    chat = coordinator.team_chat(competition.id, team_x.id, x.participant_id)

    assert chat.team_name == "Team 1"
    assert [m.message for m in chat.messages] == ["message 2", "message 3", "message 4"]
