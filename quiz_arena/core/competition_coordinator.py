"""Facade over the competition services that also drives realtime events."""

from __future__ import annotations

from datetime import datetime
import logging
from threading import Lock
from typing import Callable

from quiz_arena.constants.quiz_constants import MIN_TEAMS
from quiz_arena.core.name_assigner import NameAssigner
from quiz_arena.core.schemas import (
    AnswerResultView,
    ChatMessageView,
    CompetitionPreview,
    CompetitionView,
    CurrentQuestionView,
    JoinView,
    LeaderboardView,
    TeamChatView,
    TeamProgressView,
)
from quiz_arena.core.services.game_session import GameSession
from quiz_arena.core.services.lobby_manager import LobbyManager
from quiz_arena.core.services.team_chat import TeamChat
from quiz_arena.realtime.broadcaster import (
    ANSWER_RESULT,
    COMPETITION_COMPLETED,
    COMPETITION_STARTED,
    COMPETITION_UPDATED,
    CURRENT_QUESTION,
    LEADERBOARD_UPDATED,
    PARTICIPANT_JOINED,
    TEAM_MESSAGE,
    RealtimeBroadcaster,
    competition_room,
    team_room,
)
from quiz_arena.storage.database import Database
from quiz_arena.utils.clock import utcnow

logger = logging.getLogger(__name__)


class CompetitionCoordinator:
    """Facade for competition services: Lobby, GameSession and TeamChat.

    Every mutating call commits through its service first and publishes the
    resulting snapshots afterwards, so subscribers only ever see committed
    state. Mutation and publication share one lock, which keeps each room's
    event order equal to commit order.
    """

    def __init__(
        self,
        database: Database,
        broadcaster: RealtimeBroadcaster | None = None,
        name_assigner: NameAssigner | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lock = Lock()
        self._broadcaster = broadcaster or RealtimeBroadcaster()

        # Services
        self._lobby = LobbyManager(database, name_assigner=name_assigner, clock=clock)
        self._session = GameSession(database, clock=clock)
        self._chat = TeamChat(database, clock=clock)

    @property
    def broadcaster(self) -> RealtimeBroadcaster:
        return self._broadcaster

    # --- Lobby ---

    def create_competition(
        self,
        creator_id: str,
        test_id: str,
        max_teams: int = MIN_TEAMS,
        title: str | None = None,
    ) -> CompetitionView:
        return self._lobby.create_competition(creator_id, test_id, max_teams=max_teams, title=title)

    def join(self, code: str, display_name: str | None = None, user_id: str | None = None) -> JoinView:
        with self._lock:
            joined = self._lobby.join(code, display_name=display_name, user_id=user_id)
            competition = joined.competition
            room = competition_room(competition.id)
            participant = next(p for p in competition.participants if p.id == joined.participant_id)
            self._broadcaster.publish(room, PARTICIPANT_JOINED, participant)
            self._broadcaster.publish(room, COMPETITION_UPDATED, self._public(competition))
            return joined

    def select_team(self, competition_id: str, team_id: str, participant_id: str) -> CompetitionView:
        with self._lock:
            view = self._lobby.select_team(competition_id, team_id, participant_id)
            self._broadcaster.publish(competition_room(competition_id), COMPETITION_UPDATED, self._public(view))
            return view

    def select_player(self, competition_id: str, team_id: str, participant_id: str) -> CompetitionView:
        with self._lock:
            view = self._lobby.select_player(competition_id, team_id, participant_id)
            self._broadcaster.publish(competition_room(competition_id), COMPETITION_UPDATED, self._public(view))
            return view

    def cancel(self, competition_id: str, creator_id: str) -> CompetitionView:
        with self._lock:
            view = self._lobby.cancel(competition_id, creator_id)
            self._broadcaster.publish(competition_room(competition_id), COMPETITION_UPDATED, self._public(view))
            return view

    def start(self, competition_id: str, creator_id: str) -> CompetitionView:
        with self._lock:
            outcome = self._lobby.start(competition_id, creator_id)
            room = competition_room(competition_id)
            public = self._public(outcome.competition)
            # Readiness snapshot first; clients gate their start screen on it.
            self._broadcaster.publish(room, COMPETITION_UPDATED, public)
            self._broadcaster.publish(room, COMPETITION_STARTED, public)
            for team_id in outcome.team_ids:
                question = self._session.current_question_for_team(team_id)
                self._broadcaster.publish(team_room(team_id), CURRENT_QUESTION, question)
            return outcome.competition

    def find_by_code(self, code: str) -> CompetitionPreview:
        return self._lobby.find_by_code(code)

    def get_competition(self, competition_id: str, viewer_id: str | None = None) -> CompetitionView:
        return self._lobby.get_competition(competition_id, viewer_id)

    def participant_context(self, competition_id: str, participant_id: str) -> tuple[CompetitionView, str | None]:
        return self._lobby.participant_context(competition_id, participant_id)

    # --- Live play ---

    def current_question(self, participant_id: str) -> CurrentQuestionView | None:
        return self._session.current_question(participant_id)

    def submit_answer(
        self,
        participant_id: str,
        question_id: str,
        selected_answers: list[str] | None = None,
        user_answer: str | None = None,
    ) -> AnswerResultView:
        with self._lock:
            result = self._session.submit_answer(participant_id, question_id, selected_answers, user_answer)
            leaderboard = self._session.leaderboard_for_team(result.team_id)
            room = competition_room(leaderboard.competition_id)

            self._broadcaster.publish(team_room(result.team_id), ANSWER_RESULT, result)
            self._broadcaster.publish(room, LEADERBOARD_UPDATED, leaderboard)
            if not result.is_test_completed:
                question = self._session.current_question_for_team(result.team_id)
                self._broadcaster.publish(team_room(result.team_id), CURRENT_QUESTION, question)
            if result.is_competition_completed:
                self._broadcaster.publish(room, COMPETITION_COMPLETED, leaderboard)
            return result

    def team_progress(self, participant_id: str) -> TeamProgressView:
        return self._session.team_progress(participant_id)

    def leaderboard(self, competition_id: str) -> LeaderboardView:
        return self._session.leaderboard(competition_id)

    # --- Team chat ---

    def send_team_message(
        self, competition_id: str, team_id: str, participant_id: str, message: str
    ) -> ChatMessageView:
        with self._lock:
            sent = self._chat.send_message(competition_id, team_id, participant_id, message)
            self._broadcaster.publish(team_room(team_id), TEAM_MESSAGE, sent)
            return sent

    def team_chat(self, competition_id: str, team_id: str, participant_id: str) -> TeamChatView:
        return self._chat.history(competition_id, team_id, participant_id)

    @staticmethod
    def _public(view: CompetitionView) -> CompetitionView:
        """Room-wide copy without the acting viewer's personal fields."""
        return view.model_copy(update={"is_creator": False, "user_participation": None})
