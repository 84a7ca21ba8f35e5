"""Service for managing competition rooms before play begins."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import secrets
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from quiz_arena.constants.quiz_constants import (
    JOIN_CODE_ALPHABET,
    JOIN_CODE_LENGTH,
    MAX_TEAMS,
    MIN_TEAMS,
    TEAM_COLORS,
    TEAM_NAME_TEMPLATE,
)
from quiz_arena.core.competition_projector import (
    project_competition,
    project_preview,
    ready_teams,
)
from quiz_arena.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from quiz_arena.core.models import (
    Attempt,
    AttemptMode,
    AttemptStatus,
    Competition,
    CompetitionParticipant,
    CompetitionStatus,
    Team,
    Test,
)
from quiz_arena.core.name_assigner import NameAssigner
from quiz_arena.core.schemas import CompetitionPreview, CompetitionView, JoinView
from quiz_arena.storage.database import Database, retry_on_concurrent_update
from quiz_arena.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StartOutcome:
    """Snapshot taken in the transaction that started the competition."""

    competition: CompetitionView
    team_ids: list[str] = field(default_factory=list)


class LobbyManager:
    """Creates competitions and manages the waiting room."""

    def __init__(
        self,
        database: Database,
        name_assigner: NameAssigner | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._names = name_assigner or NameAssigner.from_default_file()
        self._clock = clock

    def create_competition(
        self,
        creator_id: str,
        test_id: str,
        max_teams: int = MIN_TEAMS,
        title: str | None = None,
    ) -> CompetitionView:
        if not creator_id:
            raise ForbiddenError("Unauthorized user")
        if isinstance(max_teams, bool) or not isinstance(max_teams, int):
            raise ValidationError("Team count must be an integer.")
        if not MIN_TEAMS <= max_teams <= MAX_TEAMS:
            raise ValidationError(f"Team count must be between {MIN_TEAMS} and {MAX_TEAMS}.")

        # A code taken between the check and the insert trips the unique
        # constraint; the retry draws a fresh code.
        return retry_on_concurrent_update(
            lambda: self._create_once(creator_id, test_id, max_teams, title)
        )

    def _create_once(self, creator_id: str, test_id: str, max_teams: int, title: str | None) -> CompetitionView:
        with self._db.transaction() as session:
            test = session.get(Test, test_id)
            if test is None:
                raise NotFoundError("Test not found")
            if test.creator_id != creator_id:
                raise ForbiddenError("You can only create competitions for your own tests")
            if test.is_draft:
                raise ConflictError("Cannot create a competition for a draft test; publish it first")

            competition = Competition(
                code=self._unique_code(session),
                title=(title or "").strip() or f"{test.title} Competition",
                test_id=test.id,
                creator_id=creator_id,
                status=CompetitionStatus.WAITING,
                max_teams=max_teams,
                created_at=self._clock(),
            )
            for index in range(max_teams):
                competition.teams.append(
                    Team(
                        number=index + 1,
                        name=TEAM_NAME_TEMPLATE.format(number=index + 1),
                        color=TEAM_COLORS[index % len(TEAM_COLORS)],
                    )
                )
            session.add(competition)
            session.flush()
            logger.info("Competition %s (%s) created by %s", competition.id, competition.code, creator_id)
            return project_competition(competition, creator_id)

    def join(self, code: str, display_name: str | None = None, user_id: str | None = None) -> JoinView:
        """Add a guest or an authenticated user to a waiting competition."""
        with self._db.transaction() as session:
            competition = self._by_code(session, code)
            if competition.status != CompetitionStatus.WAITING:
                raise ConflictError("Competition is not accepting new participants")
            if user_id and any(p.user_id == user_id for p in competition.participants):
                raise ConflictError("User already joined this competition")

            name = (display_name or "").strip() or self._names.alias_for(
                {p.display_name for p in competition.participants}
            )
            participant = CompetitionParticipant(
                competition_id=competition.id,
                user_id=user_id or None,
                display_name=name,
                is_guest=not user_id,
                joined_at=self._clock(),
            )
            competition.participants.append(participant)
            session.flush()
            logger.info("%s joined competition %s", name, competition.code)
            return JoinView(
                participant_id=participant.id,
                display_name=participant.display_name,
                competition=project_competition(competition, user_id or participant.id),
            )

    def select_team(self, competition_id: str, team_id: str, participant_id: str) -> CompetitionView:
        with self._db.transaction() as session:
            participant = session.get(CompetitionParticipant, participant_id)
            if participant is None or participant.competition_id != competition_id:
                raise NotFoundError("Participant not found")
            team = session.get(Team, team_id)
            if team is None or team.competition_id != competition_id:
                raise NotFoundError("Team not found")
            self._claim_waiting(session, competition_id, "Cannot change team after competition started")

            previous = participant.team
            if previous is not None and previous.id != team.id and previous.selected_player_id == participant.id:
                previous.selected_player_id = None
            participant.team_id = team.id
            session.flush()
            session.expire_all()
            competition = session.get(Competition, competition_id)
            return project_competition(competition, participant.user_id or participant.id)

    def select_player(self, competition_id: str, team_id: str, participant_id: str) -> CompetitionView:
        """Make a team member the only one allowed to answer for the team."""
        with self._db.transaction() as session:
            team = session.get(Team, team_id)
            if team is None or team.competition_id != competition_id:
                raise NotFoundError("Team not found")
            self._claim_waiting(session, competition_id, "Cannot change selected player after competition started")
            participant = session.get(CompetitionParticipant, participant_id)
            if participant is None or participant.team_id != team.id:
                raise ValidationError("Participant is not in this team")

            team.selected_player_id = participant.id
            session.flush()
            session.expire_all()
            competition = session.get(Competition, competition_id)
            return project_competition(competition, participant.user_id or participant.id)

    def cancel(self, competition_id: str, creator_id: str) -> CompetitionView:
        with self._db.transaction() as session:
            competition = self._owned(session, competition_id, creator_id, "Only the creator can cancel the competition")
            claimed = session.execute(
                update(Competition)
                .where(Competition.id == competition.id, Competition.status == CompetitionStatus.WAITING)
                .values(status=CompetitionStatus.CANCELLED, ended_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ConflictError("Only a waiting competition can be cancelled")
            session.refresh(competition)
            logger.info("Competition %s cancelled", competition.code)
            return project_competition(competition, creator_id)

    def start(self, competition_id: str, creator_id: str) -> StartOutcome:
        """Flip the competition to play and bind one attempt to every ready team.

        Readiness is re-checked after the competition row is claimed, so a
        concurrent lobby change either lands before the check or fails.
        """
        with self._db.transaction() as session:
            competition = session.scalars(
                select(Competition).where(Competition.id == competition_id).with_for_update()
            ).first()
            if competition is None:
                raise NotFoundError("Competition not found")
            if competition.creator_id != creator_id:
                raise ForbiddenError("Only the creator can start the competition")

            claimed = session.execute(
                update(Competition)
                .where(Competition.id == competition.id, Competition.status == CompetitionStatus.WAITING)
                .values(status=CompetitionStatus.STARTING)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ConflictError("Competition already started or finished")
            session.expire_all()
            competition = session.get(Competition, competition_id)

            teams = ready_teams(competition)
            if len(teams) < MIN_TEAMS:
                raise ConflictError(f"At least {MIN_TEAMS} teams with selected players are required to start")

            now = self._clock()
            for team in teams:
                player = team.selected_player
                attempt = Attempt(
                    user_id=player.user_id or player.id,
                    test_id=competition.test_id,
                    mode=AttemptMode.PRACTICE,
                    status=AttemptStatus.IN_PROGRESS,
                    start_time=now,
                )
                session.add(attempt)
                session.flush()
                team.attempt_id = attempt.id

            competition.status = CompetitionStatus.IN_PROGRESS
            competition.started_at = now
            session.flush()
            logger.info("Competition %s started with %d team(s)", competition.code, len(teams))
            return StartOutcome(
                competition=project_competition(competition, creator_id),
                team_ids=[team.id for team in teams],
            )

    def find_by_code(self, code: str) -> CompetitionPreview:
        with self._db.transaction() as session:
            return project_preview(self._by_code(session, code))

    def get_competition(self, competition_id: str, viewer_id: str | None = None) -> CompetitionView:
        with self._db.transaction() as session:
            competition = session.get(Competition, competition_id)
            if competition is None:
                raise NotFoundError("Competition not found")
            return project_competition(competition, viewer_id)

    def participant_context(self, competition_id: str, participant_id: str) -> tuple[CompetitionView, str | None]:
        """Snapshot for a connecting participant plus the team room they belong to."""
        with self._db.transaction() as session:
            participant = session.get(CompetitionParticipant, participant_id)
            if participant is None or participant.competition_id != competition_id:
                raise NotFoundError("Participant not found")
            view = project_competition(participant.competition, participant.user_id or participant.id)
            return view, participant.team_id

    def _unique_code(self, session: Session) -> str:
        while True:
            code = "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))
            taken = session.scalar(select(Competition.id).where(Competition.code == code))
            if taken is None:
                return code

    @staticmethod
    def _by_code(session: Session, code: str) -> Competition:
        normalized = (code or "").strip().upper()
        competition = session.scalars(select(Competition).where(Competition.code == normalized)).first()
        if competition is None:
            raise NotFoundError("Competition room not found")
        return competition

    @staticmethod
    def _owned(session: Session, competition_id: str, creator_id: str, message: str) -> Competition:
        competition = session.get(Competition, competition_id)
        if competition is None:
            raise NotFoundError("Competition not found")
        if competition.creator_id != creator_id:
            raise ForbiddenError(message)
        return competition

    @staticmethod
    def _claim_waiting(session: Session, competition_id: str, message: str) -> None:
        """Write-lock the competition row and require it to still be waiting.

        Lobby edits and ``start`` serialize on this row.
        """
        claimed = session.execute(
            update(Competition)
            .where(Competition.id == competition_id, Competition.status == CompetitionStatus.WAITING)
            .values(status=CompetitionStatus.WAITING)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise ConflictError(message)
