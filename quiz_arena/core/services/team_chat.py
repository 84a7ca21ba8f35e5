"""Service for the private chat of each competition team."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from quiz_arena.constants.quiz_constants import TEAM_CHAT_HISTORY_LIMIT
from quiz_arena.core.errors import ForbiddenError, ValidationError
from quiz_arena.core.models import CompetitionParticipant, TeamChatMessage
from quiz_arena.core.schemas import ChatMessageView, TeamChatView
from quiz_arena.storage.database import Database
from quiz_arena.utils.clock import utcnow

MAX_MESSAGE_LENGTH = 1000


class TeamChat:
    """Posts and lists messages visible only to one team's members."""

    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self._db = database
        self._clock = clock

    def send_message(self, competition_id: str, team_id: str, participant_id: str, message: str) -> ChatMessageView:
        text = (message or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty.")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters.")

        with self._db.transaction() as session:
            participant = self._member(session, competition_id, team_id, participant_id)
            row = TeamChatMessage(
                team_id=team_id,
                participant_id=participant.id,
                message=text,
                created_at=self._clock(),
            )
            session.add(row)
            session.flush()
            return _project_message(row, participant)

    def history(self, competition_id: str, team_id: str, participant_id: str) -> TeamChatView:
        """The most recent messages of the team, oldest first."""
        with self._db.transaction() as session:
            participant = self._member(session, competition_id, team_id, participant_id)
            recent = session.scalars(
                select(TeamChatMessage)
                .where(TeamChatMessage.team_id == team_id)
                .order_by(TeamChatMessage.created_at.desc(), TeamChatMessage.id.desc())
                .limit(TEAM_CHAT_HISTORY_LIMIT)
            ).all()
            team = participant.team
            return TeamChatView(
                team_id=team.id,
                team_name=team.name,
                team_color=team.color,
                messages=[_project_message(row, row.participant) for row in reversed(recent)],
            )

    @staticmethod
    def _member(session: Session, competition_id: str, team_id: str, participant_id: str) -> CompetitionParticipant:
        participant = session.get(CompetitionParticipant, participant_id)
        if (
            participant is None
            or participant.competition_id != competition_id
            or participant.team_id != team_id
        ):
            raise ForbiddenError("Participant not in this team")
        return participant


def _project_message(row: TeamChatMessage, participant: CompetitionParticipant) -> ChatMessageView:
    return ChatMessageView(
        id=row.id,
        team_id=row.team_id,
        participant_id=row.participant_id,
        participant_name=participant.display_name,
        message=row.message,
        timestamp=row.created_at,
    )
