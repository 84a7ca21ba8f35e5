"""Domain models for the quiz application.

Tables mirror the ownership rules of the platform: a test owns its questions,
an attempt owns its answers and its result, and a competition owns its teams,
participants and team chat. A team only references its attempt.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class QuestionType(str, enum.Enum):
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    SHORT_ANSWER = "SHORT_ANSWER"
    TRUE_FALSE = "TRUE_FALSE"
    OPEN_QUESTION = "OPEN_QUESTION"


class AttemptMode(str, enum.Enum):
    PRACTICE = "PRACTICE"
    EXAM = "EXAM"


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    TIMEOUT = "TIMEOUT"


TERMINAL_ATTEMPT_STATUSES = (AttemptStatus.COMPLETED, AttemptStatus.TIMEOUT)


class AnswerStatus(str, enum.Enum):
    PENDING = "PENDING"
    CHECKED = "CHECKED"


class CompetitionStatus(str, enum.Enum):
    WAITING = "WAITING"
    STARTING = "STARTING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Test(Base):
    """A question set owned by exactly one creator."""

    __tablename__ = "tests"
    __test__ = False  # keep pytest from collecting the model

    id = Column(String(32), primary_key=True, default=_new_id)
    title = Column(String(200), nullable=False)
    creator_id = Column(String(64), nullable=False, index=True)
    is_draft = Column(Boolean, nullable=False, default=True)
    time_limit = Column(Integer, nullable=False, default=10)  # minutes
    max_attempts = Column(Integer, nullable=False, default=1)
    show_answers = Column(Boolean, nullable=False, default=False)
    exam_mode = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=_now)

    questions = relationship(
        "Question",
        back_populates="test",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Question.position",
    )
    attempts = relationship(
        "Attempt",
        back_populates="test",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    competitions = relationship(
        "Competition",
        back_populates="test",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Test {self.title!r}>"


class Question(Base):
    __tablename__ = "questions"

    id = Column(String(32), primary_key=True, default=_new_id)
    test_id = Column(String(32), ForeignKey("tests.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    title = Column(Text, nullable=False)
    type = Column(Enum(QuestionType), nullable=False)
    options = Column(JSON, nullable=False, default=list)
    correct_answers = Column(JSON, nullable=False, default=list)
    weight = Column(Integer, nullable=False, default=1)
    explanation = Column(Text)
    image = Column(String(500))

    test = relationship("Test", back_populates="questions")

    def __repr__(self) -> str:
        return f"<Question {self.type.value}: {self.title[:50]}>"


class Attempt(Base):
    """One test-taking session by one user (or one competition team)."""

    __tablename__ = "attempts"

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    test_id = Column(String(32), ForeignKey("tests.id", ondelete="CASCADE"), nullable=False, index=True)
    mode = Column(Enum(AttemptMode), nullable=False, default=AttemptMode.PRACTICE)
    status = Column(Enum(AttemptStatus), nullable=False, default=AttemptStatus.IN_PROGRESS)
    start_time = Column(DateTime, nullable=False, default=_now)
    end_time = Column(DateTime)
    progress = Column(JSON)  # in-flight answers kept for resume

    test = relationship("Test", back_populates="attempts")
    answers = relationship(
        "AttemptAnswer",
        back_populates="attempt",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    result = relationship(
        "Result",
        back_populates="attempt",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT_STATUSES


class AttemptAnswer(Base):
    __tablename__ = "attempt_answers"
    __table_args__ = (UniqueConstraint("attempt_id", "question_id", name="uq_attempt_answer_question"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    attempt_id = Column(String(32), ForeignKey("attempts.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(String(32), ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)
    selected_answers = Column(JSON, nullable=False, default=list)
    user_answer = Column(Text)
    is_correct = Column(Boolean)  # None: ungraded, waits for a manual check
    status = Column(Enum(AnswerStatus), nullable=False, default=AnswerStatus.PENDING)
    answered_at = Column(DateTime, nullable=False, default=_now)

    attempt = relationship("Attempt", back_populates="answers")
    question = relationship("Question")


class Result(Base):
    """Materialized score of one attempt; recomputed, never duplicated."""

    __tablename__ = "results"

    id = Column(String(32), primary_key=True, default=_new_id)
    attempt_id = Column(String(32), ForeignKey("attempts.id", ondelete="CASCADE"), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False)
    test_id = Column(String(32), nullable=False)
    score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_now)
    updated_at = Column(DateTime, nullable=False, default=_now, onupdate=_now)

    attempt = relationship("Attempt", back_populates="result")


class Competition(Base):
    __tablename__ = "competitions"

    id = Column(String(32), primary_key=True, default=_new_id)
    code = Column(String(12), nullable=False, unique=True)
    title = Column(String(200), nullable=False)
    test_id = Column(String(32), ForeignKey("tests.id", ondelete="CASCADE"), nullable=False)
    creator_id = Column(String(64), nullable=False)
    status = Column(Enum(CompetitionStatus), nullable=False, default=CompetitionStatus.WAITING)
    max_teams = Column(Integer, nullable=False, default=2)
    created_at = Column(DateTime, nullable=False, default=_now)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)

    test = relationship("Test", back_populates="competitions")
    teams = relationship(
        "Team",
        back_populates="competition",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Team.number",
    )
    participants = relationship(
        "CompetitionParticipant",
        back_populates="competition",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CompetitionParticipant.joined_at",
    )


class Team(Base):
    __tablename__ = "teams"

    id = Column(String(32), primary_key=True, default=_new_id)
    competition_id = Column(
        String(32), ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    number = Column(Integer, nullable=False, default=1)
    name = Column(String(100), nullable=False)
    color = Column(String(16), nullable=False)
    score = Column(Integer, nullable=False, default=0)
    position = Column(Integer)
    selected_player_id = Column(
        String(32),
        ForeignKey("competition_participants.id", ondelete="SET NULL", use_alter=True),
    )
    attempt_id = Column(String(32), ForeignKey("attempts.id", ondelete="SET NULL"))

    competition = relationship("Competition", back_populates="teams")
    participants = relationship(
        "CompetitionParticipant",
        back_populates="team",
        foreign_keys="CompetitionParticipant.team_id",
        order_by="CompetitionParticipant.joined_at",
    )
    selected_player = relationship(
        "CompetitionParticipant",
        foreign_keys=[selected_player_id],
        post_update=True,
    )
    attempt = relationship("Attempt", foreign_keys=[attempt_id])
    messages = relationship(
        "TeamChatMessage",
        back_populates="team",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_ready(self) -> bool:
        return bool(self.participants) and self.selected_player_id is not None


class CompetitionParticipant(Base):
    __tablename__ = "competition_participants"
    __table_args__ = (UniqueConstraint("competition_id", "user_id", name="uq_participant_user"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    competition_id = Column(
        String(32), ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    team_id = Column(String(32), ForeignKey("teams.id", ondelete="SET NULL"))
    user_id = Column(String(64))  # None for guests
    display_name = Column(String(100), nullable=False)
    is_guest = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime, nullable=False, default=_now)

    competition = relationship("Competition", back_populates="participants")
    team = relationship("Team", back_populates="participants", foreign_keys=[team_id])


class TeamChatMessage(Base):
    __tablename__ = "team_chat_messages"

    id = Column(String(32), primary_key=True, default=_new_id)
    team_id = Column(String(32), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_id = Column(
        String(32), ForeignKey("competition_participants.id", ondelete="CASCADE"), nullable=False
    )
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_now)

    team = relationship("Team", back_populates="messages")
    participant = relationship("CompetitionParticipant")
