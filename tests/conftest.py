"""Shared fixtures: a fresh file-backed database, a controllable clock and factories."""

from __future__ import annotations

from datetime import datetime, timedelta
from threading import Event

import pytest

from quiz_arena.core.competition_coordinator import CompetitionCoordinator
from quiz_arena.core.models import QuestionType
from quiz_arena.core.name_assigner import NameAssigner
from quiz_arena.core.notifications import BestEffortNotifier, Notification
from quiz_arena.core.schemas import QuestionDraft, TestDraft
from quiz_arena.core.services.attempt_service import AttemptService
from quiz_arena.core.services.test_repository import TestRepository
from quiz_arena.realtime.broadcaster import RealtimeBroadcaster
from quiz_arena.storage.database import Database

TEACHER = "teacher-1"
LEARNER = "learner-1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now += timedelta(minutes=minutes, seconds=seconds)


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self.delivered = Event()

    def __call__(self, notification: Notification) -> None:
        self.sent.append(notification)
        self.delivered.set()


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'arena.db'}")
    db.create_schema()
    yield db
    db.drop_schema()
    db.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def notifier(transport) -> BestEffortNotifier:
    return BestEffortNotifier(transport)


@pytest.fixture
def repository(database) -> TestRepository:
    return TestRepository(database)


@pytest.fixture
def attempts(database, notifier, clock) -> AttemptService:
    return AttemptService(database, notifier=notifier, clock=clock)


@pytest.fixture
def broadcaster() -> RealtimeBroadcaster:
    return RealtimeBroadcaster()


@pytest.fixture
def coordinator(database, broadcaster, clock) -> CompetitionCoordinator:
    names = NameAssigner(["Guest Alpha", "Guest Beta"], seed=7)
    return CompetitionCoordinator(database, broadcaster=broadcaster, name_assigner=names, clock=clock)


def mc(title: str, options: list[str], correct: list[str], weight: int = 1) -> QuestionDraft:
    return QuestionDraft(
        title=title,
        type=QuestionType.MULTIPLE_CHOICE,
        options=options,
        correct_answers=correct,
        weight=weight,
    )


def short(title: str, accepted: list[str], weight: int = 1) -> QuestionDraft:
    return QuestionDraft(title=title, type=QuestionType.SHORT_ANSWER, correct_answers=accepted, weight=weight)


def open_question(title: str, weight: int = 1) -> QuestionDraft:
    return QuestionDraft(title=title, type=QuestionType.OPEN_QUESTION, weight=weight)


@pytest.fixture
def make_test(repository):
    """Create a test owned by ``creator``; published unless told otherwise."""

    def factory(questions: list[QuestionDraft], creator: str = TEACHER, **settings):
        settings.setdefault("is_draft", False)
        draft = TestDraft(title=settings.pop("title", "Sample test"), questions=questions, **settings)
        return repository.create_test(creator, draft)

    return factory


@pytest.fixture
def two_choice_test(make_test):
    return make_test(
        [
            mc("Pick A", ["A", "B", "C"], ["A"]),
            mc("Pick B and C", ["A", "B", "C"], ["B", "C"]),
        ]
    )
