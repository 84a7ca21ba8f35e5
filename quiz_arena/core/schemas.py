"""Pydantic shapes exchanged with callers: drafts coming in, views going out."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from quiz_arena.constants.quiz_constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_QUESTION_WEIGHT,
    DEFAULT_TIME_LIMIT_MINUTES,
)
from quiz_arena.core.models import (
    AttemptMode,
    AttemptStatus,
    CompetitionStatus,
    QuestionType,
)


# --- Incoming ---


class QuestionDraft(BaseModel):
    title: str
    type: QuestionType
    options: list[str] = Field(default_factory=list)
    correct_answers: list[str] = Field(default_factory=list)
    weight: int = DEFAULT_QUESTION_WEIGHT
    explanation: str | None = None
    image: str | None = None


class QuestionUpdate(BaseModel):
    title: str | None = None
    type: QuestionType | None = None
    options: list[str] | None = None
    correct_answers: list[str] | None = None
    weight: int | None = None
    explanation: str | None = None
    image: str | None = None


class TestDraft(BaseModel):
    __test__ = False

    title: str
    questions: list[QuestionDraft]
    is_draft: bool = True
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    time_limit: int = DEFAULT_TIME_LIMIT_MINUTES
    show_answers: bool = False
    exam_mode: bool = False


class TestSettingsUpdate(BaseModel):
    __test__ = False

    title: str | None = None
    is_draft: bool | None = None
    max_attempts: int | None = None
    time_limit: int | None = None
    show_answers: bool | None = None
    exam_mode: bool | None = None


class AnswerInput(BaseModel):
    question_id: str
    selected_answers: list[str] = Field(default_factory=list)
    user_answer: str | None = None


# --- Test catalogue ---


class QuestionView(BaseModel):
    id: str
    position: int
    title: str
    type: QuestionType
    options: list[str]
    correct_answers: list[str] | None = None
    weight: int
    explanation: str | None = None
    image: str | None = None


class TestView(BaseModel):
    __test__ = False

    id: str
    title: str
    creator_id: str
    is_draft: bool
    time_limit: int
    max_attempts: int
    show_answers: bool
    exam_mode: bool
    created_at: datetime
    questions: list[QuestionView]


# --- Attempts ---


class AttemptStartView(BaseModel):
    attempt_id: str
    test_id: str
    test_title: str
    mode: AttemptMode
    status: AttemptStatus
    start_time: datetime
    time_limit: int | None
    questions: list[QuestionView]


class ProgressView(BaseModel):
    attempt_id: str
    question_id: str
    answered_count: int
    total_questions: int
    has_next: bool
    next_question_id: str | None = None


class DetailedAnswerView(BaseModel):
    question_id: str
    question_title: str
    question_type: QuestionType
    options: list[str]
    correct_answers: list[str]
    user_selected_answers: list[str]
    user_answer: str | None = None
    is_correct: bool | None = None
    explanation: str | None = None


class SubmissionView(BaseModel):
    message: str
    attempt_id: str
    mode: AttemptMode
    status: AttemptStatus
    score: int
    time_elapsed: int  # whole minutes
    time_limit: int | None
    show_answers: bool
    total_questions: int | None = None
    correct_answers: int | None = None
    incorrect_answers: int | None = None
    pending_answers: int | None = None
    detailed_results: list[DetailedAnswerView] | None = None


class PracticeResultsView(BaseModel):
    attempt_id: str
    test_title: str
    mode: Literal["PRACTICE"] = "PRACTICE"
    status: AttemptStatus
    score: int
    show_answers: Literal[True] = True
    total_questions: int
    correct_answers: int
    incorrect_answers: int
    pending_answers: int
    results: list[DetailedAnswerView]


class ExamResultsView(BaseModel):
    attempt_id: str
    test_title: str
    mode: Literal["EXAM"] = "EXAM"
    status: AttemptStatus
    score: int
    show_answers: bool
    results: list[DetailedAnswerView] | None = None


class CreatorResultsView(BaseModel):
    attempt_id: str
    test_title: str
    user_id: str
    mode: AttemptMode
    status: AttemptStatus
    score: int
    total_questions: int
    correct_answers: int
    incorrect_answers: int
    pending_answers: int
    results: list[DetailedAnswerView]


class ResultView(BaseModel):
    attempt_id: str
    score: int
    status: AttemptStatus
    updated_at: datetime


class PendingAnswerView(BaseModel):
    answer_id: str
    attempt_id: str
    user_id: str
    question_id: str
    question_title: str
    user_answer: str | None = None


# --- Export snapshots ---


class AnswerSnapshot(BaseModel):
    answer_id: str
    question_id: str
    selected_answers: list[str]
    user_answer: str | None = None
    is_correct: bool | None = None
    status: str


class AttemptSnapshot(BaseModel):
    attempt_id: str
    user_id: str
    mode: AttemptMode
    status: AttemptStatus
    start_time: datetime
    end_time: datetime | None = None
    score: int
    test: TestView
    answers: list[AnswerSnapshot]


# --- Competitions ---


class ParticipantView(BaseModel):
    id: str
    display_name: str
    is_guest: bool
    team_id: str | None = None
    team_name: str | None = None
    team_color: str | None = None
    is_selected: bool = False
    joined_at: datetime


class TeamView(BaseModel):
    id: str
    name: str
    color: str
    participant_count: int
    participants: list[ParticipantView]
    selected_player: ParticipantView | None = None
    is_ready: bool
    score: int
    position: int | None = None
    attempt_id: str | None = None


class CompetitionView(BaseModel):
    id: str
    code: str
    title: str
    status: CompetitionStatus
    max_teams: int
    test_id: str
    test_title: str
    creator_id: str
    teams: list[TeamView]
    participants: list[ParticipantView]
    can_start: bool
    is_creator: bool
    user_participation: ParticipantView | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class JoinView(BaseModel):
    participant_id: str
    display_name: str
    competition: CompetitionView


class CompetitionPreview(BaseModel):
    id: str
    code: str
    title: str
    status: CompetitionStatus
    test_title: str
    can_join: bool


class LeaderboardEntry(BaseModel):
    position: int
    team_id: str
    team_name: str
    team_color: str
    score: int
    participants: list[ParticipantView]
    completion_time: int | None = None  # whole minutes from attempt start
    correct_answers: int
    answered_questions: int
    total_questions: int


class LeaderboardView(BaseModel):
    competition_id: str
    title: str
    test_title: str
    status: CompetitionStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    teams: list[LeaderboardEntry]
    total_participants: int


class CurrentQuestionView(BaseModel):
    id: str
    number: int
    title: str
    title_html: str
    type: QuestionType
    options: list[str]
    has_image: bool
    image: str | None = None
    weight: int
    total_questions: int
    answered_count: int


class AnswerResultView(BaseModel):
    team_id: str
    question_id: str
    is_correct: bool | None
    team_score: int
    next_question_id: str | None = None
    is_test_completed: bool
    is_competition_completed: bool


class TeamProgressView(BaseModel):
    team_id: str
    team_name: str
    total_questions: int
    answered_questions: int
    correct_answers: int
    total_score: int
    is_completed: bool
    progress: int


class ChatMessageView(BaseModel):
    id: str
    team_id: str
    participant_id: str
    participant_name: str
    message: str
    timestamp: datetime


class TeamChatView(BaseModel):
    team_id: str
    team_name: str
    team_color: str
    messages: list[ChatMessageView]
