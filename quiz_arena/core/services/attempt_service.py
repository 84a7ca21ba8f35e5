"""Service owning the lifecycle of test attempts.

States: ``IN_PROGRESS -> COMPLETED`` or ``IN_PROGRESS -> TIMEOUT``; both are
terminal. Every transition out of ``IN_PROGRESS`` goes through a conditional
update on the attempt row, so only one concurrent caller can win it, and the
result row is written in the same transaction.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from quiz_arena.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from quiz_arena.core.evaluator import evaluate
from quiz_arena.core.models import (
    TERMINAL_ATTEMPT_STATUSES,
    AnswerStatus,
    Attempt,
    AttemptAnswer,
    AttemptMode,
    AttemptStatus,
    Question,
    QuestionType,
    Result,
    Team,
    Test,
)
from quiz_arena.core.notifications import BestEffortNotifier
from quiz_arena.core.result_projector import (
    project_attempt_snapshot,
    project_creator_results,
    project_exam_results,
    project_practice_results,
    project_question,
    project_submission,
)
from quiz_arena.core.schemas import (
    AnswerInput,
    AttemptSnapshot,
    AttemptStartView,
    CreatorResultsView,
    ExamResultsView,
    PendingAnswerView,
    PracticeResultsView,
    ProgressView,
    ResultView,
    SubmissionView,
)
from quiz_arena.core.scoring import aggregate, apply_timeout_penalty
from quiz_arena.storage.database import Database, retry_on_concurrent_update
from quiz_arena.utils.clock import utcnow

logger = logging.getLogger(__name__)


class AttemptService:
    """Start, save, submit and review test attempts."""

    def __init__(
        self,
        database: Database,
        notifier: BestEffortNotifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._notifier = notifier or BestEffortNotifier()
        self._clock = clock

    # --- Lifecycle ---

    def start_attempt(self, user_id: str, test_id: str, mode: AttemptMode = AttemptMode.PRACTICE) -> AttemptStartView:
        if not user_id:
            raise ForbiddenError("Unauthorized user")

        with self._db.transaction() as session:
            test = session.get(Test, test_id)
            if test is None:
                raise NotFoundError("Test not found")

            if mode == AttemptMode.EXAM:
                if not test.exam_mode:
                    raise ForbiddenError("This test is not configured for exam mode")
                if test.is_draft:
                    raise ConflictError("Cannot start an exam on a draft test")
                finished = session.scalar(
                    select(func.count(Attempt.id)).where(
                        Attempt.user_id == user_id,
                        Attempt.test_id == test_id,
                        Attempt.mode == AttemptMode.EXAM,
                        Attempt.status.in_(TERMINAL_ATTEMPT_STATUSES),
                    )
                )
                if test.max_attempts and finished >= test.max_attempts:
                    raise ConflictError("Maximum attempts reached for this test")

            attempt = Attempt(
                user_id=user_id,
                test_id=test.id,
                mode=mode,
                status=AttemptStatus.IN_PROGRESS,
                start_time=self._clock(),
            )
            session.add(attempt)
            session.flush()
            logger.info("Attempt %s started by %s on test %s (%s)", attempt.id, user_id, test.id, mode.value)

            return AttemptStartView(
                attempt_id=attempt.id,
                test_id=test.id,
                test_title=test.title,
                mode=attempt.mode,
                status=attempt.status,
                start_time=attempt.start_time,
                time_limit=test.time_limit if mode == AttemptMode.EXAM else None,
                questions=[project_question(q, include_answers=False) for q in test.questions],
            )

    def save_progress(self, user_id: str, attempt_id: str, answer: AnswerInput) -> ProgressView:
        """Store one in-flight answer without grading it.

        Exactly one answer row exists per (attempt, question); a save racing
        another save for the same pair retries and overwrites it.
        """
        return retry_on_concurrent_update(lambda: self._save_progress_once(user_id, attempt_id, answer))

    def _save_progress_once(self, user_id: str, attempt_id: str, answer: AnswerInput) -> ProgressView:
        with self._db.transaction() as session:
            attempt = self._owned_attempt(session, attempt_id, user_id)
            self._require_in_progress(attempt)
            self._require_solo(session, attempt)
            question = session.get(Question, answer.question_id)
            if question is None or question.test_id != attempt.test_id:
                raise NotFoundError("Question not found in this test")

            progress = dict(attempt.progress or {})
            progress[question.id] = {
                "selected_answers": list(answer.selected_answers),
                "user_answer": answer.user_answer,
            }
            claimed = session.execute(
                update(Attempt)
                .where(Attempt.id == attempt.id, Attempt.status == AttemptStatus.IN_PROGRESS)
                .values(progress=progress)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ConflictError("This test attempt is already completed")

            row = session.scalars(
                select(AttemptAnswer).where(
                    AttemptAnswer.attempt_id == attempt.id,
                    AttemptAnswer.question_id == question.id,
                )
            ).first()
            if row is None:
                row = AttemptAnswer(attempt_id=attempt.id, question_id=question.id)
                session.add(row)
            row.selected_answers = list(answer.selected_answers)
            row.user_answer = answer.user_answer
            row.is_correct = None
            row.status = AnswerStatus.PENDING
            row.answered_at = self._clock()
            session.flush()

            answered = set(
                session.scalars(select(AttemptAnswer.question_id).where(AttemptAnswer.attempt_id == attempt.id))
            )
            questions = list(attempt.test.questions)
            next_question = next((q for q in questions if q.id not in answered), None)
            return ProgressView(
                attempt_id=attempt.id,
                question_id=question.id,
                answered_count=len(answered),
                total_questions=len(questions),
                has_next=next_question is not None,
                next_question_id=next_question.id if next_question is not None else None,
            )

    def submit_attempt(self, user_id: str, attempt_id: str, answers: list[AnswerInput]) -> SubmissionView:
        """Grade every question, close the attempt and materialize its result.

        Questions without a submitted or saved answer are graded as blank; a
        blank open answer is marked wrong instead of waiting for review.
        """
        pending_review: tuple[str, str, int] | None = None

        with self._db.transaction() as session:
            attempt = self._owned_attempt(session, attempt_id, user_id)
            self._require_in_progress(attempt)
            self._require_solo(session, attempt)
            test = attempt.test
            questions = list(test.questions)
            questions_by_id = {q.id: q for q in questions}

            submitted: dict[str, AnswerInput] = {}
            for answer in answers:
                if answer.question_id not in questions_by_id:
                    raise ValidationError(f"Question {answer.question_id} does not belong to this test")
                submitted[answer.question_id] = answer

            now = self._clock()
            elapsed_minutes = max(0.0, (now - attempt.start_time).total_seconds() / 60)
            timed_out = (
                attempt.mode == AttemptMode.EXAM
                and bool(test.time_limit)
                and elapsed_minutes > test.time_limit
            )
            final_status = AttemptStatus.TIMEOUT if timed_out else AttemptStatus.COMPLETED

            claimed = session.execute(
                update(Attempt)
                .where(Attempt.id == attempt.id, Attempt.status == AttemptStatus.IN_PROGRESS)
                .values(status=final_status, end_time=now, progress=None)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ConflictError("This test attempt is already completed")
            attempt.status = final_status
            attempt.end_time = now
            attempt.progress = None
            if attempt.mode == AttemptMode.EXAM and test.max_attempts:
                # Counted after the status update so racing submits see each other.
                finished = session.scalar(
                    select(func.count(Attempt.id)).where(
                        Attempt.user_id == attempt.user_id,
                        Attempt.test_id == test.id,
                        Attempt.mode == AttemptMode.EXAM,
                        Attempt.status.in_(TERMINAL_ATTEMPT_STATUSES),
                    )
                )
                if finished > test.max_attempts:
                    raise ConflictError("Maximum attempts reached for this test")

            saved = {row.question_id: row for row in attempt.answers}
            for question in questions:
                row = saved.get(question.id)
                if question.id in submitted:
                    selected = list(submitted[question.id].selected_answers)
                    text = submitted[question.id].user_answer
                elif row is not None:
                    selected = list(row.selected_answers or [])
                    text = row.user_answer
                else:
                    selected, text = [], None
                if row is None:
                    row = AttemptAnswer(attempt_id=attempt.id, question_id=question.id)
                    attempt.answers.append(row)
                if question.type == QuestionType.OPEN_QUESTION and not (text or "").strip():
                    # Nothing to review.
                    is_correct = False
                else:
                    is_correct = evaluate(question, selected, text)
                row.selected_answers = selected
                row.user_answer = text
                row.is_correct = is_correct
                row.status = AnswerStatus.PENDING if is_correct is None else AnswerStatus.CHECKED
                row.answered_at = now
            session.flush()

            score = self._score(attempt)
            session.add(Result(attempt_id=attempt.id, user_id=attempt.user_id, test_id=test.id, score=score))
            session.flush()

            pending = sum(
                1
                for row in attempt.answers
                if row.is_correct is None and questions_by_id[row.question_id].type == QuestionType.OPEN_QUESTION
            )
            if pending:
                pending_review = (test.creator_id, test.title, pending)

            view = project_submission(attempt, score, elapsed_minutes)
            logger.info(
                "Attempt %s submitted: %s, score %d (%d pending review)",
                attempt.id,
                final_status.value,
                score,
                pending,
            )

        if pending_review is not None:
            creator_id, title, count = pending_review
            self._notifier.notify(
                recipient=creator_id,
                subject="Answers awaiting review",
                body=f"{count} open answer(s) on '{title}' need a manual check.",
            )
        return view

    def review_answer(self, teacher_id: str, answer_id: str, is_correct: bool) -> ResultView:
        """Grade one answer by hand and recompute the attempt's result."""
        with self._db.transaction() as session:
            answer = session.get(AttemptAnswer, answer_id)
            if answer is None:
                raise NotFoundError("Answer not found")
            if answer.question.test.creator_id != teacher_id:
                raise ForbiddenError("You cannot grade this answer")

            attempt = answer.attempt
            result = self._locked_result(session, attempt)
            answer.is_correct = bool(is_correct)
            answer.status = AnswerStatus.CHECKED
            session.flush()

            view = self._recompute(session, attempt, result)
            logger.info("Answer %s reviewed by %s; attempt %s now scores %d", answer_id, teacher_id, attempt.id, view.score)
            return view

    def recalculate_attempt_score(self, attempt_id: str) -> ResultView:
        with self._db.transaction() as session:
            attempt = session.get(Attempt, attempt_id)
            if attempt is None:
                raise NotFoundError("Attempt not found")
            result = self._locked_result(session, attempt)
            return self._recompute(session, attempt, result)

    # --- Read side ---

    def get_results(
        self, attempt_id: str, viewer_id: str
    ) -> PracticeResultsView | ExamResultsView | CreatorResultsView:
        with self._db.transaction() as session:
            attempt = session.get(Attempt, attempt_id)
            if attempt is None:
                raise NotFoundError("Attempt not found")
            is_creator = attempt.test.creator_id == viewer_id
            if not is_creator and attempt.user_id != viewer_id:
                raise ForbiddenError("Not allowed to view this attempt")
            if not attempt.is_terminal:
                raise ConflictError("This test attempt has not been submitted yet")
            if is_creator:
                return project_creator_results(attempt)
            if attempt.mode == AttemptMode.PRACTICE:
                return project_practice_results(attempt)
            return project_exam_results(attempt)

    def pending_answers(self, teacher_id: str) -> list[PendingAnswerView]:
        """Open answers on the teacher's tests that still wait for a review."""
        with self._db.transaction() as session:
            rows = session.execute(
                select(AttemptAnswer, Question, Attempt)
                .join(Question, AttemptAnswer.question_id == Question.id)
                .join(Test, Question.test_id == Test.id)
                .join(Attempt, AttemptAnswer.attempt_id == Attempt.id)
                .where(
                    Test.creator_id == teacher_id,
                    Question.type == QuestionType.OPEN_QUESTION,
                    AttemptAnswer.status == AnswerStatus.PENDING,
                    Attempt.status.in_(TERMINAL_ATTEMPT_STATUSES),
                )
                .order_by(AttemptAnswer.answered_at)
            ).all()
            return [
                PendingAnswerView(
                    answer_id=answer.id,
                    attempt_id=attempt.id,
                    user_id=attempt.user_id,
                    question_id=question.id,
                    question_title=question.title,
                    user_answer=answer.user_answer,
                )
                for answer, question, attempt in rows
            ]

    def export_attempt_snapshot(self, attempt_id: str) -> AttemptSnapshot:
        """Complete, consistent view of a graded attempt for document export."""
        with self._db.transaction() as session:
            attempt = session.get(Attempt, attempt_id)
            if attempt is None:
                raise NotFoundError("Attempt not found")
            if not attempt.is_terminal:
                raise ConflictError("Only submitted attempts can be exported")
            return project_attempt_snapshot(attempt)

    # --- Helpers ---

    @staticmethod
    def _owned_attempt(session: Session, attempt_id: str, user_id: str) -> Attempt:
        attempt = session.get(Attempt, attempt_id)
        if attempt is None:
            raise NotFoundError("Attempt not found")
        if attempt.user_id != user_id:
            raise ForbiddenError("This attempt belongs to another user")
        return attempt

    @staticmethod
    def _require_in_progress(attempt: Attempt) -> None:
        if attempt.status != AttemptStatus.IN_PROGRESS:
            raise ConflictError("This test attempt is already completed")

    @staticmethod
    def _require_solo(session: Session, attempt: Attempt) -> None:
        """Team attempts only move through the competition answer flow."""
        team_id = session.scalar(select(Team.id).where(Team.attempt_id == attempt.id))
        if team_id is not None:
            raise ConflictError("This attempt is played through its competition")

    @staticmethod
    def _locked_result(session: Session, attempt: Attempt) -> Result:
        result = session.scalars(
            select(Result).where(Result.attempt_id == attempt.id).with_for_update()
        ).first()
        if result is None or not attempt.is_terminal:
            raise ConflictError("This test attempt has not been submitted yet")
        return result

    @staticmethod
    def _score(attempt: Attempt) -> int:
        """Weighted score of the attempt, including the exam timeout penalty."""
        weights = {question.id: question.weight for question in attempt.test.questions}
        score = aggregate(attempt.answers, weights)
        if attempt.mode == AttemptMode.EXAM and attempt.status == AttemptStatus.TIMEOUT:
            score = apply_timeout_penalty(score)
        return score

    def _recompute(self, session: Session, attempt: Attempt, result: Result) -> ResultView:
        session.refresh(attempt, attribute_names=["answers"])
        result.score = self._score(attempt)
        result.updated_at = self._clock()
        session.flush()
        return ResultView(
            attempt_id=attempt.id,
            score=result.score,
            status=attempt.status,
            updated_at=result.updated_at,
        )
