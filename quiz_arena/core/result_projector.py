"""Builds the result views shown to learners and creators.

Visibility rules:

- Practice attempts always get the full per-question breakdown.
- Exam attempts get score and status only, unless the test has
  ``show_answers`` enabled. Even then, open-question correctness is reported
  as unknown to the learner, whatever a reviewer decided.
- Free text is only surfaced for short-answer and open questions.
- The test creator always sees everything.
"""

from __future__ import annotations

from quiz_arena.core.models import Attempt, AttemptAnswer, AttemptMode, Question, QuestionType, Test
from quiz_arena.core.schemas import (
    AnswerSnapshot,
    AttemptSnapshot,
    CreatorResultsView,
    DetailedAnswerView,
    ExamResultsView,
    PracticeResultsView,
    QuestionView,
    SubmissionView,
    TestView,
)

_FREE_TEXT_TYPES = (QuestionType.SHORT_ANSWER, QuestionType.OPEN_QUESTION)


def project_question(question: Question, include_answers: bool = True) -> QuestionView:
    return QuestionView(
        id=question.id,
        position=question.position,
        title=question.title,
        type=question.type,
        options=list(question.options or []),
        correct_answers=list(question.correct_answers or []) if include_answers else None,
        weight=question.weight,
        explanation=question.explanation if include_answers else None,
        image=question.image,
    )


def project_test(test: Test, include_answers: bool = True) -> TestView:
    return TestView(
        id=test.id,
        title=test.title,
        creator_id=test.creator_id,
        is_draft=test.is_draft,
        time_limit=test.time_limit,
        max_attempts=test.max_attempts,
        show_answers=test.show_answers,
        exam_mode=test.exam_mode,
        created_at=test.created_at,
        questions=[project_question(q, include_answers) for q in test.questions],
    )


def detailed_answers(
    questions: list[Question],
    answers: list[AttemptAnswer],
    hide_open_correctness: bool = False,
) -> list[DetailedAnswerView]:
    """One entry per question, in test order, whether answered or not."""
    by_question = {answer.question_id: answer for answer in answers}
    details: list[DetailedAnswerView] = []
    for question in questions:
        answer = by_question.get(question.id)
        is_free_text = question.type in _FREE_TEXT_TYPES
        is_correct = answer.is_correct if answer is not None else None
        if hide_open_correctness and question.type == QuestionType.OPEN_QUESTION:
            is_correct = None
        details.append(
            DetailedAnswerView(
                question_id=question.id,
                question_title=question.title,
                question_type=question.type,
                options=list(question.options or []),
                correct_answers=list(question.correct_answers or []),
                user_selected_answers=[] if is_free_text or answer is None else list(answer.selected_answers or []),
                user_answer=answer.user_answer if is_free_text and answer is not None else None,
                is_correct=is_correct,
                explanation=question.explanation,
            )
        )
    return details


def count_outcomes(answers: list[AttemptAnswer]) -> tuple[int, int, int]:
    """Return (correct, incorrect, pending) counts."""
    correct = sum(1 for a in answers if a.is_correct is True)
    incorrect = sum(1 for a in answers if a.is_correct is False)
    pending = sum(1 for a in answers if a.is_correct is None)
    return correct, incorrect, pending


def project_submission(
    attempt: Attempt,
    score: int,
    elapsed_minutes: float,
) -> SubmissionView:
    test = attempt.test
    questions = list(test.questions)
    answers = list(attempt.answers)
    time_limit = test.time_limit if attempt.mode == AttemptMode.EXAM else None

    if attempt.mode == AttemptMode.PRACTICE:
        correct, incorrect, pending = count_outcomes(answers)
        return SubmissionView(
            message="Practice test completed successfully",
            attempt_id=attempt.id,
            mode=attempt.mode,
            status=attempt.status,
            score=score,
            time_elapsed=round(elapsed_minutes),
            time_limit=time_limit,
            show_answers=True,
            total_questions=len(questions),
            correct_answers=correct,
            incorrect_answers=incorrect,
            pending_answers=pending,
            detailed_results=detailed_answers(questions, answers),
        )

    return SubmissionView(
        message="Exam submitted successfully",
        attempt_id=attempt.id,
        mode=attempt.mode,
        status=attempt.status,
        score=score,
        time_elapsed=round(elapsed_minutes),
        time_limit=time_limit,
        show_answers=test.show_answers,
        detailed_results=(
            detailed_answers(questions, answers, hide_open_correctness=True) if test.show_answers else None
        ),
    )


def project_practice_results(attempt: Attempt) -> PracticeResultsView:
    questions = list(attempt.test.questions)
    answers = list(attempt.answers)
    correct, incorrect, pending = count_outcomes(answers)
    return PracticeResultsView(
        attempt_id=attempt.id,
        test_title=attempt.test.title,
        status=attempt.status,
        score=attempt.result.score if attempt.result is not None else 0,
        total_questions=len(questions),
        correct_answers=correct,
        incorrect_answers=incorrect,
        pending_answers=pending,
        results=detailed_answers(questions, answers),
    )


def project_exam_results(attempt: Attempt) -> ExamResultsView:
    test = attempt.test
    view = ExamResultsView(
        attempt_id=attempt.id,
        test_title=test.title,
        status=attempt.status,
        score=attempt.result.score if attempt.result is not None else 0,
        show_answers=test.show_answers,
    )
    if test.show_answers:
        view.results = detailed_answers(list(test.questions), list(attempt.answers), hide_open_correctness=True)
    return view


def project_creator_results(attempt: Attempt) -> CreatorResultsView:
    questions = list(attempt.test.questions)
    answers = list(attempt.answers)
    correct, incorrect, pending = count_outcomes(answers)
    return CreatorResultsView(
        attempt_id=attempt.id,
        test_title=attempt.test.title,
        user_id=attempt.user_id,
        mode=attempt.mode,
        status=attempt.status,
        score=attempt.result.score if attempt.result is not None else 0,
        total_questions=len(questions),
        correct_answers=correct,
        incorrect_answers=incorrect,
        pending_answers=pending,
        results=detailed_answers(questions, answers),
    )


def project_attempt_snapshot(attempt: Attempt) -> AttemptSnapshot:
    order = {question.id: question.position for question in attempt.test.questions}
    answers = sorted(attempt.answers, key=lambda a: order.get(a.question_id, 0))
    return AttemptSnapshot(
        attempt_id=attempt.id,
        user_id=attempt.user_id,
        mode=attempt.mode,
        status=attempt.status,
        start_time=attempt.start_time,
        end_time=attempt.end_time,
        score=attempt.result.score if attempt.result is not None else 0,
        test=project_test(attempt.test),
        answers=[
            AnswerSnapshot(
                answer_id=answer.id,
                question_id=answer.question_id,
                selected_answers=list(answer.selected_answers or []),
                user_answer=answer.user_answer,
                is_correct=answer.is_correct,
                status=answer.status.value,
            )
            for answer in answers
        ],
    )
