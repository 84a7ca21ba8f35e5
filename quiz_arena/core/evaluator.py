"""Answer-correctness rules, one branch per question type."""

from __future__ import annotations

from typing import Iterable

from quiz_arena.core.models import QuestionType


def evaluate(
    question,
    selected_answers: Iterable[str] | None = None,
    user_answer: str | None = None,
) -> bool | None:
    """Decide whether a submission answers ``question`` correctly.

    Returns ``None`` for open questions, which only a reviewer can grade.
    Missing questions and unknown types evaluate to ``False``.
    """
    if question is None:
        return False

    correct_answers = list(question.correct_answers or [])
    question_type = question.type

    if question_type == QuestionType.MULTIPLE_CHOICE:
        return set(selected_answers or ()) == set(correct_answers)

    if question_type == QuestionType.SHORT_ANSWER:
        submitted = _normalize(user_answer)
        return any(submitted == _normalize(answer) for answer in correct_answers)

    if question_type == QuestionType.TRUE_FALSE:
        selected = list(selected_answers or ())
        if len(selected) != 1 or not correct_answers:
            return False
        return _casefold(selected[0]) == _casefold(correct_answers[0])

    if question_type == QuestionType.OPEN_QUESTION:
        return None

    return False


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def _casefold(value: object) -> str:
    return str(value).lower()
