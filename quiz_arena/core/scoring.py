"""Weighted score aggregation.

The score is always derived from the full set of graded answers, never
patched incrementally, so recomputing it after any grading change is safe.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from quiz_arena.constants.quiz_constants import DEFAULT_QUESTION_WEIGHT, TIMEOUT_PENALTY_POINTS


def aggregate(answers: Iterable, question_weights: Mapping[str, int]) -> int:
    """Return the weighted percentage of correct answers among graded ones.

    ``answers`` are objects exposing ``question_id`` and ``is_correct``.
    Answers with ``is_correct is None`` are ungraded and do not count yet.
    """
    total_weight = 0
    correct_weight = 0
    for answer in answers:
        if answer.is_correct is None:
            continue
        weight = question_weights.get(answer.question_id) or DEFAULT_QUESTION_WEIGHT
        total_weight += weight
        if answer.is_correct:
            correct_weight += weight

    if total_weight <= 0:
        return 0
    # Integer half-up rounding of 100 * correct / total.
    return (200 * correct_weight + total_weight) // (2 * total_weight)


def apply_timeout_penalty(score: int) -> int:
    return max(0, score - TIMEOUT_PENALTY_POINTS)
