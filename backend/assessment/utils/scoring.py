"""Scoring kernel.

Pure grading helpers shared by the MCQ, daily and grandtest engines.
Nothing here touches the store: callers pass the question and the
ground truth they already loaded.

Option-set questions are correct only when the submitted option ids
equal the correct set exactly (no partial credit). Single-answer
questions compare the submitted string to `correct_answer` exactly,
case-sensitive, as stored. Essay questions have no stored answer and
are accepted once the trimmed text is longer than
`ESSAY_MIN_ANSWER_LENGTH` characters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from ..models import Question, QuestionKind, QuestionType

ESSAY_MIN_ANSWER_LENGTH = 10


@dataclass(frozen=True)
class Grade:
    is_correct: bool
    points_earned: int


def grade_option_set(selected_option_ids: Iterable[int], correct_option_ids: Iterable[int]) -> bool:
    correct = set(correct_option_ids)
    # an option-set question with nothing flagged correct cannot be answered
    if not correct:
        return False
    return set(selected_option_ids) == correct


def grade_single_answer(user_answer: Optional[str], correct_answer: Optional[str]) -> bool:
    if user_answer is None or correct_answer is None:
        return False
    return user_answer == correct_answer


def grade_essay(user_answer: Optional[str]) -> bool:
    return user_answer is not None and len(user_answer.strip()) > ESSAY_MIN_ANSWER_LENGTH


def points_for(question: Question, is_correct: bool) -> int:
    return question.points if is_correct else 0


def grade(question: Question, *, selected_option_ids: Optional[Iterable[int]] = None,
          user_answer: Optional[str] = None) -> Grade:
    """Grade a submission against `question` using its kind's mode.

    Option-set questions read `selected_option_ids` and compare against
    the question's `option_rows`; single-answer questions read
    `user_answer`. Essays are graded on `user_answer` whatever their kind.
    """
    if question.question_type == QuestionType.ESSAY:
        is_correct = grade_essay(user_answer)
    elif question.kind == QuestionKind.OPTION_SET:
        correct_ids = [o.id for o in question.option_rows if o.is_correct]
        is_correct = grade_option_set(selected_option_ids or [], correct_ids)
    elif question.kind == QuestionKind.SINGLE_ANSWER:
        is_correct = grade_single_answer(user_answer, question.correct_answer)
    else:
        raise ValueError(f"unknown question kind: {question.kind}")
    return Grade(is_correct=is_correct, points_earned=points_for(question, is_correct))


def percentage(earned: float, possible: float) -> float:
    """`earned / possible * 100`, or 0 when nothing was possible."""
    return (earned / possible) * 100 if possible > 0 else 0.0
