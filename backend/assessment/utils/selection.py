"""Question selection.

Two modes:

- rule-weighted: assemble an MCQ session from `(category, difficulty,
  count)` quotas, backfill short sets with other active questions, then
  shuffle question order and each question's options;
- fixed-order: return pre-assigned questions sorted by `order_index`
  (daily tests and the grandtest), without shuffling.

Served questions are rendered with `render_question`, which never
exposes which option is correct.
"""

from __future__ import annotations

import random
from typing import Iterable, List, Optional, Sequence, Tuple

from .. import errors
from ..models import Question, QuestionKind, TestQuestionRule
from ..repositories import QuestionRepository

MIN_ANSWERABLE_QUESTIONS = 2
MIN_OPTIONS_PER_QUESTION = 2


def new_rng() -> random.Random:
    """A PRNG seeded from OS entropy for a single selection call."""
    return random.Random()


def shuffled(items: Sequence, rng: random.Random) -> list:
    """Return a uniformly shuffled copy of `items`."""
    return rng.sample(list(items), len(items))


def _option_count(question: Question) -> int:
    if question.kind == QuestionKind.OPTION_SET:
        return len(question.option_rows)
    return len(question.options or {})


def render_question(question: Question, rng: Optional[random.Random] = None) -> dict:
    """Presentation payload for a served question.

    Options are shuffled when `rng` is given; correctness flags and the
    stored correct answer are left out.
    """
    payload = {
        'id': question.id,
        'kind': question.kind,
        'question_text': question.question_text,
        'question_type': question.question_type,
        'difficulty': question.difficulty,
        'category_id': question.category_id,
        'points': question.points,
    }
    if question.kind == QuestionKind.OPTION_SET:
        rows = sorted(question.option_rows, key=lambda o: (o.order_index, o.id))
        if rng is not None:
            rows = shuffled(rows, rng)
        payload['options'] = [{'id': o.id, 'option_text': o.option_text} for o in rows]
    else:
        items = list((question.options or {}).items())
        if rng is not None:
            items = shuffled(items, rng)
        payload['options'] = [{'label': k, 'text': v} for k, v in items]
    return payload


def select_by_rules(repo: QuestionRepository, rules: Iterable[TestQuestionRule], total_questions: Optional[int],
                    default_count: int = 25) -> List[Question]:
    """Assemble the unshuffled question set for an MCQ session.

    Each rule contributes up to `question_count` questions from its
    category/difficulty slice; duplicates across slices are dropped by
    id. If the union is short of `total_questions` it is backfilled with
    other active questions. Without rules the first `total_questions`
    active questions are used.
    """
    target = total_questions or default_count
    rules = list(rules)
    selected: List[Question] = []
    seen = set()
    if rules:
        for rule in rules:
            for q in repo.fetch_by_category_and_difficulty(rule.category_id, rule.difficulty, rule.question_count):
                if q.id not in seen:
                    seen.add(q.id)
                    selected.append(q)
        if len(selected) < target:
            for q in repo.fetch_active(target - len(selected), exclude_ids=seen):
                seen.add(q.id)
                selected.append(q)
    else:
        selected = repo.fetch_active(target)
    return selected


def assemble_session(repo: QuestionRepository, rules: Iterable[TestQuestionRule], total_questions: Optional[int],
                     default_count: int = 25, rng: Optional[random.Random] = None) -> Tuple[List[Question], List[dict]]:
    """Select, validate and shuffle the questions for one MCQ session.

    Returns the served `Question` rows (in served order) and their
    rendered payloads. Raises `ValidationError` when nothing is available
    or fewer than two questions carry at least two options.
    """
    rng = rng or new_rng()
    questions = select_by_rules(repo, rules, total_questions, default_count)
    if not questions:
        raise errors.ValidationError("No questions available for this test configuration")
    answerable = [q for q in questions if _option_count(q) >= MIN_OPTIONS_PER_QUESTION]
    if len(answerable) < MIN_ANSWERABLE_QUESTIONS:
        raise errors.ValidationError("Not enough valid questions with options for this test configuration")
    served = shuffled(answerable, rng)
    return served, [render_question(q, rng) for q in served]


def fixed_order(assignments: Iterable, questions_by_id: dict) -> List[Question]:
    """Questions for `assignments` sorted by `order_index`.

    `assignments` are rows carrying `question_id` and `order_index`
    (daily or grandtest); assignments whose question is missing from
    `questions_by_id` (inactive or deleted) are skipped.
    """
    ordered = sorted(assignments, key=lambda a: a.order_index)
    return [questions_by_id[a.question_id] for a in ordered if a.question_id in questions_by_id]
