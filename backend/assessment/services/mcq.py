"""MCQ test sessions.

A session moves `in_progress -> completed` and nothing else. Answers are
append-only: resubmitting a question stores another row, and completion
scores the latest row per question. The percentage is taken over the
points of the questions actually answered, so skipped questions shrink
the denominator instead of counting as wrong.
"""

import json
import logging
import random
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlmodel import Session

from .. import errors, models, repositories
from ..config import settings
from ..utils import scoring
from ..utils.clock import format_duration, utcnow
from ..utils.selection import assemble_session, new_rng
from .analytics import AnalyticsService, category_breakdown

logger = logging.getLogger("assessment.mcq")

REVIEW_ADVICE = "Consider reviewing the core topics before retaking the test"
EXCELLENT_ADVICE = "Excellent performance! You are ready for advanced topics"
EXCELLENT_SCORE = 90


def recommendations_for(score: float, categories: List[dict]) -> List[str]:
    """Rule-based advice for a completed session."""
    out = []
    if score < settings.MCQ_PASS_PERCENTAGE:
        out.append(REVIEW_ADVICE)
    weak = [c['category_name'] for c in categories if c['percentage'] < settings.MCQ_PASS_PERCENTAGE]
    if weak:
        out.append("Focus on improving knowledge in: " + ", ".join(weak))
    if score >= EXCELLENT_SCORE:
        out.append(EXCELLENT_ADVICE)
    return out


def latest_per_question(responses: Iterable[models.TestResponse]) -> List[models.TestResponse]:
    """Keep the last response for each question, in first-answered order."""
    latest: "OrderedDict[int, models.TestResponse]" = OrderedDict()
    for r in responses:
        latest[r.question_id] = r
    return list(latest.values())


class McqService:
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow,
                 rng_factory: Callable[[], random.Random] = new_rng):
        self.session = session
        self.clock = clock
        self.rng_factory = rng_factory
        self.repo = repositories.McqRepository(session)
        self.questions = repositories.QuestionRepository(session)
        self.analytics = AnalyticsService(session, clock=clock)

    def get_test_configurations(self) -> List[models.TestConfiguration]:
        return self.repo.list_configurations()

    def get_test_configuration(self, config_id: int) -> models.TestConfiguration:
        config = self.repo.get_configuration(config_id)
        if config is None:
            raise errors.NotFoundError(f"Test configuration not found: {config_id}")
        return config

    def start(self, user_id: int, config_id: int) -> dict:
        """Open a new session and return it with its shuffled questions.

        Rejected once the user's completed attempts reach
        `config.max_attempts`; abandoned sessions do not count.
        """
        config = self.get_test_configuration(config_id)
        rollup = self.repo.get_analytics(user_id, config_id)
        attempts_so_far = rollup.total_attempts if rollup else 0
        if attempts_so_far >= config.max_attempts:
            raise errors.ValidationError(f"Maximum attempts ({config.max_attempts}) reached for this test")

        served, payloads = assemble_session(
            self.questions, self.repo.list_rules(config_id), config.total_questions,
            default_count=settings.MCQ_DEFAULT_QUESTION_COUNT, rng=self.rng_factory(),
        )

        def build(attempt_number: int) -> models.TestSession:
            return models.TestSession(
                user_id=user_id,
                test_config_id=config_id,
                attempt_number=attempt_number,
                questions_served=len(served),
                question_ids=[q.id for q in served],
                max_possible_score=sum(q.points for q in served),
                started_at=self.clock(),
            )

        try:
            test_session = self.repo.save(build(attempts_so_far + 1))
        except errors.ConflictError:
            # a concurrent start or an abandoned session already holds that number
            retry_number = self.repo.max_attempt_number(user_id, config_id) + 1
            logger.info("session_attempt_conflict %s", json.dumps(
                {'user_id': user_id, 'test_config_id': config_id, 'retry_attempt_number': retry_number},
                ensure_ascii=True))
            test_session = self.repo.save(build(retry_number))

        logger.info("session_started %s", json.dumps({
            'session_id': test_session.id, 'user_id': user_id, 'test_config_id': config_id,
            'attempt_number': test_session.attempt_number, 'questions': len(served),
        }, ensure_ascii=True))
        return {'session': test_session, 'questions': payloads}

    def submit_answer(self, session_id: int, question_id: int, selected_option_ids: Iterable[int],
                      time_taken_seconds: int = 0) -> models.TestResponse:
        """Grade and store one answer. Each call appends a new row."""
        test_session = self._session(session_id)
        if test_session.status != models.SessionStatus.IN_PROGRESS:
            raise errors.ValidationError("Test session is already completed")
        if question_id not in (test_session.question_ids or []):
            raise errors.ValidationError(f"Question {question_id} was not served in this test session")
        question = self.questions.get(question_id)
        if question is None:
            raise errors.NotFoundError(f"Question not found: {question_id}")
        selected = list(selected_option_ids or [])
        grade = scoring.grade(question, selected_option_ids=selected)
        response = models.TestResponse(
            session_id=session_id,
            question_id=question_id,
            selected_option_ids=selected,
            is_correct=grade.is_correct,
            points_earned=grade.points_earned,
            time_taken_seconds=max(0, int(time_taken_seconds or 0)),
            answered_at=self.clock(),
        )
        return self.repo.save(response)

    def complete(self, session_id: int) -> dict:
        """Score the session, fold it into the analytics rollup and build the result.

        Completing an already completed session returns its result again
        without touching the rollup.
        """
        test_session = self._session(session_id)
        responses = latest_per_question(self.repo.list_responses(session_id))
        if test_session.status != models.SessionStatus.IN_PROGRESS:
            return self._result(test_session, responses)

        now = self.clock()
        total_score = sum(r.points_earned for r in responses)
        actual_max = sum(self._points(r.question_id) for r in responses)
        score = scoring.percentage(total_score, actual_max)
        time_taken = max(0, int((now - test_session.started_at).total_seconds()))
        finished = self.repo.compare_and_set(
            models.TestSession, session_id,
            expected={'status': models.SessionStatus.IN_PROGRESS},
            values={
                'status': models.SessionStatus.COMPLETED,
                'total_score': total_score,
                'percentage_score': score,
                'time_taken_seconds': time_taken,
                'completed_at': now,
            },
        )
        self.session.refresh(test_session)
        if finished:
            self.analytics.record_test_result(test_session.user_id, test_session.test_config_id, score)
            logger.info("session_completed %s", json.dumps({
                'session_id': session_id, 'user_id': test_session.user_id, 'total_score': total_score,
                'actual_max': actual_max, 'percentage_score': round(score, 2), 'time_taken_seconds': time_taken,
            }, ensure_ascii=True))
        return self._result(test_session, responses)

    def get_user_test_history(self, user_id: int, config_id: Optional[int] = None) -> List[models.TestSession]:
        return self.repo.list_sessions(user_id, config_id)

    def _session(self, session_id: int) -> models.TestSession:
        test_session = self.repo.get_session(session_id)
        if test_session is None:
            raise errors.NotFoundError(f"Test session not found: {session_id}")
        return test_session

    def _points(self, question_id: int) -> int:
        question = self.questions.get(question_id)
        return question.points if question else 0

    def _result(self, test_session: models.TestSession, responses: List[models.TestResponse]) -> dict:
        questions = {}
        for r in responses:
            q = self.questions.get(r.question_id)
            if q is not None:
                questions[q.id] = q
        names = self.questions.category_names(q.category_id for q in questions.values())
        categories = category_breakdown(responses, questions, names)
        correct = sum(1 for r in responses if r.is_correct)
        return {
            'session': test_session,
            'responses': responses,
            'score_breakdown': {
                'total_questions': test_session.questions_served,
                'correct_answers': correct,
                'incorrect_answers': len(responses) - correct,
                'skipped_questions': max(0, test_session.questions_served - len(responses)),
                'percentage_score': test_session.percentage_score,
                'time_taken': format_duration(test_session.time_taken_seconds),
            },
            'category_performance': categories,
            'recommendations': recommendations_for(test_session.percentage_score, categories),
        }
