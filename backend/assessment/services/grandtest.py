"""Timed final exam ("grandtest").

A fixed-shape exam: `GRANDTEST_QUESTION_COUNT` questions served in pool
order, answered one at a time, against a single whole-session countdown
of `GRANDTEST_TIME_LIMIT_MINUTES`. The countdown is not reset per
question; the client's copy of the timer is display-only and every
decision here uses the server clock.

Finalization is idempotent: an attempt leaves `in_progress` exactly
once, via a compare-and-set on its status, and only that transition
computes `passed` and fires the certificate callback. Reaching the
deadline finalizes with `status = timeout`, scoring unanswered
questions as zero.

After any finalized attempt the same `(user, course)` is locked out for
`GRANDTEST_COOLDOWN_HOURS`, passed attempts included.
"""

import json
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlmodel import Session

from .. import errors, models, repositories
from ..config import settings
from ..utils import scoring
from ..utils.clock import utcnow
from ..utils.selection import fixed_order, render_question

logger = logging.getLogger("assessment.grandtest")


def cooldown_ends_at(last_finished: Optional[models.GrandtestAttempt]) -> Optional[datetime]:
    """When the next attempt may start, or `None` if nothing blocks it."""
    if last_finished is None or last_finished.completed_at is None:
        return None
    return last_finished.completed_at + timedelta(hours=settings.GRANDTEST_COOLDOWN_HOURS)


def _deadline(attempt: models.GrandtestAttempt) -> datetime:
    return attempt.started_at + timedelta(minutes=attempt.time_limit_minutes)


def _log(event: str, **fields):
    logger.info("%s %s", event, json.dumps(fields, default=str, ensure_ascii=True))


class GrandtestService:
    """Start, answer, time out and finalize grandtest attempts.

    `on_passed` is called with the attempt when (and only when) an
    attempt is finalized as passed; certificate issuance hangs off it.
    """
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow,
                 on_passed: Optional[Callable[[models.GrandtestAttempt], None]] = None):
        self.session = session
        self.clock = clock
        self.on_passed = on_passed
        self.repo = repositories.GrandtestRepository(session)
        self.questions = repositories.QuestionRepository(session)

    # -- eligibility -------------------------------------------------------

    def can_take(self, user_id: int, course_id: int) -> bool:
        ends_at = cooldown_ends_at(self.repo.last_finished(user_id, course_id))
        return ends_at is None or self.clock() >= ends_at

    # -- lifecycle ---------------------------------------------------------

    def start(self, user_id: int, course_id: int, enrollment_id: int) -> dict:
        """Create an attempt and serve its questions.

        Any expired in-flight attempt for the enrollment is timed out
        first; a live one blocks the start.
        """
        now = self.clock()
        for stale in self.repo.in_progress_for_enrollment(enrollment_id):
            if now >= _deadline(stale):
                self._finalize(stale, models.ExamStatus.TIMEOUT, _deadline(stale))
            else:
                raise errors.ValidationError("A grandtest attempt is already in progress for this enrollment")

        ends_at = cooldown_ends_at(self.repo.last_finished(user_id, course_id))
        if ends_at is not None and now < ends_at:
            _log("grandtest_cooldown_rejected", user_id=user_id, course_id=course_id, next_available=ends_at)
            raise errors.ValidationError(f"Cannot take grandtest yet; next attempt available at {ends_at.isoformat()}")

        needed = settings.GRANDTEST_QUESTION_COUNT
        pool = self.repo.list_pool(course_id)
        if not pool:
            raise errors.ValidationError("No grandtest questions available for this course")
        served = fixed_order(pool, self.questions.fetch_many(p.question_id for p in pool))[:needed]
        if len(served) < needed:
            raise errors.ValidationError(f"Not enough questions available (need {needed}, have {len(served)})")

        attempt = models.GrandtestAttempt(
            user_id=user_id,
            course_id=course_id,
            enrollment_id=enrollment_id,
            started_at=now,
            question_started_at=now,
            time_limit_minutes=settings.GRANDTEST_TIME_LIMIT_MINUTES,
            total_questions=needed,
        )
        self.repo.save(attempt)
        self.repo.save_all(
            models.GrandtestResponse(attempt_id=attempt.id, question_id=q.id, order_index=i)
            for i, q in enumerate(served)
        )
        _log("grandtest_started", attempt_id=attempt.id, user_id=user_id, course_id=course_id)
        return {
            'attempt': attempt,
            'questions': [render_question(q) for q in served],
            'current_question_index': 0,
            'timer': self._timer(attempt, now),
        }

    def get_current_attempt(self, user_id: int, course_id: int) -> Optional[dict]:
        """The live attempt with its questions, or `None` (timing out an expired one)."""
        attempt = self.repo.current_attempt(user_id, course_id)
        if attempt is None:
            return None
        now = self.clock()
        if now >= _deadline(attempt):
            self._finalize(attempt, models.ExamStatus.TIMEOUT, _deadline(attempt))
            return None
        responses = self.repo.list_responses(attempt.id)
        return {
            'attempt': attempt,
            'questions': [render_question(self._question(r.question_id)) for r in responses],
            'current_question_index': attempt.current_question_index,
            'timer': self._timer(attempt, now),
        }

    def submit_answer(self, attempt_id: int, question_id: int, user_answer: Optional[str]) -> dict:
        """Grade the current question and advance.

        Only the question at `current_question_index` may be answered.
        Answering the last question finalizes the attempt; answering after
        the deadline finalizes it as a timeout without recording the answer.
        """
        attempt = self._attempt(attempt_id)
        if attempt.status != models.ExamStatus.IN_PROGRESS:
            raise errors.ValidationError("Grandtest attempt is already finished")
        now = self.clock()
        if now >= _deadline(attempt):
            result = self._finalize(attempt, models.ExamStatus.TIMEOUT, _deadline(attempt))
            return {'accepted': False, 'finished': True, 'next_question': None, 'result': result}

        responses = self.repo.list_responses(attempt.id)
        index = attempt.current_question_index
        if index >= len(responses):
            raise errors.ValidationError("All grandtest questions have already been answered")
        current = responses[index]
        if current.question_id != question_id:
            raise errors.ValidationError(f"Question {question_id} is not the current grandtest question")

        grade = scoring.grade(self._question(question_id), user_answer=user_answer)
        started = attempt.question_started_at or attempt.started_at
        advanced = self.repo.compare_and_set(
            models.GrandtestAttempt, attempt.id,
            expected={'status': models.ExamStatus.IN_PROGRESS, 'current_question_index': index},
            values={
                'current_question_index': index + 1,
                'question_started_at': now,
                'questions_answered': attempt.questions_answered + 1,
                'correct_answers': attempt.correct_answers + (1 if grade.is_correct else 0),
            },
            commit=False,
        )
        if not advanced:
            raise errors.ValidationError("This grandtest question was already answered")
        current.user_answer = user_answer
        current.is_correct = grade.is_correct
        current.points_earned = grade.points_earned
        current.time_spent_seconds = max(0, int((now - started).total_seconds()))
        current.answered_at = now
        self.repo.save(current)
        self.session.refresh(attempt)

        if index + 1 >= len(responses):
            result = self._finalize(attempt, models.ExamStatus.COMPLETED, now)
            return {'accepted': True, 'finished': True, 'response': current, 'next_question': None, 'result': result}
        upcoming = responses[index + 1]
        return {
            'accepted': True,
            'finished': False,
            'response': current,
            'next_question': render_question(self._question(upcoming.question_id)),
            'timer': self._timer(attempt, now),
        }

    def get_timer(self, attempt_id: int) -> dict:
        """Server-side countdown for an attempt, timing it out if expired."""
        attempt = self._attempt(attempt_id)
        now = self.clock()
        if attempt.status == models.ExamStatus.IN_PROGRESS and now >= _deadline(attempt):
            self._finalize(attempt, models.ExamStatus.TIMEOUT, _deadline(attempt))
        return self._timer(attempt, now)

    def check_timeout(self, attempt_id: int) -> Optional[dict]:
        """Finalize the attempt as a timeout if its deadline passed.

        Returns the result when this call timed it out, otherwise `None`.
        """
        attempt = self._attempt(attempt_id)
        if attempt.status == models.ExamStatus.IN_PROGRESS and self.clock() >= _deadline(attempt):
            return self._finalize(attempt, models.ExamStatus.TIMEOUT, _deadline(attempt))
        return None

    def complete(self, attempt_id: int) -> dict:
        """Finalize an attempt and return its result.

        Calling this on a finished attempt returns the stored result
        unchanged. Completing after the deadline records a timeout.
        """
        attempt = self._attempt(attempt_id)
        if attempt.status != models.ExamStatus.IN_PROGRESS:
            return self._result(attempt)
        now = self.clock()
        if now >= _deadline(attempt):
            return self._finalize(attempt, models.ExamStatus.TIMEOUT, _deadline(attempt))
        return self._finalize(attempt, models.ExamStatus.COMPLETED, now)

    def get_history(self, user_id: int) -> List[dict]:
        """Attempts grouped per course with best score and retake state."""
        groups: "OrderedDict[int, List[models.GrandtestAttempt]]" = OrderedDict()
        for a in self.repo.list_attempts(user_id):
            groups.setdefault(a.course_id, []).append(a)
        now = self.clock()
        out = []
        for course_id, attempts in groups.items():
            ends_at = cooldown_ends_at(self.repo.last_finished(user_id, course_id))
            can_retake = ends_at is None or now >= ends_at
            out.append({
                'course_id': course_id,
                'attempts': attempts,
                'total_attempts': len(attempts),
                'passed_attempts': sum(1 for a in attempts if a.passed),
                'best_score': max(a.score_percentage for a in attempts),
                'certificate_issued': any(a.passed for a in attempts),
                'can_retake': can_retake,
                'next_available_date': None if can_retake else ends_at,
            })
        return out

    # -- helpers -----------------------------------------------------------

    def _attempt(self, attempt_id: int) -> models.GrandtestAttempt:
        attempt = self.repo.get_attempt(attempt_id)
        if attempt is None:
            raise errors.NotFoundError(f"Grandtest attempt not found: {attempt_id}")
        return attempt

    def _question(self, question_id: int) -> models.Question:
        question = self.questions.get(question_id)
        if question is None:
            raise errors.NotFoundError(f"Question not found: {question_id}")
        return question

    def _timer(self, attempt: models.GrandtestAttempt, now: datetime) -> dict:
        if attempt.status != models.ExamStatus.IN_PROGRESS:
            return {
                'question_start_time': attempt.question_started_at,
                'total_time_remaining': 0,
                'current_question_time': 0,
                'current_question_index': attempt.current_question_index,
                'status': attempt.status,
            }
        remaining = (_deadline(attempt) - now).total_seconds()
        started = attempt.question_started_at or attempt.started_at
        return {
            'question_start_time': started,
            'total_time_remaining': max(0, int(remaining)),
            'current_question_time': max(0, int((now - started).total_seconds())),
            'current_question_index': attempt.current_question_index,
            'status': attempt.status,
        }

    def _finalize(self, attempt: models.GrandtestAttempt, status: str, completed_at: datetime) -> dict:
        responses = self.repo.list_responses(attempt.id)
        possible = sum(self._question(r.question_id).points for r in responses)
        earned = sum(r.points_earned for r in responses)
        score = scoring.percentage(earned, possible)
        passed = score >= settings.GRANDTEST_PASS_PERCENTAGE
        finalized = self.repo.compare_and_set(
            models.GrandtestAttempt, attempt.id,
            expected={'status': models.ExamStatus.IN_PROGRESS},
            values={
                'status': status,
                'completed_at': completed_at,
                'questions_answered': sum(1 for r in responses if r.user_answer is not None),
                'correct_answers': sum(1 for r in responses if r.is_correct),
                'score_percentage': score,
                'passed': passed,
            },
        )
        self.session.refresh(attempt)
        if not finalized:
            return self._result(attempt, responses)
        _log("grandtest_finalized", attempt_id=attempt.id, status=status, score_percentage=score, passed=passed)
        if passed and self.on_passed is not None:
            self.on_passed(attempt)
        return self._result(attempt, responses)

    def _result(self, attempt: models.GrandtestAttempt, responses: Optional[list] = None) -> dict:
        if responses is None:
            responses = self.repo.list_responses(attempt.id)
        return {
            'attempt': attempt,
            'status': attempt.status,
            'score_percentage': attempt.score_percentage,
            'passed': attempt.passed,
            'questions_answered': attempt.questions_answered,
            'correct_answers': attempt.correct_answers,
            'total_questions': attempt.total_questions,
            'time_remaining_seconds': 0 if attempt.status == models.ExamStatus.TIMEOUT else None,
            'responses': responses,
        }
