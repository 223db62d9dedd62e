"""Daily progression engine.

Each enrollment works through `DAILY_TRACK_DAYS` day-gated tests. The
durable gating state is one `DailyTestProgress` row per
`(enrollment, day)`:

    locked -> unlocked -> in_progress -> completed | failed
                              ^                       |
                              +------- retake --------+

A day only becomes `completed` once its best score reaches
`DAILY_UNLOCK_PERCENTAGE`. The attempt's own `passed` flag uses the
config's `passing_score_percentage` and has no effect on unlocking.

Admin operations (config creation, question assignment) recover from
unique-constraint conflicts by recomputing the key and retrying once.
"""

import json
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlmodel import Session

from .. import errors, models, repositories
from ..config import settings
from ..utils import scoring
from ..utils.clock import utcnow
from ..utils.selection import fixed_order, render_question
from .analytics import AnalyticsService, compute_streak

logger = logging.getLogger("assessment.daily")


def _log(event: str, **fields):
    logger.info("%s %s", event, json.dumps(fields, default=str, ensure_ascii=True))


def next_available_day(progress: Iterable[models.DailyTestProgress]) -> int:
    """The day an enrollment may attempt next, from its progress rows.

    Rows are walked in ascending day order. The first day that failed,
    or whose best score is below the unlock bar, is returned so it can be
    retaken; otherwise the day after the last cleared day is returned.
    """
    bar = settings.DAILY_UNLOCK_PERCENTAGE
    last_cleared = 0
    for p in sorted(progress, key=lambda p: p.day_number):
        if p.status == models.DayStatus.COMPLETED and p.best_score is not None and p.best_score >= bar:
            last_cleared = p.day_number
        elif p.status == models.DayStatus.FAILED or (p.best_score is not None and p.best_score < bar):
            return p.day_number
    return last_cleared + 1


class DailyTestService:
    """Learner-facing daily test flow plus the admin config/assignment operations."""
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.repo = repositories.DailyTestRepository(session)
        self.questions = repositories.QuestionRepository(session)
        self.analytics = AnalyticsService(session, clock=clock)

    # -- configs -----------------------------------------------------------

    def get_daily_test_configs(self, course_id: int) -> List[models.DailyTestConfig]:
        return self.repo.list_configs(course_id)

    def get_daily_test_config(self, config_id: int) -> dict:
        """An active config with its questions in `order_index` order."""
        config = self.repo.get_config(config_id)
        if config is None:
            raise errors.NotFoundError(f"Daily test configuration not found: {config_id}")
        return {'config': config, 'questions': self._ordered_questions(config.id)}

    def get_daily_test_config_by_day(self, course_id: int, day_number: int) -> dict:
        config = self.repo.get_config_by_day(course_id, day_number)
        if config is None:
            raise errors.NotFoundError(f"No daily test configured for course {course_id} day {day_number}")
        return {'config': config, 'questions': self._ordered_questions(config.id)}

    def create_daily_test_config(self, course_id: int, day_number: int, title: str, description: Optional[str] = None,
                                 question_count: int = 10, time_limit_minutes: Optional[int] = None,
                                 passing_score_percentage: float = 70, max_attempts: int = 3,
                                 test_type: str = "daily") -> models.DailyTestConfig:
        """Create the config for a course day.

        If the day is already taken the config is renumbered to the
        course's highest day + 1 instead of failing; the requested day is
        advisory under contention.
        """
        if not 1 <= day_number <= settings.DAILY_TRACK_DAYS:
            raise errors.ValidationError(f"day_number must be between 1 and {settings.DAILY_TRACK_DAYS}")

        def build(day: int) -> models.DailyTestConfig:
            return models.DailyTestConfig(
                course_id=course_id,
                day_number=day,
                title=title,
                description=description,
                test_type=test_type,
                question_count=question_count,
                time_limit_minutes=time_limit_minutes,
                passing_score_percentage=passing_score_percentage,
                max_attempts=max_attempts,
                created_at=self.clock(),
            )

        try:
            return self.repo.save(build(day_number))
        except errors.ConflictError:
            renumbered = self.repo.max_day_number(course_id) + 1
            _log("daily_config_renumbered", course_id=course_id, requested_day=day_number, day_number=renumbered)
            if renumbered > settings.DAILY_TRACK_DAYS:
                logger.warning("daily_config_beyond_track %s", json.dumps(
                    {'course_id': course_id, 'day_number': renumbered}, ensure_ascii=True))
            return self.repo.save(build(renumbered))

    # -- question assignment -----------------------------------------------

    def assign_question_to_test(self, config_id: int, question_id: int, order_index: int) -> models.DailyTestQuestion:
        """Place `question_id` at `order_index`, idempotently.

        An identical assignment is returned as is; an assignment of the
        same question at another position is moved; otherwise a row is
        inserted, and if the position was taken concurrently the question
        goes to the next free position.
        """
        self._require_config(config_id)
        if self.questions.get(question_id) is None:
            raise errors.NotFoundError(f"Question not found: {question_id}")

        exact = self.repo.find_assignment(config_id, question_id, order_index)
        if exact is not None:
            return exact
        existing = self.repo.find_assignment(config_id, question_id)
        if existing is not None:
            existing.order_index = order_index
            return self.repo.save(existing)

        def build(index: int) -> models.DailyTestQuestion:
            return models.DailyTestQuestion(test_config_id=config_id, question_id=question_id,
                                            order_index=index, created_at=self.clock())

        try:
            return self.repo.save(build(order_index))
        except errors.ConflictError:
            raced = self.repo.find_assignment(config_id, question_id)
            if raced is not None:
                return raced
            next_index = self.repo.max_order_index(config_id) + 1
            _log("daily_assignment_reindexed", test_config_id=config_id, question_id=question_id,
                 requested_index=order_index, order_index=next_index)
            return self.repo.save(build(next_index))

    def add_questions_to_daily_test(self, config_id: int, question_ids: List[int]) -> List[models.DailyTestQuestion]:
        """Bulk-assign questions at positions 1..n."""
        self._require_config(config_id)
        now = self.clock()
        rows = [
            models.DailyTestQuestion(test_config_id=config_id, question_id=qid, order_index=i, created_at=now)
            for i, qid in enumerate(question_ids, start=1)
        ]
        self.repo.save_all(rows)
        return self.repo.list_assignments(config_id)

    def remove_question_from_test(self, assignment_id: int) -> None:
        assignment = self.repo.get_assignment(assignment_id)
        if assignment is None:
            raise errors.NotFoundError(f"Question assignment not found: {assignment_id}")
        self.repo.delete(assignment)

    def update_question_order(self, assignment_id: int, order_index: int) -> models.DailyTestQuestion:
        assignment = self.repo.get_assignment(assignment_id)
        if assignment is None:
            raise errors.NotFoundError(f"Question assignment not found: {assignment_id}")
        assignment.order_index = order_index
        return self.repo.save(assignment)

    def get_available_questions(self) -> List[models.Question]:
        return self.questions.list_active()

    def get_assigned_questions(self, config_id: int) -> List[dict]:
        assignments = self.repo.list_assignments(config_id)
        by_id = self.questions.fetch_many(a.question_id for a in assignments)
        return [{'assignment': a, 'question': by_id.get(a.question_id)} for a in assignments]

    # -- progress ----------------------------------------------------------

    def get_next_available_day(self, enrollment_id: int) -> int:
        return next_available_day(self.repo.list_progress(enrollment_id))

    def get_progress(self, enrollment_id: int) -> List[models.DailyTestProgress]:
        return self.repo.list_progress(enrollment_id)

    def get_progress_for_day(self, enrollment_id: int, day_number: int) -> Optional[models.DailyTestProgress]:
        return self.repo.get_progress(enrollment_id, day_number)

    # -- attempts ----------------------------------------------------------

    def start_attempt(self, enrollment_id: int, day_number: int, config_id: int,
                      user_id: Optional[int] = None) -> dict:
        """Open an attempt for `day_number` if the enrollment has unlocked it.

        `user_id` records who started the attempt so controllers can keep
        answers and completion to that user.
        """
        next_day = self.get_next_available_day(enrollment_id)
        if day_number > next_day:
            raise errors.ValidationError(
                f"You must pass Day {day_number - 1} with {settings.DAILY_UNLOCK_PERCENTAGE:g}% or higher "
                f"to unlock Day {day_number}")
        config = self._require_config(config_id)
        if config.day_number != day_number:
            raise errors.ValidationError(f"Daily test configuration {config_id} is for day {config.day_number}, not day {day_number}")
        questions = self._ordered_questions(config.id)
        if not questions:
            raise errors.ValidationError("No questions assigned to this daily test")

        now = self.clock()

        def build(attempt_number: int) -> models.DailyTestAttempt:
            return models.DailyTestAttempt(
                enrollment_id=enrollment_id,
                user_id=user_id,
                test_config_id=config.id,
                attempt_number=attempt_number,
                day_completed=day_number,
                started_at=now,
            )

        try:
            attempt = self.repo.save(build(self.repo.max_attempt_number(enrollment_id, config.id) + 1))
        except errors.ConflictError:
            retry_number = self.repo.max_attempt_number(enrollment_id, config.id) + 1
            _log("daily_attempt_conflict", enrollment_id=enrollment_id, test_config_id=config.id,
                 retry_attempt_number=retry_number)
            attempt = self.repo.save(build(retry_number))

        def begin(p: models.DailyTestProgress):
            p.status = models.DayStatus.IN_PROGRESS
            p.test_config_id = config.id
            p.total_attempts = (p.total_attempts or 0) + 1
            p.last_attempt_at = now
            if p.unlocked_at is None:
                p.unlocked_at = now
            p.updated_at = now

        progress = self.repo.upsert_progress(enrollment_id, day_number, config.course_id, begin)
        _log("daily_attempt_started", attempt_id=attempt.id, enrollment_id=enrollment_id,
             day_number=day_number, attempt_number=attempt.attempt_number)
        return {
            'attempt': attempt,
            'config': config,
            'questions': [render_question(q) for q in questions],
            'progress': progress,
        }

    def submit_answer(self, attempt_id: int, question_id: int, user_answer: Optional[str],
                      time_spent_seconds: int = 0) -> models.DailyTestResponse:
        """Grade an answer; re-answering a question revises the same row."""
        attempt = self._require_attempt(attempt_id)
        if attempt.status != models.AttemptStatus.IN_PROGRESS:
            raise errors.ValidationError("Daily test attempt is already submitted")
        if self.repo.find_assignment(attempt.test_config_id, question_id) is None:
            raise errors.ValidationError(f"Question {question_id} is not part of this daily test")
        question = self.questions.get(question_id)
        if question is None:
            raise errors.NotFoundError(f"Question not found: {question_id}")
        grade = scoring.grade(question, user_answer=user_answer)
        now = self.clock()

        def apply(r: models.DailyTestResponse):
            r.user_answer = user_answer
            r.is_correct = grade.is_correct
            r.points_earned = grade.points_earned
            r.time_spent_seconds = max(0, int(time_spent_seconds or 0))
            r.answered_at = now

        return self.repo.upsert_response(attempt_id, question_id, apply)

    def complete_attempt(self, attempt_id: int) -> dict:
        """Score the attempt against the configured question count and update gating.

        Unanswered questions count against the score. Best score only
        moves up; the streak is recomputed and written to every progress
        row of the enrollment.
        """
        attempt = self._require_attempt(attempt_id)
        if attempt.status != models.AttemptStatus.IN_PROGRESS:
            raise errors.ValidationError("Daily test attempt is already submitted")
        config = self.repo.load_config(attempt.test_config_id)
        if config is None:
            raise errors.NotFoundError(f"Daily test configuration not found: {attempt.test_config_id}")

        responses = self.repo.list_responses(attempt_id)
        now = self.clock()
        total_score = sum(r.points_earned for r in responses)
        max_score = config.question_count
        pct = scoring.percentage(total_score, max_score)
        passed = pct >= config.passing_score_percentage
        minutes = round((now - attempt.started_at).total_seconds() / 60)

        submitted = self.repo.compare_and_set(
            models.DailyTestAttempt, attempt_id,
            expected={'status': models.AttemptStatus.IN_PROGRESS},
            values={
                'status': models.AttemptStatus.SUBMITTED,
                'submitted_at': now,
                'score': total_score,
                'max_score': max_score,
                'percentage_score': pct,
                'time_taken_minutes': minutes,
            },
        )
        if not submitted:
            raise errors.ValidationError("Daily test attempt is already submitted")
        self.session.refresh(attempt)

        def finish(p: models.DailyTestProgress):
            if p.best_score is None or pct > p.best_score:
                p.best_score = pct
                p.best_attempt_id = attempt_id
            cleared = p.best_score >= settings.DAILY_UNLOCK_PERCENTAGE
            p.status = models.DayStatus.COMPLETED if cleared else models.DayStatus.FAILED
            p.test_config_id = config.id
            p.completed_at = now
            p.updated_at = now

        progress = self.repo.upsert_progress(attempt.enrollment_id, attempt.day_completed, config.course_id, finish)
        streak = self._write_streak(attempt.enrollment_id)
        self.analytics.refresh_daily_bucket(attempt.enrollment_id, config.course_id)
        self.session.refresh(progress)

        _log("daily_attempt_completed", attempt_id=attempt_id, enrollment_id=attempt.enrollment_id,
             day_number=attempt.day_completed, percentage=round(pct, 2), passed=passed,
             progress_status=progress.status, streak=streak)
        return {
            'attempt': attempt,
            'score': total_score,
            'max_score': max_score,
            'percentage': pct,
            'passed': passed,
            'time_taken_minutes': minutes,
            'responses': responses,
            'progress': progress,
            'next_available_day': self.get_next_available_day(attempt.enrollment_id),
        }

    # -- helpers -----------------------------------------------------------

    def _write_streak(self, enrollment_id: int) -> int:
        rows = self.repo.list_progress(enrollment_id)
        streak = compute_streak(rows)
        for p in rows:
            p.streak_count = streak
        self.repo.save_all(rows)
        return streak

    def _require_config(self, config_id: int) -> models.DailyTestConfig:
        config = self.repo.get_config(config_id)
        if config is None:
            raise errors.NotFoundError(f"Daily test configuration not found: {config_id}")
        return config

    def _require_attempt(self, attempt_id: int) -> models.DailyTestAttempt:
        attempt = self.repo.get_attempt(attempt_id)
        if attempt is None:
            raise errors.NotFoundError(f"Daily test attempt not found: {attempt_id}")
        return attempt

    def _ordered_questions(self, config_id: int) -> List[models.Question]:
        assignments = self.repo.list_assignments(config_id)
        return fixed_order(assignments, self.questions.fetch_many(a.question_id for a in assignments))
