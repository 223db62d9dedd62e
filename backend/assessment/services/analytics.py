"""Analytics aggregation.

Read-side rollups over sessions, attempts and progress rows, plus the
two rollup writers the engines call after finalizing a result.

Dashboard reads are non-authoritative: if the store fails they log a
warning and return zeroed defaults instead of failing the caller. The
MCQ `(user, config)` rollup is different, since it gates
`max_attempts`, so `record_test_result` always propagates.
"""

import json
import logging
import math
from collections import OrderedDict
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlmodel import Session

from .. import errors, models, repositories
from ..config import settings
from ..utils.clock import utcnow
from .grandtest import cooldown_ends_at

logger = logging.getLogger("assessment.analytics")

UNKNOWN_CATEGORY = "Unknown"


def compute_streak(progress: Iterable[models.DailyTestProgress]) -> int:
    """Consecutive `completed` days counted down from the highest day.

    Any non-completed row, or a gap in day numbers, ends the chain.
    """
    rows = sorted(progress, key=lambda p: p.day_number, reverse=True)
    if not rows:
        return 0
    streak = 0
    expected = rows[0].day_number
    for p in rows:
        if p.day_number != expected or p.status != models.DayStatus.COMPLETED:
            break
        streak += 1
        expected -= 1
    return streak


def longest_streak(progress: Iterable[models.DailyTestProgress]) -> int:
    """Longest run of consecutive `completed` day numbers."""
    best = run = 0
    previous = None
    for p in sorted(progress, key=lambda p: p.day_number):
        if p.status == models.DayStatus.COMPLETED:
            run = run + 1 if previous is not None and p.day_number == previous + 1 else 1
            previous = p.day_number
        else:
            run = 0
            previous = None
        best = max(best, run)
    return best


def category_breakdown(responses: Iterable, questions: Dict[int, models.Question],
                       category_names: Dict[int, str]) -> List[dict]:
    """Per-category correctness for graded responses.

    Categories appear in the order they are first seen.
    """
    buckets: "OrderedDict[str, dict]" = OrderedDict()
    for r in responses:
        q = questions.get(r.question_id)
        name = category_names.get(q.category_id, UNKNOWN_CATEGORY) if q else UNKNOWN_CATEGORY
        bucket = buckets.setdefault(name, {'questions_attempted': 0, 'correct_answers': 0})
        bucket['questions_attempted'] += 1
        if r.is_correct:
            bucket['correct_answers'] += 1
    return [
        {
            'category_name': name,
            'questions_attempted': b['questions_attempted'],
            'correct_answers': b['correct_answers'],
            'percentage': (b['correct_answers'] / b['questions_attempted']) * 100,
        }
        for name, b in buckets.items()
    ]


def _summarize_progress(rows: List[models.DailyTestProgress]) -> dict:
    completed = [p for p in rows if p.status in (models.DayStatus.COMPLETED, models.DayStatus.FAILED)]
    passed = [p for p in rows if p.status == models.DayStatus.COMPLETED]
    failed = [p for p in rows if p.status == models.DayStatus.FAILED]
    total_score = sum(p.best_score or 0 for p in completed)
    average = total_score / len(completed) if completed else 0.0
    return {
        'available': len(rows),
        'completed': len(completed),
        'passed': len(passed),
        'failed': len(failed),
        'total_score': total_score,
        'average_score': round(average, 2),
    }


class AnalyticsService:
    """Rollup writers and dashboard reads."""
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.questions = repositories.QuestionRepository(session)
        self.mcq_repo = repositories.McqRepository(session)
        self.daily_repo = repositories.DailyTestRepository(session)
        self.grandtest_repo = repositories.GrandtestRepository(session)

    def _degrade(self, what: str, default, fn):
        try:
            return fn()
        except errors.StoreError as exc:
            logger.warning("analytics_degraded %s", json.dumps({'read': what, 'error': str(exc)}, ensure_ascii=True))
            return default

    # -- writers -----------------------------------------------------------

    def record_test_result(self, user_id: int, config_id: int, score: float) -> models.TestAnalytics:
        """Fold a completed MCQ score into the `(user, config)` rollup.

        The average is the cumulative mean; `first_passed_at` is set once,
        on the first score at or above the MCQ pass percentage.
        """
        now = self.clock()

        def apply(row: models.TestAnalytics):
            n = row.total_attempts or 0
            row.average_score = ((row.average_score or 0.0) * n + score) / (n + 1)
            row.best_score = score if n == 0 else max(row.best_score or 0.0, score)
            row.total_attempts = n + 1
            row.last_attempted_at = now
            if row.first_passed_at is None and score >= settings.MCQ_PASS_PERCENTAGE:
                row.first_passed_at = now
            row.updated_at = now

        return self.mcq_repo.upsert_analytics(user_id, config_id, apply)

    def refresh_daily_bucket(self, enrollment_id: int, course_id: int) -> Optional[models.DailyTestAnalytics]:
        """Recompute today's `(enrollment, date)` bucket from progress and attempts."""
        now = self.clock()
        today = now.date()
        start, end = repositories.day_bounds(today)

        def refresh():
            progress = self.daily_repo.list_progress(enrollment_id)
            touched_today = [p for p in progress if p.updated_at is not None and start <= p.updated_at < end]
            summary = _summarize_progress(touched_today)
            streak = progress[-1].streak_count if progress else 0
            attempts = self.daily_repo.list_attempts(enrollment_id, submitted_between=(start, end))
            minutes = sum(a.time_taken_minutes or 0 for a in attempts)

            def apply(row: models.DailyTestAnalytics):
                row.course_id = course_id
                row.tests_available = summary['available']
                row.tests_completed = summary['completed']
                row.tests_passed = summary['passed']
                row.tests_failed = summary['failed']
                row.total_score = summary['total_score']
                row.average_score = summary['average_score']
                row.total_time_minutes = minutes
                row.streak_count = streak

            return self.daily_repo.upsert_analytics(enrollment_id, today, course_id, apply)

        return self._degrade('daily_bucket', None, refresh)

    # -- MCQ reads ---------------------------------------------------------

    def get_user_test_analytics(self, user_id: int, config_id: Optional[int] = None) -> List[models.TestAnalytics]:
        return self._degrade('test_analytics', [], lambda: self.mcq_repo.list_analytics(user_id, config_id))

    def get_category_performance(self, user_id: int) -> List[dict]:
        """Category breakdown across all of a user's completed MCQ sessions."""
        def read():
            sessions = self.mcq_repo.list_sessions(user_id, status=models.SessionStatus.COMPLETED)
            responses = self.mcq_repo.list_responses([s.id for s in sessions])
            questions = {qid: self.questions.get(qid) for qid in {r.question_id for r in responses}}
            questions = {k: v for k, v in questions.items() if v is not None}
            names = self.questions.category_names(q.category_id for q in questions.values())
            return category_breakdown(responses, questions, names)

        return self._degrade('category_performance', [], read)

    # -- daily reads -------------------------------------------------------

    def get_daily_test_stats(self, enrollment_id: int) -> dict:
        default = {
            'total_tests': 0,
            'completed_tests': 0,
            'passed_tests': 0,
            'failed_tests': 0,
            'average_score': 0.0,
            'current_streak': 0,
            'longest_streak': 0,
            'total_time_minutes': 0,
        }

        def read():
            progress = self.daily_repo.list_progress(enrollment_id)
            summary = _summarize_progress(progress)
            attempts = self.daily_repo.list_attempts(enrollment_id)
            return {
                'total_tests': summary['available'],
                'completed_tests': summary['completed'],
                'passed_tests': summary['passed'],
                'failed_tests': summary['failed'],
                'average_score': summary['average_score'],
                'current_streak': compute_streak(progress),
                'longest_streak': longest_streak(progress),
                'total_time_minutes': sum(a.time_taken_minutes or 0 for a in attempts),
            }

        return self._degrade('daily_stats', default, read)

    def get_weekly_test_stats(self, enrollment_id: int) -> List[dict]:
        """Seven-day buckets covering the whole daily track."""
        weeks = math.ceil(settings.DAILY_TRACK_DAYS / 7)

        def bucketize(progress):
            out = []
            for week in range(1, weeks + 1):
                first, last = (week - 1) * 7 + 1, week * 7
                rows = [p for p in progress if first <= p.day_number <= last]
                summary = _summarize_progress(rows)
                out.append({
                    'week_number': week,
                    'tests_available': summary['available'],
                    'tests_completed': summary['completed'],
                    'tests_passed': summary['passed'],
                    'average_score': summary['average_score'],
                    'streak_count': summary['passed'],
                })
            return out

        return self._degrade('weekly_stats', bucketize([]),
                             lambda: bucketize(self.daily_repo.list_progress(enrollment_id)))

    def get_daily_analytics(self, enrollment_id: int, since: Optional[date] = None) -> List[models.DailyTestAnalytics]:
        return self._degrade('daily_analytics', [], lambda: self.daily_repo.list_analytics(enrollment_id, since))

    # -- grandtest reads ---------------------------------------------------

    def get_grandtest_stats(self, user_id: int, course_id: int) -> dict:
        default = {
            'total_attempts': 0,
            'passed_attempts': 0,
            'average_score': 0.0,
            'pass_rate': 0.0,
            'last_attempt_date': None,
            'can_retake': True,
            'next_available_date': None,
        }

        def read():
            attempts = self.grandtest_repo.list_attempts(user_id, course_id)
            finished = [a for a in attempts if a.status in models.ExamStatus.FINISHED]
            passed = [a for a in finished if a.passed]
            average = sum(a.score_percentage for a in finished) / len(finished) if finished else 0.0
            ends_at = cooldown_ends_at(self.grandtest_repo.last_finished(user_id, course_id))
            can_retake = ends_at is None or self.clock() >= ends_at
            return {
                'total_attempts': len(finished),
                'passed_attempts': len(passed),
                'average_score': average,
                'pass_rate': (len(passed) / len(finished)) * 100 if finished else 0.0,
                'last_attempt_date': attempts[0].started_at if attempts else None,
                'can_retake': can_retake,
                'next_available_date': None if can_retake else ends_at,
            }

        return self._degrade('grandtest_stats', default, read)
