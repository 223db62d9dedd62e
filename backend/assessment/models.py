"""SQLModel data models.

This module defines the engine's database tables using SQLModel. Each
class maps to a table; composite unique constraints carry the
uniqueness rules the engines rely on for conflict detection.

Timestamps are naive UTC (see `utils.clock`) and declared through
`timestamp_field` so the column type never carries a zone.
"""

from typing import Optional, List
from datetime import date as date_type

from pydantic import NaiveDatetime
from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship

from .utils.clock import utcnow


def timestamp_field(**kwargs):
    """A naive UTC timestamp stored in a `DateTime` column without a zone."""
    return Field(sa_type=DateTime(timezone=False), **kwargs)


class QuestionKind:
    OPTION_SET = "option_set"
    SINGLE_ANSWER = "single_answer"


class QuestionType:
    SINGLE_CHOICE = "single_choice"
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    FILL_BLANK = "fill_blank"
    ESSAY = "essay"


class SessionStatus:
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class DayStatus:
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptStatus:
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    GRADED = "graded"


class ExamStatus:
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    TIMEOUT = "timeout"

    FINISHED = (COMPLETED, ABANDONED, TIMEOUT)


# -- question bank ---------------------------------------------------------

class Category(SQLModel, table=True):
    """A named question category used by selection rules and breakdowns."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)


class Question(SQLModel, table=True):
    """A question from either bank.

    `kind` selects the grading mode: `option_set` questions own
    `QuestionOption` rows, `single_answer` questions carry
    `correct_answer` and an optional `options` label map.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(default=QuestionKind.OPTION_SET, index=True)
    category_id: Optional[int] = Field(default=None, foreign_key='category.id', index=True)
    question_text: str
    question_type: str = QuestionType.SINGLE_CHOICE
    difficulty: Optional[str] = Field(default=None, index=True)
    points: int = 1
    explanation: Optional[str] = None
    correct_answer: Optional[str] = None
    options: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    is_active: bool = Field(default=True, index=True)
    created_at: NaiveDatetime = timestamp_field(default_factory=utcnow)
    option_rows: List['QuestionOption'] = Relationship(back_populates='question')


class QuestionOption(SQLModel, table=True):
    """A labelled option of an option-set question."""
    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key='question.id', index=True)
    option_text: str
    is_correct: bool = False
    order_index: int = 0
    question: Optional[Question] = Relationship(back_populates='option_rows')


# -- MCQ (pre-enrollment) tests --------------------------------------------

class TestConfiguration(SQLModel, table=True):
    """Shape of an ad-hoc MCQ test."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    total_questions: int = 25
    time_limit_minutes: int = 30
    passing_score_percentage: float = 70
    max_attempts: int = 3
    is_active: bool = True
    created_at: NaiveDatetime = timestamp_field(default_factory=utcnow)


class TestQuestionRule(SQLModel, table=True):
    """A `(category, difficulty, count)` quota for rule-weighted selection."""
    id: Optional[int] = Field(default=None, primary_key=True)
    test_config_id: int = Field(foreign_key='testconfiguration.id', index=True)
    category_id: int = Field(foreign_key='category.id')
    difficulty: str
    question_count: int
    points_weight: float = 1.0


class TestSession(SQLModel, table=True):
    """One MCQ attempt."""
    __table_args__ = (UniqueConstraint('user_id', 'test_config_id', 'attempt_number', name='uq_session_attempt'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    test_config_id: int = Field(foreign_key='testconfiguration.id', index=True)
    status: str = SessionStatus.IN_PROGRESS
    attempt_number: int
    questions_served: int = 0
    question_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    max_possible_score: int = 0
    total_score: int = 0
    percentage_score: float = 0.0
    time_taken_seconds: int = 0
    started_at: NaiveDatetime = timestamp_field(default_factory=utcnow)
    completed_at: Optional[NaiveDatetime] = timestamp_field(default=None)


class TestResponse(SQLModel, table=True):
    """An answer inside an MCQ session (append-only)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key='testsession.id', index=True)
    question_id: int = Field(foreign_key='question.id')
    selected_option_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    is_correct: bool = False
    points_earned: int = 0
    time_taken_seconds: int = 0
    answered_at: NaiveDatetime = timestamp_field(default_factory=utcnow)


class TestAnalytics(SQLModel, table=True):
    """Running per-`(user, config)` rollup of completed MCQ sessions."""
    __table_args__ = (UniqueConstraint('user_id', 'test_config_id', name='uq_analytics_user_config'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    test_config_id: int = Field(foreign_key='testconfiguration.id')
    total_attempts: int = 0
    best_score: float = 0.0
    average_score: float = 0.0
    first_passed_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    last_attempted_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    updated_at: NaiveDatetime = timestamp_field(default_factory=utcnow)


# -- daily tests -----------------------------------------------------------

class DailyTestConfig(SQLModel, table=True):
    """The test for one day of a course's daily track."""
    __table_args__ = (UniqueConstraint('course_id', 'day_number', name='uq_daily_config_course_day'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(index=True)
    day_number: int
    title: str
    description: Optional[str] = None
    test_type: str = "daily"
    question_count: int = 10
    time_limit_minutes: Optional[int] = None
    passing_score_percentage: float = 70
    # stored for display only; retakes are unlimited
    max_attempts: int = 3
    is_active: bool = True
    created_at: NaiveDatetime = timestamp_field(default_factory=utcnow)


class DailyTestQuestion(SQLModel, table=True):
    """Assignment of a question to a daily config at a fixed position."""
    __table_args__ = (
        UniqueConstraint('test_config_id', 'order_index', name='uq_daily_question_order'),
        UniqueConstraint('test_config_id', 'question_id', name='uq_daily_question_question'),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    test_config_id: int = Field(foreign_key='dailytestconfig.id', index=True)
    question_id: int = Field(foreign_key='question.id')
    order_index: int
    is_active: bool = True
    created_at: NaiveDatetime = timestamp_field(default_factory=utcnow)


class DailyTestAttempt(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint('enrollment_id', 'test_config_id', 'attempt_number', name='uq_daily_attempt_number'),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    enrollment_id: int = Field(index=True)
    user_id: Optional[int] = Field(default=None, index=True)
    test_config_id: int = Field(foreign_key='dailytestconfig.id', index=True)
    attempt_number: int
    day_completed: int
    status: str = AttemptStatus.IN_PROGRESS
    started_at: NaiveDatetime = timestamp_field(default_factory=utcnow)
    submitted_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    score: Optional[int] = None
    max_score: Optional[int] = None
    percentage_score: Optional[float] = None
    time_taken_minutes: Optional[int] = None


class DailyTestResponse(SQLModel, table=True):
    """Answer to one question in a daily attempt; revised in place."""
    __table_args__ = (UniqueConstraint('attempt_id', 'question_id', name='uq_daily_response'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key='dailytestattempt.id', index=True)
    question_id: int = Field(foreign_key='question.id')
    user_answer: Optional[str] = None
    is_correct: bool = False
    points_earned: int = 0
    time_spent_seconds: int = 0
    answered_at: NaiveDatetime = timestamp_field(default_factory=utcnow)


class DailyTestProgress(SQLModel, table=True):
    """Gating state for one `(enrollment, day)`."""
    __table_args__ = (UniqueConstraint('enrollment_id', 'day_number', name='uq_daily_progress'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    enrollment_id: int = Field(index=True)
    course_id: int
    day_number: int
    test_config_id: Optional[int] = Field(default=None, foreign_key='dailytestconfig.id')
    status: str = DayStatus.LOCKED
    unlocked_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    completed_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    best_score: Optional[float] = None
    best_attempt_id: Optional[int] = None
    total_attempts: int = 0
    streak_count: int = 0
    last_attempt_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    updated_at: NaiveDatetime = timestamp_field(default_factory=utcnow)


class DailyTestAnalytics(SQLModel, table=True):
    """Per-`(enrollment, date)` rollup bucket."""
    __table_args__ = (UniqueConstraint('enrollment_id', 'date', name='uq_daily_analytics'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    enrollment_id: int = Field(index=True)
    course_id: int
    date: date_type
    tests_available: int = 0
    tests_completed: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    total_score: float = 0.0
    average_score: float = 0.0
    total_time_minutes: int = 0
    streak_count: int = 0


# -- grandtest -------------------------------------------------------------

class GrandtestQuestion(SQLModel, table=True):
    """A question in a course's final exam pool at a fixed position."""
    __table_args__ = (UniqueConstraint('course_id', 'order_index', name='uq_grandtest_question_order'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(index=True)
    question_id: int = Field(foreign_key='question.id')
    order_index: int
    is_active: bool = True


class GrandtestAttempt(SQLModel, table=True):
    """One timed final exam; `passed` is only ever set at finalization."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    course_id: int = Field(index=True)
    enrollment_id: int = Field(index=True)
    status: str = ExamStatus.IN_PROGRESS
    started_at: NaiveDatetime = timestamp_field(default_factory=utcnow)
    completed_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    time_limit_minutes: int = 5
    total_questions: int = 5
    current_question_index: int = 0
    question_started_at: Optional[NaiveDatetime] = timestamp_field(default=None)
    questions_answered: int = 0
    correct_answers: int = 0
    score_percentage: float = 0.0
    passed: bool = False


class GrandtestResponse(SQLModel, table=True):
    """One served exam question; `user_answer` stays `None` until answered."""
    __table_args__ = (UniqueConstraint('attempt_id', 'question_id', name='uq_grandtest_response'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key='grandtestattempt.id', index=True)
    question_id: int = Field(foreign_key='question.id')
    order_index: int
    user_answer: Optional[str] = None
    is_correct: bool = False
    points_earned: int = 0
    time_spent_seconds: int = 0
    answered_at: Optional[NaiveDatetime] = timestamp_field(default=None)
