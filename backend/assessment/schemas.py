"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and provide validation for
controller handlers and tests. Responses are plain dicts built by the
services.
"""

from pydantic import BaseModel, Field
from typing import List, Optional

from .config import settings


class StartMcqIn(BaseModel):
    """Start a new MCQ session for a test configuration."""
    test_config_id: int


class McqAnswerIn(BaseModel):
    """One answer inside an MCQ session; options are selected by id."""
    question_id: int
    selected_option_ids: List[int] = Field(default_factory=list)
    time_taken_seconds: int = Field(default=0, ge=0)


class StartDailyIn(BaseModel):
    enrollment_id: int
    day_number: int = Field(ge=1, le=settings.DAILY_TRACK_DAYS)
    test_config_id: int


class DailyAnswerIn(BaseModel):
    question_id: int
    user_answer: Optional[str] = None
    time_spent_seconds: int = Field(default=0, ge=0)


class DailyConfigIn(BaseModel):
    """Admin payload for creating the test of one course day."""
    course_id: int
    day_number: int = Field(ge=1, le=settings.DAILY_TRACK_DAYS)
    title: str
    description: Optional[str] = None
    test_type: str = "daily"
    question_count: int = Field(default=10, gt=0)
    time_limit_minutes: Optional[int] = Field(default=None, gt=0)
    passing_score_percentage: float = Field(default=70, ge=0, le=100)
    max_attempts: int = Field(default=3, gt=0)


class AssignQuestionIn(BaseModel):
    question_id: int
    order_index: int = Field(ge=0)


class BulkQuestionsIn(BaseModel):
    """Assign several questions at positions 1..n, in list order."""
    question_ids: List[int]


class ReorderIn(BaseModel):
    order_index: int = Field(ge=0)


class StartGrandtestIn(BaseModel):
    course_id: int
    enrollment_id: int


class GrandtestAnswerIn(BaseModel):
    """Answer to the current grandtest question.

    Elapsed time is measured server-side; clients only send the answer.
    """
    question_id: int
    user_answer: Optional[str] = None
