import os

# keep the app's own engine off the filesystem during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import jwt
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from assessment import models, repositories
from assessment.config import settings


class FixedClock:
    """Callable clock the engines accept; tests move it explicitly."""
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Factory:
    """Small helpers that persist fixtures through the repositories."""
    def __init__(self, session: Session):
        self.session = session
        self.questions = repositories.QuestionRepository(session)
        self._n = 0

    def category(self, name: str) -> models.Category:
        return self.questions.save(models.Category(name=name))

    def option_question(self, category_id=None, difficulty="beginner", points=1,
                        options=(("A", True), ("B", False), ("C", False), ("D", False)), is_active=True):
        self._n += 1
        q = models.Question(
            kind=models.QuestionKind.OPTION_SET,
            category_id=category_id,
            difficulty=difficulty,
            points=points,
            question_text=f"Option question {self._n}",
            is_active=is_active,
        )
        rows = [models.QuestionOption(option_text=text, is_correct=correct, order_index=i)
                for i, (text, correct) in enumerate(options)]
        return self.questions.create(q, rows)

    def single_question(self, correct="A", points=1, difficulty="easy", category_id=None, is_active=True):
        self._n += 1
        q = models.Question(
            kind=models.QuestionKind.SINGLE_ANSWER,
            category_id=category_id,
            difficulty=difficulty,
            points=points,
            question_text=f"Single answer question {self._n}",
            correct_answer=correct,
            options={"A": "first", "B": "second", "C": "third", "D": "fourth"},
            is_active=is_active,
        )
        return self.questions.create(q)

    def mcq_config(self, total_questions=4, max_attempts=3, rules=()):
        config = self.questions.save(models.TestConfiguration(
            name="Placement test", total_questions=total_questions, max_attempts=max_attempts))
        for category_id, difficulty, count in rules:
            self.questions.save(models.TestQuestionRule(
                test_config_id=config.id, category_id=category_id, difficulty=difficulty, question_count=count))
        return config

    def daily_config(self, course_id=1, day_number=1, question_count=10, passing_score_percentage=70, questions=None):
        """A daily config with `questions` (default `question_count`) single-answer questions, correct answer 'A'."""
        config = self.questions.save(models.DailyTestConfig(
            course_id=course_id, day_number=day_number, title=f"Day {day_number}",
            question_count=question_count, passing_score_percentage=passing_score_percentage))
        qs = [self.single_question() for _ in range(question_count if questions is None else questions)]
        self.questions.save_all(
            models.DailyTestQuestion(test_config_id=config.id, question_id=q.id, order_index=i)
            for i, q in enumerate(qs, start=1))
        return config, qs

    def grandtest_pool(self, course_id=1, size=5):
        qs = [self.single_question() for _ in range(size)]
        self.questions.save_all(
            models.GrandtestQuestion(course_id=course_id, question_id=q.id, order_index=i)
            for i, q in enumerate(qs))
        return qs


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(eng)
    yield eng
    SQLModel.metadata.drop_all(eng)


@pytest.fixture
def db(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 10, 9, 0, 0))


@pytest.fixture
def make(db):
    return Factory(db)


@pytest.fixture
def token():
    def _token(user_id: int) -> str:
        return jwt.encode({"user_id": user_id}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return _token


@pytest.fixture
def client(db):
    """FastAPI test client bound to the per-test session."""
    from fastapi.testclient import TestClient
    from assessment.database import get_session
    from assessment.main import app

    def override_get_session():
        yield db

    app.dependency_overrides[get_session] = override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
