"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (question
bank, MCQ sessions, daily tests, grandtest). Repositories return
SQLModel objects, commit where appropriate, and translate SQLAlchemy
failures into the `errors` taxonomy so engines never see driver
exceptions.
"""

import logging
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, select

from . import errors, models

logger = logging.getLogger("assessment.store")


class BaseRepository:
    """Shared session handling and error translation."""
    def __init__(self, session: Session):
        self.session = session

    def _all(self, stmt) -> list:
        try:
            return list(self.session.exec(stmt).all())
        except OperationalError as exc:
            raise errors.StoreUnavailableError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise errors.StoreError(str(exc)) from exc

    def _first(self, stmt):
        try:
            return self.session.exec(stmt).first()
        except OperationalError as exc:
            raise errors.StoreUnavailableError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise errors.StoreError(str(exc)) from exc

    def _get(self, model, pk):
        try:
            return self.session.get(model, pk)
        except OperationalError as exc:
            raise errors.StoreUnavailableError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise errors.StoreError(str(exc)) from exc

    def _commit(self):
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise errors.ConflictError(str(exc.orig)) from exc
        except OperationalError as exc:
            self.session.rollback()
            raise errors.StoreUnavailableError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise errors.StoreError(str(exc)) from exc

    def save(self, obj):
        """Persist `obj` (insert or update) and return the refreshed instance."""
        self.session.add(obj)
        self._commit()
        self.session.refresh(obj)
        return obj

    def save_all(self, objs: Iterable) -> None:
        """Persist several rows in one commit."""
        self.session.add_all(list(objs))
        self._commit()

    def delete(self, obj) -> None:
        self.session.delete(obj)
        self._commit()

    def compare_and_set(self, model, pk: int, expected: dict, values: dict, commit: bool = True) -> bool:
        """Atomically update row `pk` only if its columns still match `expected`.

        Returns False (after rolling back) when another writer got there
        first. With `commit=False` the update joins the caller's pending
        transaction.
        """
        stmt = update(model).where(model.id == pk, *[getattr(model, k) == v for k, v in expected.items()]).values(**values)
        try:
            result = self.session.execute(stmt)
        except OperationalError as exc:
            self.session.rollback()
            raise errors.StoreUnavailableError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise errors.StoreError(str(exc)) from exc
        if result.rowcount != 1:
            self.session.rollback()
            return False
        if commit:
            self._commit()
        return True

    def _upsert(self, stmt, create: Callable[[], object], apply: Callable[[object], None]):
        """Update the row matched by `stmt`, or insert one built by `create`.

        The insert is optimistic: if a concurrent writer inserts the same
        key first, the conflict is caught, the row re-read and the update
        applied to it instead. A second conflict propagates.
        """
        existing = self._first(stmt)
        if existing is None:
            row = create()
            apply(row)
            try:
                return self.save(row)
            except errors.ConflictError:
                existing = self._first(stmt)
                if existing is None:
                    raise
                logger.info("upsert_conflict_retry %s", type(existing).__name__)
        apply(existing)
        return self.save(existing)


class QuestionRepository(BaseRepository):
    """Read access to the question bank.

    Every `fetch_*` method only returns active questions; `get` is the
    unfiltered primary-key lookup used when grading already-served
    questions.
    """

    def create(self, question: models.Question, options: Optional[List[models.QuestionOption]] = None) -> models.Question:
        """Create a question and attach provided options.

        The question is committed first to obtain an id, then the id is
        assigned to each option before committing them.
        """
        self.save(question)
        for o in options or []:
            o.question_id = question.id
            self.session.add(o)
        self._commit()
        self.session.refresh(question)
        return question

    def get(self, question_id: int) -> Optional[models.Question]:
        """Fetch a question by id regardless of `is_active`."""
        return self._get(models.Question, question_id)

    def fetch_by_id(self, question_id: int) -> Optional[models.Question]:
        """Return an active question by id or `None`."""
        stmt = select(models.Question).where(models.Question.id == question_id, models.Question.is_active == True)  # noqa: E712
        return self._first(stmt)

    def fetch_by_category_and_difficulty(self, category_id: int, difficulty: str, limit: int) -> List[models.Question]:
        """Return up to `limit` active questions for a category/difficulty slice."""
        stmt = (
            select(models.Question)
            .where(
                models.Question.category_id == category_id,
                models.Question.difficulty == difficulty,
                models.Question.is_active == True,  # noqa: E712
            )
            .order_by(models.Question.id)
            .limit(limit)
        )
        return self._all(stmt)

    def fetch_active(self, limit: int, exclude_ids: Iterable[int] = ()) -> List[models.Question]:
        """Return up to `limit` active questions whose id is not in `exclude_ids`."""
        stmt = select(models.Question).where(models.Question.is_active == True)  # noqa: E712
        exclude = list(exclude_ids)
        if exclude:
            stmt = stmt.where(models.Question.id.not_in(exclude))
        return self._all(stmt.order_by(models.Question.id).limit(limit))

    def fetch_many(self, question_ids: Iterable[int]) -> Dict[int, models.Question]:
        """Map id to active question for the given ids; inactive ones are absent."""
        ids = list(question_ids)
        if not ids:
            return {}
        stmt = select(models.Question).where(models.Question.id.in_(ids), models.Question.is_active == True)  # noqa: E712
        return {q.id: q for q in self._all(stmt)}

    def list_active(self) -> List[models.Question]:
        """All active questions, newest first."""
        stmt = select(models.Question).where(models.Question.is_active == True).order_by(  # noqa: E712
            models.Question.created_at.desc(), models.Question.id.desc())
        return self._all(stmt)

    def category_names(self, category_ids: Iterable[int]) -> Dict[int, str]:
        """Map category id to name for the given ids."""
        ids = {c for c in category_ids if c is not None}
        if not ids:
            return {}
        rows = self._all(select(models.Category).where(models.Category.id.in_(ids)))
        return {c.id: c.name for c in rows}


class McqRepository(BaseRepository):
    """Test configurations, sessions, responses and their rollups."""

    def list_configurations(self) -> List[models.TestConfiguration]:
        stmt = select(models.TestConfiguration).where(models.TestConfiguration.is_active == True).order_by(  # noqa: E712
            models.TestConfiguration.created_at.desc())
        return self._all(stmt)

    def get_configuration(self, config_id: int) -> Optional[models.TestConfiguration]:
        """Return an active configuration or `None`."""
        stmt = select(models.TestConfiguration).where(
            models.TestConfiguration.id == config_id, models.TestConfiguration.is_active == True)  # noqa: E712
        return self._first(stmt)

    def list_rules(self, config_id: int) -> List[models.TestQuestionRule]:
        stmt = select(models.TestQuestionRule).where(models.TestQuestionRule.test_config_id == config_id).order_by(
            models.TestQuestionRule.id)
        return self._all(stmt)

    def get_analytics(self, user_id: int, config_id: int) -> Optional[models.TestAnalytics]:
        stmt = select(models.TestAnalytics).where(
            models.TestAnalytics.user_id == user_id, models.TestAnalytics.test_config_id == config_id)
        return self._first(stmt)

    def list_analytics(self, user_id: int, config_id: Optional[int] = None) -> List[models.TestAnalytics]:
        stmt = select(models.TestAnalytics).where(models.TestAnalytics.user_id == user_id)
        if config_id is not None:
            stmt = stmt.where(models.TestAnalytics.test_config_id == config_id)
        return self._all(stmt.order_by(models.TestAnalytics.updated_at.desc()))

    def upsert_analytics(self, user_id: int, config_id: int, apply: Callable[[models.TestAnalytics], None]) -> models.TestAnalytics:
        stmt = select(models.TestAnalytics).where(
            models.TestAnalytics.user_id == user_id, models.TestAnalytics.test_config_id == config_id)
        return self._upsert(stmt, lambda: models.TestAnalytics(user_id=user_id, test_config_id=config_id), apply)

    def max_attempt_number(self, user_id: int, config_id: int) -> int:
        stmt = select(func.max(models.TestSession.attempt_number)).where(
            models.TestSession.user_id == user_id, models.TestSession.test_config_id == config_id)
        return self._first(stmt) or 0

    def get_session(self, session_id: int) -> Optional[models.TestSession]:
        return self._get(models.TestSession, session_id)

    def list_sessions(self, user_id: int, config_id: Optional[int] = None,
                      status: Optional[str] = None) -> List[models.TestSession]:
        """Sessions for a user, newest first."""
        stmt = select(models.TestSession).where(models.TestSession.user_id == user_id)
        if config_id is not None:
            stmt = stmt.where(models.TestSession.test_config_id == config_id)
        if status is not None:
            stmt = stmt.where(models.TestSession.status == status)
        return self._all(stmt.order_by(models.TestSession.started_at.desc(), models.TestSession.id.desc()))

    def list_responses(self, session_ids) -> List[models.TestResponse]:
        """Responses for one session id or a collection of ids, in answer order."""
        ids = [session_ids] if isinstance(session_ids, int) else list(session_ids)
        if not ids:
            return []
        stmt = select(models.TestResponse).where(models.TestResponse.session_id.in_(ids)).order_by(
            models.TestResponse.answered_at, models.TestResponse.id)
        return self._all(stmt)


class DailyTestRepository(BaseRepository):
    """Daily test configs, assignments, attempts, responses, progress and buckets."""

    # configs

    def list_configs(self, course_id: int) -> List[models.DailyTestConfig]:
        stmt = select(models.DailyTestConfig).where(
            models.DailyTestConfig.course_id == course_id, models.DailyTestConfig.is_active == True  # noqa: E712
        ).order_by(models.DailyTestConfig.day_number)
        return self._all(stmt)

    def get_config(self, config_id: int) -> Optional[models.DailyTestConfig]:
        """Return an active config or `None`."""
        stmt = select(models.DailyTestConfig).where(
            models.DailyTestConfig.id == config_id, models.DailyTestConfig.is_active == True)  # noqa: E712
        return self._first(stmt)

    def load_config(self, config_id: int) -> Optional[models.DailyTestConfig]:
        """Fetch a config regardless of `is_active`, for scoring started attempts."""
        return self._get(models.DailyTestConfig, config_id)

    def get_config_by_day(self, course_id: int, day_number: int) -> Optional[models.DailyTestConfig]:
        stmt = select(models.DailyTestConfig).where(
            models.DailyTestConfig.course_id == course_id,
            models.DailyTestConfig.day_number == day_number,
            models.DailyTestConfig.is_active == True,  # noqa: E712
        )
        return self._first(stmt)

    def max_day_number(self, course_id: int) -> int:
        stmt = select(func.max(models.DailyTestConfig.day_number)).where(models.DailyTestConfig.course_id == course_id)
        return self._first(stmt) or 0

    # question assignments

    def list_assignments(self, config_id: int) -> List[models.DailyTestQuestion]:
        stmt = select(models.DailyTestQuestion).where(
            models.DailyTestQuestion.test_config_id == config_id,
            models.DailyTestQuestion.is_active == True,  # noqa: E712
        ).order_by(models.DailyTestQuestion.order_index)
        return self._all(stmt)

    def get_assignment(self, assignment_id: int) -> Optional[models.DailyTestQuestion]:
        return self._get(models.DailyTestQuestion, assignment_id)

    def find_assignment(self, config_id: int, question_id: int,
                        order_index: Optional[int] = None) -> Optional[models.DailyTestQuestion]:
        """Find an active assignment of `question_id`, optionally at `order_index`."""
        stmt = select(models.DailyTestQuestion).where(
            models.DailyTestQuestion.test_config_id == config_id,
            models.DailyTestQuestion.question_id == question_id,
            models.DailyTestQuestion.is_active == True,  # noqa: E712
        )
        if order_index is not None:
            stmt = stmt.where(models.DailyTestQuestion.order_index == order_index)
        return self._first(stmt)

    def max_order_index(self, config_id: int) -> int:
        stmt = select(func.max(models.DailyTestQuestion.order_index)).where(
            models.DailyTestQuestion.test_config_id == config_id)
        return self._first(stmt) or 0

    # attempts and responses

    def max_attempt_number(self, enrollment_id: int, config_id: int) -> int:
        stmt = select(func.max(models.DailyTestAttempt.attempt_number)).where(
            models.DailyTestAttempt.enrollment_id == enrollment_id,
            models.DailyTestAttempt.test_config_id == config_id,
        )
        return self._first(stmt) or 0

    def get_attempt(self, attempt_id: int) -> Optional[models.DailyTestAttempt]:
        return self._get(models.DailyTestAttempt, attempt_id)

    def list_attempts(self, enrollment_id: int, submitted_between: Optional[tuple] = None) -> List[models.DailyTestAttempt]:
        stmt = select(models.DailyTestAttempt).where(models.DailyTestAttempt.enrollment_id == enrollment_id)
        if submitted_between is not None:
            start, end = submitted_between
            stmt = stmt.where(models.DailyTestAttempt.submitted_at >= start, models.DailyTestAttempt.submitted_at < end)
        return self._all(stmt.order_by(models.DailyTestAttempt.started_at, models.DailyTestAttempt.id))

    def list_responses(self, attempt_id: int) -> List[models.DailyTestResponse]:
        stmt = select(models.DailyTestResponse).where(models.DailyTestResponse.attempt_id == attempt_id).order_by(
            models.DailyTestResponse.id)
        return self._all(stmt)

    def upsert_response(self, attempt_id: int, question_id: int,
                        apply: Callable[[models.DailyTestResponse], None]) -> models.DailyTestResponse:
        """Insert or revise the single response for `(attempt, question)`."""
        stmt = select(models.DailyTestResponse).where(
            models.DailyTestResponse.attempt_id == attempt_id,
            models.DailyTestResponse.question_id == question_id,
        )
        return self._upsert(stmt, lambda: models.DailyTestResponse(attempt_id=attempt_id, question_id=question_id), apply)

    # progress

    def list_progress(self, enrollment_id: int, descending: bool = False) -> List[models.DailyTestProgress]:
        order = models.DailyTestProgress.day_number.desc() if descending else models.DailyTestProgress.day_number
        stmt = select(models.DailyTestProgress).where(models.DailyTestProgress.enrollment_id == enrollment_id).order_by(order)
        return self._all(stmt)

    def get_progress(self, enrollment_id: int, day_number: int) -> Optional[models.DailyTestProgress]:
        stmt = select(models.DailyTestProgress).where(
            models.DailyTestProgress.enrollment_id == enrollment_id,
            models.DailyTestProgress.day_number == day_number,
        )
        return self._first(stmt)

    def upsert_progress(self, enrollment_id: int, day_number: int, course_id: int,
                        apply: Callable[[models.DailyTestProgress], None]) -> models.DailyTestProgress:
        """Create or update the progress row keyed by `(enrollment, day)`."""
        stmt = select(models.DailyTestProgress).where(
            models.DailyTestProgress.enrollment_id == enrollment_id,
            models.DailyTestProgress.day_number == day_number,
        )

        def create():
            return models.DailyTestProgress(enrollment_id=enrollment_id, day_number=day_number, course_id=course_id)

        return self._upsert(stmt, create, apply)

    # analytics buckets

    def upsert_analytics(self, enrollment_id: int, day: date, course_id: int,
                         apply: Callable[[models.DailyTestAnalytics], None]) -> models.DailyTestAnalytics:
        stmt = select(models.DailyTestAnalytics).where(
            models.DailyTestAnalytics.enrollment_id == enrollment_id,
            models.DailyTestAnalytics.date == day,
        )

        def create():
            return models.DailyTestAnalytics(enrollment_id=enrollment_id, date=day, course_id=course_id)

        return self._upsert(stmt, create, apply)

    def list_analytics(self, enrollment_id: int, since: Optional[date] = None) -> List[models.DailyTestAnalytics]:
        stmt = select(models.DailyTestAnalytics).where(models.DailyTestAnalytics.enrollment_id == enrollment_id)
        if since is not None:
            stmt = stmt.where(models.DailyTestAnalytics.date >= since)
        return self._all(stmt.order_by(models.DailyTestAnalytics.date))


class GrandtestRepository(BaseRepository):
    """Final exam pool, attempts and responses."""

    def list_pool(self, course_id: int) -> List[models.GrandtestQuestion]:
        """Active pool entries whose question is also active, by `order_index`."""
        stmt = (
            select(models.GrandtestQuestion)
            .join(models.Question, models.Question.id == models.GrandtestQuestion.question_id)
            .where(
                models.GrandtestQuestion.course_id == course_id,
                models.GrandtestQuestion.is_active == True,  # noqa: E712
                models.Question.is_active == True,  # noqa: E712
            )
            .order_by(models.GrandtestQuestion.order_index)
        )
        return self._all(stmt)

    def get_attempt(self, attempt_id: int) -> Optional[models.GrandtestAttempt]:
        return self._get(models.GrandtestAttempt, attempt_id)

    def list_attempts(self, user_id: int, course_id: Optional[int] = None) -> List[models.GrandtestAttempt]:
        """Attempts for a user, newest first."""
        stmt = select(models.GrandtestAttempt).where(models.GrandtestAttempt.user_id == user_id)
        if course_id is not None:
            stmt = stmt.where(models.GrandtestAttempt.course_id == course_id)
        return self._all(stmt.order_by(models.GrandtestAttempt.started_at.desc(), models.GrandtestAttempt.id.desc()))

    def in_progress_for_enrollment(self, enrollment_id: int) -> List[models.GrandtestAttempt]:
        stmt = select(models.GrandtestAttempt).where(
            models.GrandtestAttempt.enrollment_id == enrollment_id,
            models.GrandtestAttempt.status == models.ExamStatus.IN_PROGRESS,
        )
        return self._all(stmt)

    def current_attempt(self, user_id: int, course_id: int) -> Optional[models.GrandtestAttempt]:
        stmt = select(models.GrandtestAttempt).where(
            models.GrandtestAttempt.user_id == user_id,
            models.GrandtestAttempt.course_id == course_id,
            models.GrandtestAttempt.status == models.ExamStatus.IN_PROGRESS,
        ).order_by(models.GrandtestAttempt.started_at.desc())
        return self._first(stmt)

    def last_finished(self, user_id: int, course_id: int) -> Optional[models.GrandtestAttempt]:
        """Most recently finalized attempt (by `completed_at`)."""
        stmt = select(models.GrandtestAttempt).where(
            models.GrandtestAttempt.user_id == user_id,
            models.GrandtestAttempt.course_id == course_id,
            models.GrandtestAttempt.completed_at != None,  # noqa: E711
        ).order_by(models.GrandtestAttempt.completed_at.desc())
        return self._first(stmt)

    def list_responses(self, attempt_id: int) -> List[models.GrandtestResponse]:
        stmt = select(models.GrandtestResponse).where(models.GrandtestResponse.attempt_id == attempt_id).order_by(
            models.GrandtestResponse.order_index)
        return self._all(stmt)


def day_bounds(day: date):
    """Half-open `[start, end)` naive datetimes covering `day`."""
    start = datetime.combine(day, datetime.min.time())
    return start, datetime.combine(date.fromordinal(day.toordinal() + 1), datetime.min.time())
