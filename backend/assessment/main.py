"""FastAPI application entrypoint and HTTP controllers.

Controllers are intentionally thin: they resolve the caller from the
bearer token, delegate to the engine services and return JSON. Engine
errors are mapped onto status codes by the exception handlers below.

Endpoints implemented:
- GET /health
- /mcq/...        configs, sessions (start/answer/complete), history, analytics
- /daily/...      next day, attempts (start/answer/complete), configs, progress, stats
- /admin/...      daily config creation and question assignment
- /grandtest/...  attempts (start/answer/timer/complete), current, eligibility, stats, history
"""

from datetime import date
from typing import Optional
import json
import logging
import time
import uuid

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session, SQLModel

from . import errors, models, repositories
from .auth import get_current_user_id
from .config import settings
from .database import create_db_and_tables, get_session
from .schemas import (
    AssignQuestionIn,
    BulkQuestionsIn,
    DailyAnswerIn,
    DailyConfigIn,
    GrandtestAnswerIn,
    McqAnswerIn,
    ReorderIn,
    StartDailyIn,
    StartGrandtestIn,
    StartMcqIn,
)
from .services.analytics import AnalyticsService
from .services.daily import DailyTestService
from .services.grandtest import GrandtestService
from .services.mcq import McqService

app = FastAPI(title="Assessment & Progression API")
logger = logging.getLogger("assessment.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'detail': str(exc)})


@app.exception_handler(errors.NotFoundError)
def not_found_handler(request: Request, exc: errors.NotFoundError):
    return _error_response(404, exc)


@app.exception_handler(errors.ValidationError)
def validation_handler(request: Request, exc: errors.ValidationError):
    return _error_response(400, exc)


@app.exception_handler(errors.ConflictError)
def conflict_handler(request: Request, exc: errors.ConflictError):
    return _error_response(409, exc)


@app.exception_handler(errors.StoreUnavailableError)
def store_unavailable_handler(request: Request, exc: errors.StoreUnavailableError):
    logger.warning("store_unavailable %s", json.dumps({'path': request.url.path, 'error': str(exc)}, ensure_ascii=True))
    return _error_response(503, exc)


@app.exception_handler(errors.StoreError)
def store_error_handler(request: Request, exc: errors.StoreError):
    logger.error("store_error %s", json.dumps({'path': request.url.path, 'error': str(exc)}, ensure_ascii=True))
    return _error_response(500, exc)


def _jsonable(value):
    """Turn service results into plain data while the session is still open.

    Table rows are read column by column so attributes expired by a
    commit are reloaded instead of silently dropped.
    """
    if isinstance(value, SQLModel) and hasattr(value, '__table__'):
        return {c.name: getattr(value, c.name) for c in value.__table__.columns}
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _request_certificate(attempt: models.GrandtestAttempt) -> None:
    """Hand a passed grandtest to the certificate service."""
    logger.info("certificate_requested %s", json.dumps({
        'attempt_id': attempt.id, 'user_id': attempt.user_id,
        'course_id': attempt.course_id, 'enrollment_id': attempt.enrollment_id,
    }, ensure_ascii=True))


def _own_mcq_session(db: Session, session_id: int, user_id: int) -> None:
    s = repositories.McqRepository(db).get_session(session_id)
    if s is None or s.user_id != user_id:
        raise HTTPException(status_code=404, detail='test session not found')


def _own_daily_attempt(db: Session, attempt_id: int, user_id: int) -> None:
    a = repositories.DailyTestRepository(db).get_attempt(attempt_id)
    if a is None or a.user_id != user_id:
        raise HTTPException(status_code=404, detail='daily test attempt not found')


def _own_grandtest_attempt(db: Session, attempt_id: int, user_id: int) -> None:
    a = repositories.GrandtestRepository(db).get_attempt(attempt_id)
    if a is None or a.user_id != user_id:
        raise HTTPException(status_code=404, detail='grandtest attempt not found')


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


# -- MCQ ---------------------------------------------------------------------

@app.get('/mcq/configs')
def list_mcq_configs(db: Session = Depends(get_session)):
    return _jsonable(McqService(db).get_test_configurations())


@app.get('/mcq/configs/{config_id}')
def get_mcq_config(config_id: int, db: Session = Depends(get_session)):
    return _jsonable(McqService(db).get_test_configuration(config_id))


@app.post('/mcq/sessions')
def start_mcq_session(payload: StartMcqIn, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    """Start a session; the response carries the shuffled questions without answers."""
    return _jsonable(McqService(db).start(user_id, payload.test_config_id))


@app.post('/mcq/sessions/{session_id}/answers')
def submit_mcq_answer(session_id: int, payload: McqAnswerIn, db: Session = Depends(get_session),
                      user_id: int = Depends(get_current_user_id)):
    _own_mcq_session(db, session_id, user_id)
    r = McqService(db).submit_answer(session_id, payload.question_id, payload.selected_option_ids,
                                     payload.time_taken_seconds)
    return {'id': r.id, 'question_id': r.question_id, 'recorded': True}


@app.post('/mcq/sessions/{session_id}/complete')
def complete_mcq_session(session_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    _own_mcq_session(db, session_id, user_id)
    return _jsonable(McqService(db).complete(session_id))


@app.get('/mcq/history')
def mcq_history(test_config_id: Optional[int] = None, db: Session = Depends(get_session),
                user_id: int = Depends(get_current_user_id)):
    return _jsonable(McqService(db).get_user_test_history(user_id, test_config_id))


@app.get('/mcq/analytics')
def mcq_analytics(test_config_id: Optional[int] = None, db: Session = Depends(get_session),
                  user_id: int = Depends(get_current_user_id)):
    svc = AnalyticsService(db)
    return {
        'tests': _jsonable(svc.get_user_test_analytics(user_id, test_config_id)),
        'category_performance': svc.get_category_performance(user_id),
    }


# -- daily tests -------------------------------------------------------------

@app.get('/daily/configs')
def list_daily_configs(course_id: int, db: Session = Depends(get_session)):
    return _jsonable(DailyTestService(db).get_daily_test_configs(course_id))


@app.get('/daily/configs/{config_id}')
def get_daily_config(config_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return _jsonable(DailyTestService(db).get_daily_test_config(config_id))


@app.get('/daily/courses/{course_id}/days/{day_number}')
def get_daily_config_by_day(course_id: int, day_number: int, db: Session = Depends(get_session),
                            user_id: int = Depends(get_current_user_id)):
    return _jsonable(DailyTestService(db).get_daily_test_config_by_day(course_id, day_number))


@app.get('/daily/enrollments/{enrollment_id}/next-day')
def daily_next_day(enrollment_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return {'enrollment_id': enrollment_id, 'next_available_day': DailyTestService(db).get_next_available_day(enrollment_id)}


@app.get('/daily/enrollments/{enrollment_id}/progress')
def daily_progress(enrollment_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return _jsonable(DailyTestService(db).get_progress(enrollment_id))


@app.get('/daily/enrollments/{enrollment_id}/progress/{day_number}')
def daily_progress_for_day(enrollment_id: int, day_number: int, db: Session = Depends(get_session),
                           user_id: int = Depends(get_current_user_id)):
    p = DailyTestService(db).get_progress_for_day(enrollment_id, day_number)
    if p is None:
        raise HTTPException(status_code=404, detail='no progress for this day')
    return _jsonable(p)


@app.get('/daily/enrollments/{enrollment_id}/stats')
def daily_stats(enrollment_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return AnalyticsService(db).get_daily_test_stats(enrollment_id)


@app.get('/daily/enrollments/{enrollment_id}/weekly')
def daily_weekly(enrollment_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return AnalyticsService(db).get_weekly_test_stats(enrollment_id)


@app.get('/daily/enrollments/{enrollment_id}/analytics')
def daily_analytics(enrollment_id: int, since: Optional[date] = None, db: Session = Depends(get_session),
                    user_id: int = Depends(get_current_user_id)):
    return _jsonable(AnalyticsService(db).get_daily_analytics(enrollment_id, since))


@app.post('/daily/attempts')
def start_daily_attempt(payload: StartDailyIn, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    """Start a day's test; rejected unless the day is unlocked for the enrollment."""
    return _jsonable(DailyTestService(db).start_attempt(
        payload.enrollment_id, payload.day_number, payload.test_config_id, user_id=user_id))


@app.post('/daily/attempts/{attempt_id}/answers')
def submit_daily_answer(attempt_id: int, payload: DailyAnswerIn, db: Session = Depends(get_session),
                        user_id: int = Depends(get_current_user_id)):
    _own_daily_attempt(db, attempt_id, user_id)
    r = DailyTestService(db).submit_answer(attempt_id, payload.question_id, payload.user_answer,
                                           payload.time_spent_seconds)
    return {'id': r.id, 'question_id': r.question_id, 'recorded': True}


@app.post('/daily/attempts/{attempt_id}/complete')
def complete_daily_attempt(attempt_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    _own_daily_attempt(db, attempt_id, user_id)
    return _jsonable(DailyTestService(db).complete_attempt(attempt_id))


# -- daily test administration -----------------------------------------------

@app.post('/admin/daily-configs')
def create_daily_config(payload: DailyConfigIn, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    """Create a day's config; a taken day number is renumbered rather than rejected."""
    c = DailyTestService(db).create_daily_test_config(**payload.model_dump())
    return _jsonable(c)


@app.get('/admin/questions')
def available_questions(db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    qs = DailyTestService(db).get_available_questions()
    return [
        {'id': q.id, 'kind': q.kind, 'question_text': q.question_text, 'difficulty': q.difficulty,
         'question_type': q.question_type, 'category_id': q.category_id}
        for q in qs
    ]


@app.get('/admin/daily-configs/{config_id}/questions')
def assigned_questions(config_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    rows = DailyTestService(db).get_assigned_questions(config_id)
    return [
        {'assignment': _jsonable(r['assignment']),
         'question_text': r['question'].question_text if r['question'] else None}
        for r in rows
    ]


@app.post('/admin/daily-configs/{config_id}/questions')
def assign_question(config_id: int, payload: AssignQuestionIn, db: Session = Depends(get_session),
                    user_id: int = Depends(get_current_user_id)):
    a = DailyTestService(db).assign_question_to_test(config_id, payload.question_id, payload.order_index)
    return _jsonable(a)


@app.post('/admin/daily-configs/{config_id}/questions/bulk')
def bulk_assign_questions(config_id: int, payload: BulkQuestionsIn, db: Session = Depends(get_session),
                          user_id: int = Depends(get_current_user_id)):
    return _jsonable(DailyTestService(db).add_questions_to_daily_test(config_id, payload.question_ids))


@app.patch('/admin/daily-questions/{assignment_id}')
def reorder_question(assignment_id: int, payload: ReorderIn, db: Session = Depends(get_session),
                     user_id: int = Depends(get_current_user_id)):
    return _jsonable(DailyTestService(db).update_question_order(assignment_id, payload.order_index))


@app.delete('/admin/daily-questions/{assignment_id}')
def remove_question(assignment_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    DailyTestService(db).remove_question_from_test(assignment_id)
    return {'status': 'ok'}


# -- grandtest ---------------------------------------------------------------

def _grandtest(db: Session) -> GrandtestService:
    return GrandtestService(db, on_passed=_request_certificate)


@app.post('/grandtest/attempts')
def start_grandtest(payload: StartGrandtestIn, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return _jsonable(_grandtest(db).start(user_id, payload.course_id, payload.enrollment_id))


@app.get('/grandtest/current')
def current_grandtest(course_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return _jsonable(_grandtest(db).get_current_attempt(user_id, course_id))


@app.get('/grandtest/eligibility')
def grandtest_eligibility(course_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return {'course_id': course_id, 'can_take': _grandtest(db).can_take(user_id, course_id)}


@app.post('/grandtest/attempts/{attempt_id}/answers')
def submit_grandtest_answer(attempt_id: int, payload: GrandtestAnswerIn, db: Session = Depends(get_session),
                            user_id: int = Depends(get_current_user_id)):
    _own_grandtest_attempt(db, attempt_id, user_id)
    return _jsonable(_grandtest(db).submit_answer(attempt_id, payload.question_id, payload.user_answer))


@app.get('/grandtest/attempts/{attempt_id}/timer')
def grandtest_timer(attempt_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    _own_grandtest_attempt(db, attempt_id, user_id)
    return _jsonable(_grandtest(db).get_timer(attempt_id))


@app.post('/grandtest/attempts/{attempt_id}/complete')
def complete_grandtest(attempt_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    _own_grandtest_attempt(db, attempt_id, user_id)
    return _jsonable(_grandtest(db).complete(attempt_id))


@app.get('/grandtest/stats')
def grandtest_stats(course_id: int, db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return AnalyticsService(db).get_grandtest_stats(user_id, course_id)


@app.get('/grandtest/history')
def grandtest_history(db: Session = Depends(get_session), user_id: int = Depends(get_current_user_id)):
    return _jsonable(_grandtest(db).get_history(user_id))
