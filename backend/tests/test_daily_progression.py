import pytest

from assessment import errors, models, repositories
from assessment.services.daily import DailyTestService, next_available_day

ENROLLMENT = 11


def _take(svc, config, questions, correct, day=None):
    """Start an attempt and answer `correct` questions right, the rest wrong."""
    started = svc.start_attempt(ENROLLMENT, day or config.day_number, config.id)
    attempt_id = started['attempt'].id
    for i, q in enumerate(questions):
        svc.submit_answer(attempt_id, q.id, "A" if i < correct else "B", 10)
    return svc.complete_attempt(attempt_id)


def test_retake_until_unlock_bar_then_advance(make, db, clock):
    config, questions = make.daily_config(day_number=1, question_count=10, passing_score_percentage=70)
    svc = DailyTestService(db, clock=clock)
    assert svc.get_next_available_day(ENROLLMENT) == 1

    first = _take(svc, config, questions, correct=7)
    assert first['attempt'].status == models.AttemptStatus.SUBMITTED
    assert first['percentage'] == pytest.approx(70.0)
    assert first['passed'] is True
    assert first['progress'].status == models.DayStatus.FAILED
    assert svc.get_next_available_day(ENROLLMENT) == 1
    assert first['next_available_day'] == 1

    clock.advance(minutes=30)
    second = _take(svc, config, questions, correct=9)
    assert second['progress'].status == models.DayStatus.COMPLETED
    assert second['progress'].best_score == pytest.approx(90.0)
    assert second['progress'].best_attempt_id == second['attempt'].id
    assert second['progress'].total_attempts == 2
    assert svc.get_next_available_day(ENROLLMENT) == 2


def test_config_pass_and_unlock_bar_are_independent(make, db, clock):
    config, questions = make.daily_config(question_count=10, passing_score_percentage=70)
    svc = DailyTestService(db, clock=clock)
    result = _take(svc, config, questions, correct=8)
    assert result['passed'] is True
    assert result['progress'].status == models.DayStatus.FAILED


def test_unanswered_questions_count_against_score(make, db, clock):
    config, questions = make.daily_config(question_count=10)
    svc = DailyTestService(db, clock=clock)
    result = _take(svc, config, questions[:5], correct=5)
    assert result['score'] == 5
    assert result['max_score'] == 10
    assert result['percentage'] == pytest.approx(50.0)
    assert result['passed'] is False


def test_next_day_is_stable_without_new_attempts(make, db, clock):
    config, questions = make.daily_config()
    svc = DailyTestService(db, clock=clock)
    _take(svc, config, questions, correct=10)
    assert svc.get_next_available_day(ENROLLMENT) == svc.get_next_available_day(ENROLLMENT) == 2


def test_locked_day_cannot_be_started(make, db, clock):
    make.daily_config(day_number=1)
    day2, _ = make.daily_config(day_number=2)
    svc = DailyTestService(db, clock=clock)
    with pytest.raises(errors.ValidationError):
        svc.start_attempt(ENROLLMENT, 2, day2.id)


def test_day_must_match_config(make, db, clock):
    make.daily_config(day_number=1)
    other, _ = make.daily_config(day_number=3)
    svc = DailyTestService(db, clock=clock)
    with pytest.raises(errors.ValidationError):
        svc.start_attempt(ENROLLMENT, 1, other.id)
    with pytest.raises(errors.NotFoundError):
        svc.start_attempt(ENROLLMENT, 1, 999)


def test_reanswering_updates_the_same_response(make, db, clock):
    config, questions = make.daily_config(question_count=3)
    svc = DailyTestService(db, clock=clock)
    attempt_id = svc.start_attempt(ENROLLMENT, 1, config.id)['attempt'].id

    svc.submit_answer(attempt_id, questions[0].id, "B", 5)
    svc.submit_answer(attempt_id, questions[0].id, "A", 8)

    rows = repositories.DailyTestRepository(db).list_responses(attempt_id)
    assert len(rows) == 1
    assert rows[0].user_answer == "A"
    assert rows[0].is_correct is True
    assert rows[0].time_spent_seconds == 8


def test_answers_must_belong_to_an_open_attempt(make, db, clock):
    config, questions = make.daily_config(question_count=3)
    stray = make.single_question()
    svc = DailyTestService(db, clock=clock)
    attempt_id = svc.start_attempt(ENROLLMENT, 1, config.id)['attempt'].id

    with pytest.raises(errors.ValidationError):
        svc.submit_answer(attempt_id, stray.id, "A")

    svc.complete_attempt(attempt_id)
    with pytest.raises(errors.ValidationError):
        svc.submit_answer(attempt_id, questions[0].id, "A")
    with pytest.raises(errors.ValidationError):
        svc.complete_attempt(attempt_id)


def test_best_score_only_moves_up(make, db, clock):
    config, questions = make.daily_config(question_count=10)
    svc = DailyTestService(db, clock=clock)
    best = _take(svc, config, questions, correct=9)
    clock.advance(hours=1)
    worse = _take(svc, config, questions, correct=5)

    progress = worse['progress']
    assert progress.best_score == pytest.approx(90.0)
    assert progress.best_attempt_id == best['attempt'].id
    assert progress.status == models.DayStatus.COMPLETED
    assert worse['attempt'].attempt_number == 2


def test_streak_is_written_to_every_progress_row(make, db, clock):
    day1, q1 = make.daily_config(day_number=1, question_count=2)
    day2, q2 = make.daily_config(day_number=2, question_count=2)
    day3, q3 = make.daily_config(day_number=3, question_count=2)
    svc = DailyTestService(db, clock=clock)

    _take(svc, day1, q1, correct=2)
    _take(svc, day2, q2, correct=2)
    assert [p.streak_count for p in svc.get_progress(ENROLLMENT)] == [2, 2]

    _take(svc, day3, q3, correct=1)
    assert [p.streak_count for p in svc.get_progress(ENROLLMENT)] == [0, 0, 0]
    assert svc.get_next_available_day(ENROLLMENT) == 3


def test_completion_refreshes_todays_bucket(make, db, clock):
    config, questions = make.daily_config(question_count=10)
    svc = DailyTestService(db, clock=clock)
    clock.advance(minutes=4)
    _take(svc, config, questions, correct=7)

    buckets = repositories.DailyTestRepository(db).list_analytics(ENROLLMENT)
    assert len(buckets) == 1
    bucket = buckets[0]
    assert bucket.date == clock().date()
    assert bucket.course_id == config.course_id
    assert bucket.tests_completed == 1
    assert bucket.tests_failed == 1
    assert bucket.tests_passed == 0
    assert bucket.average_score == pytest.approx(70.0)


def test_progress_lookup_for_day(make, db, clock):
    config, questions = make.daily_config()
    svc = DailyTestService(db, clock=clock)
    assert svc.get_progress_for_day(ENROLLMENT, 1) is None
    svc.start_attempt(ENROLLMENT, 1, config.id)
    p = svc.get_progress_for_day(ENROLLMENT, 1)
    assert p.status == models.DayStatus.IN_PROGRESS
    assert p.total_attempts == 1
    assert p.last_attempt_at == clock()


def _progress(day, status, best=None):
    return models.DailyTestProgress(enrollment_id=1, course_id=1, day_number=day, status=status, best_score=best)


def test_next_available_day_rules():
    assert next_available_day([]) == 1
    assert next_available_day([_progress(1, models.DayStatus.COMPLETED, 95)]) == 2
    assert next_available_day([
        _progress(2, models.DayStatus.FAILED, 40),
        _progress(1, models.DayStatus.COMPLETED, 100),
    ]) == 2
    # a retake in flight keeps the day open
    assert next_available_day([_progress(1, models.DayStatus.IN_PROGRESS, 70)]) == 1
    assert next_available_day([
        _progress(1, models.DayStatus.COMPLETED, 90),
        _progress(2, models.DayStatus.IN_PROGRESS),
    ]) == 2
