import random

import pytest

from assessment import errors, models, repositories
from assessment.services import mcq
from assessment.services.mcq import McqService


def _service(db, clock):
    return McqService(db, clock=clock, rng_factory=lambda: random.Random(5))


def _correct_ids(db, question_id):
    q = repositories.QuestionRepository(db).get(question_id)
    return [o.id for o in q.option_rows if o.is_correct]


def _wrong_ids(db, question_id):
    q = repositories.QuestionRepository(db).get(question_id)
    return [o.id for o in q.option_rows if not o.is_correct][:1]


def test_start_creates_first_attempt(make, db, clock):
    for _ in range(4):
        make.option_question(points=2)
    config = make.mcq_config(total_questions=4)

    started = _service(db, clock).start(7, config.id)

    s = started['session']
    assert s.attempt_number == 1
    assert s.status == models.SessionStatus.IN_PROGRESS
    assert s.questions_served == 4
    assert s.max_possible_score == 8
    assert len(started['questions']) == 4
    for payload in started['questions']:
        assert all('is_correct' not in o for o in payload['options'])


def test_complete_scores_only_answered_questions(make, db, clock):
    for _ in range(4):
        make.option_question()
    config = make.mcq_config(total_questions=4)
    svc = _service(db, clock)
    started = svc.start(7, config.id)
    sid = started['session'].id
    first, second = [p['id'] for p in started['questions'][:2]]

    svc.submit_answer(sid, first, _correct_ids(db, first), 12)
    svc.submit_answer(sid, second, _wrong_ids(db, second), 20)
    clock.advance(seconds=125)
    result = svc.complete(sid)

    assert result['session'].status == models.SessionStatus.COMPLETED
    assert result['session'].total_score == 1
    assert result['session'].percentage_score == pytest.approx(50.0)
    assert result['session'].time_taken_seconds == 125
    breakdown = result['score_breakdown']
    assert breakdown['total_questions'] == 4
    assert breakdown['correct_answers'] == 1
    assert breakdown['incorrect_answers'] == 1
    assert breakdown['skipped_questions'] == 2
    assert breakdown['time_taken'] == "2m 5s"

    rollup = repositories.McqRepository(db).get_analytics(7, config.id)
    assert rollup.total_attempts == 1
    assert rollup.average_score == pytest.approx(50.0)
    assert rollup.first_passed_at is None


def test_resubmitting_appends_rows_and_latest_answer_counts(make, db, clock):
    for _ in range(3):
        make.option_question()
    config = make.mcq_config(total_questions=3)
    svc = _service(db, clock)
    sid = svc.start(7, config.id)['session'].id
    qid = make.questions.fetch_active(1)[0].id

    svc.submit_answer(sid, qid, _wrong_ids(db, qid))
    clock.advance(seconds=5)
    svc.submit_answer(sid, qid, _correct_ids(db, qid))

    assert len(repositories.McqRepository(db).list_responses(sid)) == 2
    result = svc.complete(sid)
    assert result['session'].percentage_score == pytest.approx(100.0)
    assert len(result['responses']) == 1


def test_max_attempts_counts_completed_sessions(make, db, clock):
    for _ in range(3):
        make.option_question()
    config = make.mcq_config(total_questions=3, max_attempts=1)
    svc = _service(db, clock)
    sid = svc.start(7, config.id)['session'].id
    svc.complete(sid)

    with pytest.raises(errors.ValidationError):
        svc.start(7, config.id)
    # another user is unaffected
    assert svc.start(8, config.id)['session'].attempt_number == 1


def test_abandoned_session_number_is_skipped_on_retry(make, db, clock):
    for _ in range(3):
        make.option_question()
    config = make.mcq_config(total_questions=3)
    svc = _service(db, clock)

    abandoned = svc.start(7, config.id)['session']
    retried = svc.start(7, config.id)['session']

    assert abandoned.attempt_number == 1
    assert retried.attempt_number == 2


def test_submit_to_completed_session_is_rejected(make, db, clock):
    for _ in range(3):
        make.option_question()
    config = make.mcq_config(total_questions=3)
    svc = _service(db, clock)
    sid = svc.start(7, config.id)['session'].id
    svc.complete(sid)
    qid = make.questions.fetch_active(1)[0].id
    with pytest.raises(errors.ValidationError):
        svc.submit_answer(sid, qid, _correct_ids(db, qid))


def test_complete_twice_does_not_double_count(make, db, clock):
    for _ in range(3):
        make.option_question()
    config = make.mcq_config(total_questions=3)
    svc = _service(db, clock)
    sid = svc.start(7, config.id)['session'].id
    first = svc.complete(sid)
    second = svc.complete(sid)
    assert first['session'].completed_at == second['session'].completed_at
    assert repositories.McqRepository(db).get_analytics(7, config.id).total_attempts == 1


def test_unknown_ids_raise_not_found(make, db, clock):
    svc = _service(db, clock)
    with pytest.raises(errors.NotFoundError):
        svc.start(7, 999)
    with pytest.raises(errors.NotFoundError):
        svc.complete(999)


def test_recommendations():
    weak = [{'category_name': 'Tax', 'percentage': 40.0}, {'category_name': 'Ledgers', 'percentage': 100.0}]
    low = mcq.recommendations_for(50.0, weak)
    assert mcq.REVIEW_ADVICE in low
    assert "Focus on improving knowledge in: Tax" in low

    high = mcq.recommendations_for(95.0, [{'category_name': 'Tax', 'percentage': 95.0}])
    assert high == [mcq.EXCELLENT_ADVICE]


def test_result_carries_category_breakdown(make, db, clock):
    tax = make.category("Tax")
    for _ in range(2):
        make.option_question(category_id=tax.id)
    config = make.mcq_config(total_questions=2)
    svc = _service(db, clock)
    started = svc.start(7, config.id)
    sid = started['session'].id
    for p in started['questions']:
        svc.submit_answer(sid, p['id'], _correct_ids(db, p['id']))

    result = svc.complete(sid)
    assert result['category_performance'] == [
        {'category_name': 'Tax', 'questions_attempted': 2, 'correct_answers': 2, 'percentage': 100.0}
    ]
    assert mcq.EXCELLENT_ADVICE in result['recommendations']
    assert svc.get_user_test_history(7)[0].id == sid


def test_only_served_questions_can_be_answered(make, db, clock):
    for _ in range(3):
        make.option_question()
    config = make.mcq_config(total_questions=3)
    svc = _service(db, clock)
    started = svc.start(7, config.id)
    sid = started['session'].id
    assert sorted(started['session'].question_ids) == sorted(p['id'] for p in started['questions'])

    extra = make.option_question()
    with pytest.raises(errors.ValidationError):
        svc.submit_answer(sid, extra.id, _correct_ids(db, extra.id))
    assert repositories.McqRepository(db).list_responses(sid) == []
