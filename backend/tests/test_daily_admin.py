import pytest

from assessment import errors, models, repositories
from assessment.services.daily import DailyTestService


def test_taken_day_is_renumbered_not_rejected(db, clock):
    svc = DailyTestService(db, clock=clock)
    first = svc.create_daily_test_config(course_id=3, day_number=1, title="Intro")
    second = svc.create_daily_test_config(course_id=3, day_number=1, title="Intro again")
    assert first.day_number == 1
    assert second.day_number == 2

    svc.create_daily_test_config(course_id=3, day_number=5, title="Day five")
    third = svc.create_daily_test_config(course_id=3, day_number=2, title="Clash")
    assert third.day_number == 6

    # other courses keep their own numbering
    assert svc.create_daily_test_config(course_id=4, day_number=1, title="Intro").day_number == 1


def test_day_number_must_be_on_the_track(db, clock):
    svc = DailyTestService(db, clock=clock)
    with pytest.raises(errors.ValidationError):
        svc.create_daily_test_config(course_id=3, day_number=0, title="Nope")
    with pytest.raises(errors.ValidationError):
        svc.create_daily_test_config(course_id=3, day_number=46, title="Nope")


def test_assign_is_idempotent_for_the_same_slot(make, db, clock):
    config, _ = make.daily_config(question_count=0)
    q = make.single_question()
    svc = DailyTestService(db, clock=clock)

    first = svc.assign_question_to_test(config.id, q.id, 1)
    again = svc.assign_question_to_test(config.id, q.id, 1)

    assert again.id == first.id
    assert len(svc.get_assigned_questions(config.id)) == 1


def test_assign_moves_an_existing_question(make, db, clock):
    config, _ = make.daily_config(question_count=0)
    q = make.single_question()
    svc = DailyTestService(db, clock=clock)

    first = svc.assign_question_to_test(config.id, q.id, 1)
    moved = svc.assign_question_to_test(config.id, q.id, 4)

    assert moved.id == first.id
    assert moved.order_index == 4
    assert len(svc.get_assigned_questions(config.id)) == 1


def test_assign_to_taken_slot_uses_next_free_index(make, db, clock):
    config, questions = make.daily_config(question_count=3)
    newcomer = make.single_question()
    svc = DailyTestService(db, clock=clock)

    placed = svc.assign_question_to_test(config.id, newcomer.id, 2)

    assert placed.order_index == 4
    assigned = svc.get_assigned_questions(config.id)
    assert [row['question'].id for row in assigned] == [q.id for q in questions] + [newcomer.id]


def test_assign_checks_references(make, db, clock):
    config, _ = make.daily_config(question_count=0)
    svc = DailyTestService(db, clock=clock)
    with pytest.raises(errors.NotFoundError):
        svc.assign_question_to_test(config.id, 999, 1)
    with pytest.raises(errors.NotFoundError):
        svc.assign_question_to_test(999, make.single_question().id, 1)


def test_bulk_add_reorder_and_remove(make, db, clock):
    config, _ = make.daily_config(question_count=0)
    qs = [make.single_question() for _ in range(3)]
    svc = DailyTestService(db, clock=clock)

    rows = svc.add_questions_to_daily_test(config.id, [q.id for q in qs])
    assert [(r.question_id, r.order_index) for r in rows] == [(qs[0].id, 1), (qs[1].id, 2), (qs[2].id, 3)]

    svc.update_question_order(rows[0].id, 10)
    ordered = svc.get_daily_test_config(config.id)['questions']
    assert [q.id for q in ordered] == [qs[1].id, qs[2].id, qs[0].id]

    removed_id = rows[1].id
    svc.remove_question_from_test(removed_id)
    assert [q.id for q in svc.get_daily_test_config(config.id)['questions']] == [qs[2].id, qs[0].id]

    with pytest.raises(errors.NotFoundError):
        svc.remove_question_from_test(removed_id)
    with pytest.raises(errors.NotFoundError):
        svc.update_question_order(999, 1)


def test_reorder_into_taken_slot_is_a_conflict(make, db, clock):
    config, _ = make.daily_config(question_count=2)
    svc = DailyTestService(db, clock=clock)
    first, second = repositories.DailyTestRepository(db).list_assignments(config.id)
    with pytest.raises(errors.ConflictError):
        svc.update_question_order(second.id, first.order_index)


def test_config_reads(make, db, clock):
    day1, _ = make.daily_config(course_id=2, day_number=1, question_count=2)
    day2, _ = make.daily_config(course_id=2, day_number=2, question_count=2)
    make.questions.save(models.DailyTestConfig(course_id=2, day_number=3, title="Hidden", is_active=False))
    svc = DailyTestService(db, clock=clock)

    assert [c.id for c in svc.get_daily_test_configs(2)] == [day1.id, day2.id]
    assert svc.get_daily_test_config_by_day(2, 2)['config'].id == day2.id
    with pytest.raises(errors.NotFoundError):
        svc.get_daily_test_config_by_day(2, 3)
    with pytest.raises(errors.NotFoundError):
        svc.get_daily_test_config(999)


def test_available_questions_are_active_newest_first(make, db, clock):
    older = make.single_question()
    make.single_question(is_active=False)
    newer = make.single_question()
    svc = DailyTestService(db, clock=clock)
    ids = [q.id for q in svc.get_available_questions()]
    assert ids == [newer.id, older.id]
