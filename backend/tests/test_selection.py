import random

import pytest

from assessment import errors, models, repositories
from assessment.utils import selection


def test_shuffled_is_a_permutation_and_leaves_input_alone():
    items = list(range(20))
    out = selection.shuffled(items, random.Random(3))
    assert sorted(out) == items
    assert items == list(range(20))
    assert out == selection.shuffled(items, random.Random(3))
    assert selection.shuffled((), random.Random(3)) == []


def test_new_rng_returns_independent_generators():
    assert selection.new_rng() is not selection.new_rng()


def test_render_question_hides_correctness(make):
    q = make.option_question()
    payload = selection.render_question(q, random.Random(1))
    assert {o['option_text'] for o in payload['options']} == {"A", "B", "C", "D"}
    assert all(set(o) == {'id', 'option_text'} for o in payload['options'])
    assert 'correct_answer' not in payload

    s = make.single_question(correct="B")
    payload = selection.render_question(s)
    assert [o['label'] for o in payload['options']] == ["A", "B", "C", "D"]
    assert 'correct_answer' not in payload


def test_select_by_rules_dedupes_and_backfills(make, db):
    a = make.category("Ledgers")
    b = make.category("Tax")
    a_qs = [make.option_question(category_id=a.id) for _ in range(3)]
    b_qs = [make.option_question(category_id=b.id, difficulty="advanced") for _ in range(2)]
    extra = make.option_question(category_id=b.id, difficulty="expert")
    rules = [
        models.TestQuestionRule(test_config_id=1, category_id=a.id, difficulty="beginner", question_count=2),
        models.TestQuestionRule(test_config_id=1, category_id=a.id, difficulty="beginner", question_count=1),
        models.TestQuestionRule(test_config_id=1, category_id=b.id, difficulty="advanced", question_count=5),
    ]
    repo = repositories.QuestionRepository(db)

    picked = selection.select_by_rules(repo, rules, total_questions=6)

    ids = [q.id for q in picked]
    assert len(ids) == len(set(ids))
    assert ids[:4] == [a_qs[0].id, a_qs[1].id, b_qs[0].id, b_qs[1].id]
    assert set(ids[4:]) == {a_qs[2].id, extra.id}


def test_select_without_rules_takes_first_active(make, db):
    qs = [make.option_question() for _ in range(4)]
    make.option_question(is_active=False)
    repo = repositories.QuestionRepository(db)

    picked = selection.select_by_rules(repo, [], total_questions=3)
    assert [q.id for q in picked] == [q.id for q in qs[:3]]

    picked = selection.select_by_rules(repo, [], total_questions=None, default_count=25)
    assert len(picked) == 4


def test_assemble_session_rejects_empty_bank(db):
    repo = repositories.QuestionRepository(db)
    with pytest.raises(errors.ValidationError):
        selection.assemble_session(repo, [], 5)


def test_assemble_session_needs_two_answerable_questions(make, db):
    make.option_question()
    make.option_question(options=(("Only", True),))
    make.option_question(options=(("Only", True),))
    repo = repositories.QuestionRepository(db)
    with pytest.raises(errors.ValidationError):
        selection.assemble_session(repo, [], 5)


def test_assemble_session_drops_unanswerable_and_shuffles(make, db):
    good = [make.option_question() for _ in range(5)]
    make.option_question(options=(("Only", True),))
    repo = repositories.QuestionRepository(db)

    served, payloads = selection.assemble_session(repo, [], 10, rng=random.Random(11))

    assert {q.id for q in served} == {q.id for q in good}
    assert [p['id'] for p in payloads] == [q.id for q in served]


def test_fixed_order_sorts_and_skips_missing(make):
    q1, q2, q3 = (make.single_question() for _ in range(3))
    assignments = [
        models.DailyTestQuestion(test_config_id=1, question_id=q3.id, order_index=3),
        models.DailyTestQuestion(test_config_id=1, question_id=q1.id, order_index=1),
        models.DailyTestQuestion(test_config_id=1, question_id=q2.id, order_index=2),
    ]
    by_id = {q1.id: q1, q3.id: q3}
    assert [q.id for q in selection.fixed_order(assignments, by_id)] == [q1.id, q3.id]
