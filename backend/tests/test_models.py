from sqlalchemy import DateTime
from sqlmodel import SQLModel

from assessment import models, repositories


def test_timestamp_columns_store_no_zone():
    columns = [c for t in SQLModel.metadata.sorted_tables for c in t.columns if isinstance(c.type, DateTime)]
    assert len(columns) >= 20
    assert all(c.type.timezone is False for c in columns)


def test_naive_timestamps_are_written_and_read_back(make, db, clock):
    config = make.mcq_config()
    repo = repositories.McqRepository(db)
    saved = repo.save(models.TestSession(user_id=1, test_config_id=config.id, attempt_number=1,
                                         started_at=clock(), completed_at=clock()))
    db.expire_all()

    loaded = repo.get_session(saved.id)
    assert loaded.started_at == clock()
    assert loaded.started_at.tzinfo is None
    assert loaded.completed_at == clock()
