"""
Tests for the process-wide database helpers.
"""

import pytest
from sqlalchemy import inspect, select

from atelier.core import database
from atelier.models import Input


@pytest.fixture
def fresh_engine(monkeypatch):
    engine = database.create_db_engine("sqlite://")
    monkeypatch.setattr(database, "_engine", engine)
    monkeypatch.setattr(database, "_SessionLocal", None)
    return engine


class TestInitDb:
    def test_creates_tables(self, fresh_engine) -> None:
        database.init_db()

        tables = set(inspect(fresh_engine).get_table_names())
        assert {"inputs", "artifacts", "derived_assets", "provisional_resources"} <= tables


class TestSessionScope:
    """Each get_db_session() block is one transaction."""

    def test_commits_on_clean_exit(self, db) -> None:
        with database.get_db_session() as session:
            session.add(Input(prompt="kept"))

        assert db.scalars(select(Input).where(Input.prompt == "kept")).first() is not None

    def test_rolls_back_and_reraises(self, db) -> None:
        with pytest.raises(RuntimeError):
            with database.get_db_session() as session:
                session.add(Input(prompt="discarded"))
                session.flush()
                raise RuntimeError("boom")

        assert db.scalars(select(Input).where(Input.prompt == "discarded")).first() is None

    def test_objects_stay_readable_after_close(self) -> None:
        with database.get_db_session() as session:
            row = Input(prompt="detached")
            session.add(row)

        assert row.prompt == "detached"
        assert row.id is not None
