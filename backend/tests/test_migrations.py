"""
The initial migration runs against SQLite as well as PostgreSQL.
"""

import importlib.util
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError

MIGRATION = Path(__file__).resolve().parents[1] / "alembic" / "versions" / "20240115_090000_initial_migration.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("initial_migration", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run(connection, step):
    with Operations.context(MigrationContext.configure(connection)):
        step()


@pytest.fixture
def migrated_engine():
    engine = create_engine("sqlite://")
    migration = _load_migration()
    with engine.begin() as connection:
        _run(connection, migration.upgrade)
    yield engine, migration
    engine.dispose()


def test_upgrade_creates_tables(migrated_engine):
    engine, _ = migrated_engine

    assert set(inspect(engine).get_table_names()) == {"chats", "messages", "checkpoints"}


def test_defaults_and_role_check(migrated_engine):
    engine, _ = migrated_engine

    with engine.begin() as connection:
        connection.execute(text("INSERT INTO chats (id, user_id) VALUES ('c-1', 'user-alice')"))
        row = connection.execute(text("SELECT title, is_pinned, updated_at FROM chats")).one()
        assert row.title == "New chat"
        assert not row.is_pinned
        assert row.updated_at is not None

    with pytest.raises(IntegrityError):
        with engine.begin() as connection:
            connection.execute(
                text(
                    "INSERT INTO messages (id, chat_id, user_id, role, content, created_at) "
                    "VALUES ('m-1', 'c-1', 'user-alice', 'robot', 'hi', 't')"
                )
            )


def test_downgrade_drops_tables(migrated_engine):
    engine, migration = migrated_engine

    with engine.begin() as connection:
        _run(connection, migration.downgrade)

    assert inspect(engine).get_table_names() == []
