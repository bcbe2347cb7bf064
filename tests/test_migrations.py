from pathlib import Path

import allure
from sqlalchemy import inspect, text

from bead_dispatch.dispatch.repository import AssignmentStore

pytestmark = [
    allure.epic("Assignment Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = AssignmentStore(tmp_path / "nested" / "dev.db", session_name="dev")
    store.init_schema()
    try:
        with store.engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1"),
            ).scalar_one()
            session_name = connection.execute(
                text("SELECT session_name FROM store_revision WHERE id = 1"),
            ).scalar_one()
        tables = set(inspect(store.engine).get_table_names())
        indexes = {index["name"] for index in inspect(store.engine).get_indexes("assignments")}
        columns = {column["name"] for column in inspect(store.engine).get_columns("assignments")}
    finally:
        store.close()

    assert version == "20261017_0002"
    assert session_name == "dev"
    assert {"store_revision", "assignments", "assignment_events"} <= tables
    assert "idx_assignments_pane_status" in indexes
    assert "retry_count" in columns


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "dev.db"
    for _ in range(2):
        store = AssignmentStore(db_path, session_name="dev")
        store.init_schema()
        store.close()

    store = AssignmentStore(db_path, session_name="dev")
    try:
        assert store.revision() == 0
    finally:
        store.close()
