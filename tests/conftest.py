import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# ---- テスト用DBパス（アプリの import より前に設定する）----
os.environ.setdefault(
    "APP_DB_PATH",
    str(Path(tempfile.mkdtemp(prefix="tool_inventory_test_")) / "test_tools.db"),
)

from models import Actor, LocationIn, PersonIn, ToolIn  # noqa: E402

ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


def member_headers(user_id="user-1"):
    return {"X-User-Id": user_id, "X-User-Role": "member"}


@pytest.fixture(scope="session")
def app_module():
    import main

    return main


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as c:
        yield c


@pytest.fixture()
def db_session(app_module):
    from db import SessionLocal

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def clean_db(app_module, db_session):
    # 各テスト前に全テーブルを消す（FK順：events -> assignments -> requests -> tools -> masters）
    from sqlalchemy import delete
    from orm import (
        AssignmentORM,
        LocationORM,
        PersonORM,
        ToolEventORM,
        ToolORM,
        ToolRequestORM,
        UserLocationORM,
    )

    db_session.execute(delete(ToolEventORM))
    db_session.execute(delete(AssignmentORM))
    db_session.execute(delete(ToolRequestORM))
    db_session.execute(delete(UserLocationORM))
    db_session.execute(delete(ToolORM))
    db_session.execute(delete(PersonORM))
    db_session.execute(delete(LocationORM))
    db_session.commit()
    yield


@pytest.fixture()
def admin():
    return Actor(user_id="admin-1", is_admin=True)


@pytest.fixture()
def make_location(db_session):
    import crud

    def _make(name="Site A", *, is_base_warehouse=False):
        return crud.create_location(db_session, LocationIn(name=name, is_base_warehouse=is_base_warehouse))

    return _make


@pytest.fixture()
def make_person(db_session):
    import crud

    def _make(name="Alice", *, user_id=None):
        return crud.create_person(db_session, PersonIn(name=name, user_id=user_id))

    return _make


@pytest.fixture()
def make_tool(db_session, admin):
    import registry

    def _make(name="Drill", **kwargs):
        return registry.create_tool(db_session, ToolIn(name=name, **kwargs), actor=admin)

    return _make
