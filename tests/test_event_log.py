from datetime import datetime, timedelta, timezone

import pytest

import event_log
import registry
from models import ToolEventIn


def test_history_is_newest_first(db_session, make_tool, make_location, admin):
    tool = make_tool()
    registry.set_status(db_session, tool.id, "maintenance", actor=admin)
    registry.relocate(db_session, tool.id, location_id=make_location().id, actor=admin)

    kinds = [e.event_type for e in event_log.query(db_session, tool_id=tool.id)]
    assert kinds == ["moved", "status_changed", "created"]


def test_same_timestamp_falls_back_to_insert_order(db_session, make_tool):
    tool = make_tool()
    at = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    first = event_log.append(db_session, ToolEventIn(tool_id=tool.id, event_type="updated", notes="first"), at=at)
    second = event_log.append(db_session, ToolEventIn(tool_id=tool.id, event_type="updated", notes="second"), at=at)
    db_session.commit()

    assert second.id > first.id
    notes = [e.notes for e in event_log.query(db_session, tool_id=tool.id, event_type="updated")]
    assert notes == ["second", "first"]


def test_history_is_restartable(db_session, make_tool, admin):
    tool = make_tool()
    registry.set_status(db_session, tool.id, "damaged", actor=admin)

    history = event_log.query(db_session, tool_id=tool.id)
    first_pass = [e.id for e in history]
    second_pass = [e.id for e in history]
    assert first_pass == second_pass
    assert len(first_pass) == 2

    # 新しいイベントは次の走査で見える
    registry.set_status(db_session, tool.id, "retired", actor=admin)
    assert len(list(history)) == 3


def test_date_range_and_paging(db_session, make_tool):
    tool = make_tool()
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for day in range(5):
        event_log.append(
            db_session,
            ToolEventIn(tool_id=tool.id, event_type="updated", notes=f"day {day}"),
            at=base + timedelta(days=day),
        )
    db_session.commit()

    window = event_log.query(
        db_session, tool_id=tool.id, start=base + timedelta(days=1), end=base + timedelta(days=3)
    )
    assert [e.notes for e in window] == ["day 2", "day 1"]

    updates = event_log.query(db_session, tool_id=tool.id, event_type="updated")
    assert [e.notes for e in updates.page(limit=2, offset=1)] == ["day 3", "day 2"]


def test_append_validates_input(db_session):
    with pytest.raises(ValueError):
        event_log.append(db_session, ToolEventIn.model_construct(tool_id="", event_type="updated"))
    with pytest.raises(ValueError):
        event_log.append(db_session, ToolEventIn.model_construct(tool_id="t", event_type="deleted"))


def test_events_cannot_be_updated(db_session, make_tool):
    from orm import ToolEventORM

    tool = make_tool()
    row = db_session.query(ToolEventORM).filter_by(tool_id=tool.id).one()
    row.notes = "rewritten"
    with pytest.raises(ValueError):
        db_session.flush()
    db_session.rollback()

    assert db_session.query(ToolEventORM).filter_by(tool_id=tool.id).one().notes == "Tool created"


def test_events_cannot_be_deleted(db_session, make_tool):
    from orm import ToolEventORM

    tool = make_tool()
    row = db_session.query(ToolEventORM).filter_by(tool_id=tool.id).one()
    db_session.delete(row)
    with pytest.raises(ValueError):
        db_session.flush()
    db_session.rollback()
