import pytest
from pydantic import ValidationError

import crud
import event_log
import ledger
import registry
from errors import InvalidTarget, InvalidTransition, NotFound
from models import AssignmentTarget, ToolIn, ToolUpdate


def _events(db, tool_id):
    return list(event_log.query(db, tool_id=tool_id))


def test_create_tool_emits_created_event(db_session, make_tool, make_location):
    site = make_location("Shelf A")
    tool = make_tool("Hammer", serial_number="H-001", location_id=site.id)

    assert tool.status == "available"
    assert tool.location_id == site.id

    events = _events(db_session, tool.id)
    assert [e.event_type for e in events] == ["created"]
    assert events[0].new_status == "available"
    assert events[0].to_location_id == site.id


def test_create_tool_rejects_dual_holder(db_session, make_tool, make_location, make_person):
    site = make_location()
    person = make_person()
    with pytest.raises(InvalidTarget):
        make_tool("Saw", location_id=site.id, person_id=person.id)


def test_update_tool_records_changed_fields(db_session, make_tool, admin):
    tool = make_tool("Grinder")
    updated = registry.update_tool(db_session, tool.id, ToolUpdate(name="Angle grinder", purchase_price=120.0), actor=admin)

    assert updated.name == "Angle grinder"
    latest = _events(db_session, tool.id)[0]
    assert latest.event_type == "updated"
    assert "name" in latest.notes and "purchase_price" in latest.notes

    # 変更なしはイベントなし
    registry.update_tool(db_session, tool.id, ToolUpdate(name="Angle grinder"), actor=admin)
    assert len(_events(db_session, tool.id)) == 2


def test_set_status_captures_old_and_new(db_session, make_tool, admin):
    tool = make_tool()
    changed = registry.set_status(db_session, tool.id, "maintenance", actor=admin, note="blade check")

    assert changed.status == "maintenance"
    latest = _events(db_session, tool.id)[0]
    assert latest.event_type == "status_changed"
    assert (latest.old_status, latest.new_status) == ("available", "maintenance")
    assert latest.notes == "blade check"
    assert latest.user_id == "admin-1"


def test_set_status_same_value_is_noop(db_session, make_tool, admin):
    tool = make_tool()
    registry.set_status(db_session, tool.id, "available", actor=admin)
    assert len(_events(db_session, tool.id)) == 1


def test_set_status_in_use_requires_assignment(db_session, make_tool, admin):
    tool = make_tool()
    with pytest.raises(InvalidTransition):
        registry.set_status(db_session, tool.id, "in_use", actor=admin)


@pytest.mark.parametrize("status", ["available", "maintenance", "damaged", "lost", "retired"])
def test_set_status_blocked_while_assigned(db_session, make_tool, make_person, admin, status):
    tool = make_tool()
    person = make_person()
    ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=person.id), actor=admin)

    with pytest.raises(InvalidTransition):
        registry.set_status(db_session, tool.id, status, actor=admin)

    assert crud.get_tool(db_session, tool.id).status == "in_use"


def test_return_to_service(db_session, make_tool, admin):
    tool = make_tool()
    registry.set_status(db_session, tool.id, "maintenance", actor=admin)

    back = registry.return_to_service(db_session, tool.id, actor=admin)
    assert back.status == "available"
    assert _events(db_session, tool.id)[0].notes == "Returned to service"

    # 2回目は何もしない
    again = registry.return_to_service(db_session, tool.id, actor=admin)
    assert again.status == "available"
    assert len(_events(db_session, tool.id)) == 3


def test_return_to_service_requires_maintenance(db_session, make_tool, admin):
    tool = make_tool()
    registry.set_status(db_session, tool.id, "damaged", actor=admin)
    with pytest.raises(InvalidTransition):
        registry.return_to_service(db_session, tool.id, actor=admin)


def test_relocate_sets_one_holder_and_clears_other(db_session, make_tool, make_location, make_person, admin):
    site = make_location("Depot")
    person = make_person("Bob")
    tool = make_tool(person_id=person.id)

    moved = registry.relocate(db_session, tool.id, location_id=site.id, actor=admin)
    assert moved.location_id == site.id
    assert moved.person_id is None

    latest = _events(db_session, tool.id)[0]
    assert latest.event_type == "moved"
    assert latest.from_person_id == person.id
    assert latest.to_location_id == site.id
    assert latest.to_person_id is None


def test_relocate_rejects_both_targets(db_session, make_tool, make_location, make_person, admin):
    tool = make_tool()
    with pytest.raises(InvalidTarget):
        registry.relocate(db_session, tool.id, location_id=make_location().id, person_id=make_person().id, actor=admin)
    assert len(_events(db_session, tool.id)) == 1


def test_relocate_unknown_location(db_session, make_tool, admin):
    tool = make_tool()
    with pytest.raises(InvalidTarget):
        registry.relocate(db_session, tool.id, location_id="nope", actor=admin)


def test_unknown_tool_is_not_found(db_session, admin):
    with pytest.raises(NotFound):
        registry.set_status(db_session, "missing", "maintenance", actor=admin)


def test_current_custody_prefers_open_assignment(db_session, make_tool, make_location, make_person, admin):
    depot = make_location("Depot")
    person = make_person()
    tool = make_tool(location_id=depot.id)

    fallback = registry.current_custody(db_session, tool.id)
    assert (fallback.kind, fallback.source, fallback.location_id) == ("location", "tool", depot.id)

    a = ledger.create_assignment(db_session, tool.id, AssignmentTarget(person_id=person.id), actor=admin)
    custody = registry.current_custody(db_session, tool.id)
    assert custody.kind == "person"
    assert custody.source == "assignment"
    assert custody.assignment_id == a.id


def test_current_custody_none(db_session, make_tool):
    tool = make_tool()
    assert registry.current_custody(db_session, tool.id).kind == "none"


def test_import_tools_skips_duplicates_and_reports_errors(db_session, make_tool, make_location, admin):
    make_location("Shelf A")
    make_tool("Existing", serial_number="S-1")

    result = registry.import_tools(
        db_session,
        [
            {"name": "Laser level", "serial_number": "S-2", "location": "Shelf A", "purchase_price": "250"},
            {"name": "Dup", "serial_number": "S-1"},
            {"name": "", "serial_number": "S-3"},
            {"name": "Bad date", "purchase_date": "yesterday"},
            {"name": "Nowhere", "location": "Shelf Z"},
        ],
        actor=admin,
    )

    assert result["created"] == 1
    assert result["skipped"] == 1
    assert len(result["errors"]) == 3

    tools = crud.list_tools_filtered(
        db_session, q="Laser", status=None, location_id=None, person_id=None,
        sort="name", order="asc", limit=10, offset=0,
    )
    assert len(tools) == 1
    assert tools[0].purchase_price == 250.0
    assert _events(db_session, tools[0].id)[0].event_type == "created"


@pytest.mark.parametrize("name", ["", "   "])
def test_blank_tool_name_is_rejected(name):
    with pytest.raises(ValidationError):
        ToolIn(name=name)


def test_update_cannot_clear_name(db_session, make_tool):
    tool = make_tool("Grinder")
    with pytest.raises(ValidationError):
        ToolUpdate(name=None)
    with pytest.raises(ValidationError):
        ToolUpdate(name="  ")

    # 未指定なら名前はそのまま
    assert ToolUpdate(description="x").model_dump(exclude_unset=True) == {"description": "x"}
    assert crud.get_tool(db_session, tool.id).name == "Grinder"
